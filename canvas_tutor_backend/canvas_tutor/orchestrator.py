import uuid, logging
from typing import Dict, Optional, Tuple

from langchain_core.runnables import RunnableConfig
from langgraph.graph import StateGraph, END
from pydantic import BaseModel, Field

from .compiler import compile_session_script, validate_script
from .gateway import Gateway
from .models import (
    AccumulatedModuleState,
    CommandScript,
    CreateTableCommand,
    ModuleEvent,
    ModulePlan,
    ModuleRequest,
    ModuleStatus,
    SessionTurnRequest,
)
from .parsing import parse_module_plan, parse_step_commands
from .progress import ProgressChannel
from .prompts import TITLE_PROMPT, build_module_plan_prompt, build_module_step_prompt
from .settings import DEFAULT_LANGUAGE_CODE
from .synthesis import synthesize_script

logger = logging.getLogger(__name__)


class ModuleGraphState(BaseModel):
    module_id: str
    request: ModuleRequest
    language_code: str
    document_context: Optional[str] = None
    plan: Optional[ModulePlan] = None
    step_index: int = 0
    accumulated: AccumulatedModuleState = Field(default_factory=AccumulatedModuleState)
    # Tables created by finished steps, (rows, cols) by id
    tables: Dict[str, Tuple[int, int]] = Field(default_factory=dict)


def _deps(config: RunnableConfig) -> Tuple[Gateway, ProgressChannel]:
    configurable = config["configurable"]
    return configurable["gateway"], configurable["channel"]


async def generate_title(gateway: Gateway, prompt: str) -> str:
    raw = await gateway.complete(TITLE_PROMPT.format(prompt=prompt))
    title = raw.strip().replace('"', "").replace("'", "")
    return title or prompt[:40] + "..."


async def generate_module_step(
    gateway: Gateway,
    request: ModuleRequest,
    plan: ModulePlan,
    index: int,
    accumulated: AccumulatedModuleState,
    document_context: Optional[str],
) -> CommandScript:
    prompt = build_module_step_prompt(
        request.prompt,
        document_context,
        [c.command for c in accumulated.commands],
        list(accumulated.narration_texts),
        list(plan.steps),
        plan.steps[index],
        [c.payload for c in accumulated.commands if isinstance(c, CreateTableCommand)],
    )
    raw = await gateway.complete(prompt)
    commands = parse_step_commands(raw, index + 1)
    logger.info(f"Step {index + 1} generated {len(commands)} commands")
    return commands


async def node_plan(state: ModuleGraphState, config: RunnableConfig) -> dict:
    gateway, channel = _deps(config)
    request = state.request
    step_count = request.resolved_step_count()

    document_context = request.document_context
    if not document_context and request.document_ids:
        document_context = await gateway.retrieve(request.prompt, request.document_ids) or None

    channel.generating(state.module_id, "Planning the module structure...")
    raw = await gateway.complete(build_module_plan_prompt(request.prompt, step_count, document_context), json_mode=True)
    plan = parse_module_plan(raw, step_count)
    logger.info(f"Received module plan with {len(plan)} steps for module {state.module_id}")
    return {"plan": plan, "document_context": document_context}


async def node_step(state: ModuleGraphState, config: RunnableConfig) -> dict:
    gateway, channel = _deps(config)
    plan = state.plan
    i = state.step_index
    channel.generating(state.module_id, f"Generating step {i + 1} of {len(plan)}: {plan.steps[i]}...")

    commands = await generate_module_step(gateway, state.request, plan, i, state.accumulated, state.document_context)
    # Steps are concatenated, so tables from earlier steps are valid fill targets
    tables = validate_script(commands, state.tables)
    commands = await synthesize_script(gateway, commands, state.language_code)

    logger.info(f"Step {i + 1} completed, accumulating state")
    return {
        "accumulated": state.accumulated.extended(commands),
        "step_index": i + 1,
        "tables": tables,
    }


def route_after_step(state: ModuleGraphState) -> str:
    if state.step_index < len(state.plan):
        return "step"
    return END


def build_graph():
    g = StateGraph(ModuleGraphState)
    g.add_node("plan", node_plan)
    g.add_node("step", node_step)
    g.set_entry_point("plan")
    g.add_edge("plan", "step")
    g.add_conditional_edges("step", route_after_step)
    return g.compile()

GRAPH = build_graph()


async def run_module(
    gateway: Gateway,
    request: ModuleRequest,
    channel: ProgressChannel,
    module_id: Optional[str] = None,
) -> CommandScript:
    """
    Plan a module and generate its steps strictly in order.

    Publishes `generating` events while running and exactly one terminal
    event. Any failure aborts the whole module; the error is re-raised after
    the `failed` event.
    """
    module_id = module_id or str(uuid.uuid4())
    state = ModuleGraphState(
        module_id=module_id,
        request=request,
        language_code=request.language_code or DEFAULT_LANGUAGE_CODE,
    )
    config = {
        "configurable": {"gateway": gateway, "channel": channel},
        "recursion_limit": request.resolved_step_count() + 10,
    }
    try:
        logger.info(f"Starting module generation for {module_id}")
        final_state = await GRAPH.ainvoke(state, config)
        # LangGraph hands back channel values as a dict
        accumulated = final_state.get("accumulated") if hasattr(final_state, "get") else final_state.accumulated
        script = list(accumulated.commands)
    except Exception as e:
        logger.error(f"Error generating module {module_id}: {str(e)}")
        channel.publish(ModuleEvent(
            status=ModuleStatus.FAILED,
            module_id=module_id,
            message=f"Failed to generate module. {e}",
        ))
        raise
    channel.publish(ModuleEvent(
        status=ModuleStatus.COMPLETED,
        module_id=module_id,
        message="Module generation complete!",
        script=script,
    ))
    return script


async def run_session_turn(gateway: Gateway, request: SessionTurnRequest) -> CommandScript:
    commands = await compile_session_script(gateway, request)
    return await synthesize_script(gateway, commands, request.language_code or DEFAULT_LANGUAGE_CODE)
