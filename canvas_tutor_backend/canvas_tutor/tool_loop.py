import logging
from typing import Any, Dict, List, Optional, Sequence

from .exceptions import MalformedCompilerOutput, ToolLoopExceeded
from .gateway import Gateway
from .llm import GenerationResult, ToolAction
from .models import CommandScript
from .parsing import validate_commands
from .prompts import RETRIEVE_TOOL_NAME, SESSION_TOOLS
from .settings import MAX_TOOL_ROUNDS

logger = logging.getLogger(__name__)

NO_CONTENT = "No relevant content found."
COMMAND_ACKNOWLEDGED = "Acknowledged, the command was queued for the canvas."


def _needs_round(result: GenerationResult) -> bool:
    if any(a.name == RETRIEVE_TOOL_NAME for a in result.actions):
        return True
    # Only unrecognised tools and nothing to draw: answer them and let the model try again
    return result.has_actions and not result.commands


async def _resolve_action(gateway: Gateway, action: ToolAction, document_ids: Sequence[str]) -> str:
    if action.name != RETRIEVE_TOOL_NAME:
        logger.warning(f"Ignoring unknown tool request '{action.name}'")
        return f"Tool '{action.name}' is not available."
    query = str(action.arguments.get("query", ""))
    logger.info(f"Resolving retrieval for query: {query!r} over {len(document_ids)} document(s)")
    content = await gateway.retrieve(query, list(document_ids))
    return content or NO_CONTENT


async def resolve_tool_loop(
    gateway: Gateway,
    conversation: List[Dict[str, Any]],
    document_ids: Sequence[str] = (),
    tools: Optional[List[Dict[str, Any]]] = None,
    max_rounds: int = MAX_TOOL_ROUNDS,
) -> CommandScript:
    """
    Drive the generation capability until it answers without tool requests.

    Each round replays the model's tool calls into the conversation followed
    by one tool message per replayed call id, then asks again. Canvas calls
    made alongside a retrieval are acknowledged and kept; they come before the
    terminal response's commands, all in the order the model emitted them.

    Raises:
        ToolLoopExceeded: the model still requested tools after `max_rounds` rounds
        MalformedCompilerOutput: no valid commands were produced
    """
    tools = tools if tools is not None else SESSION_TOOLS
    messages = list(conversation)
    result = await gateway.generate(messages, tools)

    pending: List[Dict[str, Any]] = []
    rounds = 0
    while _needs_round(result):
        rounds += 1
        if rounds > max_rounds:
            logger.error(f"Tool loop exceeded {max_rounds} rounds")
            raise ToolLoopExceeded(max_rounds)
        logger.info(f"Tool round {rounds}: model requested {len(result.actions)} tool(s) and {len(result.commands)} command(s)")
        messages.append(result.message)
        answered = set()
        for action in result.actions:
            output = await _resolve_action(gateway, action, document_ids)
            messages.append({"role": "tool", "tool_call_id": action.id, "content": output})
            answered.add(action.id)
        # Every replayed call needs a reply, canvas calls included
        for call in result.message.get("tool_calls", []):
            if call["id"] not in answered:
                messages.append({"role": "tool", "tool_call_id": call["id"], "content": COMMAND_ACKNOWLEDGED})
        pending.extend(result.commands)
        result = await gateway.generate(messages, tools)

    for action in result.actions:
        logger.warning(f"Dropping unresolved tool request '{action.name}' from terminal response")

    raw_commands = pending + result.commands
    if not raw_commands:
        raise MalformedCompilerOutput("Terminal response did not contain any canvas commands.")
    commands = validate_commands(raw_commands, "Terminal response")
    logger.info(f"Tool loop finished after {rounds} round(s) with {len(commands)} commands")
    return commands
