import os, json, logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openai

from .exceptions import CapabilityUnavailable, MalformedCompilerOutput
from .models import COMMAND_KINDS
from .settings import OPENAI_MODEL, OPENAI_EMBEDDING_MODEL, OPENAI_TIMEOUT_S

logger = logging.getLogger(__name__)

_client = None

def _get_client(capability: str = "generation"):
    global _client
    if _client is None:
        api_key = os.getenv("OPENAI_API_KEY", "")
        if not api_key:
            logger.error("OPENAI_API_KEY is not set")
            raise CapabilityUnavailable(capability, "OPENAI_API_KEY is not set; please configure your .env")
        _client = openai.AsyncOpenAI(api_key=api_key, timeout=OPENAI_TIMEOUT_S)
    return _client


@dataclass
class ToolAction:
    """A non-canvas tool the model asked for (e.g. retrieve)."""
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class GenerationResult:
    actions: List[ToolAction] = field(default_factory=list)
    # Canvas tool calls in the order the model emitted them, in transport form
    commands: List[Dict[str, Any]] = field(default_factory=list)
    content: Optional[str] = None
    # Assistant turn to replay into the conversation before tool outputs
    message: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_actions(self) -> bool:
        return len(self.actions) > 0


def _decode_arguments(name: str, raw: Optional[str]) -> Dict[str, Any]:
    try:
        args = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise MalformedCompilerOutput(f"Arguments for tool call '{name}' are not valid JSON: {e}") from e
    if not isinstance(args, dict):
        raise MalformedCompilerOutput(f"Arguments for tool call '{name}' are not an object")
    return args


def tool_call_to_command(name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(args)
    command: Dict[str, Any] = {"command": name, "payload": payload}
    if "delay" in payload:
        command["delay"] = payload.pop("delay")
    return command


def result_from_message(message) -> GenerationResult:
    """Split an OpenAI assistant message into tool actions and canvas commands."""
    result = GenerationResult(content=message.content)
    replay_calls = []
    for tc in message.tool_calls or []:
        name = tc.function.name
        replay_calls.append({
            "id": tc.id,
            "type": "function",
            "function": {"name": name, "arguments": tc.function.arguments},
        })
        args = _decode_arguments(name, tc.function.arguments)
        if name in COMMAND_KINDS:
            result.commands.append(tool_call_to_command(name, args))
        else:
            result.actions.append(ToolAction(id=tc.id, name=name, arguments=args))
    result.message = {"role": "assistant", "content": message.content}
    if replay_calls:
        result.message["tool_calls"] = replay_calls
    return result


async def generate(conversation: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
    logger.info(f"Calling OpenAI with {len(conversation)} messages and {len(tools or [])} tools")
    create_kwargs: Dict[str, Any] = {"model": OPENAI_MODEL, "messages": conversation}
    if tools:
        create_kwargs["tools"] = tools
        create_kwargs["tool_choice"] = "auto"
    try:
        client = _get_client()
        resp = await client.chat.completions.create(**create_kwargs)
    except openai.APIError as e:
        logger.error(f"OpenAI API call failed: {str(e)}")
        raise CapabilityUnavailable("generation", str(e)) from e
    result = result_from_message(resp.choices[0].message)
    logger.info(f"OpenAI returned {len(result.actions)} tool actions and {len(result.commands)} commands")
    return result


async def complete(prompt: str, json_mode: bool = False, temperature: float = 0.4) -> str:
    create_kwargs: Dict[str, Any] = {
        "model": OPENAI_MODEL,
        "messages": [{"role": "user", "content": prompt}],
        "temperature": temperature,
    }
    if json_mode:
        create_kwargs["response_format"] = {"type": "json_object"}
    try:
        client = _get_client()
        resp = await client.chat.completions.create(**create_kwargs)
    except openai.APIError as e:
        logger.error(f"OpenAI API call failed: {str(e)}")
        raise CapabilityUnavailable("generation", str(e)) from e
    content = resp.choices[0].message.content or ""
    logger.info(f"Successfully received {len(content)} characters from OpenAI")
    return content


async def embed(texts: List[str]) -> List[List[float]]:
    if not texts:
        return []
    try:
        client = _get_client("retrieval")
        resp = await client.embeddings.create(model=OPENAI_EMBEDDING_MODEL, input=texts)
    except openai.APIError as e:
        logger.error(f"OpenAI embedding call failed: {str(e)}")
        raise CapabilityUnavailable("retrieval", str(e)) from e
    return [item.embedding for item in sorted(resp.data, key=lambda d: d.index)]
