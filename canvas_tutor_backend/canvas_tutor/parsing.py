"""
Parsing of free-form model text into JSON payloads, module plans and commands.

Everything here is pure: no network access, no logging side effects beyond
debug output. Failures raise MalformedCompilerOutput.
"""
import json
import logging
import re
from typing import Any, Dict, List

from pydantic import ValidationError

from .exceptions import MalformedCompilerOutput
from .models import CommandScript, ModulePlan, SessionEndCommand, parse_script

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


def extract_json_payload(text: str) -> Any:
    """
    Extract and decode the JSON object or array embedded in model output.

    Markdown fences are honoured when present. Otherwise the span from the
    first opening brace/bracket to the last closing brace/bracket is used,
    so commentary before and after the payload is ignored.
    """
    if not text or not text.strip():
        raise MalformedCompilerOutput("Empty response, no JSON payload found.")

    fenced = _FENCE_RE.search(text)
    target = fenced.group(1) if fenced else text

    openings = [i for i in (target.find("{"), target.find("[")) if i != -1]
    if not openings:
        raise MalformedCompilerOutput("No JSON object or array found in the response.")
    start = min(openings)

    end = max(target.rfind("}"), target.rfind("]"))
    if end < start:
        raise MalformedCompilerOutput("JSON structure is incomplete (missing closing brace or bracket).")

    candidate = target[start:end + 1]
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise MalformedCompilerOutput(f"Response JSON could not be decoded: {e}") from e


def parse_module_plan(text: str, expected_steps: int) -> ModulePlan:
    payload = extract_json_payload(text)
    steps = payload.get("plan") if isinstance(payload, dict) else payload
    if not isinstance(steps, list) or not all(isinstance(s, str) for s in steps):
        raise MalformedCompilerOutput("Module plan is not a valid array of strings.")
    if len(steps) != expected_steps:
        raise MalformedCompilerOutput(
            f"Module plan has {len(steps)} steps, expected {expected_steps}."
        )
    return ModulePlan(steps=tuple(steps))


def validate_commands(raw: List[Dict[str, Any]], source: str) -> CommandScript:
    try:
        return parse_script(raw)
    except ValidationError as e:
        raise MalformedCompilerOutput(f"{source} contained invalid commands: {e}") from e


def parse_step_commands(text: str, step_number: int) -> CommandScript:
    payload = extract_json_payload(text)
    if not isinstance(payload, list):
        raise MalformedCompilerOutput(f"Response for step {step_number} was not a JSON array.")
    commands = validate_commands(payload, f"Step {step_number}")
    if any(isinstance(c, SessionEndCommand) for c in commands):
        raise MalformedCompilerOutput(f"Step {step_number} contains a session_end command.")
    logger.debug(f"Parsed {len(commands)} commands for step {step_number}")
    return commands
