import json, logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .exceptions import InvalidScriptReference
from .gateway import Gateway
from .models import (
    CommandScript,
    CreateTableCommand,
    FillTableCommand,
    HistoryMessage,
    SessionEndCommand,
    SessionTurnRequest,
)
from .prompts import CONVERSATION_SUMMARY_PROMPT, SESSION_TOOLS, SUMMARY_PREFIX, build_system_prompt
from .settings import MAX_TOOL_ROUNDS, SUMMARY_INTERVAL
from .tool_loop import resolve_tool_loop

logger = logging.getLogger(__name__)

UNPROCESSABLE_TURN = "(Response cannot be processed)"


def reduce_ai_turn(text: str) -> str:
    """A stored AI turn is a serialized script; keep only what was said aloud."""
    try:
        commands = json.loads(text)
        spoken = [
            cmd["payload"]["text"]
            for cmd in commands
            if cmd.get("command") == "speak" and cmd.get("payload", {}).get("text")
        ]
    except (json.JSONDecodeError, TypeError, AttributeError, KeyError):
        return UNPROCESSABLE_TURN
    return " ".join(spoken)


def format_history(history: Iterable[HistoryMessage], summary: Optional[str] = None) -> List[Dict[str, str]]:
    messages = []
    if summary:
        messages.append({"role": "system", "content": SUMMARY_PREFIX.format(summary=summary)})
    for message in history:
        if message.sender == "user":
            messages.append({"role": "user", "content": message.text})
        else:
            messages.append({"role": "assistant", "content": reduce_ai_turn(message.text)})
    return messages


def format_history_for_summary(history: Iterable[HistoryMessage]) -> str:
    lines = []
    for message in history:
        if message.sender == "user":
            lines.append(f"User: {message.text}")
        else:
            lines.append(f"AI: {reduce_ai_turn(message.text)}")
    return "\n".join(lines)


def should_refresh_summary(message_count: int, interval: Optional[int] = None) -> bool:
    interval = SUMMARY_INTERVAL if interval is None else interval
    return interval > 0 and message_count > 0 and message_count % interval == 0


async def summarize_conversation(gateway: Gateway, history: List[HistoryMessage]) -> str:
    """
    Condense a conversation into a short paragraph for the running summary.

    Returns "" for an empty history or when generation fails, so a summary
    refresh never breaks the turn it rides along with.
    """
    if not history:
        return ""
    prompt = CONVERSATION_SUMMARY_PROMPT.format(history=format_history_for_summary(history))
    try:
        summary = await gateway.complete(prompt)
    except Exception as e:
        logger.error(f"Error generating conversation summary: {e}")
        return ""
    summary = summary.strip()
    logger.info(f"Generated conversation summary of {len(summary)} characters from {len(history)} messages")
    return summary


def build_conversation(request: SessionTurnRequest) -> List[Dict[str, Any]]:
    summaries = [
        f"File: '{d.filename}', Summary: '{d.summary or 'Not available'}'"
        for d in request.document_summaries
    ]
    conversation: List[Dict[str, Any]] = [{"role": "system", "content": build_system_prompt(summaries)}]
    conversation.extend(format_history(request.history, request.summary))
    conversation.append({"role": "user", "content": request.prompt})
    return conversation


def validate_script(commands: CommandScript, known_tables: Optional[Dict[str, Tuple[int, int]]] = None) -> Dict[str, Tuple[int, int]]:
    """
    Check cross-command references of a finished script.

    `known_tables` maps table ids created by earlier script fragments to
    their (rows, cols); the returned mapping includes this script's tables.

    `rows` counts the header row, and every row index in 0..rows-1 is
    accepted. Rejecting the last index would break scripts that fill the
    final data row of a table sized to its contents.

    Raises:
        InvalidScriptReference: dangling/out-of-range FillTable, duplicate
            table id, or a SessionEnd that is not the final command
    """
    tables = dict(known_tables or {})
    last = len(commands) - 1
    for index, command in enumerate(commands):
        if isinstance(command, CreateTableCommand):
            table = command.payload
            if table.id in tables:
                raise InvalidScriptReference(f"Duplicate table id '{table.id}' at command {index}", index)
            tables[table.id] = (table.rows, table.cols)
        elif isinstance(command, FillTableCommand):
            cell = command.payload
            if cell.table_id not in tables:
                raise InvalidScriptReference(f"fillTable at command {index} references unknown table '{cell.table_id}'", index)
            rows, cols = tables[cell.table_id]
            if cell.row >= rows or cell.col >= cols:
                raise InvalidScriptReference(
                    f"fillTable at command {index} targets cell ({cell.row}, {cell.col}) outside a {rows}x{cols} table", index
                )
        elif isinstance(command, SessionEndCommand) and index != last:
            raise InvalidScriptReference(f"session_end at command {index} is not the final command", index)
    return tables


async def compile_session_script(
    gateway: Gateway,
    request: SessionTurnRequest,
    max_rounds: int = MAX_TOOL_ROUNDS,
) -> CommandScript:
    logger.info(f"Compiling session turn with {len(request.history)} prior messages and {len(request.document_ids)} document(s)")
    conversation = build_conversation(request)
    commands = await resolve_tool_loop(gateway, conversation, request.document_ids, SESSION_TOOLS, max_rounds)
    validate_script(commands)
    return commands
