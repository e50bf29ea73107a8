import json
from typing import List, Optional

from .models import CreateTablePayload

RETRIEVE_TOOL_NAME = "retrieve"

SYSTEM_PROMPT = """You are Zipo, an expert tutor AI. You are enthusiastic, patient and supportive, and you make complex topics easy to understand.
You teach on a shared canvas. Every answer is a presentation: spoken narration interleaved with drawing instructions.
{document_context}
Your mission is to act as an orchestrator. Produce the COMPLETE sequence of canvas tool calls for your answer in a single response.
If the user's documents may contain the answer, call `retrieve` first with a focused query, then build the presentation from what it returns.

Tool-calling principles:
1. Introduce first, then draw: start with `speak` to introduce what you are about to show.
2. Build step by step: add one or two related visual elements, then `speak` to explain them.
3. Use delays for pacing: every visual tool call requires `delay` in milliseconds (500-1500), the pause after the element is drawn.
4. Keep narration and labels short.
5. `fillTable` only targets a table you created earlier in the same answer, using its `id`.
6. Always end the sequence with `session_end`."""

DOCUMENT_CONTEXT_TEMPLATE = """
Primary knowledge source: the user provided these document(s). Prefer them over outside knowledge, and say so if they do not cover the question.
{summaries}
"""

SUMMARY_PREFIX = "This is a summary of the conversation so far:\n{summary}"

CONVERSATION_SUMMARY_PROMPT = """Summarize the following conversation into a concise paragraph. Capture the main topics and key conclusions. The summary will be used as context for an ongoing conversation, so be brief and informative.

---
{history}
---

Summary:"""


def _delay_param() -> dict:
    return {"type": "number", "description": "Time in milliseconds to wait after this command."}


def _function(name: str, description: str, properties: dict, required: List[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


RETRIEVE_TOOL = _function(
    RETRIEVE_TOOL_NAME,
    "Looks up passages relevant to a query in the documents the user attached.",
    {"query": {"type": "string", "description": "What to look for in the documents."}},
    ["query"],
)

CANVAS_TOOLS = [
    _function(
        "speak",
        "Provides the verbal part of the explanation. Call it before visual elements to introduce them.",
        {"text": {"type": "string", "description": "The text to be spoken by the tutor."}},
        ["text"],
    ),
    _function(
        "createText",
        "Renders text on the canvas, like labels or titles.",
        {
            "x": {"type": "number"},
            "y": {"type": "number"},
            "text": {"type": "string"},
            "fontSize": {"type": "number"},
            "color": {"type": "string", "description": "Color such as '#RRGGBB'."},
            "delay": _delay_param(),
        },
        ["x", "y", "text", "delay"],
    ),
    _function(
        "drawRectangle",
        "Draws a rectangle on the canvas.",
        {
            "x": {"type": "number"},
            "y": {"type": "number"},
            "width": {"type": "number"},
            "height": {"type": "number"},
            "color": {"type": "string"},
            "label": {"type": "string", "description": "A label to display inside the rectangle."},
            "delay": _delay_param(),
        },
        ["x", "y", "width", "height", "color", "delay"],
    ),
    _function(
        "drawCircle",
        "Draws a circle on the canvas.",
        {
            "x": {"type": "number"},
            "y": {"type": "number"},
            "radius": {"type": "number"},
            "color": {"type": "string"},
            "label": {"type": "string"},
            "delay": _delay_param(),
        },
        ["x", "y", "radius", "color", "delay"],
    ),
    _function(
        "drawArrow",
        "Draws an arrow to connect elements.",
        {
            "points": {
                "type": "array",
                "description": "Flattened coordinates [x1, y1, x2, y2, ...].",
                "items": {"type": "number"},
            },
            "color": {"type": "string"},
            "delay": _delay_param(),
        },
        ["points", "color", "delay"],
    ),
    _function(
        "createTable",
        "Draws the structure of a table.",
        {
            "id": {"type": "string", "description": "A unique identifier for the table."},
            "x": {"type": "number"},
            "y": {"type": "number"},
            "rows": {"type": "number"},
            "cols": {"type": "number"},
            "colWidths": {"type": "array", "items": {"type": "number"}},
            "rowHeight": {"type": "number"},
            "headers": {"type": "array", "items": {"type": "string"}},
            "delay": _delay_param(),
        },
        ["id", "x", "y", "rows", "cols", "colWidths", "rowHeight", "headers", "delay"],
    ),
    _function(
        "fillTable",
        "Fills a specific cell in a previously created table.",
        {
            "tableId": {"type": "string", "description": "The ID of the target table."},
            "row": {"type": "number", "description": "The 0-indexed row number."},
            "col": {"type": "number", "description": "The 0-indexed column number."},
            "text": {"type": "string"},
            "delay": _delay_param(),
        },
        ["tableId", "row", "col", "text", "delay"],
    ),
    _function(
        "clearCanvas",
        "Clears all elements from the canvas.",
        {"delay": _delay_param()},
        ["delay"],
    ),
    _function(
        "session_end",
        "Signals that the presentation is complete. Must be the last tool called.",
        {},
        [],
    ),
]

SESSION_TOOLS = [RETRIEVE_TOOL] + CANVAS_TOOLS


def build_system_prompt(document_summaries: Optional[List[str]] = None) -> str:
    document_context = ""
    if document_summaries:
        document_context = DOCUMENT_CONTEXT_TEMPLATE.format(summaries="\n".join(document_summaries))
    return SYSTEM_PROMPT.format(document_context=document_context)


TITLE_PROMPT = 'Summarize the following user prompt into a short, descriptive title of no more than 5 words: "{prompt}"'


MODULE_PLAN_PROMPT = """You are an expert curriculum designer AI. Create a structured lesson plan for the user's request.
The lesson will be broken down into {step_count} part(s).

User's request: "{prompt}"
{document_context}
Break the topic down into exactly {step_count} distinct, logically-sequenced sub-topics. Each sub-topic is one part of the lesson.

Respond with a valid JSON object with a single key "plan" whose value is an array of {step_count} strings.
Example for a 3-part lesson on photosynthesis:
{{"plan": ["Introduction: what photosynthesis is and its ingredients.", "The two stages: light-dependent reactions and the Calvin cycle.", "Importance and summary."]}}"""


MODULE_STEP_PROMPT = """You are Zipo, an expert tutor AI generating one part of a larger learning module.
Turn the explanation for the current sub-topic into a visual and verbal presentation.
Respond with a JSON array of command objects only. Do NOT add a "session_end" command, the module continues after this part.
{document_context}{continuation}
Overall module plan:
{plan}

Current task: generate the content for the sub-topic "{current_step}".
Flow on from the previous steps (if any) and fit the overall plan.

Core principles:
1. Start with a "speak" command to introduce the sub-topic.
2. Build the diagram gradually: add an element, then explain it with "speak".
3. Every command except "speak" has a "delay" in milliseconds (500-1500).
4. Keep explanations and labels concise.
5. "fillTable" may target any table created in this or an earlier part, by its "id".

Available commands (each object is {{"command": ..., "payload": {{...}}, "delay": ...}}):
- speak: {{"text"}}
- createText: {{"x", "y", "text", "fontSize"?, "color"?}}
- drawRectangle: {{"x", "y", "width", "height", "color", "label"?}}
- drawCircle: {{"x", "y", "radius", "color", "label"?}}
- drawArrow: {{"points": [x1, y1, x2, y2, ...], "color"}}
- createTable: {{"id", "x", "y", "rows", "cols", "colWidths": [...cols], "rowHeight", "headers": [...cols]}}
- fillTable: {{"tableId", "row", "col", "text"}}
- clearCanvas: {{}}

Example:
[
  {{"command": "speak", "payload": {{"text": "Let's compare SQL and NoSQL databases."}}}},
  {{"command": "createTable", "payload": {{"id": "db-comparison", "x": 50, "y": 50, "rows": 3, "cols": 3, "colWidths": [200, 300, 300], "rowHeight": 40, "headers": ["Feature", "SQL", "NoSQL"]}}, "delay": 1000}},
  {{"command": "fillTable", "payload": {{"tableId": "db-comparison", "row": 1, "col": 0, "text": "Structure"}}, "delay": 500}}
]"""

CONTINUATION_TEMPLATE = """
Continuation context: you already generated earlier parts of this module. Continue from where you left off, building on the existing canvas and transcript.
Existing canvas commands: {canvas}
Tables you can fill: {tables}
Existing transcript:
{transcript}
"""


def build_module_plan_prompt(prompt: str, step_count: int, document_context: Optional[str] = None) -> str:
    return MODULE_PLAN_PROMPT.format(
        prompt=prompt,
        step_count=step_count,
        document_context=_document_block(document_context),
    )


def build_module_step_prompt(
    prompt: str,
    document_context: Optional[str],
    prior_commands: List[str],
    prior_transcript: List[str],
    plan: List[str],
    current_step: str,
    prior_tables: Optional[List[CreateTablePayload]] = None,
) -> str:
    continuation = ""
    if prior_commands or prior_transcript:
        continuation = CONTINUATION_TEMPLATE.format(
            canvas=json.dumps(prior_commands),
            tables=_table_list(prior_tables or []),
            transcript="\n".join(prior_transcript),
        )
    return MODULE_STEP_PROMPT.format(
        document_context=_document_block(document_context, request=prompt),
        continuation=continuation,
        plan="\n".join(f"- Step {i + 1}: {step}" for i, step in enumerate(plan)),
        current_step=current_step,
    )


def _document_block(document_context: Optional[str], request: Optional[str] = None) -> str:
    block = ""
    if request:
        block += f'\nThe learner asked: "{request}"\n'
    if document_context:
        block += f'\nPrimary knowledge source, base the explanation on this content:\n"""\n{document_context}\n"""\n'
    return block


def _table_list(tables: List[CreateTablePayload]) -> str:
    if not tables:
        return "none"
    return "; ".join(
        f'"{t.id}" ({t.rows} rows x {t.cols} cols, headers: {", ".join(t.headers)})' for t in tables
    )
