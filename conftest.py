"""
Pytest configuration and fixtures.

Every test talks to a scripted FakeGateway instead of the real providers,
so no test touches the network.
"""
import asyncio
import os
from typing import Any, Dict, List, Optional, Sequence

import pytest

os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("ELEVENLABS_API_KEY", "test-elevenlabs-key")
os.environ.setdefault("ELEVENLABS_VOICE_ID", "test-voice")

from canvas_tutor.llm import GenerationResult, ToolAction  # noqa: E402


def speak(text: str, audio: Optional[bytes] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"text": text}
    if audio is not None:
        payload["audio"] = audio
    return {"command": "speak", "payload": payload}


def rect(x: float = 10, delay: int = 0) -> Dict[str, Any]:
    return {
        "command": "drawRectangle",
        "payload": {"x": x, "y": 20, "width": 100, "height": 50, "color": "#333"},
        "delay": delay,
    }


def table(table_id: str = "t1", rows: int = 3, cols: int = 2, delay: int = 0) -> Dict[str, Any]:
    return {
        "command": "createTable",
        "payload": {
            "id": table_id,
            "x": 0,
            "y": 0,
            "rows": rows,
            "cols": cols,
            "colWidths": [100] * cols,
            "rowHeight": 30,
            "headers": [f"H{i}" for i in range(cols)],
        },
        "delay": delay,
    }


def fill(table_id: str = "t1", row: int = 1, col: int = 0, text: str = "x", delay: int = 0) -> Dict[str, Any]:
    return {
        "command": "fillTable",
        "payload": {"tableId": table_id, "row": row, "col": col, "text": text},
        "delay": delay,
    }


def retrieval_round(query: str = "photosynthesis", call_id: str = "call_r") -> GenerationResult:
    message = {
        "role": "assistant",
        "content": None,
        "tool_calls": [{
            "id": call_id,
            "type": "function",
            "function": {"name": "retrieve", "arguments": f'{{"query": "{query}"}}'},
        }],
    }
    return GenerationResult(
        actions=[ToolAction(id=call_id, name="retrieve", arguments={"query": query})],
        message=message,
    )


def terminal(*commands: Dict[str, Any]) -> GenerationResult:
    return GenerationResult(commands=list(commands), message={"role": "assistant", "content": None})


class FakeGateway:
    """
    Scripted stand-in for CapabilityGateway.

    `generations` and `completions` are consumed in order. Synthesis returns
    `b"audio:<text>"` unless the text is listed in `fail_texts`; `synth_delays`
    maps a text to seconds to sleep before answering.
    """

    def __init__(
        self,
        generations: Optional[List[GenerationResult]] = None,
        completions: Optional[List[str]] = None,
        retrieval_text: str = "chunk about the topic",
    ):
        self.generations = list(generations or [])
        self.completions = list(completions or [])
        self.retrieval_text = retrieval_text
        self.fail_texts: set = set()
        self.synth_delays: Dict[str, float] = {}
        self.generate_calls: List[List[Dict[str, Any]]] = []
        self.complete_calls: List[str] = []
        self.retrieve_calls: List[tuple] = []
        self.synth_calls: List[tuple] = []
        self.indexed: Dict[str, str] = {}

    async def generate(self, conversation, tools=None) -> GenerationResult:
        self.generate_calls.append(list(conversation))
        return self.generations.pop(0)

    async def complete(self, prompt: str, json_mode: bool = False) -> str:
        self.complete_calls.append(prompt)
        return self.completions.pop(0)

    async def retrieve(self, query: str, document_ids: Sequence[str]) -> str:
        self.retrieve_calls.append((query, list(document_ids)))
        return self.retrieval_text if document_ids else ""

    async def index_document(self, document_id: str, text: str) -> int:
        self.indexed[document_id] = text
        return 1

    async def synthesize(self, text: str, language_code: str) -> bytes:
        self.synth_calls.append((text, language_code))
        delay = self.synth_delays.get(text)
        if delay:
            await asyncio.sleep(delay)
        if text in self.fail_texts:
            raise RuntimeError(f"synthesis failed for {text!r}")
        return f"audio:{text}".encode()


@pytest.fixture
def gateway():
    return FakeGateway()
