"""
Tests for the module pipeline: planning, strictly sequential steps with
accumulated context, and the progress event contract.
"""
import json

import pytest

from canvas_tutor import orchestrator
from canvas_tutor.exceptions import InvalidScriptReference, MalformedCompilerOutput
from canvas_tutor.models import ModuleRequest, ModuleStatus, SessionTurnRequest, SpeakCommand, parse_script
from canvas_tutor.orchestrator import generate_title, run_module, run_session_turn
from canvas_tutor.progress import ProgressChannel
from conftest import FakeGateway, fill, rect, speak, table, terminal


def plan_text(*steps):
    return json.dumps({"plan": list(steps)})


def step_text(*commands):
    return "```json\n" + json.dumps(list(commands)) + "\n```"


@pytest.mark.asyncio
async def test_steps_run_in_order_with_growing_context(monkeypatch):
    seen = []

    async def fake_step(gateway, request, plan, index, accumulated, document_context):
        seen.append((index, len(accumulated.commands), accumulated.narration_texts))
        return parse_script([speak(f"step {index}"), rect()])

    monkeypatch.setattr(orchestrator, "generate_module_step", fake_step)
    gateway = FakeGateway(completions=[plan_text("A", "B", "C")])
    channel = ProgressChannel()

    script = await run_module(gateway, ModuleRequest(prompt="cells", step_count=3), channel, "m1")

    assert [index for index, _, _ in seen] == [0, 1, 2]
    assert [size for _, size, _ in seen] == [0, 2, 4]
    assert seen[2][2] == ("step 0", "step 1")
    assert len(script) == 6
    assert all(c.payload.audio for c in script if isinstance(c, SpeakCommand))


@pytest.mark.asyncio
async def test_progress_events_end_with_exactly_one_completed():
    gateway = FakeGateway(completions=[
        plan_text("Intro", "Wrap up"),
        step_text(speak("hello"), table("t1")),
        step_text(fill("t1", row=1), speak("bye")),
    ])
    channel = ProgressChannel()

    await run_module(gateway, ModuleRequest(prompt="tables", step_count=2), channel, "m2")

    statuses = [e.status for e in channel.events]
    assert statuses.count(ModuleStatus.COMPLETED) == 1
    assert statuses[-1] == ModuleStatus.COMPLETED
    assert all(s == ModuleStatus.GENERATING for s in statuses[:-1])
    assert channel.events[0].message == "Planning the module structure..."
    assert channel.events[1].message == "Generating step 1 of 2: Intro..."
    assert len(channel.events[-1].script) == 4
    assert channel.closed


@pytest.mark.asyncio
async def test_step_prompt_carries_prior_transcript():
    gateway = FakeGateway(completions=[
        plan_text("One", "Two"),
        step_text(speak("first narration")),
        step_text(speak("second")),
    ])

    await run_module(gateway, ModuleRequest(prompt="p", step_count=2), ProgressChannel())

    assert "first narration" not in gateway.complete_calls[1]
    assert "first narration" in gateway.complete_calls[2]


@pytest.mark.asyncio
async def test_step_prompt_lists_tables_from_earlier_steps():
    gateway = FakeGateway(completions=[
        plan_text("Build", "Fill"),
        step_text(speak("here is a table"), table("scores", rows=3, cols=2)),
        step_text(fill("scores", row=2, col=1), speak("filled")),
    ])

    await run_module(gateway, ModuleRequest(prompt="p", step_count=2), ProgressChannel())

    assert '"scores" (3 rows x 2 cols, headers: H0, H1)' in gateway.complete_calls[2]
    assert '"scores"' not in gateway.complete_calls[1]


@pytest.mark.asyncio
async def test_plan_length_mismatch_fails_module():
    gateway = FakeGateway(completions=[plan_text("only one")])
    channel = ProgressChannel()

    with pytest.raises(MalformedCompilerOutput):
        await run_module(gateway, ModuleRequest(prompt="p", step_count=3), channel, "m3")

    terminal_events = [e for e in channel.events if e.is_terminal]
    assert len(terminal_events) == 1
    assert terminal_events[0].status == ModuleStatus.FAILED
    assert terminal_events[0].message.startswith("Failed to generate module.")
    assert terminal_events[0].script is None


@pytest.mark.asyncio
async def test_step_failure_aborts_remaining_steps():
    gateway = FakeGateway(completions=[
        plan_text("One", "Two", "Three"),
        step_text(speak("ok")),
        "I could not do it",
    ])
    channel = ProgressChannel()

    with pytest.raises(MalformedCompilerOutput):
        await run_module(gateway, ModuleRequest(prompt="p", step_count=3), channel)

    assert len(gateway.complete_calls) == 3
    assert channel.events[-1].status == ModuleStatus.FAILED


@pytest.mark.asyncio
async def test_fill_referencing_later_table_fails():
    gateway = FakeGateway(completions=[plan_text("One"), step_text(fill("t9"), table("t9"))])

    with pytest.raises(InvalidScriptReference):
        await run_module(gateway, ModuleRequest(prompt="p", step_count=1), ProgressChannel())


@pytest.mark.asyncio
async def test_document_context_is_retrieved_once():
    gateway = FakeGateway(completions=[plan_text("One"), step_text(speak("x"))])

    await run_module(gateway, ModuleRequest(prompt="p", step_count=1, document_ids=["d1"]), ProgressChannel())

    assert gateway.retrieve_calls == [("p", ["d1"])]
    assert "chunk about the topic" in gateway.complete_calls[0]


@pytest.mark.asyncio
async def test_synthesis_uses_request_language():
    gateway = FakeGateway(completions=[plan_text("One"), step_text(speak("halo"))])

    await run_module(gateway, ModuleRequest(prompt="p", step_count=1, language_code="id-ID"), ProgressChannel())

    assert gateway.synth_calls == [("halo", "id-ID")]


@pytest.mark.asyncio
async def test_generate_title_strips_quotes():
    gateway = FakeGateway(completions=['"Photosynthesis Basics"'])
    assert await generate_title(gateway, "teach me photosynthesis") == "Photosynthesis Basics"


@pytest.mark.asyncio
async def test_generate_title_fallback():
    gateway = FakeGateway(completions=['  ""  '])
    prompt = "a" * 60
    assert await generate_title(gateway, prompt) == "a" * 40 + "..."


@pytest.mark.asyncio
async def test_session_turn_compiles_and_synthesizes():
    gateway = FakeGateway(generations=[terminal(speak("hi"), rect())])

    script = await run_session_turn(gateway, SessionTurnRequest(prompt="hello"))

    assert script[0].payload.audio == b"audio:hi"
    assert gateway.synth_calls == [("hi", "en-US")]
