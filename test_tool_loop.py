"""
Tests for the tool-resolution loop: retrieval rounds, the round bound and
terminal response handling.
"""
import json
from unittest.mock import MagicMock

import pytest

from canvas_tutor.exceptions import MalformedCompilerOutput, ToolLoopExceeded
from canvas_tutor.llm import GenerationResult, ToolAction, result_from_message
from canvas_tutor.models import DrawRectangleCommand, SpeakCommand
from canvas_tutor.tool_loop import NO_CONTENT, resolve_tool_loop
from conftest import FakeGateway, rect, retrieval_round, speak, terminal

CONVERSATION = [{"role": "system", "content": "sys"}, {"role": "user", "content": "teach me"}]


@pytest.mark.asyncio
async def test_three_retrieval_rounds_then_terminal():
    gateway = FakeGateway(generations=[
        retrieval_round("a", "c1"),
        retrieval_round("b", "c2"),
        retrieval_round("c", "c3"),
        terminal(speak("hello"), rect()),
    ])

    commands = await resolve_tool_loop(gateway, CONVERSATION, ["doc-1"], max_rounds=5)

    assert len(gateway.generate_calls) == 4
    assert [q for q, _ in gateway.retrieve_calls] == ["a", "b", "c"]
    assert isinstance(commands[0], SpeakCommand)
    assert isinstance(commands[1], DrawRectangleCommand)


@pytest.mark.asyncio
async def test_tool_messages_follow_replayed_call():
    gateway = FakeGateway(generations=[retrieval_round("q", "call_9"), terminal(speak("done"))])

    await resolve_tool_loop(gateway, CONVERSATION, ["doc-1"])

    second = gateway.generate_calls[1]
    assert second[:2] == CONVERSATION
    assert second[2]["tool_calls"][0]["id"] == "call_9"
    assert second[3] == {"role": "tool", "tool_call_id": "call_9", "content": "chunk about the topic"}


@pytest.mark.asyncio
async def test_caller_conversation_not_mutated():
    gateway = FakeGateway(generations=[retrieval_round(), terminal(speak("x"))])
    conversation = list(CONVERSATION)

    await resolve_tool_loop(gateway, conversation, ["doc-1"])

    assert conversation == CONVERSATION


@pytest.mark.asyncio
async def test_loop_bound_exceeded():
    gateway = FakeGateway(generations=[retrieval_round(call_id=f"c{i}") for i in range(4)])

    with pytest.raises(ToolLoopExceeded):
        await resolve_tool_loop(gateway, CONVERSATION, ["doc-1"], max_rounds=2)

    # initial call plus two resolved rounds
    assert len(gateway.generate_calls) == 3


@pytest.mark.asyncio
async def test_retrieval_without_documents_answers_no_content():
    gateway = FakeGateway(generations=[retrieval_round("q", "c1"), terminal(speak("ok"))])

    await resolve_tool_loop(gateway, CONVERSATION, [])

    tool_message = gateway.generate_calls[1][-1]
    assert tool_message["content"] == NO_CONTENT


@pytest.mark.asyncio
async def test_unknown_tool_gets_stub_answer():
    unknown = GenerationResult(
        actions=[ToolAction(id="u1", name="browse", arguments={})],
        message={"role": "assistant", "content": None, "tool_calls": []},
    )
    gateway = FakeGateway(generations=[unknown, terminal(speak("fine"))])

    commands = await resolve_tool_loop(gateway, CONVERSATION, ["doc-1"])

    assert len(commands) == 1
    assert gateway.retrieve_calls == []
    assert "not available" in gateway.generate_calls[1][-1]["content"]


@pytest.mark.asyncio
async def test_terminal_without_commands_is_malformed():
    gateway = FakeGateway(generations=[GenerationResult(content="just text", message={"role": "assistant"})])

    with pytest.raises(MalformedCompilerOutput):
        await resolve_tool_loop(gateway, CONVERSATION)


@pytest.mark.asyncio
async def test_terminal_with_invalid_command_is_malformed():
    bad = terminal({"command": "drawCircle", "payload": {"x": 1}, "delay": 0})
    gateway = FakeGateway(generations=[bad])

    with pytest.raises(MalformedCompilerOutput):
        await resolve_tool_loop(gateway, CONVERSATION)


def _tool_call(call_id, name, arguments):
    tc = MagicMock()
    tc.id = call_id
    tc.function.name = name
    tc.function.arguments = json.dumps(arguments)
    return tc


def _message(*tool_calls):
    message = MagicMock()
    message.content = None
    message.tool_calls = list(tool_calls)
    return message


@pytest.mark.asyncio
async def test_mixed_retrieval_and_canvas_round_answers_every_call():
    mixed = result_from_message(_message(
        _tool_call("c_r", "retrieve", {"query": "cells"}),
        _tool_call("c_s", "speak", {"text": "intro"}),
    ))
    final = result_from_message(_message(_tool_call("c_t", "speak", {"text": "after"})))
    gateway = FakeGateway(generations=[mixed, final])

    commands = await resolve_tool_loop(gateway, CONVERSATION, ["doc-1"])

    follow_up = gateway.generate_calls[1]
    replayed = {call["id"] for call in follow_up[2]["tool_calls"]}
    answered = {m["tool_call_id"] for m in follow_up if m.get("role") == "tool"}
    assert answered == replayed == {"c_r", "c_s"}
    assert [c.payload.text for c in commands] == ["intro", "after"]


@pytest.mark.asyncio
async def test_canvas_calls_from_tool_round_count_as_output():
    mixed = result_from_message(_message(
        _tool_call("c_r", "retrieve", {"query": "cells"}),
        _tool_call("c_s", "speak", {"text": "all done"}),
    ))
    empty = GenerationResult(content="", message={"role": "assistant", "content": ""})
    gateway = FakeGateway(generations=[mixed, empty])

    commands = await resolve_tool_loop(gateway, CONVERSATION, ["doc-1"])

    assert [c.payload.text for c in commands] == ["all done"]
