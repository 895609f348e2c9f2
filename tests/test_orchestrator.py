"""Tests for the generate / dispatch / follow-up loop."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Mapping, Sequence

import pytest

from tests.helpers import RecordingTool, ScriptedTransport, descriptor, make_dispatcher
from vault_assistant.ai.ai_types import (
    FunctionCall,
    FunctionResponse,
    GenerationConfig,
    NormalizedChunk,
    ToolCallStatus,
    ToolDescriptor,
    Turn,
)
from vault_assistant.ai.errors import ConversationBusyError, ParseError, TransportError
from vault_assistant.ai.orchestration.orchestrator import (
    CANCELLED_TOOL_ERROR,
    ConversationOrchestrator,
    ConversationState,
    OrchestratorConfig,
)


def _orchestrator(
    transport: Any,
    tools: Mapping[str, RecordingTool] | None = None,
    *,
    turn_budget: int = 10,
    generation_timeout: float | None = 5.0,
    system_prompt: Any = None,
) -> ConversationOrchestrator:
    catalog, dispatcher = make_dispatcher(tools or {})
    return ConversationOrchestrator(
        transport,
        catalog,
        dispatcher,
        config=OrchestratorConfig(turn_budget=turn_budget, generation_timeout=generation_timeout),
        system_prompt=system_prompt,
    )


@pytest.mark.asyncio
async def test_tool_call_followed_by_final_answer() -> None:
    tool = RecordingTool("notes/alpha.md\nnotes/beta.md")
    transport = ScriptedTransport(
        [
            [NormalizedChunk.of_calls(FunctionCall("list_files", {}))],
            [NormalizedChunk.of_text("You have two notes.")],
        ]
    )
    orchestrator = _orchestrator(transport, {"list_files": tool})

    events = [event async for event in orchestrator.stream("What notes do I have?")]

    assert [event.type for event in events] == ["tool_calls", "tool_result", "text", "done"]
    assert tool.calls == [{}]
    turns = orchestrator.history.snapshot()
    assert [turn.role for turn in turns] == ["user", "model", "user", "model"]
    assert turns[1].function_calls == (FunctionCall("list_files", {}),)
    assert turns[2].function_responses_parts == (
        FunctionResponse(name="list_files", result="notes/alpha.md\nnotes/beta.md"),
    )
    assert turns[3].text == "You have two notes."
    assert len(transport.requests) == 2
    assert transport.requests[1]["history"] == turns[:3]
    assert orchestrator.state is ConversationState.IDLE


@pytest.mark.asyncio
async def test_unknown_tool_is_answered_with_error_and_loop_continues() -> None:
    transport = ScriptedTransport(
        [
            [NormalizedChunk.of_calls(FunctionCall("foo", {"x": 1}))],
            [NormalizedChunk.of_text("That tool does not exist.")],
        ]
    )
    orchestrator = _orchestrator(transport)

    outcome = await orchestrator.run("use foo")

    assert outcome.ok
    assert outcome.tool_calls[0].error == "Unknown tool: foo"
    responses = orchestrator.history.snapshot()[2].function_responses_parts
    assert responses[0].response == {"error": "Unknown tool: foo"}
    assert outcome.text == "That tool does not exist."


@pytest.mark.asyncio
async def test_turn_budget_stops_follow_ups() -> None:
    call = NormalizedChunk.of_calls(FunctionCall("list_files", {}))
    transport = ScriptedTransport([[call], [call], [call]])
    orchestrator = _orchestrator(transport, {"list_files": RecordingTool()}, turn_budget=1)

    outcome = await orchestrator.run("loop forever")

    assert outcome.budget_exhausted is True
    assert outcome.generations == 2
    assert len(transport.requests) == 2
    last = orchestrator.history.last
    assert last is not None and last.has_function_responses


@pytest.mark.asyncio
async def test_zero_budget_allows_single_generation() -> None:
    transport = ScriptedTransport([[NormalizedChunk.of_calls(FunctionCall("list_files", {}))]])
    orchestrator = _orchestrator(transport, {"list_files": RecordingTool()}, turn_budget=0)

    outcome = await orchestrator.run("go")

    assert outcome.budget_exhausted is True
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_streamed_text_is_joined_into_one_model_turn() -> None:
    transport = ScriptedTransport([[NormalizedChunk.of_text("Hel"), NormalizedChunk.of_text("lo")]])
    orchestrator = _orchestrator(transport)
    seen: list[str] = []

    outcome = await orchestrator.run("hi", content_callback=seen.append)

    assert seen == ["Hel", "lo"]
    assert outcome.text == "Hello"
    assert outcome.generations == 1
    model_turn = orchestrator.history.last
    assert model_turn is not None and model_turn.role == "model"
    assert len(model_turn.parts) == 1
    assert model_turn.text == "Hello"


@pytest.mark.asyncio
async def test_text_and_calls_share_one_model_turn() -> None:
    transport = ScriptedTransport(
        [
            [NormalizedChunk.of_text("Looking..."), NormalizedChunk.of_calls(FunctionCall("list_files", {}))],
            [NormalizedChunk.of_text("Done.")],
        ]
    )
    orchestrator = _orchestrator(transport, {"list_files": RecordingTool()})

    await orchestrator.run("list")

    model_turn = orchestrator.history.snapshot()[1]
    assert model_turn.text == "Looking..."
    assert model_turn.function_calls == (FunctionCall("list_files", {}),)


@pytest.mark.asyncio
async def test_parse_error_rolls_back_the_utterance() -> None:
    transport = ScriptedTransport([ParseError("No valid events found in SSE stream")])
    orchestrator = _orchestrator(transport)

    outcome = await orchestrator.run("hello")

    assert isinstance(outcome.error, ParseError)
    assert len(orchestrator.history) == 0
    assert orchestrator.state is ConversationState.IDLE


@pytest.mark.asyncio
async def test_transport_error_is_reported_as_retriable() -> None:
    transport = ScriptedTransport([TransportError("API error", status_code=503, body="overloaded")])
    orchestrator = _orchestrator(transport)

    events = [event async for event in orchestrator.stream("hello")]

    assert [event.type for event in events] == ["error"]
    error = events[0].error
    assert error is not None and error.retriable
    assert "HTTP 503" in str(error)


@pytest.mark.asyncio
async def test_resubmitting_after_failure_does_not_duplicate_user_turn() -> None:
    transport = ScriptedTransport([TransportError("boom"), [NormalizedChunk.of_text("Hi!")]])
    orchestrator = _orchestrator(transport)

    await orchestrator.run("hello")
    outcome = await orchestrator.run("hello")

    assert outcome.ok
    assert [turn.role for turn in orchestrator.history] == ["user", "model"]


@pytest.mark.asyncio
async def test_empty_response_records_nothing() -> None:
    transport = ScriptedTransport([[]])
    orchestrator = _orchestrator(transport)

    events = [event async for event in orchestrator.stream("hello")]

    assert [event.type for event in events] == ["done"]
    assert len(orchestrator.history) == 0


@pytest.mark.asyncio
async def test_second_utterance_while_running_is_rejected() -> None:
    transport = ScriptedTransport([[NormalizedChunk.of_text("one"), NormalizedChunk.of_text("two")]])
    orchestrator = _orchestrator(transport)

    first = orchestrator.stream("first")
    event = await first.__anext__()
    assert event.type == "text"
    assert orchestrator.state is ConversationState.GENERATING

    with pytest.raises(ConversationBusyError):
        await orchestrator.stream("second").__anext__()
    with pytest.raises(ConversationBusyError):
        orchestrator.reset()

    rest = [item async for item in first]
    assert [item.type for item in rest] == ["text", "done"]
    assert orchestrator.state is ConversationState.IDLE


@pytest.mark.asyncio
async def test_cancellation_during_dispatch_closes_open_calls() -> None:
    started = asyncio.Event()

    async def _blocking(args: Mapping[str, Any]) -> str:
        started.set()
        await asyncio.Event().wait()
        return "never"

    transport = ScriptedTransport(
        [[NormalizedChunk.of_calls(FunctionCall("list_files", {}), FunctionCall("web_fetch", {}))]]
    )
    catalog, dispatcher = make_dispatcher({"list_files": RecordingTool()})
    catalog.register_builtin(descriptor("web_fetch"), _blocking)
    orchestrator = ConversationOrchestrator(transport, catalog, dispatcher)

    task = asyncio.create_task(orchestrator.run("go"))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    last = orchestrator.history.last
    assert last is not None
    assert last.function_responses_parts == (
        FunctionResponse(name="list_files", result="ok"),
        FunctionResponse(name="web_fetch", error=CANCELLED_TOOL_ERROR),
    )
    assert orchestrator.state is ConversationState.IDLE


@pytest.mark.asyncio
async def test_stalled_generation_times_out() -> None:
    class _StalledTransport:
        async def generate(
            self,
            history: Sequence[Turn],
            tools: Sequence[ToolDescriptor],
            config: GenerationConfig,
        ) -> AsyncIterator[NormalizedChunk]:
            await asyncio.sleep(5)
            yield NormalizedChunk.of_text("late")

        async def aclose(self) -> None:
            return None

    orchestrator = _orchestrator(_StalledTransport(), generation_timeout=0.01)

    outcome = await orchestrator.run("hello")

    assert isinstance(outcome.error, TransportError)
    assert "No response from the model" in str(outcome.error)
    assert len(orchestrator.history) == 0


@pytest.mark.asyncio
async def test_system_prompt_and_tools_are_sent_with_each_generation() -> None:
    transport = ScriptedTransport([[NormalizedChunk.of_text("ok")]])
    orchestrator = _orchestrator(
        transport,
        {"read_file": RecordingTool()},
        system_prompt=lambda: "You are a vault assistant.",
    )

    await orchestrator.run("hi")

    request = transport.requests[0]
    assert request["config"].system_instruction == "You are a vault assistant."
    assert [tool.name for tool in request["tools"]] == ["read_file"]


@pytest.mark.asyncio
async def test_reset_clears_history_between_utterances() -> None:
    transport = ScriptedTransport([[NormalizedChunk.of_text("ok")]])
    orchestrator = _orchestrator(transport)
    await orchestrator.run("hi")

    orchestrator.reset()

    assert len(orchestrator.history) == 0


@pytest.mark.asyncio
async def test_repeated_calls_under_ask_prompt_once_each() -> None:
    prompts: list[tuple[str, dict[str, Any]]] = []
    answers = iter([True, False])

    async def _approve(name: str, args: Mapping[str, Any]) -> bool:
        prompts.append((name, dict(args)))
        return next(answers)

    tool = RecordingTool("written")
    call = FunctionCall("write_file", {"file_path": "a.md", "content": "x"})
    transport = ScriptedTransport([[NormalizedChunk.of_calls(call, call)], [NormalizedChunk.of_text("One write done.")]])
    catalog, dispatcher = make_dispatcher({"write_file": tool}, permissions={"write_file": "ask"}, approval=_approve)
    orchestrator = ConversationOrchestrator(transport, catalog, dispatcher)

    outcome = await orchestrator.run("write it twice")

    assert len(prompts) == 2
    assert [record.status for record in outcome.tool_calls] == [ToolCallStatus.EXECUTED, ToolCallStatus.REJECTED]
    assert len(tool.calls) == 1
    responses = orchestrator.history.snapshot()[2].function_responses_parts
    assert [response.name for response in responses] == ["write_file", "write_file"]
    assert responses[0].response == {"result": "written"}
    assert "error" in responses[1].response


@pytest.mark.asyncio
async def test_failed_follow_up_keeps_completed_tool_exchange() -> None:
    transport = ScriptedTransport(
        [[NormalizedChunk.of_calls(FunctionCall("list_files", {}))], TransportError("boom")]
    )
    orchestrator = _orchestrator(transport, {"list_files": RecordingTool()})

    outcome = await orchestrator.run("list")

    assert isinstance(outcome.error, TransportError)
    assert [turn.role for turn in orchestrator.history] == ["user", "model", "user"]


@pytest.mark.asyncio
async def test_failed_utterance_is_not_left_before_the_next_one() -> None:
    transport = ScriptedTransport([ParseError("bad"), [NormalizedChunk.of_text("Hi!")]])
    orchestrator = _orchestrator(transport)

    await orchestrator.run("first try")
    await orchestrator.run("second try")

    assert [turn.text for turn in orchestrator.history] == ["second try", "Hi!"]
    assert transport.requests[1]["history"] == (Turn.user_text("second try"),)


@pytest.mark.asyncio
async def test_closing_stream_mid_text_closes_transport_stream() -> None:
    closed = asyncio.Event()

    class _ClosingTransport:
        async def generate(
            self,
            history: Sequence[Turn],
            tools: Sequence[ToolDescriptor],
            config: GenerationConfig,
        ) -> AsyncIterator[NormalizedChunk]:
            try:
                yield NormalizedChunk.of_text("partial")
                yield NormalizedChunk.of_text("rest")
            finally:
                closed.set()

        async def aclose(self) -> None:
            return None

    orchestrator = _orchestrator(_ClosingTransport())
    events = orchestrator.stream("hello")

    first = await events.__anext__()
    assert first.type == "text"
    await events.aclose()

    assert closed.is_set()
    assert len(orchestrator.history) == 0
    assert orchestrator.state is ConversationState.IDLE
