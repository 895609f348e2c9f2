"""Conversation orchestrator: the bounded generate / dispatch / follow-up loop.

One utterance drives the loop below until the model stops calling tools or the
turn budget runs out::

    IDLE -> GENERATING -> (TOOLS_PENDING -> DISPATCHING -> FOLLOW_UP -> GENERATING)* -> IDLE

The model turn for a generation is committed only after the transport stream
has been consumed completely, so a failed or cancelled generation never leaves
a partial turn in the history. An utterance whose first generation yields
no model turn is rolled back entirely.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Literal

from ..ai_types import FunctionCall, FunctionResponse, GenerationConfig, NormalizedChunk, ToolCall, Turn
from ..errors import AssistantError, AuthError, ConversationBusyError, ParseError, TransportError
from ..tools.catalog import ToolCatalog
from ..transport import StreamTransport
from .history import HistoryStore
from .tool_dispatcher import ToolDispatcher

__all__ = [
    "ConversationState",
    "ConversationEvent",
    "ConversationOutcome",
    "OrchestratorConfig",
    "ConversationOrchestrator",
    "ContentCallback",
    "CANCELLED_TOOL_ERROR",
]

LOGGER = logging.getLogger(__name__)

CANCELLED_TOOL_ERROR = "Tool execution cancelled"

# Callback invoked when streaming content is received
ContentCallback = Callable[[str], None]

SystemPromptProvider = Callable[[], str | None]


# -----------------------------------------------------------------------------
# State and events
# -----------------------------------------------------------------------------


class ConversationState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    TOOLS_PENDING = "tools_pending"
    DISPATCHING = "dispatching"
    FOLLOW_UP = "follow_up"


EventType = Literal["text", "tool_calls", "tool_result", "done", "error"]


@dataclass(slots=True, frozen=True)
class ConversationEvent:
    """One item of the orchestrator's output stream."""

    type: EventType
    text: str | None = None
    calls: tuple[FunctionCall, ...] = ()
    tool_call: ToolCall | None = None
    error: AssistantError | None = None
    budget_exhausted: bool = False

    @classmethod
    def text_fragment(cls, text: str) -> ConversationEvent:
        return cls(type="text", text=text)

    @classmethod
    def announce(cls, calls: tuple[FunctionCall, ...]) -> ConversationEvent:
        return cls(type="tool_calls", calls=calls)

    @classmethod
    def result(cls, call: ToolCall) -> ConversationEvent:
        return cls(type="tool_result", tool_call=call)

    @classmethod
    def finished(cls, *, budget_exhausted: bool = False) -> ConversationEvent:
        return cls(type="done", budget_exhausted=budget_exhausted)

    @classmethod
    def failure(cls, error: AssistantError) -> ConversationEvent:
        return cls(type="error", error=error)


@dataclass(slots=True)
class ConversationOutcome:
    """Summary of one utterance, collected by :meth:`ConversationOrchestrator.run`."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    generations: int = 0
    budget_exhausted: bool = False
    error: AssistantError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    """Configuration for the conversation loop.

    Attributes:
        turn_budget: Maximum number of follow-up generations per utterance.
        generation_timeout: Seconds to wait for the next stream chunk before
            the generation fails with a transport error; ``None`` waits forever.
    """

    turn_budget: int = 10
    generation_timeout: float | None = 120.0


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------


class ConversationOrchestrator:
    """Drives a tool-calling conversation against a :class:`StreamTransport`.

    Example:
        >>> orchestrator = ConversationOrchestrator(transport, catalog, dispatcher)
        >>> async for event in orchestrator.stream("list my notes"):
        ...     if event.type == "text":
        ...         print(event.text, end="")
    """

    def __init__(
        self,
        transport: StreamTransport,
        catalog: ToolCatalog,
        dispatcher: ToolDispatcher,
        *,
        generation_config: GenerationConfig | None = None,
        config: OrchestratorConfig | None = None,
        history: HistoryStore | None = None,
        system_prompt: SystemPromptProvider | None = None,
    ) -> None:
        self._transport = transport
        self._catalog = catalog
        self._dispatcher = dispatcher
        self._generation_config = generation_config or GenerationConfig()
        self._config = config or OrchestratorConfig()
        self._history = history or HistoryStore()
        self._system_prompt = system_prompt
        self._state = ConversationState.IDLE

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def history(self) -> HistoryStore:
        return self._history

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def generation_config(self) -> GenerationConfig:
        return self._generation_config

    def reset(self) -> None:
        """Forget the transcript; only allowed between utterances."""

        if self._state is not ConversationState.IDLE:
            raise ConversationBusyError("Cannot reset while a conversation turn is running")
        self._history.clear()

    async def run(
        self,
        utterance: str,
        *,
        content_callback: ContentCallback | None = None,
    ) -> ConversationOutcome:
        """Consume :meth:`stream` and summarize it."""

        outcome = ConversationOutcome()
        fragments: list[str] = []
        async for event in self.stream(utterance):
            if event.type == "text" and event.text:
                fragments.append(event.text)
                if content_callback is not None:
                    content_callback(event.text)
            elif event.type == "tool_calls":
                outcome.generations += 1
            elif event.type == "tool_result" and event.tool_call is not None:
                outcome.tool_calls.append(event.tool_call)
            elif event.type == "done":
                outcome.budget_exhausted = event.budget_exhausted
                if not event.budget_exhausted:
                    outcome.generations += 1
            elif event.type == "error":
                outcome.generations += 1
                outcome.error = event.error
        outcome.text = "".join(fragments)
        return outcome

    async def stream(self, utterance: str) -> AsyncIterator[ConversationEvent]:
        """Process one utterance, yielding events as they happen.

        Raises:
            ConversationBusyError: If another utterance is still being processed.
        """

        if self._state is not ConversationState.IDLE:
            raise ConversationBusyError("A conversation turn is already running")
        self._state = ConversationState.GENERATING
        pending: list[FunctionCall] | None = None
        resolved: list[ToolCall] = []
        added_user_turn = False
        committed = False
        try:
            added_user_turn = self._history.append_user_text(utterance)
            remaining = max(0, self._config.turn_budget)
            while True:
                self._state = ConversationState.GENERATING
                fragments: list[str] = []
                calls: list[FunctionCall] = []
                try:
                    async with contextlib.aclosing(self._generate()) as chunks:
                        async for chunk in chunks:
                            if chunk.text:
                                fragments.append(chunk.text)
                                yield ConversationEvent.text_fragment(chunk.text)
                            calls.extend(chunk.function_calls)
                except (TransportError, ParseError, AuthError) as exc:
                    LOGGER.error("Generation failed: %s", exc)
                    yield ConversationEvent.failure(exc)
                    return

                text = "".join(fragments)
                if not text and not calls:
                    LOGGER.warning("Model returned an empty response; no model turn recorded")
                    yield ConversationEvent.finished()
                    return

                self._history.append(Turn.model_response(text, calls))
                committed = True
                if not calls:
                    yield ConversationEvent.finished()
                    return

                pending, resolved = list(calls), []
                self._state = ConversationState.TOOLS_PENDING
                yield ConversationEvent.announce(tuple(calls))

                self._state = ConversationState.DISPATCHING
                for call in calls:
                    record = await self._dispatcher.resolve(call)
                    resolved.append(record)
                    yield ConversationEvent.result(record)

                self._history.append(Turn.function_responses([record.to_function_response() for record in resolved]))
                pending = None

                if remaining <= 0:
                    LOGGER.warning("Turn budget of %s exhausted", self._config.turn_budget)
                    yield ConversationEvent.finished(budget_exhausted=True)
                    return
                remaining -= 1
                self._state = ConversationState.FOLLOW_UP
        finally:
            if pending is not None:
                self._close_pending(pending, resolved)
            elif added_user_turn and not committed:
                # no model turn answered this utterance
                self._history.discard_last_user_text()
            self._state = ConversationState.IDLE

    async def _generate(self) -> AsyncIterator[NormalizedChunk]:
        config = self._generation_config
        if self._system_prompt is not None:
            config = config.with_system_instruction(self._system_prompt())
        stream = self._transport.generate(self._history.snapshot(), self._catalog.descriptors(), config)
        iterator = stream.__aiter__()
        timeout = self._config.generation_timeout
        try:
            while True:
                try:
                    if timeout is not None and timeout > 0:
                        chunk = await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
                    else:
                        chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise TransportError(f"No response from the model within {timeout}s") from None
                yield chunk
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    def _close_pending(self, calls: list[FunctionCall], resolved: list[ToolCall]) -> None:
        """Answer calls left open by cancellation so the transcript stays valid."""

        responses: list[FunctionResponse] = []
        for index, call in enumerate(calls):
            if index < len(resolved) and resolved[index].resolved:
                responses.append(resolved[index].to_function_response())
            else:
                responses.append(FunctionResponse(name=call.name, error=CANCELLED_TOOL_ERROR))
        LOGGER.info("Closing %s tool call(s) interrupted by cancellation", len(calls) - len(resolved))
        self._history.append(Turn.function_responses(responses))
