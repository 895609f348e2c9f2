"""Stream transport protocol shared by the SDK and REST backends."""

from __future__ import annotations

from typing import AsyncIterator, Protocol, Sequence, runtime_checkable

from .ai_types import GenerationConfig, NormalizedChunk, ToolDescriptor, Turn

__all__ = ["StreamTransport"]


@runtime_checkable
class StreamTransport(Protocol):
    """Send one generation request and yield normalized chunks.

    The returned iterator is lazy, finite and non-restartable. Consuming it to
    the end signals completion; the final chunk has ``done=True``.
    """

    def generate(
        self,
        history: Sequence[Turn],
        tools: Sequence[ToolDescriptor],
        config: GenerationConfig,
    ) -> AsyncIterator[NormalizedChunk]:
        ...

    async def aclose(self) -> None:
        ...
