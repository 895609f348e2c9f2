"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files::

    from tests.helpers import ScriptedTransport, make_dispatcher
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from vault_assistant.ai.ai_types import GenerationConfig, NormalizedChunk, ToolDescriptor, Turn
from vault_assistant.ai.orchestration.tool_dispatcher import ApprovalCallback, PermissionTable, ToolDispatcher
from vault_assistant.ai.tools.catalog import ToolCatalog


class ScriptedTransport:
    """Replays one scripted list of chunks (or an exception) per generation."""

    def __init__(self, scripts: Iterable[Sequence[NormalizedChunk] | Exception]) -> None:
        self._scripts = list(scripts)
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    async def generate(
        self,
        history: Sequence[Turn],
        tools: Sequence[ToolDescriptor],
        config: GenerationConfig,
    ) -> AsyncIterator[NormalizedChunk]:
        self.requests.append({"history": tuple(history), "tools": list(tools), "config": config})
        if not self._scripts:
            raise AssertionError("Transport called more often than scripted")
        script = self._scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        for chunk in script:
            yield chunk
        yield NormalizedChunk.terminal()

    async def aclose(self) -> None:
        self.closed = True


class RecordingTool:
    """Async tool handler that records the arguments it receives."""

    def __init__(self, result: str = "ok", *, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, args: Mapping[str, Any]) -> str:
        self.calls.append(dict(args))
        if self.error is not None:
            raise self.error
        return self.result


def descriptor(name: str, *, requires_confirmation: bool = False) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description=f"{name} tool",
        parameter_schema={"type": "object", "properties": {}},
        requires_confirmation=requires_confirmation,
    )


def make_dispatcher(
    tools: Mapping[str, RecordingTool],
    *,
    permissions: Mapping[str, str] | None = None,
    approval: ApprovalCallback | None = None,
    tool_timeout: float | None = None,
) -> tuple[ToolCatalog, ToolDispatcher]:
    catalog = ToolCatalog()
    for name, handler in tools.items():
        catalog.register_builtin(descriptor(name), handler)
    dispatcher = ToolDispatcher(
        catalog,
        permissions=PermissionTable(permissions or {}),
        approval=approval,
        tool_timeout=tool_timeout,
    )
    return catalog, dispatcher
