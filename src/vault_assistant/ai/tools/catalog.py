"""Tool catalog shared by the dispatcher and the transports.

The catalog holds built-in tools registered at startup and a snapshot of the
tools offered by an external provider. Remote entries are replaced wholesale on
every sync and take precedence over built-ins with the same name.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Mapping, Protocol, Sequence, Union, runtime_checkable

from ..ai_types import ToolDescriptor

__all__ = [
    "ToolHandler",
    "ExternalToolProvider",
    "BuiltinBinding",
    "RemoteBinding",
    "ToolBinding",
    "CatalogEntry",
    "CatalogChange",
    "ToolCatalog",
    "DuplicateToolError",
]

LOGGER = logging.getLogger(__name__)

ToolHandler = Callable[[Mapping[str, Any]], Awaitable[str]]


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when a built-in tool with the same name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


# -----------------------------------------------------------------------------
# Bindings
# -----------------------------------------------------------------------------


@runtime_checkable
class ExternalToolProvider(Protocol):
    """Contract for an external tool source; its connection is managed elsewhere."""

    def list_tools(self) -> Sequence[ToolDescriptor] | Awaitable[Sequence[ToolDescriptor]]:
        ...

    async def invoke(self, name: str, args: Mapping[str, Any]) -> Any:
        ...


@dataclass(slots=True, frozen=True)
class BuiltinBinding:
    handler: ToolHandler

    async def execute(self, name: str, args: Mapping[str, Any]) -> str:
        return await self.handler(args)


@dataclass(slots=True, frozen=True)
class RemoteBinding:
    provider: ExternalToolProvider

    async def execute(self, name: str, args: Mapping[str, Any]) -> str:
        result = await self.provider.invoke(name, args)
        return _stringify(result)


ToolBinding = Union[BuiltinBinding, RemoteBinding]


def _stringify(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)


# -----------------------------------------------------------------------------
# Catalog
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CatalogEntry:
    descriptor: ToolDescriptor
    binding: ToolBinding

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def source(self) -> Literal["builtin", "remote"]:
        return "remote" if isinstance(self.binding, RemoteBinding) else "builtin"


@dataclass(slots=True, frozen=True)
class CatalogChange:
    """Published to subscribers whenever the set of tools changes."""

    version: int
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    source: Literal["builtin", "remote"] = "builtin"


class ToolCatalog:
    """Registry of callable tools.

    Example:
        catalog = ToolCatalog()
        catalog.register_builtin(descriptor, handler)
        await catalog.sync(provider)

        entry = catalog.get("read_file")
        result = await entry.binding.execute(entry.name, {"file_path": "a.md"})
    """

    def __init__(self) -> None:
        self._builtin: dict[str, CatalogEntry] = {}
        self._remote: dict[str, CatalogEntry] = {}
        self._subscribers: list[asyncio.Queue[CatalogChange]] = []
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def register_builtin(
        self,
        descriptor: ToolDescriptor,
        handler: ToolHandler,
        *,
        allow_override: bool = False,
    ) -> CatalogEntry:
        """Register a built-in tool.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """

        if descriptor.name in self._builtin and not allow_override:
            raise DuplicateToolError(descriptor.name)
        entry = CatalogEntry(descriptor=descriptor, binding=BuiltinBinding(handler))
        self._builtin[descriptor.name] = entry
        LOGGER.debug("Registered built-in tool: %s", descriptor.name)
        self._publish(added=(descriptor.name,), source="builtin")
        return entry

    def unregister_builtin(self, name: str) -> bool:
        if self._builtin.pop(name, None) is None:
            return False
        self._publish(removed=(name,), source="builtin")
        return True

    async def sync(self, provider: ExternalToolProvider) -> CatalogChange:
        """Replace every remote entry with the provider's current tool list."""

        listed = provider.list_tools()
        if inspect.isawaitable(listed):
            listed = await listed
        fresh: dict[str, CatalogEntry] = {}
        for descriptor in listed:
            if descriptor.name in fresh:
                LOGGER.warning("External provider listed tool %s twice; keeping the first", descriptor.name)
                continue
            fresh[descriptor.name] = CatalogEntry(descriptor=descriptor, binding=RemoteBinding(provider))
            if descriptor.name in self._builtin:
                LOGGER.info("External tool %s shadows the built-in tool of the same name", descriptor.name)

        previous = set(self._remote)
        self._remote = fresh
        added = tuple(sorted(set(fresh) - previous))
        removed = tuple(sorted(previous - set(fresh)))
        LOGGER.debug("Synced %s external tool(s) (+%s/-%s)", len(fresh), len(added), len(removed))
        return self._publish(added=added, removed=removed, source="remote")

    def clear_remote(self) -> None:
        removed = tuple(sorted(self._remote))
        self._remote = {}
        if removed:
            self._publish(removed=removed, source="remote")

    def get(self, name: str) -> CatalogEntry | None:
        return self._remote.get(name) or self._builtin.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._remote or name in self._builtin

    def __len__(self) -> int:
        return len(self.names())

    def names(self) -> list[str]:
        ordered = list(self._builtin)
        ordered.extend(name for name in self._remote if name not in self._builtin)
        return ordered

    def entries(self) -> list[CatalogEntry]:
        return [entry for name in self.names() if (entry := self.get(name)) is not None]

    def descriptors(self) -> list[ToolDescriptor]:
        return [entry.descriptor for entry in self.entries()]

    def subscribe(self) -> asyncio.Queue[CatalogChange]:
        queue: asyncio.Queue[CatalogChange] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[CatalogChange]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(
        self,
        *,
        added: tuple[str, ...] = (),
        removed: tuple[str, ...] = (),
        source: Literal["builtin", "remote"],
    ) -> CatalogChange:
        self._version += 1
        change = CatalogChange(version=self._version, added=added, removed=removed, source=source)
        for queue in self._subscribers:
            queue.put_nowait(change)
        return change
