"""Tool dispatcher: permission gating and execution of model tool calls.

Every call the model makes goes through :meth:`ToolDispatcher.resolve`, which
always returns a resolved :class:`ToolCall`. Unknown tools, denied permissions,
rejected prompts, tool exceptions and timeouts all become call outcomes, so
nothing raised here can abort the conversation loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol

from ..ai_types import FunctionCall, ToolCall, ToolDescriptor
from ..errors import UnknownToolError
from ..tools.catalog import ToolCatalog

LOGGER = logging.getLogger(__name__)

USER_REJECTED = "User rejected tool execution"
PERMISSION_DENIED = "Tool execution is disabled by permission settings"
NO_APPROVAL_HANDLER = "Tool requires approval but no approval handler is configured"

ApprovalCallback = Callable[[str, Mapping[str, Any]], Awaitable[bool]]


# -----------------------------------------------------------------------------
# Permissions
# -----------------------------------------------------------------------------


class ToolPermission(str, Enum):
    ALWAYS = "always"
    ASK = "ask"
    NEVER = "never"

    @classmethod
    def coerce(cls, value: Any) -> ToolPermission | None:
        if isinstance(value, ToolPermission):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class PermissionTable:
    """Per-tool permission overrides with a descriptor-based fallback.

    Tools missing from the table use ``ask`` when their descriptor requires
    confirmation and ``always`` otherwise.
    """

    def __init__(self, permissions: Mapping[str, ToolPermission | str] | None = None) -> None:
        self._permissions: dict[str, ToolPermission] = {}
        for name, value in (permissions or {}).items():
            permission = ToolPermission.coerce(value)
            if permission is None:
                LOGGER.warning("Ignoring unknown permission %r for tool %s", value, name)
                continue
            self._permissions[name] = permission

    def set(self, name: str, permission: ToolPermission | str) -> None:
        coerced = ToolPermission.coerce(permission)
        if coerced is None:
            raise ValueError(f"Unknown tool permission: {permission!r}")
        self._permissions[name] = coerced

    def permission_for(self, descriptor: ToolDescriptor) -> ToolPermission:
        explicit = self._permissions.get(descriptor.name)
        if explicit is not None:
            return explicit
        return ToolPermission.ASK if descriptor.requires_confirmation else ToolPermission.ALWAYS

    def as_dict(self) -> dict[str, str]:
        return {name: permission.value for name, permission in self._permissions.items()}


# -----------------------------------------------------------------------------
# Dispatch Listener
# -----------------------------------------------------------------------------


class DispatchListener(Protocol):
    """Callback protocol for dispatch events."""

    def on_tool_start(self, call: ToolCall) -> None:
        ...

    def on_tool_complete(self, call: ToolCall, duration_ms: float) -> None:
        ...


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Resolves tool calls against a catalog and a permission table.

    Example:
        dispatcher = ToolDispatcher(
            catalog=catalog,
            permissions=PermissionTable({"write_file": "ask"}),
            approval=prompt_user,
        )
        call = await dispatcher.resolve(FunctionCall("list_files", {}))
    """

    def __init__(
        self,
        catalog: ToolCatalog,
        *,
        permissions: PermissionTable | None = None,
        approval: ApprovalCallback | None = None,
        tool_timeout: float | None = None,
        listener: DispatchListener | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            catalog: Source of tool descriptors and execution bindings.
            permissions: Per-tool permission overrides.
            approval: Awaited for tools whose permission is ``ask``.
            tool_timeout: Seconds before a running tool is abandoned; ``None`` disables it.
            listener: Receives start and completion notifications.
        """
        self._catalog = catalog
        self._permissions = permissions or PermissionTable()
        self._approval = approval
        self._tool_timeout = tool_timeout
        self._listener = listener

    @property
    def permissions(self) -> PermissionTable:
        return self._permissions

    def set_approval(self, approval: ApprovalCallback | None) -> None:
        self._approval = approval

    def set_listener(self, listener: DispatchListener | None) -> None:
        self._listener = listener

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def resolve(self, call: FunctionCall | ToolCall) -> ToolCall:
        """Resolve one call to ``executed`` or ``rejected``.

        The tool is looked up before any approval prompt, so unknown tools are
        rejected without asking the user.
        """

        record = call if isinstance(call, ToolCall) else ToolCall.from_function_call(call)
        entry = self._catalog.get(record.name)
        if entry is None:
            error = UnknownToolError(record.name)
            LOGGER.warning("%s", error.message)
            record.reject(error.message)
            return record

        permission = self._permissions.permission_for(entry.descriptor)
        if permission is ToolPermission.NEVER:
            LOGGER.info("Tool %s blocked by permission settings", record.name)
            record.reject(PERMISSION_DENIED)
            return record

        if permission is ToolPermission.ASK:
            rejection = await self._request_approval(record)
            if rejection is not None:
                record.reject(rejection)
                return record

        record.approve()
        await self._execute(record, entry.binding)
        return record

    async def _request_approval(self, record: ToolCall) -> str | None:
        if self._approval is None:
            LOGGER.info("Rejecting %s: no approval handler configured", record.name)
            return NO_APPROVAL_HANDLER
        try:
            approved = await self._approval(record.name, dict(record.args))
        except Exception as exc:
            LOGGER.warning("Approval handler failed for %s: %s", record.name, exc)
            return f"Approval failed: {exc}"
        if not approved:
            LOGGER.info("User rejected %s", record.name)
            return USER_REJECTED
        return None

    async def _execute(self, record: ToolCall, binding: Any) -> None:
        self._notify_start(record)
        start_time = time.perf_counter()
        try:
            if self._tool_timeout is not None and self._tool_timeout > 0:
                result = await asyncio.wait_for(
                    binding.execute(record.name, record.args),
                    timeout=self._tool_timeout,
                )
            else:
                result = await binding.execute(record.name, record.args)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %.1fs", record.name, self._tool_timeout)
            record.complete(error=f"Tool execution timed out after {self._tool_timeout}s")
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            LOGGER.warning("Tool %s failed: %s", record.name, message)
            record.complete(error=f"Error executing {record.name}: {message}")
        else:
            record.complete(result="" if result is None else str(result))
        self._notify_complete(record, (time.perf_counter() - start_time) * 1000)

    def _notify_start(self, record: ToolCall) -> None:
        if self._listener:
            try:
                self._listener.on_tool_start(record)
            except Exception:
                LOGGER.debug("Listener on_tool_start failed", exc_info=True)

    def _notify_complete(self, record: ToolCall, duration_ms: float) -> None:
        if self._listener:
            try:
                self._listener.on_tool_complete(record, duration_ms)
            except Exception:
                LOGGER.debug("Listener on_tool_complete failed", exc_info=True)


__all__ = [
    "ApprovalCallback",
    "ToolPermission",
    "PermissionTable",
    "DispatchListener",
    "ToolDispatcher",
    "USER_REJECTED",
    "PERMISSION_DENIED",
    "NO_APPROVAL_HANDLER",
]
