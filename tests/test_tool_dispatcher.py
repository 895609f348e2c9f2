"""Tests for permission gating and tool execution."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from tests.helpers import RecordingTool, descriptor, make_dispatcher
from vault_assistant.ai.ai_types import FunctionCall, ToolCallStatus
from vault_assistant.ai.orchestration.tool_dispatcher import (
    NO_APPROVAL_HANDLER,
    PERMISSION_DENIED,
    USER_REJECTED,
    PermissionTable,
    ToolPermission,
)
from vault_assistant.ai.tools.catalog import DuplicateToolError


class _Approver:
    def __init__(self, answer: bool = True, *, error: Exception | None = None) -> None:
        self.answer = answer
        self.error = error
        self.prompts: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, name: str, args: Mapping[str, Any]) -> bool:
        self.prompts.append((name, dict(args)))
        if self.error is not None:
            raise self.error
        return self.answer


@pytest.mark.asyncio
async def test_always_permission_executes_without_prompt() -> None:
    tool = RecordingTool("listing")
    approver = _Approver()
    _, dispatcher = make_dispatcher({"list_files": tool}, permissions={"list_files": "always"}, approval=approver)

    record = await dispatcher.resolve(FunctionCall("list_files", {"directory": "notes"}))

    assert record.status is ToolCallStatus.EXECUTED
    assert record.result == "listing"
    assert tool.calls == [{"directory": "notes"}]
    assert approver.prompts == []


@pytest.mark.asyncio
async def test_never_permission_rejects_without_running() -> None:
    tool = RecordingTool()
    approver = _Approver()
    _, dispatcher = make_dispatcher({"write_file": tool}, permissions={"write_file": "never"}, approval=approver)

    record = await dispatcher.resolve(FunctionCall("write_file", {"file_path": "a.md"}))

    assert record.status is ToolCallStatus.REJECTED
    assert record.error == PERMISSION_DENIED
    assert tool.calls == []
    assert approver.prompts == []


@pytest.mark.asyncio
async def test_ask_permission_runs_after_approval() -> None:
    tool = RecordingTool("written")
    approver = _Approver(True)
    _, dispatcher = make_dispatcher({"write_file": tool}, permissions={"write_file": "ask"}, approval=approver)

    record = await dispatcher.resolve(FunctionCall("write_file", {"file_path": "a.md"}))

    assert approver.prompts == [("write_file", {"file_path": "a.md"})]
    assert record.status is ToolCallStatus.EXECUTED
    assert record.result == "written"


@pytest.mark.asyncio
async def test_ask_permission_rejected_by_user() -> None:
    tool = RecordingTool()
    _, dispatcher = make_dispatcher({"write_file": tool}, permissions={"write_file": "ask"}, approval=_Approver(False))

    record = await dispatcher.resolve(FunctionCall("write_file", {}))

    assert record.status is ToolCallStatus.REJECTED
    assert record.error == USER_REJECTED
    assert tool.calls == []


@pytest.mark.asyncio
async def test_ask_without_handler_is_rejected() -> None:
    tool = RecordingTool()
    _, dispatcher = make_dispatcher({"write_file": tool}, permissions={"write_file": "ask"})

    record = await dispatcher.resolve(FunctionCall("write_file", {}))

    assert record.error == NO_APPROVAL_HANDLER
    assert tool.calls == []


@pytest.mark.asyncio
async def test_failing_approval_handler_rejects_call() -> None:
    tool = RecordingTool()
    approver = _Approver(error=RuntimeError("stdin closed"))
    _, dispatcher = make_dispatcher({"write_file": tool}, permissions={"write_file": "ask"}, approval=approver)

    record = await dispatcher.resolve(FunctionCall("write_file", {}))

    assert record.status is ToolCallStatus.REJECTED
    assert record.error == "Approval failed: stdin closed"


@pytest.mark.asyncio
async def test_unknown_tool_rejected_before_prompt() -> None:
    approver = _Approver()
    _, dispatcher = make_dispatcher({}, approval=approver)

    record = await dispatcher.resolve(FunctionCall("foo", {}))

    assert record.status is ToolCallStatus.REJECTED
    assert record.error == "Unknown tool: foo"
    assert approver.prompts == []


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_result() -> None:
    tool = RecordingTool(error=ValueError("disk full"))
    _, dispatcher = make_dispatcher({"write_file": tool}, permissions={"write_file": "always"})

    record = await dispatcher.resolve(FunctionCall("write_file", {}))

    assert record.status is ToolCallStatus.EXECUTED
    assert record.error == "Error executing write_file: disk full"
    assert record.to_function_response().response == {"error": "Error executing write_file: disk full"}


@pytest.mark.asyncio
async def test_tool_timeout_becomes_error_result() -> None:
    async def _slow(args: Mapping[str, Any]) -> str:
        await asyncio.sleep(5)
        return "late"

    catalog, dispatcher = make_dispatcher({}, tool_timeout=0.01)
    catalog.register_builtin(descriptor("web_fetch"), _slow)

    record = await dispatcher.resolve(FunctionCall("web_fetch", {}))

    assert record.status is ToolCallStatus.EXECUTED
    assert record.error is not None
    assert record.error.startswith("Tool execution timed out after")


@pytest.mark.asyncio
async def test_duplicate_calls_each_execute_in_order() -> None:
    tool = RecordingTool("same")
    _, dispatcher = make_dispatcher({"read_file": tool})

    call = FunctionCall("read_file", {"file_path": "a.md"})
    records = [await dispatcher.resolve(call), await dispatcher.resolve(call)]

    assert [record.result for record in records] == ["same", "same"]
    assert len(tool.calls) == 2


@pytest.mark.asyncio
async def test_listener_receives_start_and_completion() -> None:
    events: list[str] = []

    class _Listener:
        def on_tool_start(self, call: Any) -> None:
            events.append(f"start:{call.name}")

        def on_tool_complete(self, call: Any, duration_ms: float) -> None:
            assert duration_ms >= 0
            events.append(f"done:{call.name}")

    _, dispatcher = make_dispatcher({"list_files": RecordingTool()})
    dispatcher.set_listener(_Listener())

    await dispatcher.resolve(FunctionCall("list_files", {}))

    assert events == ["start:list_files", "done:list_files"]


def test_permission_table_falls_back_to_descriptor() -> None:
    table = PermissionTable({"write_file": "NEVER", "bogus": "sometimes"})

    assert table.permission_for(descriptor("write_file")) is ToolPermission.NEVER
    assert table.permission_for(descriptor("read_file")) is ToolPermission.ALWAYS
    assert table.permission_for(descriptor("web_fetch", requires_confirmation=True)) is ToolPermission.ASK
    assert table.as_dict() == {"write_file": "never"}

    with pytest.raises(ValueError):
        table.set("read_file", "maybe")


def test_duplicate_builtin_registration_raises() -> None:
    catalog, _ = make_dispatcher({"read_file": RecordingTool()})

    with pytest.raises(DuplicateToolError):
        catalog.register_builtin(descriptor("read_file"), RecordingTool())
