"""Error taxonomy for the conversation engine.

Every error raised by the assistant core derives from :class:`AssistantError`
so callers can catch a single base type. The ``retriable`` flag tells the
caller whether repeating the same request may succeed; the core itself never
retries a generation request.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AssistantError",
    "TransportError",
    "ParseError",
    "AuthError",
    "ToolExecutionError",
    "UnknownToolError",
    "InvariantViolation",
    "ConversationBusyError",
]


class AssistantError(Exception):
    """Base class for all assistant errors."""

    def __init__(self, message: str, *, retriable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.retriable = retriable


class TransportError(AssistantError):
    """Raised when a generation request fails at the network or HTTP layer."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message, retriable=True)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (HTTP {self.status_code})"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"error": "transport_error", "message": self.message}
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.body:
            data["body"] = self.body
        return data


class ParseError(AssistantError):
    """Raised when a stream body contains no decodable events."""

    def __init__(self, message: str, *, raw: str | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class AuthError(AssistantError):
    """Raised when no valid bearer credential can be produced."""


class ToolExecutionError(AssistantError):
    """Raised by a tool implementation when it cannot complete."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class UnknownToolError(AssistantError):
    """The model requested a tool that no backend can resolve."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class InvariantViolation(AssistantError):
    """Programming error: the transcript or a tool call was mutated out of order."""


class ConversationBusyError(AssistantError):
    """Raised when an utterance arrives while a previous one is still running."""
