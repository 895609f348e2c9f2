"""Shared data model for the conversation engine.

Transcript values (:class:`Turn` and its parts) are immutable so snapshots can
be handed to transports without copying. :class:`ToolCall` is the one mutable
record: it walks through its status machine while the dispatcher resolves it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, Sequence, Union

from .errors import InvariantViolation

__all__ = [
    "Role",
    "TextPart",
    "FunctionCall",
    "FunctionResponse",
    "Part",
    "Turn",
    "NormalizedChunk",
    "ToolCallStatus",
    "ToolCall",
    "ToolDescriptor",
    "GenerationConfig",
]

Role = Literal["user", "model"]


# -----------------------------------------------------------------------------
# Parts
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextPart:
    """Plain text content."""

    text: str

    def to_wire(self) -> dict[str, Any]:
        return {"text": self.text}


@dataclass(slots=True, frozen=True)
class FunctionCall:
    """The model's request to invoke a named tool."""

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {"functionCall": {"name": self.name, "args": dict(self.args)}}

    def arguments_json(self) -> str:
        return json.dumps(dict(self.args), ensure_ascii=False)


@dataclass(slots=True, frozen=True)
class FunctionResponse:
    """Outcome of one tool call, fed back to the model.

    Exactly one of ``result`` or ``error`` is set.
    """

    name: str
    result: str | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if (self.result is None) == (self.error is None):
            raise InvariantViolation(
                f"FunctionResponse for '{self.name}' needs exactly one of result or error"
            )

    @property
    def response(self) -> dict[str, str]:
        if self.error is not None:
            return {"error": self.error}
        return {"result": self.result or ""}

    def to_wire(self) -> dict[str, Any]:
        return {"functionResponse": {"name": self.name, "response": self.response}}


Part = Union[TextPart, FunctionCall, FunctionResponse]


# -----------------------------------------------------------------------------
# Turn
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Turn:
    """One role-tagged transcript entry."""

    role: Role
    parts: tuple[Part, ...]

    @classmethod
    def user_text(cls, text: str) -> Turn:
        return cls(role="user", parts=(TextPart(text),))

    @classmethod
    def model_response(cls, text: str, calls: Sequence[FunctionCall] = ()) -> Turn:
        """Build the single model turn for a finished generation."""

        parts: list[Part] = []
        if text:
            parts.append(TextPart(text))
        parts.extend(calls)
        return cls(role="model", parts=tuple(parts))

    @classmethod
    def function_responses(cls, responses: Sequence[FunctionResponse]) -> Turn:
        return cls(role="user", parts=tuple(responses))

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def function_calls(self) -> tuple[FunctionCall, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionCall))

    @property
    def function_responses_parts(self) -> tuple[FunctionResponse, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionResponse))

    @property
    def has_function_responses(self) -> bool:
        return any(isinstance(part, FunctionResponse) for part in self.parts)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the Gemini ``Content`` JSON shape."""

        return {"role": self.role, "parts": [part.to_wire() for part in self.parts]}


# -----------------------------------------------------------------------------
# Stream chunks
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class NormalizedChunk:
    """Protocol-agnostic unit yielded by every stream transport."""

    text: str | None = None
    function_calls: tuple[FunctionCall, ...] = ()
    done: bool = False

    @classmethod
    def of_text(cls, text: str) -> NormalizedChunk:
        return cls(text=text)

    @classmethod
    def of_calls(cls, *calls: FunctionCall) -> NormalizedChunk:
        return cls(function_calls=tuple(calls))

    @classmethod
    def terminal(cls) -> NormalizedChunk:
        return cls(done=True)


# -----------------------------------------------------------------------------
# Tool calls
# -----------------------------------------------------------------------------


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"


_TRANSITIONS: dict[ToolCallStatus, frozenset[ToolCallStatus]] = {
    ToolCallStatus.PENDING: frozenset({ToolCallStatus.APPROVED, ToolCallStatus.REJECTED}),
    ToolCallStatus.APPROVED: frozenset({ToolCallStatus.EXECUTED}),
    ToolCallStatus.REJECTED: frozenset(),
    ToolCallStatus.EXECUTED: frozenset(),
}


@dataclass(slots=True)
class ToolCall:
    """Ephemeral record of one function invocation within a model turn."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: str | None = None
    error: str | None = None

    @classmethod
    def from_function_call(cls, call: FunctionCall) -> ToolCall:
        return cls(name=call.name, args=dict(call.args))

    @property
    def resolved(self) -> bool:
        return self.status in (ToolCallStatus.REJECTED, ToolCallStatus.EXECUTED)

    def approve(self) -> None:
        self._transition(ToolCallStatus.APPROVED)

    def reject(self, error: str) -> None:
        self._transition(ToolCallStatus.REJECTED)
        self.error = error

    def complete(self, *, result: str | None = None, error: str | None = None) -> None:
        self._transition(ToolCallStatus.EXECUTED)
        if error is not None:
            self.error = error
        else:
            self.result = result if result is not None else ""

    def to_function_response(self) -> FunctionResponse:
        if not self.resolved:
            raise InvariantViolation(f"Tool call '{self.name}' is still {self.status.value}")
        if self.error is not None:
            return FunctionResponse(name=self.name, error=self.error)
        return FunctionResponse(name=self.name, result=self.result or "")

    def _transition(self, target: ToolCallStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvariantViolation(
                f"Tool call '{self.name}' cannot move from {self.status.value} to {target.value}"
            )
        self.status = target


# -----------------------------------------------------------------------------
# Tool descriptors and generation config
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolDescriptor:
    """Description of a callable tool as presented to the model."""

    name: str
    description: str
    parameter_schema: Mapping[str, Any] = field(default_factory=dict)
    requires_confirmation: bool = True

    def parameters(self) -> dict[str, Any]:
        if self.parameter_schema:
            return dict(self.parameter_schema)
        return {"type": "object", "properties": {}}

    def to_function_declaration(self) -> dict[str, Any]:
        """Gemini ``functionDeclarations`` entry."""

        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters(),
        }

    def to_openai_tool(self) -> dict[str, Any]:
        """Chat-completions ``tools`` entry."""

        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters(),
            },
        }


@dataclass(slots=True, frozen=True)
class GenerationConfig:
    """Per-request generation parameters shared by both transports."""

    model: str = "gemini-2.5-pro"
    temperature: float = 0.7
    max_output_tokens: int = 8192
    top_p: float | None = 1.0
    system_instruction: str | None = None

    def with_system_instruction(self, text: str | None) -> GenerationConfig:
        return GenerationConfig(
            model=self.model,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            top_p=self.top_p,
            system_instruction=text,
        )
