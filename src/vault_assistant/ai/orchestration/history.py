"""Ordered conversation transcript with turn-adjacency checks."""

from __future__ import annotations

import logging
from typing import Iterator

from ..ai_types import FunctionCall, FunctionResponse, TextPart, Turn
from ..errors import InvariantViolation

LOGGER = logging.getLogger(__name__)

__all__ = ["HistoryStore"]


class HistoryStore:
    """Append-only transcript owned by a single orchestrator.

    Appends are validated against the upstream turn rules:

    * a turn has at least one part;
    * model turns carry no function responses and user turns no function calls;
    * a turn with function responses is a user turn that directly follows a
      model turn whose calls cover the response names in the same order.
    """

    def __init__(self) -> None:
        self._turns: list[Turn] = []

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

    @property
    def last(self) -> Turn | None:
        return self._turns[-1] if self._turns else None

    def snapshot(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def clear(self) -> None:
        self._turns.clear()

    def append(self, turn: Turn) -> None:
        self._validate(turn)
        self._turns.append(turn)

    def append_user_text(self, text: str) -> bool:
        """Append a user text turn unless it repeats the previous user text turn.

        Returns ``True`` when the turn was appended.
        """

        last = self.last
        if (
            last is not None
            and last.role == "user"
            and all(isinstance(part, TextPart) for part in last.parts)
            and last.text == text
        ):
            LOGGER.debug("Skipping duplicate user utterance")
            return False
        self.append(Turn.user_text(text))
        return True

    def discard_last_user_text(self) -> bool:
        """Remove the trailing user text turn, if the transcript ends with one.

        Used to roll back an utterance that never got a model turn.
        """

        last = self.last
        if last is None or last.role != "user" or not all(isinstance(part, TextPart) for part in last.parts):
            return False
        self._turns.pop()
        return True

    def _validate(self, turn: Turn) -> None:
        if not turn.parts:
            raise InvariantViolation(f"{turn.role} turn has no parts")

        if turn.role == "model":
            if any(isinstance(part, FunctionResponse) for part in turn.parts):
                raise InvariantViolation("Model turns cannot carry function responses")
            return

        if any(isinstance(part, FunctionCall) for part in turn.parts):
            raise InvariantViolation("User turns cannot carry function calls")

        responses = turn.function_responses_parts
        if not responses:
            return
        previous = self.last
        if previous is None or previous.role != "model":
            raise InvariantViolation("Function responses must follow a model turn")
        call_names = [call.name for call in previous.function_calls]
        response_names = [response.name for response in responses]
        if not _covers_in_order(call_names, response_names):
            raise InvariantViolation(
                f"Function responses {response_names} do not answer calls {call_names} in order"
            )


def _covers_in_order(call_names: list[str], response_names: list[str]) -> bool:
    remaining = iter(call_names)
    return all(any(name == call for call in remaining) for name in response_names)
