"""Interactive collaborators the engine calls out to."""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Protocol, Sequence, runtime_checkable


class EscalationChoice(str, Enum):
    """Answer to "the server is still sending, terminate the session?"."""

    DROP = "drop"
    WAIT = "wait"
    DISMISS = "dismiss"


@runtime_checkable
class VariablePrompt(Protocol):
    """Asks the user for placeholder values."""

    async def prompt(self, names: Sequence[str], defaults: Mapping[str, str]) -> Mapping[str, str] | None:
        """Return a value per name, or None when the user cancels."""


@runtime_checkable
class SessionDropPrompt(Protocol):
    """Asks whether a stuck server session should be force-terminated."""

    async def choose(self, session_id: str, document_id: str | None) -> EscalationChoice: ...


class StaticVariablePrompt:
    """Answers from a fixed mapping; cancels when a name is missing."""

    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = dict(values)
        self.calls: list[tuple[str, ...]] = []

    async def prompt(self, names: Sequence[str], defaults: Mapping[str, str]) -> Mapping[str, str] | None:
        self.calls.append(tuple(names))
        answers: dict[str, str] = {}
        for name in names:
            if name in self._values:
                answers[name] = self._values[name]
            elif name in defaults:
                answers[name] = defaults[name]
            else:
                return None
        return answers


__all__ = [
    "EscalationChoice",
    "SessionDropPrompt",
    "StaticVariablePrompt",
    "VariablePrompt",
]
