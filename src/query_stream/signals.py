"""Behavioral signals sent along with the next AI request.

The UI records lightweight interaction signals (a section expanded, a
micro-action used); they are drained into the request body so the server can
personalize the next answer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class AISignal:
    type: str
    timestamp: str
    section_id: str | None = None
    action_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "timestamp": self.timestamp}
        if self.section_id:
            data["sectionId"] = self.section_id
        if self.action_id:
            data["actionId"] = self.action_id
        return data


class SignalBuffer:
    """Bounded buffer of pending signals (most recent kept)."""

    def __init__(self, max_pending: int = 20) -> None:
        self._max_pending = max_pending
        self._pending: list[AISignal] = []
        self.online = True

    def add(
        self,
        type: str,
        section_id: str | None = None,
        action_id: str | None = None,
    ) -> None:
        if not self.online:
            return
        self._pending.append(AISignal(
            type=type,
            timestamp=datetime.now(timezone.utc).isoformat(),
            section_id=section_id,
            action_id=action_id,
        ))
        if len(self._pending) > self._max_pending:
            self._pending = self._pending[-self._max_pending:]

    def consume(self) -> list[dict[str, Any]]:
        """Return and clear all pending signals."""
        signals = [s.to_dict() for s in self._pending]
        self._pending = []
        return signals

    def __len__(self) -> int:
        return len(self._pending)
