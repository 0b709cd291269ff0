"""Pre-flight readiness checks.

Runs before any network call and short-circuits requests that are
guaranteed to fail (offline, signed out, no provider, AI disabled, a
once-per-day action already used today), giving instant guidance instead
of a wasted round trip.
"""

from __future__ import annotations

import enum
import json
import logging
from datetime import date
from pathlib import Path
from typing import Callable

from query_stream.config import DailyActionsSpec
from query_stream.types import (
    ActionKind,
    ErrorAction,
    ErrorCode,
    ErrorRecord,
    Severity,
)

logger = logging.getLogger(__name__)


class ReadinessVariant(str, enum.Enum):
    """Externally computed answer to "can AI be used at all right now?"."""

    LOADING = "loading"
    SESSION_INVALID = "session_invalid"
    CONNECT_PROVIDER = "connect_provider"
    CONFIG_ERROR = "config_error"
    HEALTH_WARNING = "health_warning"
    READY = "ready"
    DEGRADED = "degraded"
    DISABLED = "disabled"


# Variants that block a request, with the guidance shown instead.
_BLOCKING: dict[ReadinessVariant, ErrorRecord] = {
    ReadinessVariant.SESSION_INVALID: ErrorRecord(
        code=ErrorCode.AUTH_EXPIRED,
        message="Your session has expired. Please sign in again.",
    ),
    ReadinessVariant.CONNECT_PROVIDER: ErrorRecord(
        code=ErrorCode.NO_PROVIDERS,
        message="No AI provider connected yet.",
        severity=Severity.WARNING,
        action=ErrorAction(label="Add Provider", kind=ActionKind.ADD_PROVIDER),
    ),
    ReadinessVariant.CONFIG_ERROR: ErrorRecord(
        code=ErrorCode.CONFIG_ERROR,
        message=(
            "AI is not configured correctly on the server. "
            "Please contact your administrator."
        ),
    ),
    ReadinessVariant.DISABLED: ErrorRecord(
        code=ErrorCode.AI_DISABLED,
        message="AI features are not available on your current plan.",
        severity=Severity.WARNING,
        action=ErrorAction(label="Upgrade Plan", kind=ActionKind.UPGRADE_PLAN),
    ),
}


def _copy(record: ErrorRecord) -> ErrorRecord:
    return ErrorRecord(
        code=record.code,
        message=record.message,
        severity=record.severity,
        retryable=record.retryable,
        action=(
            ErrorAction(label=record.action.label, kind=record.action.kind)
            if record.action else None
        ),
    )


class DailyActionLedger:
    """Remembers which once-per-day actions already ran today.

    Backed by a small JSON file when *path* is given, in memory otherwise.
    Storage problems are logged and never block a request.
    """

    def __init__(
        self,
        spec: DailyActionsSpec | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.spec = spec or DailyActionsSpec()
        self._today = today
        self._path = Path(self.spec.ledger_path).expanduser() if self.spec.ledger_path else None
        self._runs: dict[str, str] = self._load()

    def _load(self) -> dict[str, str]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable daily action ledger %s: %s", self._path, e)
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _save(self) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(self._runs))
        except OSError as e:
            logger.warning("Could not persist daily action ledger: %s", e)

    def is_limited(self, action_id: str | None) -> bool:
        return bool(action_id) and action_id in self.spec.once_per_day

    def consumed_today(self, action_id: str | None) -> bool:
        if not self.is_limited(action_id):
            return False
        return self._runs.get(action_id) == self._today().isoformat()

    def mark(self, action_id: str | None) -> None:
        if not self.is_limited(action_id):
            return
        self._runs[action_id] = self._today().isoformat()
        self._save()


class ReadinessGuard:
    """Evaluates pre-flight conditions for one request.

    Usage::

        guard = ReadinessGuard(ledger)
        error = guard.check(online=True, variant=ReadinessVariant.READY)
        if error:
            return Err(error)
    """

    def __init__(self, ledger: DailyActionLedger | None = None) -> None:
        self.ledger = ledger or DailyActionLedger()

    def check(
        self,
        *,
        online: bool = True,
        variant: ReadinessVariant | str | None = None,
        action_id: str | None = None,
    ) -> ErrorRecord | None:
        """Return a blocking ``ErrorRecord``, or ``None`` when clear to send."""
        if not online:
            logger.info("Offline, skipping AI request")
            return ErrorRecord(
                code=ErrorCode.OFFLINE,
                message="You're offline. AI will be available when you reconnect.",
                severity=Severity.WARNING,
                retryable=True,
                action=ErrorAction(label="Retry", kind=ActionKind.RETRY),
            )

        if variant is not None:
            try:
                variant = ReadinessVariant(variant)
            except ValueError:
                logger.warning("Unknown readiness variant %r, ignoring", variant)
                variant = None
        blocked = _BLOCKING.get(variant) if variant is not None else None
        if blocked is not None:
            logger.info("Readiness variant %s blocks request", variant.value)
            return _copy(blocked)

        if self.ledger.consumed_today(action_id):
            logger.info("Daily action %s already used today", action_id)
            return ErrorRecord(
                code=ErrorCode.QUOTA_EXCEEDED,
                message="This action has already been run today. Try again tomorrow.",
                severity=Severity.INFO,
            )
        return None
