"""Shared data types for query-stream."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


def new_message_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ChartPayload:
    """Chart emitted once on the ``chart`` channel."""

    chart_type: str
    chart_data: Any
    chart_title: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChartPayload:
        return cls(
            chart_type=str(data.get("chartType", "")),
            chart_data=data.get("chartData"),
            chart_title=data.get("chartTitle"),
        )


@dataclass(frozen=True)
class Message:
    """One conversation entry.

    Messages are immutable; the conversation store replaces them by id.
    """

    role: Role
    content: str = ""
    id: str = field(default_factory=new_message_id)
    streaming: bool = False
    provider: str | None = None
    chart: ChartPayload | None = None
    structured: dict[str, Any] | None = None
    is_provider_error: bool = False

    def to_history_entry(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


# ---------------------------------------------------------------------------
# Error types
# ---------------------------------------------------------------------------

class ErrorCode(str, enum.Enum):
    """Normalized failure taxonomy.

    The upper block is the session-level taxonomy; the lower block holds the
    per-provider codes the server reports inside ``providers`` lists.
    """

    AUTH_EXPIRED = "AUTH_EXPIRED"
    INVALID_API_KEY = "INVALID_API_KEY"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    NO_PROVIDERS = "NO_PROVIDERS"
    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"
    CONFIG_ERROR = "CONFIG_ERROR"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    ABORTED = "ABORTED"
    OFFLINE = "OFFLINE"
    AI_DISABLED = "AI_DISABLED"
    UNKNOWN = "UNKNOWN"

    # Provider-reported
    INSUFFICIENT_QUOTA = "INSUFFICIENT_QUOTA"
    BILLING_REQUIRED = "BILLING_REQUIRED"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH_ERROR = "AUTH_ERROR"
    INVALID_KEY = "INVALID_KEY"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    CONTENT_POLICY = "CONTENT_POLICY"
    CONTEXT_LENGTH = "CONTEXT_LENGTH"

    @classmethod
    def parse(cls, raw: Any) -> ErrorCode:
        try:
            return cls(str(raw).upper())
        except ValueError:
            return cls.UNKNOWN


class Severity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ActionKind(str, enum.Enum):
    RETRY = "retry"
    OPEN_SETTINGS = "open_settings"
    ADD_PROVIDER = "add_provider"
    UPGRADE_PLAN = "upgrade_plan"


@dataclass
class ErrorAction:
    """User-facing remedy attached to an error record."""

    label: str
    kind: ActionKind
    handler: Callable[[], Awaitable[Any]] | None = None


@dataclass(frozen=True)
class ProviderFailure:
    """One entry of a server-reported per-provider error list."""

    provider: str
    code: ErrorCode
    message: str
    dashboard_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderFailure:
        return cls(
            provider=str(data.get("provider", "unknown")),
            code=ErrorCode.parse(data.get("code", "UNKNOWN")),
            message=str(data.get("message") or data.get("userMessage") or ""),
            dashboard_url=data.get("dashboardUrl") or data.get("providerDashboardUrl"),
        )


@dataclass
class ErrorRecord:
    """Normalized failure.  Returned as data, never raised."""

    code: ErrorCode
    message: str
    severity: Severity = Severity.ERROR
    retryable: bool = False
    action: ErrorAction | None = None
    status: int | None = None
    providers: list[ProviderFailure] = field(default_factory=list)
    fallback_plan: dict[str, Any] | None = None


class TokenRefreshError(Exception):
    """Raised by a token provider when the session cannot be refreshed."""


# ---------------------------------------------------------------------------
# Result variants
# ---------------------------------------------------------------------------

class CancelReason(str, enum.Enum):
    """Why a cancellation context was signalled."""

    USER = "user"
    SUPERSEDED = "superseded"
    UNMOUNT = "unmount"
    TIMEOUT = "timeout"

    @property
    def intentional(self) -> bool:
        return self is not CancelReason.TIMEOUT


@dataclass
class Ok:
    message: Message


@dataclass
class Err:
    error: ErrorRecord


@dataclass
class Cancelled:
    """Silent outcome of an intentional abort.  Carries no error record."""

    reason: CancelReason


Result = Union[Ok, Err, Cancelled]


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted by the session core."""

    SESSION_STARTED = "session.started"
    SESSION_COMPLETED = "session.completed"
    SESSION_ERROR = "session.error"
    SESSION_CANCELLED = "session.cancelled"

    PROVIDER_FALLBACK = "provider.fallback"
    PROVIDER_SOFT_FAILURE = "provider.soft_failure"

    NOTICE = "notice"


@dataclass
class SessionEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
