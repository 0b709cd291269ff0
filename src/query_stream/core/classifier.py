"""Error classification.

Failures reach the session through four channels: an HTTP status with an
optional JSON body, a JSON error body on a 2xx response, an in-stream
``{"error": ...}`` frame, or a raised exception.  ``ErrorClassifier`` reduces
all of them to one ``ErrorRecord``.

Rules are evaluated in a fixed order, first match wins:

  1. server configuration error
  2. session / auth invalid (before "all providers failed": an auth failure
     otherwise looks like a provider outage)
  3. invalid upstream API key
  4. rate limited
  5. usage quota exceeded
  6. no provider configured
  7. all providers failed
  8. network / timeout
  9. unknown
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from query_stream.types import (
    ActionKind,
    ErrorAction,
    ErrorCode,
    ErrorRecord,
    ProviderFailure,
    Severity,
    TokenRefreshError,
)

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Signal
# ---------------------------------------------------------------------------

@dataclass
class ErrorSignal:
    """Raw failure input, whichever channel it came from."""

    status: int | None = None
    body: dict[str, Any] | None = None
    exception: BaseException | None = None
    timed_out: bool = False
    aborted: bool = False

    @classmethod
    def from_http(cls, status: int, body: Any) -> ErrorSignal:
        return cls(status=status, body=body if isinstance(body, dict) else None)

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> ErrorSignal:
        return cls(body=body)

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorSignal:
        return cls(exception=exc)

    # -- normalized views ---------------------------------------------------

    def _fields(self) -> dict[str, Any]:
        """Flatten ``{"error": {...}}`` nesting into one mapping."""
        body = dict(self.body or {})
        nested = body.get("error")
        if isinstance(nested, dict):
            merged = dict(nested)
            merged.update({k: v for k, v in body.items() if k != "error"})
            return merged
        return body

    @property
    def code_text(self) -> str:
        f = self._fields()
        parts = [f.get("code"), f.get("error")]
        return " ".join(str(p) for p in parts if isinstance(p, str)).upper()

    @property
    def message(self) -> str:
        f = self._fields()
        for key in ("message", "error"):
            value = f.get(key)
            if isinstance(value, str) and value:
                return value
        if self.exception is not None:
            return str(self.exception) or type(self.exception).__name__
        return ""

    def get(self, key: str, default: Any = None) -> Any:
        return self._fields().get(key, default)


# ---------------------------------------------------------------------------
# Matching tables
# ---------------------------------------------------------------------------

_CONFIG_CODES = ("CONFIG_ERROR", "SERVER_CONFIG_ERROR", "MISCONFIGURED")
_AUTH_CODES = (
    "AUTH_EXPIRED", "SESSION_ERROR", "AUTH_REQUIRED", "SESSION_INVALID",
    "SESSION_EXPIRED", "NO_SESSION",
)
_AUTH_PHRASES = ("session", "authentication required", "please sign in")
_INVALID_KEY_CODES = ("INVALID_API_KEY", "INVALID_KEY")
_INVALID_KEY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"invalid api.?key", re.IGNORECASE),
    re.compile(r"incorrect api.?key", re.IGNORECASE),
    re.compile(r"api.?key (is )?(invalid|revoked|expired)", re.IGNORECASE),
]
_RATE_LIMIT_CODES = ("RATE_LIMITED", "RATE_LIMIT")
_RATE_LIMIT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"throttl", re.IGNORECASE),
]
_QUOTA_CODES = ("AI_LIMIT_REACHED", "QUOTA_EXCEEDED")
_NO_PROVIDER_CODES = ("NO_PROVIDERS",)
_NO_PROVIDER_PHRASES = ("no ai provider configured", "no valid providers")
_ALL_FAILED_CODES = ("ALL_PROVIDERS_FAILED",)
_TIMEOUT_PHRASES = ("timeout", "timed out")
_NETWORK_PHRASES = ("network", "fetch", "econnrefused", "enotfound", "connection")

# Headline selection among simultaneous provider failures: the most
# actionable error (billing / quota) comes first.
PROVIDER_ERROR_PRIORITY: tuple[ErrorCode, ...] = (
    ErrorCode.BILLING_REQUIRED,
    ErrorCode.INSUFFICIENT_QUOTA,
    ErrorCode.INVALID_KEY,
    ErrorCode.AUTH_ERROR,
    ErrorCode.MODEL_NOT_FOUND,
    ErrorCode.RATE_LIMIT,
    ErrorCode.TIMEOUT,
    ErrorCode.SERVICE_UNAVAILABLE,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.CONTENT_POLICY,
    ErrorCode.CONTEXT_LENGTH,
    ErrorCode.UNKNOWN,
)

# Session-level codes ranked as their provider-reported counterparts.
_SESSION_CODE_ALIASES = {
    ErrorCode.INVALID_API_KEY: ErrorCode.INVALID_KEY,
    ErrorCode.RATE_LIMITED: ErrorCode.RATE_LIMIT,
}

ALL_FAILED_MESSAGE = (
    "I wasn't able to get a response from any of your connected AI providers. "
    "Please check your API keys or try again in a few minutes."
)


def select_headline(failures: list[ProviderFailure]) -> ProviderFailure | None:
    """Return the most actionable provider failure, or ``None``."""
    if not failures:
        return None

    def rank(f: ProviderFailure) -> int:
        code = _SESSION_CODE_ALIASES.get(f.code, f.code)
        try:
            return PROVIDER_ERROR_PRIORITY.index(code)
        except ValueError:
            return len(PROVIDER_ERROR_PRIORITY)

    return min(failures, key=rank)


def _has_any(text: str, needles: tuple[str, ...]) -> bool:
    return any(n in text for n in needles)


def _retry_action() -> ErrorAction:
    return ErrorAction(label="Retry", kind=ActionKind.RETRY)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class ErrorClassifier:
    """Map any :class:`ErrorSignal` to an :class:`ErrorRecord`."""

    def classify(self, signal: ErrorSignal) -> ErrorRecord:
        record = self._classify(signal)
        record.status = signal.status
        _logger.debug(
            "Classified failure status=%s code=%r as %s (retryable=%s)",
            signal.status, signal.code_text, record.code.value, record.retryable,
        )
        return record

    def classify_exception(self, exc: BaseException) -> ErrorRecord:
        return self.classify(ErrorSignal.from_exception(exc))

    def _classify(self, signal: ErrorSignal) -> ErrorRecord:
        code = signal.code_text
        message = signal.message
        lower = message.lower()
        status = signal.status or 0

        if signal.aborted:
            return ErrorRecord(
                code=ErrorCode.ABORTED, message="", severity=Severity.INFO,
            )

        if _has_any(code, _CONFIG_CODES) or signal.get("configError"):
            return ErrorRecord(
                code=ErrorCode.CONFIG_ERROR,
                message=(
                    "AI is not configured correctly on the server. "
                    "Please contact your administrator."
                ),
                severity=Severity.ERROR,
            )

        key_mentioned = _has_any(code, _INVALID_KEY_CODES) or any(
            p.search(message) for p in _INVALID_KEY_PATTERNS
        )

        if (
            isinstance(signal.exception, TokenRefreshError)
            or _has_any(code, _AUTH_CODES)
            or _has_any(lower, _AUTH_PHRASES)
            or (status in (401, 403) and not key_mentioned)
        ):
            return ErrorRecord(
                code=ErrorCode.AUTH_EXPIRED,
                message="Your session has expired. Please sign in again.",
                severity=Severity.ERROR,
            )

        if key_mentioned:
            return ErrorRecord(
                code=ErrorCode.INVALID_API_KEY,
                message="Your AI provider key appears to be invalid or expired.",
                severity=Severity.ERROR,
                action=ErrorAction(
                    label="Update in Settings", kind=ActionKind.OPEN_SETTINGS,
                ),
            )

        if (
            status == 429
            or _has_any(code, _RATE_LIMIT_CODES)
            or any(p.search(message) for p in _RATE_LIMIT_PATTERNS)
        ):
            return ErrorRecord(
                code=ErrorCode.RATE_LIMITED,
                message="AI provider is temporarily busy. Please wait a moment.",
                severity=Severity.WARNING,
                retryable=True,
                action=_retry_action(),
            )

        if _has_any(code, _QUOTA_CODES) or signal.get("limitReached"):
            used = signal.get("used") or "?"
            limit = signal.get("limit") or "?"
            return ErrorRecord(
                code=ErrorCode.QUOTA_EXCEEDED,
                message=f"Monthly AI limit reached ({used}/{limit} requests).",
                severity=Severity.ERROR,
                action=ErrorAction(label="Upgrade Plan", kind=ActionKind.UPGRADE_PLAN),
            )

        if _has_any(code, _NO_PROVIDER_CODES) or _has_any(lower, _NO_PROVIDER_PHRASES):
            return ErrorRecord(
                code=ErrorCode.NO_PROVIDERS,
                message="No AI provider connected yet.",
                severity=Severity.WARNING,
                action=ErrorAction(label="Add Provider", kind=ActionKind.ADD_PROVIDER),
            )

        if _has_any(code, _ALL_FAILED_CODES) or signal.get("isAllProvidersFailed"):
            return self._all_providers_failed(signal)

        network = self._network_record(signal, lower)
        if network is not None:
            return network

        return ErrorRecord(
            code=ErrorCode.UNKNOWN,
            message=message or "Something went wrong. Please try again.",
            severity=Severity.ERROR,
            retryable=True,
            action=ErrorAction(label="Try Again", kind=ActionKind.RETRY),
        )

    def _all_providers_failed(self, signal: ErrorSignal) -> ErrorRecord:
        raw = signal.get("providers") or []
        failures = [
            ProviderFailure.from_dict(p) for p in raw if isinstance(p, dict)
        ]
        headline = select_headline(failures)
        if headline is not None and headline.message:
            message = headline.message
        else:
            message = signal.message or ALL_FAILED_MESSAGE

        plan = signal.get("fallbackPlan")
        if not isinstance(plan, dict) or not plan:
            plan = None

        return ErrorRecord(
            code=ErrorCode.ALL_PROVIDERS_FAILED,
            message=message,
            severity=Severity.INFO if plan else Severity.WARNING,
            retryable=True,
            action=_retry_action(),
            providers=failures,
            fallback_plan=plan,
        )

    @staticmethod
    def _network_record(signal: ErrorSignal, lower: str) -> ErrorRecord | None:
        exc = signal.exception
        timed_out = (
            signal.timed_out
            or isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError))
            or (exc is None and _has_any(lower, _TIMEOUT_PHRASES))
        )
        if timed_out:
            return ErrorRecord(
                code=ErrorCode.TIMEOUT,
                message="AI response timed out. Please try again.",
                severity=Severity.WARNING,
                retryable=True,
                action=_retry_action(),
            )
        if isinstance(exc, (httpx.TransportError, OSError)) or _has_any(
            lower, _NETWORK_PHRASES,
        ):
            return ErrorRecord(
                code=ErrorCode.NETWORK_ERROR,
                message="Could not reach the AI service. Please check your connection.",
                severity=Severity.WARNING,
                retryable=True,
                action=_retry_action(),
            )
        return None
