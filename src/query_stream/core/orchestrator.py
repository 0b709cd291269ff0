"""QueryOrchestrator: one logical AI turn with retry and provider fallback.

    readiness → guard → provider chain → attempt ⟲ (next provider) → commit

The orchestrator owns the user message and the notices around a turn; the
per-attempt placeholder and stream belong to :class:`SessionRunner`.
Failures come back as ``Err`` records and intentional aborts as
``Cancelled``; nothing expected is raised past :meth:`ask`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import replace
from typing import Any, Awaitable, Callable

from query_stream import conversation as conv
from query_stream.config import QueryStreamConfig
from query_stream.conversation import Conversation
from query_stream.core.classifier import (
    ALL_FAILED_MESSAGE,
    ErrorClassifier,
    select_headline,
)
from query_stream.core.readiness import (
    DailyActionLedger,
    ReadinessGuard,
    ReadinessVariant,
)
from query_stream.core.router import ProviderChain, ProviderRouter, display_name
from query_stream.events.bus import EventBus
from query_stream.session.cancel import CancelToken
from query_stream.session.guard import SessionGuard
from query_stream.session.runner import SessionRunner
from query_stream.signals import SignalBuffer
from query_stream.stream.client import QueryRequest, StreamTransport
from query_stream.types import (
    ActionKind,
    CancelReason,
    Cancelled,
    Err,
    ErrorAction,
    ErrorCode,
    ErrorRecord,
    EventType,
    Message,
    Ok,
    ProviderFailure,
    Result,
    Role,
    Severity,
)

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Soft failure detection
# ---------------------------------------------------------------------------

# Provider refusals that arrive as ordinary answer text on a 200 stream.
_SOFT_FAILURE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"insufficient (quota|credits?|balance)", re.IGNORECASE),
    re.compile(r"(needs|add|purchase|out of) (more )?credits", re.IGNORECASE),
    re.compile(r"billing (is )?(required|details|issue|hard limit)", re.IGNORECASE),
    re.compile(r"exceeded your (current )?quota", re.IGNORECASE),
    re.compile(r"(invalid|incorrect|missing) api.?key", re.IGNORECASE),
    re.compile(r"api.?key (is )?(invalid|revoked|expired)", re.IGNORECASE),
    re.compile(r"rate.?limit(ed)? (exceeded|reached)", re.IGNORECASE),
    re.compile(r"\b(401|403)\b.{0,40}(forbidden|unauthorized|error)", re.IGNORECASE),
    re.compile(r"provider (returned an )?error", re.IGNORECASE),
    re.compile(r"(unable|failed) to (process|complete) (your|this|the) request", re.IGNORECASE),
    re.compile(r"model .{0,40} (does not exist|not found)", re.IGNORECASE),
]

# A genuine answer can mention an API key in passing; only short texts count.
_SOFT_FAILURE_MAX_LENGTH = 600


def is_provider_error_response(content: str) -> bool:
    """Return True if *content* reads like a provider refusal, not an answer."""
    text = (content or "").strip()
    if not text or len(text) > _SOFT_FAILURE_MAX_LENGTH:
        return False
    return any(p.search(text) for p in _SOFT_FAILURE_PATTERNS)


def fallback_notice(original: str | None, used: str | None) -> str:
    return (
        f"{display_name(original)} is unavailable right now, "
        f"so I answered using {display_name(used)} instead."
    )


def all_failed_message(attempted: list[str]) -> str:
    if len(attempted) == 1:
        return (
            f"I'm unable to connect to {display_name(attempted[0])} right now. "
            "Please check your API key or try again in a few minutes."
        )
    return ALL_FAILED_MESSAGE


# Failures that no other provider can fix: stop the fallback loop.
_TERMINAL_CODES = frozenset({
    ErrorCode.AUTH_EXPIRED,
    ErrorCode.QUOTA_EXCEEDED,
    ErrorCode.CONFIG_ERROR,
    ErrorCode.NO_PROVIDERS,
    ErrorCode.ALL_PROVIDERS_FAILED,
    ErrorCode.AI_DISABLED,
})


def _next_eligible(
    ordered: list[str | None], cursor: int, excluded: set[str | None],
) -> tuple[int, str | None] | None:
    """Next provider at or after *cursor* (cycling) that is not excluded.

    Returns ``(next_cursor, provider)`` or ``None`` when every provider is
    excluded.
    """
    for step in range(len(ordered)):
        index = (cursor + step) % len(ordered)
        if ordered[index] not in excluded:
            return index + 1, ordered[index]
    return None


def _all_failed(
    attempted: list[str], failures: list[ProviderFailure], last: ErrorRecord,
) -> ErrorRecord:
    """Aggregate record after every attempted provider failed."""
    headline = select_headline(failures)
    if (
        headline is not None and headline.message
        and headline.code is not ErrorCode.UNKNOWN
    ):
        message = headline.message
    else:
        message = all_failed_message(attempted)
    return ErrorRecord(
        code=ErrorCode.ALL_PROVIDERS_FAILED,
        message=message,
        severity=Severity.INFO if last.fallback_plan else Severity.WARNING,
        retryable=True,
        action=ErrorAction(label="Retry", kind=ActionKind.RETRY),
        status=last.status,
        providers=failures,
        fallback_plan=last.fallback_plan,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class QueryOrchestrator:
    """Runs AI turns for one conversation.

    Parameters
    ----------
    transport:
        Authenticated streaming transport.
    config:
        Loaded configuration (retry bounds, timeouts, providers).
    conversation:
        Message store shared with the UI.  A fresh one is created if omitted.
    event_bus:
        Event bus for notices and lifecycle events (optional).
    router:
        Provider chain resolver.  Defaults to the configured static chain
        with ``transport.fetch_providers`` for organization lookups.
    readiness:
        Pre-flight checks (optional).
    signals:
        Behavioral signal buffer drained into each request (optional).
    sleep:
        Backoff sleep, replaceable in tests.
    """

    def __init__(
        self,
        transport: StreamTransport,
        config: QueryStreamConfig | None = None,
        conversation: Conversation | None = None,
        event_bus: EventBus | None = None,
        router: ProviderRouter | None = None,
        readiness: ReadinessGuard | None = None,
        signals: SignalBuffer | None = None,
        classifier: ErrorClassifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or QueryStreamConfig()
        self._transport = transport
        self.conversation = conversation or Conversation()
        self.event_bus = event_bus or EventBus()
        self._router = router or ProviderRouter(
            source=transport.fetch_providers,
            static=ProviderChain.build(
                self._config.providers.connected, self._config.providers.primary,
            ),
        )
        self.readiness = readiness or ReadinessGuard(
            DailyActionLedger(self._config.daily_actions),
        )
        self.signals = signals or SignalBuffer(self._config.max_pending_signals)
        self._runner = SessionRunner(
            transport, self.conversation, self._config, classifier,
        )
        self._guard = SessionGuard()
        self._sleep = sleep

    @property
    def busy(self) -> bool:
        return self._guard.active

    async def ask(
        self,
        message: str,
        *,
        deals: list[dict[str, Any]] | None = None,
        action_id: str | None = None,
        organization_id: str | None = None,
        online: bool = True,
        variant: ReadinessVariant | str | None = None,
        supersede: bool = False,
    ) -> Result | None:
        """Run one AI turn for *message*.

        Returns
        -------
        Ok | Err | Cancelled | None
            ``None`` when another turn is in flight and ``supersede`` is
            False; nothing was changed in that case.
        """
        blocked = self.readiness.check(
            online=online, variant=variant, action_id=action_id,
        )
        if blocked is not None:
            self._bind_retry(blocked, message, deals, action_id, organization_id)
            await self._emit(EventType.SESSION_ERROR, {"code": blocked.code.value})
            return Err(blocked)

        token = CancelToken()
        if not self._guard.begin(token, supersede=supersede):
            return None

        try:
            return await self._run_turn(
                token, message, deals or [], action_id, organization_id,
            )
        finally:
            self._guard.end(token)

    def cancel(self, reason: CancelReason = CancelReason.USER) -> bool:
        """Abort the turn in flight.  The outcome is a silent ``Cancelled``."""
        return self._guard.cancel(reason)

    async def close(self) -> None:
        self.cancel(CancelReason.UNMOUNT)
        await self._transport.aclose()

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        turn_token: CancelToken,
        text: str,
        deals: list[dict[str, Any]],
        action_id: str | None,
        organization_id: str | None,
    ) -> Result:
        history = self.conversation.history(self._config.stream.history_limit)
        user_message = Message(role=Role.USER, content=text)
        self.conversation.apply(conv.append(user_message))

        request = QueryRequest(
            message=text,
            deals=deals,
            conversation_history=history,
            ai_signals=self.signals.consume(),
            action_id=action_id,
        )
        await self._emit(EventType.SESSION_STARTED, {
            "message": text[:200], "action_id": action_id,
        })

        chain = await self._router.resolve(organization_id)
        if isinstance(chain, ErrorRecord):
            return await self._fail(chain, user_message, request, organization_id)
        if organization_id is not None and not chain:
            return await self._fail(
                ErrorRecord(
                    code=ErrorCode.NO_PROVIDERS,
                    message="No AI provider connected yet.",
                    severity=Severity.WARNING,
                    action=ErrorAction(label="Add Provider", kind=ActionKind.ADD_PROVIDER),
                ),
                user_message, request, organization_id,
            )

        result, committed = await self._attempt_chain(turn_token, request, chain)

        if isinstance(result, Cancelled):
            if not committed:
                self.conversation.apply(conv.remove(user_message.id))
            await self._emit(EventType.SESSION_CANCELLED, {
                "reason": result.reason.value,
            })
            return result
        if isinstance(result, Err):
            return await self._fail(result.error, user_message, request, organization_id)
        return await self._complete(result, chain, action_id)

    async def _attempt_chain(
        self,
        turn_token: CancelToken,
        request: QueryRequest,
        chain: ProviderChain,
    ) -> tuple[Result, bool]:
        """Try providers in order until one answers or attempts run out.

        A provider that failed with a non-retryable error is skipped for the
        rest of the turn.  Returns the outcome and whether any content was
        committed.
        """
        ordered: list[str | None] = list(chain.ordered()) or [None]
        max_attempts = max(1, self._config.retry.max_attempts)
        excluded: set[str | None] = set()
        failures: dict[str, ProviderFailure] = {}
        attempted: list[str] = []
        last: ErrorRecord | None = None
        previous: str | None = None
        cursor = 0
        committed = False

        for attempt in range(max_attempts):
            picked = _next_eligible(ordered, cursor, excluded)
            if picked is None:
                _logger.info("No eligible provider left after %d attempt(s)", attempt)
                break
            cursor, provider = picked

            if attempt > 0:
                delay = self._config.retry.delay_for(attempt - 1)
                _logger.info(
                    "Retrying in %.2fs with %s (attempt %d/%d)",
                    delay, provider or "default provider", attempt + 1, max_attempts,
                )
                await self._sleep(delay)
                if turn_token.cancelled:
                    return Cancelled(turn_token.reason), committed
                if provider and provider != previous:
                    await self._emit(EventType.PROVIDER_FALLBACK, {
                        "from": previous, "to": provider,
                        "code": last.code.value if last else None,
                    })

            request.preferred_provider = provider
            if provider and provider not in attempted:
                attempted.append(provider)
            previous = provider

            # Cancelling the turn reaches whichever attempt is running; an
            # attempt's own timeout does not end the turn.
            result, session = await self._runner.run(request, turn_token.child())
            committed = committed or session.committed

            if isinstance(result, (Ok, Cancelled)):
                return result, committed

            last = result.error
            _logger.warning(
                "Attempt %d with %s failed: %s",
                attempt + 1, provider or "default provider", last.code.value,
            )
            if last.code in _TERMINAL_CODES:
                return result, committed
            if provider:
                failures[provider] = ProviderFailure(
                    provider=provider, code=last.code, message=last.message,
                )
            if not last.retryable:
                excluded.add(provider)

        if last is None:
            raise RuntimeError("attempt loop finished without an attempt")
        if len(attempted) > 1:
            return Err(_all_failed(attempted, list(failures.values()), last)), committed
        return Err(last), committed

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _complete(
        self, result: Ok, chain: ProviderChain, action_id: str | None,
    ) -> Result:
        message = result.message
        soft_failure = is_provider_error_response(message.content)
        if soft_failure:
            _logger.warning(
                "Provider %s answered with an error message", message.provider,
            )
            message = replace(message, is_provider_error=True)
            self.conversation.apply(conv.replace_message(message.id, message))
            await self._emit(EventType.PROVIDER_SOFT_FAILURE, {
                "provider": message.provider, "message_id": message.id,
            })
            if len(chain) > 1:
                await self._emit(EventType.NOTICE, {
                    "severity": Severity.INFO.value,
                    "message": (
                        "This AI provider is temporarily unavailable. "
                        "Try again to use another provider."
                    ),
                })
        else:
            self.readiness.ledger.mark(action_id)

        used = message.provider
        if (
            chain.primary and used
            and used not in (chain.primary, display_name(chain.primary))
        ):
            await self._emit(EventType.NOTICE, {
                "severity": Severity.INFO.value,
                "message": fallback_notice(chain.primary, used),
            })

        await self._emit(EventType.SESSION_COMPLETED, {
            "message_id": message.id,
            "provider": message.provider,
            "length": len(message.content),
            "soft_failure": soft_failure,
        })
        return Ok(message)

    async def _fail(
        self,
        error: ErrorRecord,
        user_message: Message,
        request: QueryRequest,
        organization_id: str | None,
    ) -> Err:
        self.conversation.apply(conv.remove(user_message.id))
        self._bind_retry(
            error, request.message, request.deals, request.action_id, organization_id,
        )
        _logger.warning("Turn failed: %s: %s", error.code.value, error.message)
        await self._emit(EventType.SESSION_ERROR, {
            "code": error.code.value,
            "message": error.message,
            "retryable": error.retryable,
        })
        return Err(error)

    def _bind_retry(
        self,
        error: ErrorRecord,
        message: str,
        deals: list[dict[str, Any]] | None,
        action_id: str | None,
        organization_id: str | None,
    ) -> None:
        """Point a retry action at a fresh turn for the same request."""
        if error.action is None or error.action.kind is not ActionKind.RETRY:
            return
        error.action.handler = lambda: self.ask(
            message,
            deals=deals,
            action_id=action_id,
            organization_id=organization_id,
        )

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self.event_bus.publish(event_type, **data)
