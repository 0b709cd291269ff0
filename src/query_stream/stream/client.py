"""HTTP transport for the streaming AI endpoint.

Builds the authenticated request, performs the call with
``httpx.AsyncClient`` and decides, from the declared content type alone,
whether the response is a stream or a JSON document.  A response body is
read exactly once, by exactly one consumer: once a JSON read has started the
stream path is closed, and vice versa.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, Union

import httpx

from query_stream.config import QueryStreamConfig
from query_stream.core.classifier import ErrorClassifier, ErrorSignal
from query_stream.types import ErrorRecord

_logger = logging.getLogger(__name__)

_STREAM_TYPES = (
    "text/event-stream",
    "text/plain",
    "application/x-ndjson",
    "application/octet-stream",
)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class TokenProvider(Protocol):
    """Source of the bearer token (session management lives elsewhere)."""

    async def refresh(self) -> None:
        """Refresh the session if it is close to expiry.

        Raises :class:`~query_stream.types.TokenRefreshError` when the
        session cannot be renewed.
        """
        ...

    async def access_token(self) -> str | None:
        ...


class StaticTokenProvider:
    """Token provider for a fixed token (CLI, tests)."""

    def __init__(self, token: str | None) -> None:
        self._token = token

    async def refresh(self) -> None:
        return None

    async def access_token(self) -> str | None:
        return self._token


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

def project_deal(deal: dict[str, Any]) -> dict[str, Any]:
    """Minimal deal projection sent to the server."""
    return {
        "stage": deal.get("stage"),
        "status": deal.get("status"),
        "value": deal.get("value") or 0,
    }


@dataclass
class QueryRequest:
    """Everything needed for one AI turn.

    ``conversation_history`` must already exclude chart-bearing entries;
    it is truncated to the configured limit when serialized.
    ``action_id`` names a quick action (e.g. ``plan_my_day``) and stays local.
    """

    message: str
    deals: list[dict[str, Any]] = field(default_factory=list)
    conversation_history: list[dict[str, str]] = field(default_factory=list)
    ai_signals: list[dict[str, Any]] = field(default_factory=list)
    preferred_provider: str | None = None
    action_id: str | None = None

    def to_payload(self, history_limit: int = 12) -> dict[str, Any]:
        history = [
            {"role": h["role"], "content": h["content"]}
            for h in self.conversation_history
            if not h.get("chartData")
        ]
        payload: dict[str, Any] = {
            "message": self.message,
            "deals": [project_deal(d) for d in self.deals],
            "conversationHistory": history[-history_limit:] if history_limit > 0 else [],
            "aiSignals": list(self.ai_signals),
        }
        if self.preferred_provider:
            payload["preferredProvider"] = self.preferred_provider
        return payload


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclass
class StreamStarted:
    """2xx streaming response; the body has not been touched yet."""

    response: httpx.Response

    def chunks(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()


@dataclass
class JsonError:
    error: ErrorRecord


@dataclass
class JsonUnexpected:
    raw: Any


TransportOutcome = Union[StreamStarted, JsonError, JsonUnexpected]


def _media_type(response: httpx.Response) -> str:
    return response.headers.get("content-type", "").split(";")[0].strip().lower()


def _is_json(media_type: str) -> bool:
    return media_type == "application/json" or media_type.endswith("+json")


def _is_stream(media_type: str) -> bool:
    return not media_type or media_type in _STREAM_TYPES


async def _read_json(response: httpx.Response) -> Any:
    """Read the whole body once and parse it as JSON, tolerating junk."""
    raw = await response.aread()
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        _logger.debug("Non-JSON body (%d bytes) on %d", len(raw), response.status_code)
        return None


def _looks_like_error(body: Any) -> bool:
    return isinstance(body, dict) and (
        body.get("ok") is False or "error" in body or "code" in body
    )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class StreamTransport:
    """Authenticated client for the streaming endpoint."""

    def __init__(
        self,
        config: QueryStreamConfig,
        tokens: TokenProvider,
        classifier: ErrorClassifier | None = None,
        client: httpx.AsyncClient | None = None,
        cookies: dict[str, str] | None = None,
    ) -> None:
        self._config = config
        self._tokens = tokens
        self._classifier = classifier or ErrorClassifier()
        timeouts = config.timeouts
        # Reads are bounded by the session's idle timer, not by httpx.
        self._client = client or httpx.AsyncClient(
            base_url=config.endpoint.base_url,
            cookies=cookies,
            timeout=httpx.Timeout(timeouts.request, connect=timeouts.connect, read=None),
        )

    async def _auth_headers(self) -> dict[str, str]:
        await self._tokens.refresh()
        token = await self._tokens.access_token()
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            _logger.debug("No access token; relying on cookie auth")
        return headers

    @asynccontextmanager
    async def open(self, request: QueryRequest) -> AsyncIterator[TransportOutcome]:
        """Send *request* and yield its outcome.

        The response stays open for the duration of the ``async with`` block
        so a :class:`StreamStarted` outcome can be read incrementally.
        """
        headers = await self._auth_headers()
        payload = request.to_payload(self._config.stream.history_limit)
        _logger.debug(
            "POST %s (history=%d, deals=%d, provider=%s)",
            self._config.endpoint.stream_path,
            len(payload["conversationHistory"]), len(payload["deals"]),
            request.preferred_provider or "default",
        )
        async with self._client.stream(
            "POST", self._config.endpoint.stream_path, json=payload, headers=headers,
        ) as response:
            yield await self._dispatch(response)

    async def _dispatch(self, response: httpx.Response) -> TransportOutcome:
        media_type = _media_type(response)

        if not response.is_success:
            body = await _read_json(response)
            _logger.warning("Stream endpoint returned %d", response.status_code)
            return JsonError(self._classifier.classify(
                ErrorSignal.from_http(response.status_code, body),
            ))

        if _is_json(media_type):
            # Authoritative non-streaming result; never falls through to
            # stream consumption.
            body = await _read_json(response)
            if _looks_like_error(body):
                return JsonError(self._classifier.classify(
                    ErrorSignal(status=response.status_code, body=body),
                ))
            return JsonUnexpected(body)

        if _is_stream(media_type):
            return StreamStarted(response)

        raw = (await response.aread()).decode("utf-8", errors="replace")
        return JsonUnexpected(raw)

    async def fetch_providers(self, organization_id: str) -> list[str] | ErrorRecord:
        """Connected provider ids for an organization.

        Auth failures come back as an ``ErrorRecord``; any other failure is
        logged and yields an empty list.
        """
        if not organization_id:
            _logger.warning("No organization id; no providers to fetch")
            return []
        try:
            headers = await self._auth_headers()
            response = await self._client.post(
                self._config.endpoint.providers_path,
                json={"organization_id": organization_id},
                headers=headers,
            )
        except (httpx.HTTPError, OSError) as e:
            _logger.warning("Error fetching providers: %s", e)
            return []

        if response.status_code in (401, 403):
            return self._classifier.classify(
                ErrorSignal.from_http(response.status_code, None),
            )
        if not response.is_success:
            _logger.warning("Failed to fetch providers: %d", response.status_code)
            return []

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            _logger.warning("Provider list is not JSON")
            return []

        providers: list[str] = []
        for entry in (data or {}).get("providers", []):
            if isinstance(entry, str):
                providers.append(entry)
            elif isinstance(entry, dict):
                name = entry.get("provider_type") or entry.get("provider")
                if name:
                    providers.append(str(name))
        return providers

    async def aclose(self) -> None:
        await self._client.aclose()
