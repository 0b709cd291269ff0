"""Provider chain resolution.

The chain is the ordered list of connected providers, primary first.  It is
fixed for the lifetime of a session and only re-resolved when the owning
organization changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from query_stream.types import ErrorRecord

_logger = logging.getLogger(__name__)

# Display names for provider ids; unknown ids are shown as-is.
PROVIDER_DISPLAY_NAMES: dict[str, str] = {
    "openai": "ChatGPT",
    "anthropic": "Claude",
    "google": "Gemini",
    "xai": "Grok",
}


def display_name(provider: str | None) -> str:
    if not provider:
        return "AI"
    return PROVIDER_DISPLAY_NAMES.get(provider.lower(), provider)


@dataclass(frozen=True)
class ProviderChain:
    """Immutable ordered provider list with a designated primary."""

    providers: tuple[str, ...] = ()
    primary: str | None = None

    @classmethod
    def build(cls, connected: list[str], primary: str | None = None) -> ProviderChain:
        seen: list[str] = []
        for p in connected:
            if p and p not in seen:
                seen.append(p)
        if primary not in seen:
            primary = seen[0] if seen else None
        return cls(providers=tuple(seen), primary=primary)

    def ordered(self) -> list[str]:
        """Primary first, remaining providers in connection order."""
        if self.primary is None:
            return list(self.providers)
        return [self.primary] + [p for p in self.providers if p != self.primary]

    def __len__(self) -> int:
        return len(self.providers)

    def __bool__(self) -> bool:
        return bool(self.providers)


ProviderSource = Callable[[str], Awaitable["list[str] | ErrorRecord"]]


class ProviderRouter:
    """Resolves and caches the provider chain per organization.

    Parameters
    ----------
    source:
        Async callable ``organization_id -> list[str] | ErrorRecord``
        (usually ``StreamTransport.fetch_providers``).
    static:
        Chain used when no organization is given (from config).
    """

    def __init__(
        self,
        source: ProviderSource | None = None,
        static: ProviderChain | None = None,
    ) -> None:
        self._source = source
        self._static = static or ProviderChain()
        self._org_id: str | None = None
        self._chain: ProviderChain | None = None

    @property
    def chain(self) -> ProviderChain:
        return self._chain if self._chain is not None else self._static

    async def resolve(
        self,
        organization_id: str | None = None,
        primary: str | None = None,
    ) -> ProviderChain | ErrorRecord:
        """Return the chain for *organization_id*, fetching it on change."""
        if organization_id is None or self._source is None:
            return self._static

        if self._chain is not None and organization_id == self._org_id:
            return self._chain

        result = await self._source(organization_id)
        if isinstance(result, ErrorRecord):
            return result

        self._org_id = organization_id
        self._chain = ProviderChain.build(result, primary or self._static.primary)
        _logger.info(
            "Provider chain for org %s: %s",
            organization_id, ", ".join(self._chain.ordered()) or "(none)",
        )
        return self._chain

    def invalidate(self) -> None:
        self._org_id = None
        self._chain = None
