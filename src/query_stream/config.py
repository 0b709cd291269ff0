"""Configuration for query-stream.

Config discovery (first match wins):
  1. explicit path (``--config`` flag)
  2. ``./query_stream.yaml``
  3. ``~/.config/query-stream/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a config file exists but cannot be parsed."""


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class EndpointSpec:
    base_url: str = "http://localhost:8888"
    stream_path: str = "/.netlify/functions/ai-assistant-stream"
    providers_path: str = "/.netlify/functions/get-ai-providers"


@dataclass
class TimeoutSpec:
    """Timeouts in seconds.

    ``stream`` is an idle timeout: it is re-armed whenever a chunk arrives.
    """

    connect: float = 10
    stream: float = 60
    request: float = 30


@dataclass
class StreamSpec:
    throttle_interval: float = 0.035
    history_limit: int = 12


@dataclass
class RetrySpec:
    """Bounds for the fallback loop.

    ``max_attempts`` counts every attempt across the provider chain.
    """

    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 3.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff for a zero-based attempt index."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)


@dataclass
class ProvidersSpec:
    connected: list[str] = field(default_factory=list)
    primary: str | None = None


@dataclass
class DailyActionsSpec:
    ledger_path: str | None = None
    once_per_day: list[str] = field(default_factory=lambda: ["plan_my_day"])


@dataclass
class QueryStreamConfig:
    """Top-level config."""

    endpoint: EndpointSpec = field(default_factory=EndpointSpec)
    timeouts: TimeoutSpec = field(default_factory=TimeoutSpec)
    stream: StreamSpec = field(default_factory=StreamSpec)
    retry: RetrySpec = field(default_factory=RetrySpec)
    providers: ProvidersSpec = field(default_factory=ProvidersSpec)
    daily_actions: DailyActionsSpec = field(default_factory=DailyActionsSpec)
    max_pending_signals: int = 20


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./query_stream.yaml"),
    Path.home() / ".config" / "query-stream" / "config.yaml",
]


def _section(cls: type, raw: Any) -> Any:
    """Build a dataclass section, ignoring unknown and null keys."""
    if not isinstance(raw, dict):
        return cls()
    known = {
        k: v for k, v in raw.items()
        if v is not None and k in cls.__dataclass_fields__
    }
    unknown = set(raw) - set(cls.__dataclass_fields__)
    if unknown:
        _logger.warning(
            "Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)),
        )
    return cls(**known)


def _parse(raw: dict[str, Any]) -> QueryStreamConfig:
    signals = raw.get("signals") or {}
    return QueryStreamConfig(
        endpoint=_section(EndpointSpec, raw.get("endpoint")),
        timeouts=_section(TimeoutSpec, raw.get("timeouts")),
        stream=_section(StreamSpec, raw.get("stream")),
        retry=_section(RetrySpec, raw.get("retry")),
        providers=_section(ProvidersSpec, raw.get("providers")),
        daily_actions=_section(DailyActionsSpec, raw.get("daily_actions")),
        max_pending_signals=signals.get("max_pending", 20),
    )


def load_config(path: str | Path | None = None) -> QueryStreamConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Raises
    ------
    ConfigError
        If the selected file is not valid YAML or not a mapping.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return QueryStreamConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return QueryStreamConfig()

    _logger.info("Loading config from %s", config_path)
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")

    return _parse(raw)
