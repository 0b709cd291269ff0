"""Tests for pre-flight readiness checks and the daily action ledger."""

from __future__ import annotations

import json
from datetime import date

import pytest

from query_stream.config import DailyActionsSpec
from query_stream.core.readiness import (
    DailyActionLedger,
    ReadinessGuard,
    ReadinessVariant,
)
from query_stream.types import ActionKind, ErrorCode, Severity


class _Clock:
    def __init__(self, day: date) -> None:
        self.day = day

    def __call__(self) -> date:
        return self.day


class TestReadinessGuard:
    def test_clear(self):
        assert ReadinessGuard().check(variant=ReadinessVariant.READY) is None

    def test_offline_is_retryable(self):
        record = ReadinessGuard().check(online=False)
        assert record.code == ErrorCode.OFFLINE
        assert record.retryable
        assert record.action.kind == ActionKind.RETRY

    @pytest.mark.parametrize("variant, code", [
        ("session_invalid", ErrorCode.AUTH_EXPIRED),
        ("connect_provider", ErrorCode.NO_PROVIDERS),
        ("config_error", ErrorCode.CONFIG_ERROR),
        ("disabled", ErrorCode.AI_DISABLED),
    ])
    def test_blocking_variants(self, variant: str, code: ErrorCode):
        record = ReadinessGuard().check(variant=variant)
        assert record.code == code
        assert not record.retryable

    @pytest.mark.parametrize("variant", ["loading", "health_warning", "degraded", "ready"])
    def test_non_blocking_variants(self, variant: str):
        assert ReadinessGuard().check(variant=variant) is None

    def test_unknown_variant_ignored(self):
        assert ReadinessGuard().check(variant="sideways") is None

    def test_records_are_independent_copies(self):
        guard = ReadinessGuard()
        first = guard.check(variant="connect_provider")
        first.action.handler = lambda: None
        second = guard.check(variant="connect_provider")
        assert second.action.handler is None

    def test_offline_checked_first(self):
        record = ReadinessGuard().check(online=False, variant="disabled")
        assert record.code == ErrorCode.OFFLINE

    def test_consumed_daily_action(self):
        ledger = DailyActionLedger()
        ledger.mark("plan_my_day")
        record = ReadinessGuard(ledger).check(action_id="plan_my_day")
        assert record.code == ErrorCode.QUOTA_EXCEEDED
        assert record.severity == Severity.INFO


class TestDailyActionLedger:
    def test_only_limited_actions_recorded(self):
        ledger = DailyActionLedger()
        ledger.mark("summarize")
        assert not ledger.consumed_today("summarize")
        assert not ledger.consumed_today(None)

    def test_resets_next_day(self):
        clock = _Clock(date(2026, 3, 2))
        ledger = DailyActionLedger(today=clock)
        ledger.mark("plan_my_day")
        assert ledger.consumed_today("plan_my_day")
        clock.day = date(2026, 3, 3)
        assert not ledger.consumed_today("plan_my_day")

    def test_persists_to_file(self, tmp_path):
        path = tmp_path / "nested" / "ledger.json"
        spec = DailyActionsSpec(ledger_path=str(path))
        clock = _Clock(date(2026, 3, 2))
        DailyActionLedger(spec, today=clock).mark("plan_my_day")

        assert json.loads(path.read_text()) == {"plan_my_day": "2026-03-02"}
        assert DailyActionLedger(spec, today=clock).consumed_today("plan_my_day")

    def test_corrupt_file_ignored(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text("{broken")
        ledger = DailyActionLedger(DailyActionsSpec(ledger_path=str(path)))
        assert not ledger.consumed_today("plan_my_day")
