"""
Tests for usage reporting
"""

from datetime import datetime, timezone

import pytest
from ledger import resolve_period


NOW = datetime(2025, 3, 15, 13, 45, tzinfo=timezone.utc)


class TestResolvePeriod:
    """Test period keys to whole UTC days."""

    def test_seven_days_includes_today(self):
        period = resolve_period("7d", now=NOW)

        assert period.start == datetime(2025, 3, 9, tzinfo=timezone.utc)
        assert period.end.date() == NOW.date()
        assert (period.end.hour, period.end.minute) == (23, 59)

    def test_thirty_and_ninety_days(self):
        assert resolve_period("30d", now=NOW).start == datetime(2025, 2, 14, tzinfo=timezone.utc)
        assert resolve_period("90d", now=NOW).start == datetime(2024, 12, 16, tzinfo=timezone.utc)

    def test_explicit_end(self):
        period = resolve_period("7d", end="2025-01-07", now=NOW)

        assert period.start == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_custom_period(self):
        period = resolve_period("custom", start="2025-03-01", end="2025-03-02")

        assert period.start == datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert period.end.date().isoformat() == "2025-03-02"

    def test_custom_requires_start(self):
        with pytest.raises(ValueError):
            resolve_period("custom", now=NOW)

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            resolve_period("1y", now=NOW)


class TestUsageReport:
    """Test per-member statistics."""

    def test_member_stats_for_organization(self, ledger):
        ledger.debit("alice", "video_export", organization_id="acme")
        ledger.debit("alice", "ai_text_chat", organization_id="acme")
        ledger.debit("bob", "ai_text_chat", organization_id="acme")
        ledger.debit("bob", "ai_text_chat", organization_id="acme")
        ledger.refund("bob", "ai_text_chat", organization_id="acme", reason="timeout")

        report = ledger.report("alice", organization_id="acme", period="7d")

        assert report["tenant_id"] == "organization:acme"
        members = {m["actor_id"]: m for m in report["members"]}
        assert [m["actor_id"] for m in report["members"]] == ["alice", "bob"]

        assert members["alice"]["debits"] == 2
        assert members["alice"]["net_credits"] == 11
        assert members["alice"]["feature_counts"] == {"video_export": 1, "ai_text_chat": 1}

        assert members["bob"]["debits"] == 2
        assert members["bob"]["refunds"] == 1
        assert members["bob"]["credits_refunded"] == 1
        assert members["bob"]["net_credits"] == 1
        assert members["bob"]["last_activity_at"] is not None

    def test_tenant_summary(self, ledger):
        ledger.debit("alice", "creative_download", quantity=3)
        ledger.refund("alice", "creative_download", reason="x")

        summary = ledger.report("alice")["summary"]

        assert summary["debits"] == 1
        assert summary["refunds"] == 1
        assert summary["credits_debited"] == 6
        assert summary["credits_refunded"] == 2
        assert summary["net_consumption"] == 4

    def test_period_excludes_old_usage(self, ledger):
        ledger.debit("alice", "ai_text_chat")

        report = ledger.report("alice", period="custom", start="2020-01-01", end="2020-01-31")

        assert report["members"] == []
        assert report["summary"]["debits"] == 1

    def test_empty_report(self, ledger):
        report = ledger.report("carol")

        assert report["members"] == []
        assert report["summary"]["net_consumption"] == 0
