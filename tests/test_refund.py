"""
Tests for the Refund Engine

Refunds run on failure paths: they report their own failures and return
None rather than raising over the original error.
"""

import pytest
from ledger import BackgroundRemovalUsage, ChatUsage, FeatureKey, StorageFailure


class TestRefund:
    """Test compensating credit-backs."""

    def test_refund_restores_debit(self, ledger):
        ledger.debit("alice", FeatureKey.BACKGROUND_REMOVAL)

        result = ledger.refund("alice", FeatureKey.BACKGROUND_REMOVAL, reason="provider error")

        assert result.credits == 3
        assert result.credits_remaining == 100
        assert ledger.balance("alice").credits == 100

    def test_refund_logs_negative_entry(self, ledger):
        details = BackgroundRemovalUsage(original_url="https://cdn.example/a.png")
        ledger.debit("alice", "background_removal", details=details)
        result = ledger.refund("alice", "background_removal", reason="timeout", details=details)

        entries = {e.record.kind: e for e in ledger.history("alice")}
        refund = entries["refund"]

        assert refund.record.record_id == result.record_id
        assert refund.credits == -3
        assert refund.is_refund
        assert refund.reason == "timeout"
        assert refund.details == details
        assert refund.record.metadata["original_url"] == "https://cdn.example/a.png"

    def test_refund_without_reason(self, ledger):
        ledger.debit("alice", "ai_text_chat")
        ledger.refund("alice", "ai_text_chat")

        refund = [e for e in ledger.history("alice") if e.is_refund][0]
        assert refund.record.metadata == {"refund": True, "reason": None}

    def test_refund_quantity_matches_debit(self, ledger):
        ledger.debit("alice", "ai_image_generation", quantity=3)
        result = ledger.refund("alice", "ai_image_generation", quantity=3)

        assert result.credits == 15
        assert result.credits_remaining == 100

    def test_organization_refund(self, ledger):
        ledger.debit("bob", "video_export", organization_id="acme")
        result = ledger.refund("bob", "video_export", organization_id="acme", reason="render failed")

        assert result.tenant_id == "organization:acme"
        assert result.credits_remaining == 50

    def test_unknown_actor_returns_none(self, ledger):
        """Resolution failures are logged, not raised."""
        assert ledger.refund("mallory", "ai_text_chat", reason="x") is None

    def test_non_member_returns_none(self, ledger):
        assert ledger.refund("carol", "ai_text_chat", organization_id="acme") is None
        assert ledger.balance("alice", organization_id="acme").credits == 50

    def test_storage_failure_returns_none(self, ledger, monkeypatch):
        ledger.debit("alice", "ai_text_chat")

        def broken(conn, balance_id, amount):
            raise StorageFailure("disk full")

        monkeypatch.setattr(ledger.balances, "credit", broken)

        assert ledger.refund("alice", "ai_text_chat", reason="x") is None
        assert ledger.balance("alice").credits == 99
        assert [e.record.kind for e in ledger.history("alice")] == ["debit"]

    def test_refund_after_plan_retired(self, ledger, directory):
        ledger.debit("bob", "video_export")
        directory.add_user("bob", plan="legacy")

        result = ledger.refund("bob", "video_export", reason="render failed")

        assert result is not None
        assert result.credits_remaining == 5000

    def test_programming_errors_still_raise(self, ledger):
        with pytest.raises(ValueError):
            ledger.refund("alice", "warp_drive")
        with pytest.raises(ValueError):
            ledger.refund("alice", "video_export", details=ChatUsage(provider="p", model="m"))

    def test_debit_then_refund_is_identity(self, ledger):
        """A debit and its refund leave the balance where it started."""
        for feature in FeatureKey:
            before = ledger.balance("bob").credits
            ledger.debit("bob", feature, quantity=2)
            ledger.refund("bob", feature, quantity=2, reason="rollback")

            assert ledger.balance("bob").credits == before
