"""
Tests for the CreditLedger facade

End-to-end flows: debit, refund, idempotent replays and the charge
helper that wraps billable work.
"""

import pytest
from ledger import (
    ChargeState,
    CreditLedger,
    FeatureKey,
    InsufficientCredits,
    LedgerConfig,
)
from persistence import Database


class TestLedgerScenario:
    """Walk one balance from seed to exhaustion and back."""

    def test_debit_until_exhausted_then_refund(self, seeded_ledger):
        """Seed 10, chat costs 3: three debits leave 1, the fourth is refused."""
        remaining = [seeded_ledger.debit("u-1", "ai_text_chat").credits_remaining for _ in range(3)]
        assert remaining == [7, 4, 1]

        with pytest.raises(InsufficientCredits) as exc:
            seeded_ledger.debit("u-1", "ai_text_chat")
        assert (exc.value.required, exc.value.available) == (3, 1)

        result = seeded_ledger.refund("u-1", "ai_text_chat", reason="provider error")
        assert result.credits_remaining == 4

        entries = seeded_ledger.history("u-1")
        assert len(entries) == 4
        assert sorted(e.credits for e in entries) == [-3, 3, 3, 3]

    def test_balance_matches_audit_log(self, seeded_ledger, memory_db):
        """Balance is always seed minus the signed sum of usage records."""
        seeded_ledger.debit("u-1", "ai_text_chat")
        seeded_ledger.debit("u-1", "creative_download", quantity=2)
        seeded_ledger.refund("u-1", "creative_download", reason="export failed")
        with pytest.raises(InsufficientCredits):
            seeded_ledger.debit("u-1", "video_export")
        seeded_ledger.debit("u-1", "social_media_post")

        summary = seeded_ledger.report("u-1")["summary"]
        assert seeded_ledger.balance("u-1").credits == 10 - summary["net_consumption"]

    def test_balance_snapshot_provisions_lazily(self, seeded_ledger):
        balance = seeded_ledger.balance("new-user")

        assert balance.credits == 10
        assert balance.refill_amount == 10
        assert balance.tenant_kind == "individual"
        assert seeded_ledger.history("new-user") == []


class TestIdempotency:
    """Test replay protection on debit and refund."""

    def test_repeated_debit_is_replayed(self, ledger):
        first = ledger.debit("alice", "video_export", idempotency_key="req-1")
        second = ledger.debit("alice", "video_export", idempotency_key="req-1")

        assert second.replayed
        assert second.record_id == first.record_id
        assert second.credits == 10
        assert second.credits_remaining == 90
        assert ledger.balance("alice").credits == 90
        assert len(ledger.history("alice")) == 1

    def test_distinct_keys_are_distinct_debits(self, ledger):
        ledger.debit("alice", "video_export", idempotency_key="req-1")
        ledger.debit("alice", "video_export", idempotency_key="req-2")

        assert ledger.balance("alice").credits == 80

    def test_keys_are_scoped_per_tenant(self, ledger):
        ledger.debit("alice", "ai_text_chat", idempotency_key="req-1")
        result = ledger.debit("bob", "ai_text_chat", idempotency_key="req-1")

        assert not result.replayed

    def test_refund_shares_key_with_its_debit(self, ledger):
        ledger.debit("alice", "video_export", idempotency_key="req-1")
        first = ledger.refund("alice", "video_export", reason="failed", idempotency_key="req-1")
        second = ledger.refund("alice", "video_export", reason="failed", idempotency_key="req-1")

        assert not first.replayed
        assert second.replayed
        assert second.record_id == first.record_id
        assert ledger.balance("alice").credits == 100

    def test_replayed_refund_reports_stored_amount(self, ledger):
        ledger.debit("alice", "video_export", idempotency_key="req-1")
        ledger.refund("alice", "video_export", idempotency_key="req-1")

        replay = ledger.refund("alice", "video_export", quantity=3, idempotency_key="req-1")
        debit_replay = ledger.debit("alice", "video_export", quantity=3, idempotency_key="req-1")

        assert replay.replayed
        assert replay.credits == 10
        assert debit_replay.credits == 10
        assert ledger.balance("alice").credits == 100

    def test_rejected_debit_does_not_consume_key(self, ledger):
        ledger.debit("alice", "video_export", quantity=10)

        with pytest.raises(InsufficientCredits):
            ledger.debit("alice", "ai_text_chat", idempotency_key="req-9")

        ledger.refund("alice", "video_export")
        result = ledger.debit("alice", "ai_text_chat", idempotency_key="req-9")
        assert not result.replayed


class TestCharge:
    """Test the debit/work/refund lifecycle."""

    def test_clean_exit_completes(self, ledger):
        with ledger.charge("alice", FeatureKey.AI_IMAGE_GENERATION) as charge:
            assert charge.state is ChargeState.DEBITED
            assert charge.credits_remaining == 95

        assert charge.state is ChargeState.COMPLETED
        assert charge.refund is None
        assert ledger.balance("alice").credits == 95

    def test_failure_refunds_and_reraises(self, ledger):
        with pytest.raises(ConnectionError):
            with ledger.charge("alice", "ai_image_generation") as charge:
                raise ConnectionError("provider unavailable")

        assert charge.state is ChargeState.REFUNDED
        assert charge.credits_remaining == 100
        refund = [e for e in ledger.history("alice") if e.is_refund][0]
        assert refund.reason == "provider unavailable"

    def test_reason_falls_back_to_exception_type(self, ledger):
        with pytest.raises(TimeoutError):
            with ledger.charge("alice", "ai_text_chat"):
                raise TimeoutError()

        refund = [e for e in ledger.history("alice") if e.is_refund][0]
        assert refund.reason == "TimeoutError"

    def test_insufficient_credits_rejects_before_work(self, ledger):
        ran = []
        ledger.debit("alice", "video_export", quantity=10)

        with pytest.raises(InsufficientCredits):
            with ledger.charge("alice", "ai_text_chat"):
                ran.append(True)

        assert ran == []
        assert ledger.balance("alice").credits == 0

    def test_failed_refund_leaves_charge_debited(self, ledger, monkeypatch):
        monkeypatch.setattr(ledger.refunds, "refund", lambda *a, **kw: None)

        with pytest.raises(RuntimeError):
            with ledger.charge("alice", "ai_text_chat") as charge:
                raise RuntimeError("boom")

        assert charge.state is ChargeState.DEBITED
        assert ledger.balance("alice").credits == 99

    def test_charge_in_organization(self, ledger):
        with ledger.charge("bob", "video_export", organization_id="acme") as charge:
            pass

        assert charge.debit.tenant_id == "organization:acme"
        assert ledger.balance("alice", organization_id="acme").credits == 40

    def test_invalid_transition(self, ledger):
        with ledger.charge("alice", "ai_text_chat") as charge:
            pass

        with pytest.raises(RuntimeError):
            charge.transition(ChargeState.REFUNDED)


class TestFromConfig:
    """Test building a ledger from settings."""

    def test_from_config(self, tmp_path):
        config = LedgerConfig(
            database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
            feature_costs={"ai_text_chat": 4},
            plan_credits={"free": 12},
        )

        ledger = CreditLedger.from_config(config)
        result = ledger.debit("u-1", "ai_text_chat")

        assert result.credits_remaining == 8
        ledger.db.close()

    def test_ledgers_on_separate_databases_are_independent(self):
        first = CreditLedger(_memory())
        second = CreditLedger(_memory())

        first.debit("u-1", "video_export")

        assert first.balance("u-1").credits == 90
        assert second.balance("u-1").credits == 100


def _memory():
    db = Database("sqlite:///:memory:")
    db.initialize()
    return db
