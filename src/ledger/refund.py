"""
Refund/Compensation Engine

Credits back a debit whose downstream operation failed. The audit entry is
the negated amount tagged ``{"refund": true, "reason": ...}``.

Refunds run on failure paths, so they report their own failures through
the log and return None instead of raising over the original error.
"""

from typing import Optional
import structlog

from persistence.database import Database, StorageFailure
from persistence.models import UsageRecord
from persistence.repository import DuplicateOperation

from .audit import REFUND, UsageLog
from .balances import BalanceStore
from .deduction import LedgerResult
from .errors import LedgerError, TenantResolutionFailure
from .features import FeatureCostRegistry, FeatureKey, FeatureLike, as_feature
from .metadata import BaseUsage, check_details, refund_payload
from .tenants import TenantRef, TenantResolver

logger = structlog.get_logger()


class RefundEngine:
    """Atomically credits back and logs a compensating entry."""

    def __init__(
        self,
        db: Database,
        resolver: TenantResolver,
        costs: FeatureCostRegistry,
        balances: BalanceStore,
        usage: UsageLog,
    ):
        self.db = db
        self.resolver = resolver
        self.costs = costs
        self.balances = balances
        self.usage = usage

    def refund(
        self,
        actor_id: str,
        feature: FeatureLike,
        quantity: int = 1,
        organization_id: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[BaseUsage] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        # Programming errors still fail fast
        feature = as_feature(feature)
        check_details(details, feature)
        amount = self.costs.needed(feature, quantity)

        try:
            tenant = self.resolver.resolve(actor_id, organization_id)
            return self._apply(tenant, actor_id, feature, amount, reason, details, idempotency_key)
        except (LedgerError, StorageFailure, TenantResolutionFailure):
            logger.exception(
                "credit_refund_failed",
                actor_id=actor_id,
                organization_id=organization_id,
                feature=feature.value,
                credits=amount,
                reason=reason,
            )
            return None

    def _apply(
        self,
        tenant: TenantRef,
        actor_id: str,
        feature: FeatureKey,
        amount: int,
        reason: Optional[str],
        details: Optional[BaseUsage],
        idempotency_key: Optional[str],
    ) -> LedgerResult:
        try:
            with self.db.transaction() as conn:
                balance = self.balances.ensure(conn, tenant)
                if idempotency_key is not None:
                    previous = self.usage.find_replay(conn, tenant, REFUND, idempotency_key)
                    if previous is not None:
                        return self._replayed(tenant, self.balances.credits(conn, balance.id), previous, amount)

                record = self.usage.append(
                    conn,
                    tenant,
                    actor_id,
                    feature,
                    REFUND,
                    -amount,
                    refund_payload(details, reason),
                    idempotency_key=idempotency_key,
                )
                self.balances.credit(conn, balance.id, amount)
                remaining = self.balances.credits(conn, balance.id)
        except DuplicateOperation:
            with self.db.transaction() as conn:
                balance = self.balances.ensure(conn, tenant)
                previous = self.usage.find_replay(conn, tenant, REFUND, idempotency_key)
                return self._replayed(
                    tenant,
                    self.balances.credits(conn, balance.id),
                    previous,
                    amount,
                )

        logger.info(
            "credits_refunded",
            tenant_id=tenant.tenant_id,
            actor_id=actor_id,
            feature=feature.value,
            credits=amount,
            credits_remaining=remaining,
            reason=reason,
            record_id=record.record_id,
        )
        return LedgerResult(
            credits_remaining=remaining,
            credits=amount,
            tenant_id=tenant.tenant_id,
            record_id=record.record_id,
        )

    def _replayed(
        self,
        tenant: TenantRef,
        remaining: int,
        previous: Optional[UsageRecord],
        amount: int,
    ) -> LedgerResult:
        record_id = previous.record_id if previous else None
        logger.info(
            "credit_refund_replayed",
            tenant_id=tenant.tenant_id,
            record_id=record_id,
            credits_remaining=remaining,
        )
        return LedgerResult(
            credits_remaining=remaining,
            credits=-previous.credits if previous else amount,
            tenant_id=tenant.tenant_id,
            record_id=record_id,
            replayed=True,
        )
