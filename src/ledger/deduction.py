"""
Deduction Engine

Debit protocol:
1. Resolve the tenant and make sure its balance exists.
2. Price the request: cost(feature) * max(1, quantity).
3. In one transaction, append the usage record then attempt the
   conditional decrement.
4. If the decrement affects no row, the whole transaction rolls back
   (audit row included) and InsufficientCredits is raised.

``validate`` is an advisory pre-flight read for callers about to do
expensive work. The conditional decrement is the authoritative check.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import structlog

from persistence.database import Database
from persistence.models import BalanceRecord, UsageRecord
from persistence.repository import DuplicateOperation

from .audit import DEBIT, UsageLog
from .balances import BalanceStore
from .errors import InsufficientCredits
from .features import FeatureCostRegistry, FeatureLike, as_feature
from .metadata import BaseUsage, check_details, to_payload
from .tenants import TenantRef, TenantResolver

logger = structlog.get_logger()


@dataclass
class CreditCheck:
    """Outcome of a pre-flight check."""
    available: int
    needed: int

    @property
    def sufficient(self) -> bool:
        return self.available >= self.needed

    def to_dict(self) -> Dict[str, Any]:
        return {"available": self.available, "needed": self.needed}


@dataclass
class LedgerResult:
    """Outcome of a debit or refund."""
    credits_remaining: int
    credits: int
    tenant_id: str
    record_id: Optional[str] = None
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credits_remaining": self.credits_remaining,
            "credits": self.credits,
            "tenant_id": self.tenant_id,
            "record_id": self.record_id,
            "replayed": self.replayed,
        }


class DeductionEngine:
    """Validates sufficiency, then atomically debits and logs."""

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

    def validate(
        self,
        actor_id: str,
        feature: FeatureLike,
        quantity: int = 1,
        organization_id: Optional[str] = None,
    ) -> CreditCheck:
        """
        Compare the current balance with the price of a request.

        Raises InsufficientCredits when the balance is short; mutates nothing.
        """
        feature = as_feature(feature)
        tenant = self.resolver.resolve(actor_id, organization_id)
        needed = self.costs.needed(feature, quantity)

        with self.db.transaction(readonly=True) as conn:
            available = self.balances.peek(conn, tenant)

        check = CreditCheck(available=available, needed=needed)
        if not check.sufficient:
            raise InsufficientCredits(required=needed, available=available)
        return check

    def debit(
        self,
        actor_id: str,
        feature: FeatureLike,
        quantity: int = 1,
        organization_id: Optional[str] = None,
        details: Optional[BaseUsage] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        feature = as_feature(feature)
        check_details(details, feature)
        tenant = self.resolver.resolve(actor_id, organization_id)
        needed = self.costs.needed(feature, quantity)

        with self.db.transaction() as conn:
            balance = self.balances.ensure(conn, tenant)

        try:
            with self.db.transaction() as conn:
                if idempotency_key is not None:
                    previous = self.usage.find_replay(conn, tenant, DEBIT, idempotency_key)
                    if previous is not None:
                        return self._replayed(conn, tenant, balance, previous)

                available = self.balances.credits(conn, balance.id)
                record = self.usage.append(
                    conn,
                    tenant,
                    actor_id,
                    feature,
                    DEBIT,
                    needed,
                    to_payload(details),
                    idempotency_key=idempotency_key,
                )
                if not self.balances.try_debit(conn, balance.id, needed):
                    raise InsufficientCredits(required=needed, available=available)
                remaining = self.balances.credits(conn, balance.id)
        except InsufficientCredits as e:
            logger.warning(
                "credit_debit_rejected",
                tenant_id=tenant.tenant_id,
                actor_id=actor_id,
                feature=feature.value,
                required=e.required,
                available=e.available,
            )
            raise
        except DuplicateOperation:
            # A concurrent request with the same key committed first
            with self.db.transaction() as conn:
                previous = self.usage.find_replay(conn, tenant, DEBIT, idempotency_key)
                return self._replayed(conn, tenant, balance, previous)

        logger.info(
            "credits_debited",
            tenant_id=tenant.tenant_id,
            actor_id=actor_id,
            feature=feature.value,
            credits=needed,
            credits_remaining=remaining,
            record_id=record.record_id,
        )
        return LedgerResult(
            credits_remaining=remaining,
            credits=needed,
            tenant_id=tenant.tenant_id,
            record_id=record.record_id,
        )

    def _replayed(
        self,
        conn: Any,
        tenant: TenantRef,
        balance: BalanceRecord,
        previous: Optional[UsageRecord],
    ) -> LedgerResult:
        remaining = self.balances.credits(conn, balance.id)
        logger.info(
            "credit_debit_replayed",
            tenant_id=tenant.tenant_id,
            record_id=previous.record_id if previous else None,
            credits_remaining=remaining,
        )
        return LedgerResult(
            credits_remaining=remaining,
            credits=previous.credits if previous else 0,
            tenant_id=tenant.tenant_id,
            record_id=previous.record_id if previous else None,
            replayed=True,
        )
