"""
Credit Ledger

The entry point host code talks to. Wires the resolver, cost registry,
balance store and audit log around one injected Database and exposes:

- validate: advisory pre-flight check
- debit: authoritative, fails loud with InsufficientCredits
- refund: compensation, fails quiet
- charge: debit around a block of billable work, refunding if it raises
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generator, List, Optional, Union
import structlog

from persistence.database import Database
from persistence.models import BalanceRecord

from .audit import LedgerEntry, UsageLog
from .balances import BalanceStore
from .config import LedgerConfig
from .deduction import CreditCheck, DeductionEngine, LedgerResult
from .errors import InsufficientCredits
from .features import FeatureCostRegistry, FeatureKey, FeatureLike, as_feature
from .metadata import BaseUsage
from .refund import RefundEngine
from .reporting import UsageReporter, resolve_period
from .tenants import IdentityProvider, PlanCatalog, TenantResolver

logger = structlog.get_logger()


class ChargeState(Enum):
    """Lifecycle of one debit attempt."""
    NOT_STARTED = "NOT_STARTED"
    DEBITED = "DEBITED"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    REJECTED = "REJECTED"  # insufficient funds, nothing applied


_TRANSITIONS = {
    ChargeState.NOT_STARTED: {ChargeState.DEBITED, ChargeState.REJECTED},
    ChargeState.DEBITED: {ChargeState.COMPLETED, ChargeState.REFUNDED},
}


@dataclass
class Charge:
    """Handle for billable work running inside ``CreditLedger.charge``."""
    actor_id: str
    feature: FeatureKey
    quantity: int = 1
    organization_id: Optional[str] = None
    state: ChargeState = ChargeState.NOT_STARTED
    debit: Optional[LedgerResult] = None
    refund: Optional[LedgerResult] = None

    def transition(self, new_state: ChargeState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Invalid charge transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def credits_remaining(self) -> Optional[int]:
        latest = self.refund or self.debit
        return latest.credits_remaining if latest else None


class CreditLedger:
    """Metered-usage credit ledger over an injected Database."""

    def __init__(
        self,
        db: Database,
        identity: Optional[IdentityProvider] = None,
        costs: Optional[FeatureCostRegistry] = None,
        plans: Optional[PlanCatalog] = None,
    ):
        self.db = db
        self.resolver = TenantResolver(identity)
        self.costs = costs or FeatureCostRegistry()
        self.balances = BalanceStore(db, plans)
        self.usage = UsageLog(db)
        self.deductions = DeductionEngine(db, self.resolver, self.costs, self.balances, self.usage)
        self.refunds = RefundEngine(db, self.resolver, self.costs, self.balances, self.usage)
        self.reporter = UsageReporter(db, self.usage)

    @classmethod
    def from_config(
        cls,
        config: Optional[LedgerConfig] = None,
        identity: Optional[IdentityProvider] = None,
    ) -> "CreditLedger":
        config = config or LedgerConfig.from_env()
        db = Database(config.database_url)
        db.initialize()
        return cls(
            db,
            identity=identity,
            costs=config.cost_registry(),
            plans=config.plan_catalog(),
        )

    def validate(
        self,
        actor_id: str,
        feature: FeatureLike,
        quantity: int = 1,
        organization_id: Optional[str] = None,
    ) -> CreditCheck:
        return self.deductions.validate(actor_id, feature, quantity, organization_id)

    def debit(
        self,
        actor_id: str,
        feature: FeatureLike,
        quantity: int = 1,
        organization_id: Optional[str] = None,
        details: Optional[BaseUsage] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        return self.deductions.debit(
            actor_id,
            feature,
            quantity=quantity,
            organization_id=organization_id,
            details=details,
            idempotency_key=idempotency_key,
        )

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
        return self.refunds.refund(
            actor_id,
            feature,
            quantity=quantity,
            organization_id=organization_id,
            reason=reason,
            details=details,
            idempotency_key=idempotency_key,
        )

    @contextmanager
    def charge(
        self,
        actor_id: str,
        feature: FeatureLike,
        quantity: int = 1,
        organization_id: Optional[str] = None,
        details: Optional[BaseUsage] = None,
        idempotency_key: Optional[str] = None,
    ) -> Generator[Charge, None, None]:
        """
        Debit, run the block, refund if the block raises.

            with ledger.charge(user, FeatureKey.AI_TEXT_CHAT) as charge:
                reply = provider.complete(prompt)

        InsufficientCredits propagates before the block runs. An exception
        from the block is re-raised after the refund attempt.
        """
        charge = Charge(
            actor_id=actor_id,
            feature=as_feature(feature),
            quantity=quantity,
            organization_id=organization_id,
        )
        try:
            charge.debit = self.debit(
                actor_id,
                charge.feature,
                quantity=quantity,
                organization_id=organization_id,
                details=details,
                idempotency_key=idempotency_key,
            )
        except InsufficientCredits:
            charge.transition(ChargeState.REJECTED)
            raise
        charge.transition(ChargeState.DEBITED)

        try:
            yield charge
        except Exception as exc:
            logger.warning(
                "billable_operation_failed",
                tenant_id=charge.debit.tenant_id,
                actor_id=actor_id,
                feature=charge.feature.value,
                error=str(exc) or type(exc).__name__,
            )
            charge.refund = self.refund(
                actor_id,
                charge.feature,
                quantity=quantity,
                organization_id=organization_id,
                reason=str(exc) or type(exc).__name__,
                details=details,
                idempotency_key=idempotency_key,
            )
            if charge.refund is not None:
                charge.transition(ChargeState.REFUNDED)
            raise
        charge.transition(ChargeState.COMPLETED)

    def balance(self, actor_id: str, organization_id: Optional[str] = None) -> BalanceRecord:
        """The caller's balance, provisioned on first sight."""
        tenant = self.resolver.resolve(actor_id, organization_id)
        with self.db.transaction() as conn:
            return self.balances.ensure(conn, tenant)

    def history(
        self,
        actor_id: str,
        organization_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        feature: Optional[FeatureLike] = None,
        since: Optional[Union[str, datetime]] = None,
        until: Optional[Union[str, datetime]] = None,
    ) -> List[LedgerEntry]:
        tenant = self.resolver.resolve(actor_id, organization_id)
        with self.db.transaction(readonly=True) as conn:
            return self.usage.history(
                conn,
                tenant,
                limit=limit,
                offset=offset,
                feature=feature,
                since=since,
                until=until,
            )

    def report(
        self,
        actor_id: str,
        organization_id: Optional[str] = None,
        period: str = "30d",
        start: Optional[Union[str, datetime]] = None,
        end: Optional[Union[str, datetime]] = None,
    ) -> Dict[str, Any]:
        tenant = self.resolver.resolve(actor_id, organization_id)
        window = resolve_period(period, start=start, end=end)
        members = self.reporter.member_stats(tenant, window)
        return {
            "tenant_id": tenant.tenant_id,
            "period": window.to_dict(),
            "summary": self.reporter.tenant_summary(tenant),
            "members": [m.to_dict() for m in members],
        }
