"""
Balance Store

Owns each tenant's mutable credit count. All mutations go through the
conditional primitives here; application code never reads, adjusts and
writes back a balance.
"""

from typing import Any, Optional

from persistence.database import Database
from persistence.models import BalanceRecord
from persistence.repository import BalanceRepository

from .tenants import PlanCatalog, TenantRef


class BalanceStore:
    """Lazily provisioned balances keyed by tenant."""

    def __init__(self, db: Database, plans: Optional[PlanCatalog] = None):
        self.repository = BalanceRepository(db)
        self.plans = plans or PlanCatalog()

    def ensure(self, conn: Any, tenant: TenantRef) -> BalanceRecord:
        """Return the tenant's balance, seeding it from its plan if absent."""
        balance = self.repository.get(conn, tenant.tenant_id)
        if balance is not None:
            return balance

        # Plan lookup only happens for a brand-new tenant
        allowance = self.plans.allowance_for(tenant)
        return self.repository.ensure(
            conn,
            tenant_id=tenant.tenant_id,
            tenant_kind=tenant.kind.value,
            credits=allowance,
            refill_amount=allowance,
        )

    def peek(self, conn: Any, tenant: TenantRef) -> int:
        """Current credits without provisioning; unseen tenants report their allowance."""
        balance = self.repository.get(conn, tenant.tenant_id)
        if balance is None:
            return self.plans.allowance_for(tenant)
        return balance.credits

    def try_debit(self, conn: Any, balance_id: int, amount: int) -> bool:
        return self.repository.try_debit(conn, balance_id, amount)

    def credit(self, conn: Any, balance_id: int, amount: int) -> None:
        self.repository.credit(conn, balance_id, amount)

    def credits(self, conn: Any, balance_id: int) -> int:
        return self.repository.get_credits(conn, balance_id)
