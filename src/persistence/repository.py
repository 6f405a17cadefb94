"""
Repository Layer for the Credit Ledger

Every method takes the open transaction handle it should run on, so a
balance mutation and its audit row always share one transaction.
"""

from typing import Any, Dict, List, Optional, Union
from datetime import datetime, timezone
import structlog

from .database import Database, StorageFailure
from .models import BalanceRecord, UsageRecord, utcnow

logger = structlog.get_logger()

Timestamp = Union[str, datetime]


class DuplicateOperation(Exception):
    """A usage record with the same idempotency key already exists."""

    def __init__(self, tenant_id: str, kind: str, idempotency_key: str):
        self.tenant_id = tenant_id
        self.kind = kind
        self.idempotency_key = idempotency_key
        super().__init__(f"Duplicate {kind} for {tenant_id}: {idempotency_key}")


def _timestamp(value: Timestamp) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value


class BalanceRepository:
    """Repository for tenant balances."""

    def __init__(self, db: Database):
        self.db = db

    def ensure(
        self,
        conn: Any,
        tenant_id: str,
        tenant_kind: str,
        credits: int,
        refill_amount: int,
    ) -> BalanceRecord:
        """
        Fetch the tenant's balance, creating it with ``credits`` if absent.

        The insert is a no-op when a concurrent caller got there first, so
        the unique tenant_id guarantees a single row.
        """
        seed = BalanceRecord(
            tenant_id=tenant_id,
            tenant_kind=tenant_kind,
            credits=credits,
            refill_amount=refill_amount,
        )
        created = self.db.run(
            conn,
            """INSERT INTO credit_balances
               (tenant_id, tenant_kind, credits, refill_amount, last_synced_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (tenant_id) DO NOTHING""",
            seed.to_db_tuple()
        )
        balance = self.get(conn, tenant_id)
        if balance is None:
            raise StorageFailure(f"Balance for {tenant_id} missing after provisioning")

        if created == 1:
            logger.info("balance_provisioned", tenant_id=tenant_id, credits=credits)
        return balance

    def get(self, conn: Any, tenant_id: str) -> Optional[BalanceRecord]:
        """Get a tenant's balance."""
        results = self.db.execute(
            conn,
            "SELECT * FROM credit_balances WHERE tenant_id = ?",
            (tenant_id,)
        )
        return BalanceRecord.from_row(results[0]) if results else None

    def get_credits(self, conn: Any, balance_id: int) -> int:
        """Read the current credits of a balance row."""
        results = self.db.execute(
            conn,
            "SELECT credits FROM credit_balances WHERE id = ?",
            (balance_id,)
        )
        if not results:
            raise StorageFailure(f"Balance {balance_id} not found")
        return results[0]["credits"]

    def try_debit(self, conn: Any, balance_id: int, amount: int) -> bool:
        """
        Decrement by ``amount`` only where the balance covers it.

        A single conditional UPDATE: there is no window between checking and
        writing. Returns whether the row was affected.
        """
        affected = self.db.run(
            conn,
            """UPDATE credit_balances
               SET credits = credits - ?, last_synced_at = ?
               WHERE id = ? AND credits >= ?""",
            (amount, utcnow(), balance_id, amount)
        )
        return affected == 1

    def credit(self, conn: Any, balance_id: int, amount: int) -> None:
        """Unconditionally increment a balance."""
        affected = self.db.run(
            conn,
            """UPDATE credit_balances
               SET credits = credits + ?, last_synced_at = ?
               WHERE id = ?""",
            (amount, utcnow(), balance_id)
        )
        if affected != 1:
            raise StorageFailure(f"Balance {balance_id} not found")


class UsageRepository:
    """Repository for the append-only usage audit log."""

    def __init__(self, db: Database):
        self.db = db

    def append(self, conn: Any, record: UsageRecord) -> UsageRecord:
        """Write one immutable usage record."""
        try:
            self.db.run(
                conn,
                """INSERT INTO usage_records
                   (record_id, tenant_id, actor_id, feature, kind, credits,
                    metadata, idempotency_key, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                record.to_db_tuple()
            )
        except self.db.integrity_errors:
            if record.idempotency_key is None:
                raise
            raise DuplicateOperation(record.tenant_id, record.kind, record.idempotency_key)
        return record

    def find_by_idempotency_key(
        self,
        conn: Any,
        tenant_id: str,
        kind: str,
        idempotency_key: str,
    ) -> Optional[UsageRecord]:
        results = self.db.execute(
            conn,
            """SELECT * FROM usage_records
               WHERE tenant_id = ? AND kind = ? AND idempotency_key = ?""",
            (tenant_id, kind, idempotency_key)
        )
        return UsageRecord.from_row(results[0]) if results else None

    def _filters(
        self,
        tenant_id: str,
        feature: Optional[str],
        since: Optional[Timestamp],
        until: Optional[Timestamp],
    ) -> tuple:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if feature is not None:
            clauses.append("feature = ?")
            params.append(feature)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_timestamp(since))
        if until is not None:
            clauses.append("created_at <= ?")
            params.append(_timestamp(until))
        return " AND ".join(clauses), params

    def list_by_tenant(
        self,
        conn: Any,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
        feature: Optional[str] = None,
        since: Optional[Timestamp] = None,
        until: Optional[Timestamp] = None,
    ) -> List[UsageRecord]:
        """Page through a tenant's usage, newest first."""
        where, params = self._filters(tenant_id, feature, since, until)
        results = self.db.execute(
            conn,
            f"SELECT * FROM usage_records WHERE {where} ORDER BY created_at DESC, record_id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset)
        )
        return [UsageRecord.from_row(r) for r in results]

    def count_by_tenant(
        self,
        conn: Any,
        tenant_id: str,
        feature: Optional[str] = None,
        since: Optional[Timestamp] = None,
        until: Optional[Timestamp] = None,
    ) -> int:
        where, params = self._filters(tenant_id, feature, since, until)
        results = self.db.execute(
            conn,
            f"SELECT COUNT(*) AS cnt FROM usage_records WHERE {where}",
            tuple(params)
        )
        return results[0]["cnt"] if results else 0

    def list_for_period(
        self,
        conn: Any,
        tenant_id: str,
        since: Timestamp,
        until: Timestamp,
    ) -> List[UsageRecord]:
        """All records of a tenant inside a period, oldest first."""
        where, params = self._filters(tenant_id, None, since, until)
        results = self.db.execute(
            conn,
            f"SELECT * FROM usage_records WHERE {where} ORDER BY created_at ASC",
            tuple(params)
        )
        return [UsageRecord.from_row(r) for r in results]

    def net_consumption(self, conn: Any, tenant_id: str) -> int:
        """Sum of all signed credits recorded for a tenant."""
        results = self.db.execute(
            conn,
            "SELECT COALESCE(SUM(credits), 0) AS total FROM usage_records WHERE tenant_id = ?",
            (tenant_id,)
        )
        return int(results[0]["total"]) if results else 0

    def get_tenant_summary(self, conn: Any, tenant_id: str) -> Dict[str, Any]:
        """Get usage summary for a tenant."""
        results = self.db.execute(
            conn,
            """SELECT
                SUM(CASE WHEN kind = 'debit' THEN 1 ELSE 0 END) AS debits,
                SUM(CASE WHEN kind = 'refund' THEN 1 ELSE 0 END) AS refunds,
                SUM(CASE WHEN kind = 'debit' THEN credits ELSE 0 END) AS credits_debited,
                SUM(CASE WHEN kind = 'refund' THEN -credits ELSE 0 END) AS credits_refunded
               FROM usage_records WHERE tenant_id = ?""",
            (tenant_id,)
        )
        row = results[0] if results else {}
        debited = int(row.get("credits_debited") or 0)
        refunded = int(row.get("credits_refunded") or 0)
        return {
            "tenant_id": tenant_id,
            "debits": int(row.get("debits") or 0),
            "refunds": int(row.get("refunds") or 0),
            "credits_debited": debited,
            "credits_refunded": refunded,
            "net_consumption": debited - refunded,
        }
