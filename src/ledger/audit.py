"""
Usage Audit Log

Append-only record of every debit and refund. Writes share the caller's
transaction with the balance mutation they describe.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import uuid

from persistence.database import Database
from persistence.models import UsageRecord
from persistence.repository import UsageRepository

from .features import FeatureKey, FeatureLike, as_feature
from .metadata import BaseUsage, parse_payload
from .tenants import TenantRef

DEBIT = "debit"
REFUND = "refund"


@dataclass
class LedgerEntry:
    """A usage record with its details rebuilt into their typed shape."""
    record: UsageRecord
    details: Optional[BaseUsage]

    @property
    def feature(self) -> FeatureKey:
        return FeatureKey(self.record.feature)

    @property
    def credits(self) -> int:
        return self.record.credits

    @property
    def is_refund(self) -> bool:
        return self.record.is_refund

    @property
    def reason(self) -> Optional[str]:
        return self.record.metadata.get("reason")

    def to_dict(self) -> Dict[str, Any]:
        return self.record.to_dict()


class UsageLog:
    """Writes and reads the usage audit log."""

    def __init__(self, db: Database):
        self.repository = UsageRepository(db)

    def append(
        self,
        conn: Any,
        tenant: TenantRef,
        actor_id: str,
        feature: FeatureKey,
        kind: str,
        credits: int,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> UsageRecord:
        record = UsageRecord(
            record_id=str(uuid.uuid4()),
            tenant_id=tenant.tenant_id,
            actor_id=actor_id,
            feature=feature.value,
            kind=kind,
            credits=credits,
            metadata=payload,
            idempotency_key=idempotency_key,
        )
        return self.repository.append(conn, record)

    def find_replay(self, conn: Any, tenant: TenantRef, kind: str, idempotency_key: str) -> Optional[UsageRecord]:
        return self.repository.find_by_idempotency_key(conn, tenant.tenant_id, kind, idempotency_key)

    def history(
        self,
        conn: Any,
        tenant: TenantRef,
        limit: int = 50,
        offset: int = 0,
        feature: Optional[FeatureLike] = None,
        since: Optional[Union[str, datetime]] = None,
        until: Optional[Union[str, datetime]] = None,
    ) -> List[LedgerEntry]:
        records = self.repository.list_by_tenant(
            conn,
            tenant.tenant_id,
            limit=limit,
            offset=offset,
            feature=as_feature(feature).value if feature is not None else None,
            since=since,
            until=until,
        )
        return [LedgerEntry(record=r, details=parse_payload(r.metadata)) for r in records]

    def count(
        self,
        conn: Any,
        tenant: TenantRef,
        feature: Optional[FeatureLike] = None,
        since: Optional[Union[str, datetime]] = None,
        until: Optional[Union[str, datetime]] = None,
    ) -> int:
        return self.repository.count_by_tenant(
            conn,
            tenant.tenant_id,
            feature=as_feature(feature).value if feature is not None else None,
            since=since,
            until=until,
        )

    def net_consumption(self, conn: Any, tenant: TenantRef) -> int:
        return self.repository.net_consumption(conn, tenant.tenant_id)

    def summary(self, conn: Any, tenant: TenantRef) -> Dict[str, Any]:
        return self.repository.get_tenant_summary(conn, tenant.tenant_id)

    def for_period(self, conn: Any, tenant: TenantRef, start: datetime, end: datetime) -> List[UsageRecord]:
        return self.repository.list_for_period(conn, tenant.tenant_id, start, end)
