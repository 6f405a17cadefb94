"""
Data Models for Persistence Layer

Row shapes for the two ledger tables. Metadata is stored as an opaque JSON
payload; typed usage details live in ``ledger.metadata``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import json


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_text(value: Any) -> Any:
    # PostgreSQL hands back datetime objects for TIMESTAMPTZ columns
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass
class BalanceRecord:
    """Persisted balance row, one per tenant."""
    tenant_id: str
    tenant_kind: str
    credits: int
    refill_amount: int = 0
    last_synced_at: str = field(default_factory=utcnow)
    created_at: str = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "tenant_kind": self.tenant_kind,
            "credits": self.credits,
            "refill_amount": self.refill_amount,
            "last_synced_at": self.last_synced_at,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.tenant_id,
            self.tenant_kind,
            self.credits,
            self.refill_amount,
            self.last_synced_at,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BalanceRecord":
        return cls(
            id=row.get("id"),
            tenant_id=row["tenant_id"],
            tenant_kind=row["tenant_kind"],
            credits=row["credits"],
            refill_amount=row.get("refill_amount", 0) or 0,
            last_synced_at=_as_text(row["last_synced_at"]),
            created_at=_as_text(row["created_at"]),
        )


@dataclass
class UsageRecord:
    """
    Persisted audit entry.

    ``credits`` is positive for a debit and negative for a refund, so the sum
    over a tenant equals its net consumption. Rows are never updated.
    """
    record_id: str
    tenant_id: str
    actor_id: str
    feature: str
    kind: str
    credits: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    created_at: str = field(default_factory=utcnow)

    @property
    def is_refund(self) -> bool:
        return bool(self.metadata.get("refund"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "tenant_id": self.tenant_id,
            "actor_id": self.actor_id,
            "feature": self.feature,
            "kind": self.kind,
            "credits": self.credits,
            "metadata": self.metadata,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.record_id,
            self.tenant_id,
            self.actor_id,
            self.feature,
            self.kind,
            self.credits,
            json.dumps(self.metadata, sort_keys=True) if self.metadata else None,
            self.idempotency_key,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageRecord":
        metadata = row.get("metadata")
        if isinstance(metadata, str) and metadata:
            metadata = json.loads(metadata)

        return cls(
            record_id=row["record_id"],
            tenant_id=row["tenant_id"],
            actor_id=row["actor_id"],
            feature=row["feature"],
            kind=row["kind"],
            credits=row["credits"],
            metadata=metadata or {},
            idempotency_key=row.get("idempotency_key"),
            created_at=_as_text(row["created_at"]),
        )
