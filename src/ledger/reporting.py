"""
Usage reporting over the audit log: per-member statistics for a period and
tenant-level totals.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from persistence.database import Database

from .audit import REFUND, UsageLog
from .tenants import TenantRef

PERIOD_LOOKBACK_DAYS = {
    "7d": 6,
    "30d": 29,
    "90d": 89,
}


@dataclass
class AnalyticsPeriod:
    start: datetime
    end: datetime

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def _as_date(value: Union[str, datetime]) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _start_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.min, tzinfo=timezone.utc)


def _end_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.max, tzinfo=timezone.utc)


def resolve_period(
    key: str = "7d",
    start: Optional[Union[str, datetime]] = None,
    end: Optional[Union[str, datetime]] = None,
    now: Optional[datetime] = None,
) -> AnalyticsPeriod:
    """
    Turn a period key into whole UTC days.

    "7d", "30d" and "90d" count back from ``end`` (default today) including
    the end day. "custom" needs an explicit ``start``.
    """
    period_end = _end_of_day(_as_date(end) if end is not None else (now or datetime.now(timezone.utc)))

    if key == "custom":
        if start is None:
            raise ValueError("A custom period needs a start date")
        return AnalyticsPeriod(start=_start_of_day(_as_date(start)), end=period_end)

    if key not in PERIOD_LOOKBACK_DAYS:
        raise ValueError(f"Unknown period: {key}")

    period_start = _start_of_day(period_end - timedelta(days=PERIOD_LOOKBACK_DAYS[key]))
    return AnalyticsPeriod(start=period_start, end=period_end)


@dataclass
class MemberUsageStats:
    """What one actor spent from a tenant's balance."""
    actor_id: str
    debits: int = 0
    refunds: int = 0
    credits_debited: int = 0
    credits_refunded: int = 0
    feature_counts: Dict[str, int] = field(default_factory=dict)
    last_activity_at: Optional[str] = None

    @property
    def net_credits(self) -> int:
        return self.credits_debited - self.credits_refunded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "debits": self.debits,
            "refunds": self.refunds,
            "credits_debited": self.credits_debited,
            "credits_refunded": self.credits_refunded,
            "net_credits": self.net_credits,
            "feature_counts": dict(self.feature_counts),
            "last_activity_at": self.last_activity_at,
        }


class UsageReporter:
    """Aggregates usage records for reporting screens."""

    def __init__(self, db: Database, usage: UsageLog):
        self.db = db
        self.usage = usage

    def member_stats(self, tenant: TenantRef, period: AnalyticsPeriod) -> List[MemberUsageStats]:
        with self.db.transaction(readonly=True) as conn:
            records = self.usage.for_period(conn, tenant, period.start, period.end)

        stats: Dict[str, MemberUsageStats] = {}
        for record in records:
            member = stats.setdefault(record.actor_id, MemberUsageStats(actor_id=record.actor_id))
            if record.kind == REFUND:
                member.refunds += 1
                member.credits_refunded += -record.credits
            else:
                member.debits += 1
                member.credits_debited += record.credits
                member.feature_counts[record.feature] = member.feature_counts.get(record.feature, 0) + 1

            if member.last_activity_at is None or record.created_at > member.last_activity_at:
                member.last_activity_at = record.created_at

        return sorted(stats.values(), key=lambda m: (-m.net_credits, m.actor_id))

    def tenant_summary(self, tenant: TenantRef) -> Dict[str, Any]:
        with self.db.transaction(readonly=True) as conn:
            return self.usage.summary(conn, tenant)
