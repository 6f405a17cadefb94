"""
Credit Ledger - Metered Usage Billing

Prepaid credit balances for individuals and organizations:
- Per-feature prices in whole credits
- Atomic debit with an append-only audit log
- Compensating refunds when downstream work fails
"""

from .errors import LedgerError, InsufficientCredits, TenantResolutionFailure, StorageFailure
from .features import FeatureKey, FeatureCostRegistry, as_feature
from .metadata import (
    BaseUsage,
    ChatUsage,
    ImageGenerationUsage,
    BackgroundRemovalUsage,
    VideoExportUsage,
    CreativeDownloadUsage,
    SocialMediaPostUsage,
)
from .tenants import (
    TenantKind,
    TenantRef,
    TenantResolver,
    IdentityProvider,
    PassthroughIdentityProvider,
    StaticIdentityProvider,
    PlanCatalog,
)
from .deduction import CreditCheck, LedgerResult
from .audit import LedgerEntry
from .config import LedgerConfig
from .reporting import AnalyticsPeriod, MemberUsageStats, resolve_period
from .service import CreditLedger, Charge, ChargeState

__all__ = [
    "LedgerError",
    "InsufficientCredits",
    "TenantResolutionFailure",
    "StorageFailure",
    "FeatureKey",
    "FeatureCostRegistry",
    "as_feature",
    "BaseUsage",
    "ChatUsage",
    "ImageGenerationUsage",
    "BackgroundRemovalUsage",
    "VideoExportUsage",
    "CreativeDownloadUsage",
    "SocialMediaPostUsage",
    "TenantKind",
    "TenantRef",
    "TenantResolver",
    "IdentityProvider",
    "PassthroughIdentityProvider",
    "StaticIdentityProvider",
    "PlanCatalog",
    "CreditCheck",
    "LedgerResult",
    "LedgerEntry",
    "LedgerConfig",
    "AnalyticsPeriod",
    "MemberUsageStats",
    "resolve_period",
    "CreditLedger",
    "Charge",
    "ChargeState",
]
