"""
Ledger configuration from the environment.

    DATABASE_URL                  sqlite:///path, sqlite:///:memory: or postgresql://...
    LEDGER_FEATURE_COSTS          JSON object of feature key -> credits per use
    LEDGER_PLAN_CREDITS           JSON object of plan -> starting credits
    LEDGER_DEFAULT_PLAN           plan for individuals without one
    LEDGER_ORGANIZATION_CREDITS   allowance for organizations without one
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .features import FeatureCostRegistry
from .tenants import PlanCatalog


def _json_mapping(name: str, raw: Optional[str]) -> Dict[str, int]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a JSON object")
    for key, amount in value.items():
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValueError(f"{name}[{key}] must be a non-negative integer")
    return value


@dataclass
class LedgerConfig:
    """Settings for one ledger instance."""
    database_url: str = "sqlite:///ledger.db"
    feature_costs: Dict[str, int] = field(default_factory=dict)
    plan_credits: Dict[str, int] = field(default_factory=dict)
    default_plan: str = "free"
    organization_credits: int = 1000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LedgerConfig":
        env = os.environ if environ is None else environ
        organization_credits = env.get("LEDGER_ORGANIZATION_CREDITS", "1000")
        try:
            organization_credits = int(organization_credits)
        except ValueError:
            raise ValueError(f"LEDGER_ORGANIZATION_CREDITS must be an integer, got {organization_credits!r}")

        return cls(
            database_url=env.get("DATABASE_URL", "sqlite:///ledger.db"),
            feature_costs=_json_mapping("LEDGER_FEATURE_COSTS", env.get("LEDGER_FEATURE_COSTS")),
            plan_credits=_json_mapping("LEDGER_PLAN_CREDITS", env.get("LEDGER_PLAN_CREDITS")),
            default_plan=env.get("LEDGER_DEFAULT_PLAN", "free"),
            organization_credits=organization_credits,
        )

    def cost_registry(self) -> FeatureCostRegistry:
        return FeatureCostRegistry(overrides=self.feature_costs)

    def plan_catalog(self) -> PlanCatalog:
        plans = dict(PlanCatalog.DEFAULT_PLAN_CREDITS)
        plans.update(self.plan_credits)
        if self.default_plan not in plans:
            raise ValueError(f"Default plan {self.default_plan!r} has no credit allowance")
        return PlanCatalog(
            plan_credits=plans,
            default_plan=self.default_plan,
            organization_credits=self.organization_credits,
        )
