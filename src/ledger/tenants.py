"""
Tenant Resolver

Maps a caller to the balance that pays for its usage. With an organization
context the organization's shared pool pays, whichever member triggered the
charge; otherwise the individual actor pays.

Identity lookups are delegated to an IdentityProvider supplied by the host
application. Starting allowances come from a PlanCatalog.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Set

from .errors import TenantResolutionFailure


class TenantKind(Enum):
    """Kinds of billing unit."""
    INDIVIDUAL = "individual"
    ORGANIZATION = "organization"


@dataclass(frozen=True)
class TenantRef:
    """A resolved tenant. The engines only ever see this type."""
    kind: TenantKind
    key: str
    plan: Optional[str] = None
    allowance: Optional[int] = None  # organizations declare their own monthly credits

    @property
    def tenant_id(self) -> str:
        return f"{self.kind.value}:{self.key}"

    @property
    def is_organization(self) -> bool:
        return self.kind is TenantKind.ORGANIZATION


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    plan: Optional[str] = None


@dataclass(frozen=True)
class OrganizationIdentity:
    organization_id: str
    credits_per_month: Optional[int] = None


class IdentityProvider(ABC):
    """
    Maps opaque actor and organization tokens to internal keys.

    Implementations raise TenantResolutionFailure when a token is unknown
    or the actor does not belong to the organization.
    """

    @abstractmethod
    def lookup_user(self, actor_id: str) -> UserIdentity:
        pass

    @abstractmethod
    def lookup_organization(self, organization_id: str, actor_id: str) -> OrganizationIdentity:
        pass


class PassthroughIdentityProvider(IdentityProvider):
    """Treats actor and organization tokens as internal keys."""

    def lookup_user(self, actor_id: str) -> UserIdentity:
        if not actor_id:
            raise TenantResolutionFailure("Actor identity is required")
        return UserIdentity(user_id=actor_id)

    def lookup_organization(self, organization_id: str, actor_id: str) -> OrganizationIdentity:
        if not actor_id:
            raise TenantResolutionFailure("Actor identity is required", organization_id=organization_id)
        return OrganizationIdentity(organization_id=organization_id)


class StaticIdentityProvider(IdentityProvider):
    """In-memory directory of users, organizations and memberships."""

    def __init__(
        self,
        users: Optional[Mapping[str, UserIdentity]] = None,
        organizations: Optional[Mapping[str, OrganizationIdentity]] = None,
        memberships: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.users: Dict[str, UserIdentity] = dict(users or {})
        self.organizations: Dict[str, OrganizationIdentity] = dict(organizations or {})
        self.memberships: Dict[str, Set[str]] = {
            org: set(members) for org, members in (memberships or {}).items()
        }

    def add_user(self, actor_id: str, user_id: Optional[str] = None, plan: Optional[str] = None) -> None:
        self.users[actor_id] = UserIdentity(user_id=user_id or actor_id, plan=plan)

    def add_organization(
        self,
        organization_id: str,
        members: Iterable[str] = (),
        credits_per_month: Optional[int] = None,
    ) -> None:
        self.organizations[organization_id] = OrganizationIdentity(
            organization_id=organization_id,
            credits_per_month=credits_per_month,
        )
        self.memberships.setdefault(organization_id, set()).update(members)

    def lookup_user(self, actor_id: str) -> UserIdentity:
        identity = self.users.get(actor_id)
        if identity is None:
            raise TenantResolutionFailure(f"Unknown actor: {actor_id}", actor_id=actor_id)
        return identity

    def lookup_organization(self, organization_id: str, actor_id: str) -> OrganizationIdentity:
        organization = self.organizations.get(organization_id)
        if organization is None:
            raise TenantResolutionFailure(
                f"Unknown organization: {organization_id}",
                actor_id=actor_id,
                organization_id=organization_id,
            )
        if actor_id not in self.memberships.get(organization_id, set()):
            raise TenantResolutionFailure(
                f"Actor {actor_id} is not a member of {organization_id}",
                actor_id=actor_id,
                organization_id=organization_id,
            )
        return organization


@dataclass
class PlanCatalog:
    """Starting allowance for tenants seen for the first time."""
    plan_credits: Dict[str, int] = field(default_factory=lambda: dict(PlanCatalog.DEFAULT_PLAN_CREDITS))
    default_plan: str = "free"
    organization_credits: int = 1000

    DEFAULT_PLAN_CREDITS = {
        "free": 100,
        "starter": 1000,
        "pro": 5000,
        "enterprise": 20000,
    }

    def allowance_for(self, tenant: TenantRef) -> int:
        if tenant.allowance is not None:
            return tenant.allowance
        if tenant.is_organization:
            return self.organization_credits

        plan = tenant.plan or self.default_plan
        if plan not in self.plan_credits:
            raise ValueError(f"Unknown plan: {plan}")
        return self.plan_credits[plan]


class TenantResolver:
    """Resolves callers to tenants. Never touches storage."""

    def __init__(self, identity: Optional[IdentityProvider] = None):
        self.identity = identity or PassthroughIdentityProvider()

    def resolve(self, actor_id: str, organization_id: Optional[str] = None) -> TenantRef:
        if organization_id:
            organization = self.identity.lookup_organization(organization_id, actor_id)
            return TenantRef(
                kind=TenantKind.ORGANIZATION,
                key=organization.organization_id,
                allowance=organization.credits_per_month,
            )

        user = self.identity.lookup_user(actor_id)
        return TenantRef(
            kind=TenantKind.INDIVIDUAL,
            key=user.user_id,
            plan=user.plan,
        )
