"""
Ledger error taxonomy.

InsufficientCredits is the only client-correctable condition. Storage
failures come from the persistence layer and always propagate out of a
debit. Tenant resolution failures belong to the authorization layer and are
not ledger errors.
"""

from typing import Any, Dict

from persistence.database import StorageFailure


class LedgerError(Exception):
    """Base class for ledger errors."""
    pass


class InsufficientCredits(LedgerError):
    """The tenant's balance does not cover the requested debit."""

    code = "insufficient_credits"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: required {required}, available {available}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "required": self.required,
            "available": self.available,
        }


class TenantResolutionFailure(Exception):
    """The actor or organization could not be mapped to a tenant."""

    def __init__(self, message: str, actor_id: str = "", organization_id: str = ""):
        self.actor_id = actor_id
        self.organization_id = organization_id
        super().__init__(message)


__all__ = [
    "LedgerError",
    "InsufficientCredits",
    "TenantResolutionFailure",
    "StorageFailure",
]
