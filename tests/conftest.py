"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
import tempfile

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from ledger import CreditLedger, FeatureCostRegistry, PlanCatalog, StaticIdentityProvider
from persistence import Database


@pytest.fixture
def temp_db():
    """File-backed SQLite database, one connection per thread."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(f"sqlite:///{os.path.join(tmpdir, 'ledger.db')}")
        db.initialize()
        yield db
        db.close()


@pytest.fixture
def memory_db():
    """In-memory SQLite database."""
    db = Database("sqlite:///:memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def directory():
    """Identity directory with two individuals and one organization."""
    identity = StaticIdentityProvider()
    identity.add_user("alice", plan="free")
    identity.add_user("bob", plan="pro")
    identity.add_user("carol")
    identity.add_organization("acme", members=["alice", "bob"], credits_per_month=50)
    return identity


@pytest.fixture
def ledger(memory_db, directory):
    """Ledger over an in-memory database with the default prices."""
    return CreditLedger(memory_db, identity=directory)


@pytest.fixture
def seeded_ledger(memory_db):
    """Ledger where every individual starts with 10 credits and chat costs 3."""
    return CreditLedger(
        memory_db,
        costs=FeatureCostRegistry({"ai_text_chat": 3}),
        plans=PlanCatalog(plan_credits={"free": 10}),
    )
