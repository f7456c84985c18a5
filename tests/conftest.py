"""
conftest.py - Shared pytest fixtures for bankledger tests

Provides common fixtures used across unit and conformance tests:
- Empty ledger at a fixed start time
- Two users with one account each (interest off, so balances stay put)
- Publicly traded account for share tests
- Request handler with both users signed up
"""

import pytest

from bankledger import Ledger, Request, RequestHandler, create_user
from bankledger.entities import pwd

from tests.helpers import T0, still_account


def pytest_configure(config):
    # Minimum bcrypt cost; property tests create users inside every example.
    pwd.update(bcrypt__rounds=4)
    pwd.hash("warm-up")  # loads the bcrypt backend before any timed example


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    """Fresh ledger with no records."""
    return Ledger("test", initial_time=T0)


@pytest.fixture
def alice(ledger):
    return create_user(ledger, "alice", "alice-client-hash")


@pytest.fixture
def bob(ledger):
    return create_user(ledger, "bob", "bob-client-hash")


@pytest.fixture
def alice_account(ledger, alice):
    """Alice's account: 1000.00, overdraft on, ceiling 1000, no interest."""
    return still_account(ledger, alice)


@pytest.fixture
def bob_account(ledger, bob):
    """Bob's account: 1000.00, overdraft on, ceiling 1000, no interest."""
    return still_account(ledger, bob)


@pytest.fixture
def traded_account(ledger, bob):
    """Bob's publicly traded account."""
    return still_account(ledger, bob, "corp", publically_traded=True)


# =============================================================================
# HANDLER FIXTURES
# =============================================================================

@pytest.fixture
def handler(ledger):
    """Handler with alice and bob signed up."""
    handler = RequestHandler(ledger)
    for name in ("alice", "bob"):
        response = handler.handle(Request("signUp", {"username": name, "password": f"{name}-pw"}))
        assert response.ok
    return handler
