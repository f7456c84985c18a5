"""
helpers.py - Test helpers shared by unit and conformance tests

Builders and small assertions that are not fixtures.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from bankledger import LoanState, Request, create_account


T0 = datetime(2025, 1, 1)
DAY = timedelta(hours=24)


def still_account(ledger, owner, name="checking", **options):
    """Create an account that does not accrue interest."""
    options.setdefault("do_interest", False)
    return create_account(ledger, owner, name, **options)


def net_money(ledger) -> Decimal:
    """Sum of account balances minus outstanding approved loan balances."""
    accounts = sum((a.balance for a in ledger.accounts.values()), Decimal("0"))
    loans = sum(
        (loan.balance for loan in ledger.loans.values() if loan.state is LoanState.APPROVED),
        Decimal("0"),
    )
    return accounts - loans


def call(handler, operation, username=None, /, **payload):
    """Send one request and return the Response."""
    return handler.handle(Request(operation, payload, username))
