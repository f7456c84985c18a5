"""
test_transaction_engine.py - Unit tests for TransactionEngine

Tests:
- Step advances time and ticks active transactions
- Linked share transfers settle in a later pass of the same step
- Interest sweep over accounts and approved loans
- Time cannot move backward
"""

import pytest
from decimal import Decimal

from bankledger import (
    TransactionEngine, TransactionState as S,
    approve, create_account, create_loan, create_share,
    new_currency_transfer, new_deposit, new_share_trade,
)

from tests.helpers import T0, DAY


class TestStep:

    def test_step_without_timestamp(self, ledger, alice_account):
        engine = TransactionEngine(ledger)
        tx = new_deposit(ledger, 10, alice_account)
        assert engine.step() == [tx]
        assert tx.state is S.COMPLETE
        assert ledger.current_time == T0

    def test_step_advances_time(self, ledger, alice_account):
        engine = TransactionEngine(ledger)
        engine.step(T0 + DAY)
        assert ledger.current_time == T0 + DAY

    def test_transfer_waits_for_approval(self, ledger, alice_account, bob_account):
        engine = TransactionEngine(ledger)
        tx = new_currency_transfer(ledger, 100, alice_account, bob_account)

        assert engine.step() == [tx]
        assert tx.state is S.PENDING_APPROVAL
        assert engine.step() == []

        approve(ledger, tx)
        assert engine.step() == [tx]
        assert tx.state is S.COMPLETE
        assert bob_account.balance == Decimal("1100.00")

    def test_share_trade_settles_in_one_step(self, ledger, traded_account, alice_account):
        engine = TransactionEngine(ledger)
        share = create_share(ledger, traded_account)
        payment, transfer = new_share_trade(ledger, share, alice_account, 25)

        engine.step()
        assert payment.state is S.PENDING_APPROVAL
        assert transfer.state is S.PENDING_TRANSACTION

        approve(ledger, payment)
        changed = engine.step()
        assert set(tx.id for tx in changed) == {payment.id, transfer.id}
        assert transfer.state is S.COMPLETE
        assert share.owner.target is alice_account
        assert traded_account.balance == Decimal("1025.00")

    def test_refused_hold_stays_active(self, ledger, alice_account, bob_account):
        engine = TransactionEngine(ledger, max_passes=3)
        tx = new_currency_transfer(ledger, 5000, alice_account, bob_account)
        assert engine.step() == []
        assert tx.state is S.PENDING_HOLD
        assert tx in ledger.active_transactions()

    def test_backwards_time(self, ledger):
        engine = TransactionEngine(ledger)
        engine.step(T0 + DAY)
        with pytest.raises(ValueError):
            engine.step(T0)

    def test_max_passes_validated(self, ledger):
        with pytest.raises(ValueError):
            TransactionEngine(ledger, max_passes=0)


class TestAccrueAll:

    def test_accounts_and_approved_loans(self, ledger, alice, alice_account):
        savings = create_account(ledger, alice, "savings")
        approved = create_loan(ledger, alice_account, 100)
        pending = create_loan(ledger, alice_account, 5000)
        engine = TransactionEngine(ledger)

        assert engine.accrue_all() == 0
        ledger.advance_time(T0 + DAY)
        assert engine.accrue_all() == 2
        assert savings.balance == Decimal("1010.00")
        assert approved.balance == Decimal("105.00")
        assert pending.balance == Decimal("5000.00")
        assert engine.accrue_all() == 0

    def test_run(self, ledger, alice):
        savings = create_account(ledger, alice, "savings")
        engine = TransactionEngine(ledger)
        engine.run([T0 + DAY, T0 + 2 * DAY, T0 + 3 * DAY])
        assert ledger.current_time == T0 + 3 * DAY
        assert savings.balance == Decimal("1030.30")
