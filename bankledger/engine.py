"""
engine.py - Transaction Engine

Drives interest accrual and transaction ticks for a ledger.

Execution order each step():
1. Advance ledger time (if a timestamp is given)
2. Apply due interest to every account and approved loan
3. Tick every active transaction (oldest first)
4. Repeat 3 until a pass changes nothing (linked transfers settle in
   later passes)

Transactions waiting on outside input (pending_approval, or complete) are
not active and are left alone.
"""

from __future__ import annotations
from datetime import datetime
from typing import Iterable, List, Optional
import logging

from .core import LoanState
from .entities import accrue
from .ledger import Ledger
from .transactions import Transaction, tick

log = logging.getLogger(__name__)


class TransactionEngine:
    """
    Repeatedly ticks a ledger's active transactions.

    Example:
        engine = TransactionEngine(ledger)
        changed = engine.step(datetime(2025, 1, 2))
    """

    def __init__(self, ledger: Ledger, max_passes: int = 10):
        """
        Args:
            ledger: The ledger to operate on
            max_passes: Safety limit on tick passes per step
        """
        if max_passes < 1:
            raise ValueError(f"max_passes must be at least 1, got {max_passes}")
        self.ledger = ledger
        self.max_passes = max_passes

    def accrue_all(self) -> int:
        """
        Apply one due interest period to every account and approved loan.

        Returns:
            Number of holders that accrued
        """
        applied = 0
        for account_id in sorted(self.ledger.accounts):
            if accrue(self.ledger, self.ledger.accounts[account_id]):
                applied += 1
        for loan_id in sorted(self.ledger.loans):
            loan = self.ledger.loans[loan_id]
            if loan.state is LoanState.APPROVED and accrue(self.ledger, loan):
                applied += 1
        return applied

    def step(self, timestamp: Optional[datetime] = None) -> List[Transaction]:
        """
        Advance time, accrue interest and tick transactions until stable.

        Args:
            timestamp: New ledger time (None keeps the current time)

        Returns:
            Transactions whose state changed, in the order they first changed
        """
        if timestamp is not None:
            self.ledger.advance_time(timestamp)
        self.accrue_all()

        changed: List[Transaction] = []
        seen = set()

        for pass_num in range(self.max_passes):
            progressed = False
            for tx in self.ledger.active_transactions():
                if tick(self.ledger, tx):
                    progressed = True
                    if tx.id not in seen:
                        seen.add(tx.id)
                        changed.append(tx)
            if not progressed:
                break
        else:
            log.warning("transaction engine stopped after %d passes with work remaining", self.max_passes)

        return changed

    def run(self, timestamps: Iterable[datetime]) -> List[Transaction]:
        """
        Run the engine through a sequence of timestamps.

        Returns:
            All changed transactions, per step, concatenated
        """
        all_transactions: List[Transaction] = []
        for timestamp in timestamps:
            all_transactions.extend(self.step(timestamp))
        return all_transactions
