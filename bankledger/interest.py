"""
interest.py - Time-gated balance growth

Accounts and loans do not inherit interest behaviour; each holds one Interest
component and the functions here act on (holder, component) pairs. A holder
is anything with a mutable `balance`, an `interest` attribute, and an `id`.

Accrual rules:
    - Nothing happens until a full period has elapsed since last_time.
    - Each application grows the balance by exactly ONE period and moves
      last_time forward by exactly one period (not to "now"). After a long
      gap the holder is therefore behind, and every later call catches up one
      more period.
    - SIMPLE growth is rate * initial_balance, where initial_balance is the
      balance captured the first time interest is applied.
    - COMPOUND growth is rate * current balance.

Key formula:
    growth = quantize(base * rate)
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, ClassVar, Optional
import logging

from .core import (
    DEFAULT_DECIMAL_PLACES, INTEREST_PERIOD, KIND_INTEREST,
    InterestType, quantize,
)

log = logging.getLogger(__name__)


@dataclass
class Interest:
    """
    Interest terms and accrual clock for one holder.

    Attributes:
        rate: Growth per period (e.g. Decimal("0.01") for 1%)
        interest_type: SIMPLE or COMPOUND
        enabled: Whether accrual is active (loans start disabled)
        last_time: Start of the current, not yet accrued, period
        initial_balance: SIMPLE base, captured on first application
    """
    kind: ClassVar[str] = KIND_INTEREST

    rate: Decimal
    interest_type: InterestType
    enabled: bool
    last_time: datetime
    initial_balance: Optional[Decimal] = None

    def enable(self, now: datetime) -> None:
        """Start accruing from now. No effect if already enabled."""
        if not self.enabled:
            self.enabled = True
            self.last_time = now

    def disable(self) -> None:
        self.enabled = False

    def is_due(self, now: datetime, period: timedelta = INTEREST_PERIOD) -> bool:
        """True when enabled and at least one full period has elapsed."""
        return self.enabled and now - self.last_time >= period


def calculate_interest(
    balance: Decimal,
    rate: Decimal,
    interest_type: InterestType,
    initial_balance: Optional[Decimal] = None,
    places: int = DEFAULT_DECIMAL_PLACES,
) -> Decimal:
    """
    Growth for a single period.

    PURE FUNCTION - All inputs explicit.

    Args:
        balance: Current balance
        rate: Growth per period
        interest_type: SIMPLE or COMPOUND
        initial_balance: SIMPLE base (falls back to balance when None)
        places: Rounding precision

    Returns:
        Amount to add to the balance, rounded to places
    """
    if interest_type is InterestType.SIMPLE:
        base = balance if initial_balance is None else initial_balance
    else:
        base = balance
    return quantize(base * rate, places)


def apply_interest(
    holder: Any,
    now: datetime,
    period: timedelta = INTEREST_PERIOD,
    places: int = DEFAULT_DECIMAL_PLACES,
) -> bool:
    """
    Apply one period of interest to holder if a period has elapsed.

    Calling this again within the same period is a no-op.

    Args:
        holder: Record with balance, interest and id attributes
        now: Current ledger time
        period: Accrual period length
        places: Rounding precision

    Returns:
        True if a period was applied
    """
    interest: Interest = holder.interest
    if not interest.is_due(now, period):
        return False

    if interest.interest_type is InterestType.SIMPLE and interest.initial_balance is None:
        interest.initial_balance = holder.balance

    growth = calculate_interest(
        holder.balance,
        interest.rate,
        interest.interest_type,
        interest.initial_balance,
        places,
    )
    holder.balance = holder.balance + growth
    interest.last_time = interest.last_time + period
    log.info("interest applied to %s %s: +%s -> %s", holder.kind, holder.id, growth, holder.balance)
    return True
