"""
config.py - Ledger configuration

Immutable configuration objects for a Ledger instance. There is no global
configuration: each Ledger is constructed with its own LedgerConfig (or the
defaults below).

    AccountDefaults: starting terms for new accounts
    LoanDefaults:    starting terms for new loans
    LedgerConfig:    accrual period, rounding, and the two groups above

All numeric fields are normalized to Decimal in __post_init__, so callers may
pass ints, strings or floats.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping

from .core import (
    DEFAULT_DECIMAL_PLACES, INTEREST_PERIOD, ZERO,
    InterestType, ValidationError, to_decimal,
)


def _coerce_decimals(obj: Any, names: tuple) -> None:
    """Convert the named fields of a frozen dataclass to non-negative Decimals."""
    for name in names:
        value = getattr(obj, name)
        if not isinstance(value, Decimal):
            value = to_decimal(value, name)
            object.__setattr__(obj, name, value)
        if value < ZERO:
            raise ValidationError(f"{name} must not be negative, got {value}")


def _coerce_interest_type(obj: Any) -> None:
    if isinstance(obj.interest_type, InterestType):
        return
    try:
        object.__setattr__(obj, 'interest_type', InterestType(obj.interest_type))
    except ValueError:
        raise ValidationError(f"Unknown interest type: {obj.interest_type!r}") from None


def _check_keys(cls: type, data: Mapping[str, Any]) -> None:
    if not isinstance(data, Mapping):
        raise ValidationError(f"{cls.__name__} options must be a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError(f"Unknown {cls.__name__} option(s): {', '.join(unknown)}")


@dataclass(frozen=True, slots=True)
class AccountDefaults:
    """Terms applied to every new account unless overridden at creation."""
    balance: Decimal = Decimal("1000")
    interest_type: InterestType = InterestType.COMPOUND
    interest_rate: Decimal = Decimal("0.01")          # Per period
    do_interest: bool = True
    do_overdraft: bool = True
    max_auto_approved_loan: Decimal = Decimal("1000")
    publically_traded: bool = False

    def __post_init__(self):
        _coerce_decimals(self, ("balance", "interest_rate", "max_auto_approved_loan"))
        _coerce_interest_type(self)


@dataclass(frozen=True, slots=True)
class LoanDefaults:
    """Terms applied to every new loan unless overridden at creation."""
    interest_rate: Decimal = Decimal("0.05")          # Per period
    interest_type: InterestType = InterestType.SIMPLE

    def __post_init__(self):
        _coerce_decimals(self, ("interest_rate",))
        _coerce_interest_type(self)


@dataclass(frozen=True, slots=True)
class LedgerConfig:
    """
    Configuration for one Ledger.

    Attributes:
        interest_period: Length of one accrual period (default 24 hours)
        decimal_places: Places every monetary amount is rounded to
        account: Defaults for new accounts
        loan: Defaults for new loans
    """
    interest_period: timedelta = INTEREST_PERIOD
    decimal_places: int = DEFAULT_DECIMAL_PLACES
    account: AccountDefaults = field(default_factory=AccountDefaults)
    loan: LoanDefaults = field(default_factory=LoanDefaults)

    def __post_init__(self):
        if not isinstance(self.interest_period, timedelta) or self.interest_period <= timedelta(0):
            raise ValidationError(f"interest_period must be a positive timedelta, got {self.interest_period!r}")
        if isinstance(self.decimal_places, bool) or not isinstance(self.decimal_places, int) \
                or not 0 <= self.decimal_places <= 8:
            raise ValidationError(f"decimal_places must be an int in [0, 8], got {self.decimal_places!r}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> LedgerConfig:
        """
        Build a config from a plain mapping, e.g. parsed JSON.

        Recognized keys: interest_period_hours, decimal_places, account, loan.
        The account and loan entries are mappings of AccountDefaults and
        LoanDefaults fields.

        Raises:
            ValidationError: On unknown keys or invalid values
        """
        data = dict(data)
        kwargs: Dict[str, Any] = {}

        if "interest_period_hours" in data:
            hours = to_decimal(data.pop("interest_period_hours"), "interest_period_hours")
            kwargs["interest_period"] = timedelta(hours=float(hours))
        if "decimal_places" in data:
            kwargs["decimal_places"] = data.pop("decimal_places")
        if "account" in data:
            kwargs["account"] = override(AccountDefaults(), data.pop("account"))
        if "loan" in data:
            kwargs["loan"] = override(LoanDefaults(), data.pop("loan"))

        if data:
            raise ValidationError(f"Unknown LedgerConfig option(s): {', '.join(sorted(data))}")
        return cls(**kwargs)


def override(defaults: Any, options: Mapping[str, Any]) -> Any:
    """
    Return a copy of a defaults dataclass with options applied.

    Raises:
        ValidationError: On unknown option names or invalid values
    """
    _check_keys(type(defaults), options)
    return replace(defaults, **options)
