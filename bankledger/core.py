"""
Core types and helpers for the bank ledger.

This module provides the foundational pieces every other module builds on:
1. Decimal context configuration
2. Constants: collection names, record kinds, interest period
3. Enums: account, loan and transaction states; interest and transaction types
4. Exceptions: LedgerError and the domain-specific error taxonomy
5. Reference-tagged containers: Ref and RefList
6. Helpers: id generation, record type checks, amount coercion

Nothing in this module touches ledger state.
"""

from __future__ import annotations
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation, getcontext
from enum import Enum
from typing import Any, Iterable, Iterator, List, Optional
import uuid


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Money is never a float. The global context is configured once at import so
# every balance operation rounds the same way.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Top-level collections. Every record lives in exactly one of these, keyed by id.
COLLECTION_USERS = "users"
COLLECTION_ACCOUNTS = "accounts"
COLLECTION_LOANS = "loans"
COLLECTION_TRANSACTIONS = "transactions"
COLLECTION_SHARES = "shares"
COLLECTION_CREDENTIALS = "credentials"

COLLECTIONS = (
    COLLECTION_USERS,
    COLLECTION_ACCOUNTS,
    COLLECTION_LOANS,
    COLLECTION_TRANSACTIONS,
    COLLECTION_SHARES,
    COLLECTION_CREDENTIALS,
)

# Record kind tags (stored on every persisted record).
KIND_USER = "user"
KIND_ACCOUNT = "account"
KIND_LOAN = "loan"
KIND_TRANSACTION = "transaction"
KIND_SHARE = "share"
KIND_CREDENTIAL = "credential"
KIND_INTEREST = "interest"

# Which top-level collection holds each record kind.
KIND_COLLECTIONS = {
    KIND_USER: COLLECTION_USERS,
    KIND_ACCOUNT: COLLECTION_ACCOUNTS,
    KIND_LOAN: COLLECTION_LOANS,
    KIND_TRANSACTION: COLLECTION_TRANSACTIONS,
    KIND_SHARE: COLLECTION_SHARES,
    KIND_CREDENTIAL: COLLECTION_CREDENTIALS,
}

# One accrual period.
INTEREST_PERIOD = timedelta(hours=24)

# Cents.
DEFAULT_DECIMAL_PLACES = 2

ZERO = Decimal("0")


# ============================================================================
# ENUMS
# ============================================================================

class AccountState(str, Enum):
    """State of an account."""
    NORMAL = "normal"
    FROZEN = "frozen"       # Rejects every debit


class LoanState(str, Enum):
    """State of a loan."""
    PENDING = "pending"     # Above the auto-approval ceiling, waiting
    APPROVED = "approved"   # Proceeds credited, accruing interest
    PAID = "paid"           # Balance reached zero


class InterestType(str, Enum):
    """How an Interest component grows its holder's balance."""
    SIMPLE = "simple"       # Proportional to the balance at first application
    COMPOUND = "compound"   # Proportional to the current balance


class TransactionType(str, Enum):
    """Type of a transaction."""
    CURRENCY_TRANSFER = "currency_transfer"
    SHARE_TRANSFER = "share_transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionState(str, Enum):
    """State of a transaction."""
    PENDING_HOLD = "pending_hold"                   # Attempting to take the hold
    PENDING_APPROVAL = "pending_approval"           # Hold taken, waiting for approval
    PENDING_TRANSACTION = "pending_transaction"     # Waiting on a linked transaction
    APPROVED = "approved"                           # Approved, finalize on next tick
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    PENDING_REVERT_HOLD = "pending_revert_hold"     # Reversion requested
    REVERT_HOLD = "revert_hold"                     # Funds taken back from destination
    REVERTED = "reverted"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    code = "LedgerError"


class ValidationError(LedgerError, ValueError):
    """Raised when input has the wrong type or shape. Nothing is mutated."""
    code = "ValidationError"


class NotFound(LedgerError):
    """Raised when a referenced record id is absent."""
    code = "NotFound"


class AccountFrozen(LedgerError):
    """Raised when a debit is attempted on a frozen account."""
    code = "AccountFrozen"


class InsufficientFundsAndOverdraftDenied(LedgerError):
    """Raised when a debit exceeds the balance and no overdraft loan can cover it."""
    code = "InsufficientFundsAndOverdraftDenied"


class InvalidTransition(LedgerError):
    """Raised when a state change is not permitted from the current state."""
    code = "InvalidTransition"


class DuplicateUser(LedgerError):
    """Raised when registering a username that is already taken."""
    code = "DuplicateUser"


class AccessDenied(LedgerError):
    """Raised when the caller is not permitted to read or mutate a record."""
    code = "AccessDenied"


class AuthenticationFailed(LedgerError):
    """Raised when a login name and credential do not match."""
    code = "AuthenticationFailed"


class RecordTypeError(LedgerError, TypeError):
    """Raised when an operation receives a record of the wrong kind."""
    code = "RecordTypeError"


class PersistenceError(LedgerError):
    """Base exception for snapshot encode/decode integrity failures."""
    code = "PersistenceError"


class DanglingReference(PersistenceError):
    """Raised when a stored id is missing from the collection it points into."""
    code = "DanglingReference"


class UnresolvableReference(PersistenceError):
    """Raised when a referenced value cannot be reduced to an id."""
    code = "UnresolvableReference"


# ============================================================================
# REFERENCE-TAGGED CONTAINERS
# ============================================================================

class Ref:
    """
    A single relationship slot tagged with the collection its target lives in.

    In memory the slot holds the live record (or None). When persisted it
    becomes {"ref": collection, "id": target.id}.
    """
    __slots__ = ("collection", "target")

    def __init__(self, collection: str, target: Any = None):
        self.collection = collection
        self.target = target

    def __repr__(self) -> str:
        return f"Ref({self.collection}:{getattr(self.target, 'id', None)})"


class RefList:
    """
    A many-valued relationship tagged with the collection its members live in.

    Membership is by identity. Persisted as {"ref": collection, "ids": [...]}.
    """
    __slots__ = ("collection", "_items")

    def __init__(self, collection: str, items: Iterable[Any] = ()):
        self.collection = collection
        self._items: List[Any] = list(items)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> Any:
        return self._items[index]

    def __contains__(self, target: Any) -> bool:
        return any(item is target for item in self._items)

    def add(self, target: Any) -> bool:
        """Append target unless already present. Returns True if added."""
        if target in self:
            return False
        self._items.append(target)
        return True

    def remove(self, target: Any) -> bool:
        """Remove target if present. Returns True if removed."""
        for i, item in enumerate(self._items):
            if item is target:
                del self._items[i]
                return True
        return False

    def ids(self) -> List[str]:
        return [item.id for item in self._items]

    def __repr__(self) -> str:
        return f"RefList({self.collection}:{[getattr(i, 'id', None) for i in self._items]})"


# ============================================================================
# HELPERS
# ============================================================================

def new_id() -> str:
    """Random 128-bit identifier as 32 hex characters."""
    return uuid.uuid4().hex


def expect_kind(record: Any, kind: str, argument: str = "record") -> None:
    """
    Assert that record carries the given kind tag.

    Raises:
        RecordTypeError: If record is not of the expected kind
    """
    actual = getattr(record, "kind", None)
    if actual != kind:
        raise RecordTypeError(
            f"Expected {kind} record for {argument}, got {actual or type(record).__name__}"
        )


def quantize(value: Decimal, places: int = DEFAULT_DECIMAL_PLACES) -> Decimal:
    """Round a monetary value to the given number of places (banker's rounding)."""
    return value.quantize(Decimal(10) ** -places, rounding=ROUND_HALF_EVEN)


def to_decimal(value: Any, name: str = "value") -> Decimal:
    """
    Convert an int, str, float or Decimal to a finite Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1").

    Raises:
        ValidationError: If value is a bool, not numeric, or not finite
    """
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be numeric, got bool")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value.strip() if isinstance(value, str) else value)
        except InvalidOperation:
            raise ValidationError(f"{name} is not a number: {value!r}") from None
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise ValidationError(f"{name} must be numeric, got {type(value).__name__}")
    if not result.is_finite():
        raise ValidationError(f"{name} must be finite, got {value!r}")
    return result


def to_amount(value: Any, places: int = DEFAULT_DECIMAL_PLACES, name: str = "amount") -> Decimal:
    """
    Convert value to a strictly positive monetary amount rounded to places.

    Raises:
        ValidationError: If value is not numeric or not positive after rounding
    """
    amount = quantize(to_decimal(value, name), places)
    if amount <= ZERO:
        raise ValidationError(f"{name} must be positive, got {value!r}")
    return amount
