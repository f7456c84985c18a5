"""
ledger.py - The bank's entity graph

The Ledger class owns every record. It holds the six top-level collections
(users, accounts, loans, transactions, shares, credentials), each a mapping
from id to live record, together with the logical clock and configuration.

Key responsibilities:
    - Authoritative ownership: a record exists iff it is registered here
    - Typed lookup by collection and id
    - Logical time (interest accrual and transaction timestamps read it)
    - Integrity report over the forward indexes

Records are never deleted. Terminal states mark the end of their life.

There is no process-wide ledger; every operation receives the instance it
acts on.
"""

from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .config import LedgerConfig
from .core import (
    COLLECTIONS, KIND_COLLECTIONS, ZERO,
    COLLECTION_USERS, COLLECTION_ACCOUNTS, COLLECTION_LOANS,
    COLLECTION_TRANSACTIONS, COLLECTION_SHARES,
    KIND_USER, KIND_ACCOUNT, KIND_LOAN, KIND_TRANSACTION, KIND_SHARE,
    NotFound, ValidationError, expect_kind, quantize, to_amount,
)

if TYPE_CHECKING:
    from .entities import Account, Credential, Loan, Share, User
    from .transactions import Transaction


class Ledger:
    """
    Single-authority store of the bank's records.

    Thread Safety:
        Not thread-safe. One request is processed to completion before the
        next begins; callers serialize access.

    Example:
        ledger = Ledger("main")
        alice = create_user(ledger, "alice", client_hash)
        checking = create_account(ledger, alice, "checking")
        ledger.advance_time(datetime(2025, 1, 2))
    """

    def __init__(
        self,
        name: str = "bank",
        config: Optional[LedgerConfig] = None,
        initial_time: Optional[datetime] = None,
    ):
        """
        Create an empty ledger.

        Args:
            name: Ledger identifier (stored in snapshots)
            config: Ledger configuration (default: LedgerConfig())
            initial_time: Starting logical time (default: 1970-01-01).
                Aware datetimes are converted to naive UTC.
        """
        self.name = name
        self.config = config or LedgerConfig()
        self._current_time: datetime = self.normalize_time(initial_time or datetime(1970, 1, 1))

        self.users: Dict[str, User] = {}
        self.accounts: Dict[str, Account] = {}
        self.loans: Dict[str, Loan] = {}
        self.transactions: Dict[str, Transaction] = {}
        self.shares: Dict[str, Share] = {}
        self.credentials: Dict[str, Credential] = {}

    def __repr__(self) -> str:
        counts = ", ".join(f"{name}={len(self.collection(name))}" for name in COLLECTIONS)
        return f"Ledger({self.name!r}, {counts}, time={self._current_time.isoformat()})"

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    @staticmethod
    def normalize_time(moment: datetime) -> datetime:
        """Return moment as naive UTC, the form the ledger clock keeps."""
        if not isinstance(moment, datetime):
            raise ValidationError(f"Expected a datetime, got {type(moment).__name__}")
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
        return moment

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock.

        Time can only move forward, never backward. Aware datetimes are
        converted to naive UTC first.

        Raises:
            ValidationError: If new_time is not a datetime or is before the
                current time
        """
        new_time = self.normalize_time(new_time)
        if new_time < self._current_time:
            raise ValidationError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # AMOUNTS
    # ========================================================================

    def quantize(self, value: Decimal) -> Decimal:
        """Round a monetary value to the configured precision."""
        return quantize(value, self.config.decimal_places)

    def to_amount(self, value: Any, name: str = "amount") -> Decimal:
        """Validate and round a strictly positive monetary amount."""
        return to_amount(value, self.config.decimal_places, name)

    # ========================================================================
    # COLLECTIONS
    # ========================================================================

    def collection(self, name: str) -> Dict[str, Any]:
        """
        Return the live mapping for a top-level collection.

        Raises:
            ValidationError: If name is not one of COLLECTIONS
        """
        if name not in COLLECTIONS:
            raise ValidationError(f"Unknown collection: {name!r}")
        return getattr(self, name)

    def collections(self) -> Dict[str, Dict[str, Any]]:
        """All six collections keyed by name."""
        return {name: getattr(self, name) for name in COLLECTIONS}

    def register(self, record: Any) -> None:
        """
        Add a newly created record to the collection for its kind.

        Raises:
            ValidationError: If the kind is unknown or the id is already taken
        """
        kind = getattr(record, "kind", None)
        if kind not in KIND_COLLECTIONS:
            raise ValidationError(f"Cannot register {type(record).__name__}: no collection for kind {kind!r}")
        records = self.collection(KIND_COLLECTIONS[kind])
        if record.id in records:
            raise ValidationError(f"{kind} {record.id} already registered")
        records[record.id] = record

    def get(self, collection: str, record_id: str) -> Any:
        """
        Look up a record by collection name and id.

        Raises:
            ValidationError: If the collection name is unknown
            NotFound: If no record has that id
        """
        records = self.collection(collection)
        if not isinstance(record_id, str) or record_id not in records:
            raise NotFound(f"No {collection} record with id {record_id!r}")
        return records[record_id]

    def _get_typed(self, collection: str, record_id: str, kind: str) -> Any:
        record = self.get(collection, record_id)
        expect_kind(record, kind)
        return record

    def get_user(self, user_id: str) -> User:
        return self._get_typed(COLLECTION_USERS, user_id, KIND_USER)

    def get_account(self, account_id: str) -> Account:
        return self._get_typed(COLLECTION_ACCOUNTS, account_id, KIND_ACCOUNT)

    def get_loan(self, loan_id: str) -> Loan:
        return self._get_typed(COLLECTION_LOANS, loan_id, KIND_LOAN)

    def get_transaction(self, transaction_id: str) -> Transaction:
        return self._get_typed(COLLECTION_TRANSACTIONS, transaction_id, KIND_TRANSACTION)

    def get_share(self, share_id: str) -> Share:
        return self._get_typed(COLLECTION_SHARES, share_id, KIND_SHARE)

    def active_transactions(self) -> List[Transaction]:
        """Transactions with a pending tick action, oldest first."""
        from .transactions import is_active

        active = [tx for tx in self.transactions.values() if is_active(tx)]
        active.sort(key=lambda tx: (tx.created, tx.id))
        return active

    # ========================================================================
    # INTEGRITY
    # ========================================================================

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Check that forward indexes agree with the records they index.

        Checks:
            - every account balance and loan balance is >= 0
            - User.accounts and Account.owners mirror each other
            - Account.loans and Loan.account mirror each other
            - Account.shares holds exactly the shares whose owner is that account
            - Account.transactions holds every transaction naming that account

        Returns:
            Dict with keys:
            - 'valid': bool - True if no problems were found
            - 'problems': List[str] - one line per inconsistency
        """
        problems: List[str] = []

        for user in self.users.values():
            for account in user.accounts:
                if user not in account.owners:
                    problems.append(f"user {user.id} lists account {account.id} which does not list the user")

        for account in self.accounts.values():
            if account.balance < ZERO:
                problems.append(f"account {account.id} balance {account.balance} < 0")
            for owner in account.owners:
                if account not in owner.accounts:
                    problems.append(f"account {account.id} lists owner {owner.id} who does not list it")
            for loan in account.loans:
                if loan.account.target is not account:
                    problems.append(f"account {account.id} indexes loan {loan.id} owned elsewhere")
            for share in account.shares:
                if share.owner.target is not account:
                    problems.append(f"account {account.id} indexes share {share.id} owned elsewhere")
            for tx in account.transactions:
                if account not in tx.accounts:
                    problems.append(f"account {account.id} indexes transaction {tx.id} not involving it")

        for loan in self.loans.values():
            if loan.balance < ZERO:
                problems.append(f"loan {loan.id} balance {loan.balance} < 0")
            account = loan.account.target
            if account is None or loan not in account.loans:
                problems.append(f"loan {loan.id} missing from its account's index")

        for share in self.shares.values():
            owner = share.owner.target
            if owner is not None and share not in owner.shares:
                problems.append(f"share {share.id} missing from owner {owner.id}'s index")

        for tx in self.transactions.values():
            for account in tx.accounts:
                if tx not in account.transactions:
                    problems.append(f"transaction {tx.id} missing from account {account.id}'s index")

        return {
            'valid': len(problems) == 0,
            'problems': problems,
        }
