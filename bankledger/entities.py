"""
entities.py - Users, credentials, accounts, loans and shares

Records are mutable dataclasses compared by identity. Every record has a
class-level `kind` tag (used by persistence to rebuild the typed graph) and
an `id`. Relationships are held in Ref / RefList containers that name the
collection their targets live in.

Operations are module-level functions that take the Ledger they act on:

    User:    create_user, authenticate, link_account
    Account: create_account, auto_approval_headroom, debit, credit,
             set_account_state
    Loan:    create_loan, change_loan_state, approve_loan, pay_loan
    Share:   create_share, clear_share_owner, set_share_owner

Every operation validates first and mutates afterwards, so a raised
LedgerError leaves the graph untouched. The exception is interest accrual,
which is driven by elapsed time and may already have been applied when a
later check refuses the operation.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Optional, TYPE_CHECKING
import logging

from passlib.context import CryptContext

from .config import override
from .core import (
    ZERO,
    COLLECTION_ACCOUNTS, COLLECTION_CREDENTIALS, COLLECTION_LOANS,
    COLLECTION_SHARES, COLLECTION_TRANSACTIONS, COLLECTION_USERS,
    KIND_ACCOUNT, KIND_CREDENTIAL, KIND_LOAN, KIND_SHARE, KIND_USER,
    AccountFrozen, AccountState, DuplicateUser, InsufficientFundsAndOverdraftDenied,
    InvalidTransition, LoanState, Ref, RefList, ValidationError,
    expect_kind, new_id,
)
from .interest import Interest, apply_interest

if TYPE_CHECKING:
    from .ledger import Ledger

log = logging.getLogger(__name__)

pwd = CryptContext(schemes=["bcrypt"], deprecated="auto")


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(eq=False)
class Credential:
    """
    bcrypt hash of a client-side credential hash.

    The plaintext never reaches the bank; `secret` arguments are the hash the
    client already computed. The salt lives inside `hashed`. Comparing a
    Credential to a str verifies the str against the stored hash.
    """
    kind: ClassVar[str] = KIND_CREDENTIAL

    id: str
    hashed: str

    @classmethod
    def new(cls, secret: str) -> Credential:
        if not isinstance(secret, str) or not secret:
            raise ValidationError("credential must be a non-empty string")
        return cls(id=new_id(), hashed=pwd.hash(secret))

    def matches(self, secret: Any) -> bool:
        if not isinstance(secret, str) or not secret:
            return False
        return pwd.verify(secret, self.hashed)

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, str):
            return self.matches(other)
        if isinstance(other, Credential):
            return self.hashed == other.hashed
        return NotImplemented

    __hash__ = None

    def __repr__(self) -> str:
        return f"Credential({self.id})"


@dataclass(eq=False)
class User:
    """A login. The id is the username."""
    kind: ClassVar[str] = KIND_USER

    id: str
    credential: Ref = field(default_factory=lambda: Ref(COLLECTION_CREDENTIALS))
    accounts: RefList = field(default_factory=lambda: RefList(COLLECTION_ACCOUNTS))

    def __repr__(self) -> str:
        return f"User({self.id!r}, accounts={len(self.accounts)})"


@dataclass(eq=False)
class Account:
    """
    A balance holder owned by one or more users.

    Attributes:
        balance: Current funds (never negative)
        interest: Accrual component (enabled when do_interest)
        state: NORMAL or FROZEN (frozen accounts refuse debits)
        publically_traded: Whether shares may be issued
        total_shares: Number of shares ever issued by this account
        do_overdraft: Whether a shortfall may be covered by a loan
        max_auto_approved_loan: Ceiling on approved loan balance
        owners, loans, transactions, shares: Forward indexes
    """
    kind: ClassVar[str] = KIND_ACCOUNT

    id: str
    name: str
    balance: Decimal
    interest: Interest
    state: AccountState = AccountState.NORMAL
    publically_traded: bool = False
    total_shares: int = 0
    do_overdraft: bool = True
    max_auto_approved_loan: Decimal = Decimal("1000")
    owners: RefList = field(default_factory=lambda: RefList(COLLECTION_USERS))
    loans: RefList = field(default_factory=lambda: RefList(COLLECTION_LOANS))
    transactions: RefList = field(default_factory=lambda: RefList(COLLECTION_TRANSACTIONS))
    shares: RefList = field(default_factory=lambda: RefList(COLLECTION_SHARES))

    def __repr__(self) -> str:
        return f"Account({self.id}, {self.name!r}, balance={self.balance}, {self.state.value})"


@dataclass(eq=False)
class Loan:
    """
    Money owed by an account.

    A loan accrues interest only while APPROVED. The account is credited
    with the loan's balance exactly once, on the PENDING -> APPROVED edge.
    """
    kind: ClassVar[str] = KIND_LOAN

    id: str
    balance: Decimal
    initial_balance: Decimal
    date_taken: datetime
    interest: Interest
    state: LoanState = LoanState.PENDING
    account: Ref = field(default_factory=lambda: Ref(COLLECTION_ACCOUNTS))

    def __repr__(self) -> str:
        return f"Loan({self.id}, balance={self.balance}, {self.state.value})"


@dataclass(eq=False)
class Share:
    """One unit of ownership in a publicly traded account."""
    kind: ClassVar[str] = KIND_SHARE

    id: str
    issuing_account: Ref = field(default_factory=lambda: Ref(COLLECTION_ACCOUNTS))
    owner: Ref = field(default_factory=lambda: Ref(COLLECTION_ACCOUNTS))

    def __repr__(self) -> str:
        return f"Share({self.id}, owner={getattr(self.owner.target, 'id', None)})"


# ============================================================================
# INTEREST
# ============================================================================

def accrue(ledger: Ledger, holder: Any) -> bool:
    """Apply one due period of interest to an account or loan."""
    return apply_interest(
        holder,
        ledger.current_time,
        ledger.config.interest_period,
        ledger.config.decimal_places,
    )


# ============================================================================
# USERS
# ============================================================================

def create_user(ledger: Ledger, username: str, secret: str) -> User:
    """
    Register a new user with a bcrypt-hashed credential.

    Raises:
        ValidationError: If username or secret is empty or not a string
        DuplicateUser: If the username is taken
    """
    if not isinstance(username, str) or not username.strip():
        raise ValidationError("username must be a non-empty string")
    if username in ledger.users:
        raise DuplicateUser(f"User {username!r} already exists")

    credential = Credential.new(secret)
    user = User(id=username)
    user.credential.target = credential

    ledger.register(credential)
    ledger.register(user)
    log.info("user %s created", username)
    return user


def authenticate(ledger: Ledger, username: str, secret: str) -> bool:
    """True if username exists and secret matches its credential."""
    user = ledger.users.get(username) if isinstance(username, str) else None
    if user is None or user.credential.target is None:
        return False
    return user.credential.target.matches(secret)


def link_account(user: User, account: Account) -> bool:
    """
    Make user an owner of account. Both indexes are updated together.

    Returns:
        True if the link was new
    """
    expect_kind(user, KIND_USER, "user")
    expect_kind(account, KIND_ACCOUNT, "account")
    added = user.accounts.add(account)
    added = account.owners.add(user) or added
    if added:
        log.info("user %s linked to account %s", user.id, account.id)
    return added


# ============================================================================
# ACCOUNTS
# ============================================================================

def create_account(ledger: Ledger, owner: User, name: str, **options: Any) -> Account:
    """
    Open an account owned by owner.

    Options override the ledger's AccountDefaults field by field.

    Raises:
        ValidationError: On an empty name, unknown option, or invalid value
    """
    expect_kind(owner, KIND_USER, "owner")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("account name must be a non-empty string")
    terms = override(ledger.config.account, options)

    now = ledger.current_time
    account = Account(
        id=new_id(),
        name=name,
        balance=ledger.quantize(terms.balance),
        interest=Interest(
            rate=terms.interest_rate,
            interest_type=terms.interest_type,
            enabled=bool(terms.do_interest),
            last_time=now,
        ),
        publically_traded=bool(terms.publically_traded),
        do_overdraft=bool(terms.do_overdraft),
        max_auto_approved_loan=ledger.quantize(terms.max_auto_approved_loan),
    )
    ledger.register(account)
    link_account(owner, account)
    log.info("account %s (%r) created for %s, balance %s", account.id, name, owner.id, account.balance)
    return account


def auto_approval_headroom(account: Account) -> Decimal:
    """Ceiling minus the outstanding balance of approved loans. May be negative."""
    outstanding = sum(
        (loan.balance for loan in account.loans if loan.state is LoanState.APPROVED),
        ZERO,
    )
    return account.max_auto_approved_loan - outstanding


def debit(ledger: Ledger, account: Account, amount: Any, allow_overdraft: bool = True) -> Decimal:
    """
    Remove amount from account.

    If the balance does not cover the amount and the account allows
    overdraft, a loan for the shortfall is created and auto-approved first,
    leaving the balance at exactly zero.

    Returns:
        The amount debited

    Raises:
        ValidationError: If amount is not a positive number
        AccountFrozen: If the account is frozen
        InsufficientFundsAndOverdraftDenied: If no overdraft loan can cover it
    """
    expect_kind(account, KIND_ACCOUNT, "account")
    amount = ledger.to_amount(amount)
    if account.state is AccountState.FROZEN:
        raise AccountFrozen(f"Account {account.id} is frozen")

    accrue(ledger, account)

    if account.balance < amount:
        shortfall = amount - account.balance
        if not (allow_overdraft and account.do_overdraft) \
                or shortfall > auto_approval_headroom(account):
            raise InsufficientFundsAndOverdraftDenied(
                f"Account {account.id} cannot cover {amount} (balance {account.balance})"
            )
        loan = create_loan(ledger, account, shortfall)
        log.info("overdraft loan %s covers %s on account %s", loan.id, shortfall, account.id)

    account.balance = account.balance - amount
    log.info("account %s debited %s -> %s", account.id, amount, account.balance)
    return amount


def credit(ledger: Ledger, account: Account, amount: Any) -> Decimal:
    """Add amount to account. Frozen accounts still receive credits."""
    expect_kind(account, KIND_ACCOUNT, "account")
    amount = ledger.to_amount(amount)
    accrue(ledger, account)
    account.balance = account.balance + amount
    log.info("account %s credited %s -> %s", account.id, amount, account.balance)
    return amount


def set_account_state(account: Account, state: Any) -> bool:
    """Freeze or unfreeze an account. Returns True if the state changed."""
    expect_kind(account, KIND_ACCOUNT, "account")
    try:
        state = AccountState(state)
    except ValueError:
        raise ValidationError(f"Unknown account state: {state!r}") from None
    if account.state is state:
        return False
    account.state = state
    log.info("account %s is now %s", account.id, state.value)
    return True


# ============================================================================
# LOANS
# ============================================================================

def create_loan(ledger: Ledger, account: Account, balance: Any, **options: Any) -> Loan:
    """
    Take out a loan against account.

    Loans within the account's auto-approval headroom are approved at once
    (crediting the account); larger loans stay PENDING until approve_loan.

    Raises:
        ValidationError: If balance is not positive or options are invalid
    """
    expect_kind(account, KIND_ACCOUNT, "account")
    balance = ledger.to_amount(balance, "balance")
    terms = override(ledger.config.loan, options)

    now = ledger.current_time
    loan = Loan(
        id=new_id(),
        balance=balance,
        initial_balance=balance,
        date_taken=now,
        interest=Interest(
            rate=terms.interest_rate,
            interest_type=terms.interest_type,
            enabled=False,
            last_time=now,
        ),
    )
    auto_approve = balance <= auto_approval_headroom(account)

    loan.account.target = account
    ledger.register(loan)
    account.loans.add(loan)
    log.info("loan %s of %s created for account %s", loan.id, balance, account.id)

    if auto_approve:
        change_loan_state(ledger, loan, LoanState.APPROVED)
    return loan


# Allowed loan edges. Staying in the same state is always a no-op.
_LOAN_EDGES = {
    (LoanState.PENDING, LoanState.APPROVED),
    (LoanState.APPROVED, LoanState.PAID),
}


def change_loan_state(ledger: Ledger, loan: Loan, new_state: Any) -> bool:
    """
    Move a loan along PENDING -> APPROVED -> PAID.

    Entering APPROVED credits the account with the loan balance and starts
    interest. Entering PAID stops interest.

    Returns:
        True if the state changed

    Raises:
        InvalidTransition: For any other edge
    """
    expect_kind(loan, KIND_LOAN, "loan")
    try:
        new_state = LoanState(new_state)
    except ValueError:
        raise ValidationError(f"Unknown loan state: {new_state!r}") from None

    if loan.state is new_state:
        return False
    if (loan.state, new_state) not in _LOAN_EDGES:
        raise InvalidTransition(f"Loan {loan.id}: {loan.state.value} -> {new_state.value}")

    if new_state is LoanState.APPROVED:
        credit(ledger, loan.account.target, loan.balance)
        loan.interest.enable(ledger.current_time)
    else:
        loan.interest.disable()

    loan.state = new_state
    log.info("loan %s is now %s", loan.id, new_state.value)
    return True


def approve_loan(ledger: Ledger, loan: Loan) -> Loan:
    """
    Approve a pending loan.

    Raises:
        InvalidTransition: If the loan is not pending
    """
    expect_kind(loan, KIND_LOAN, "loan")
    if loan.state is not LoanState.PENDING:
        raise InvalidTransition(f"Loan {loan.id} is {loan.state.value}, not pending")
    change_loan_state(ledger, loan, LoanState.APPROVED)
    return loan


def pay_loan(ledger: Ledger, loan: Loan, amount: Any) -> Decimal:
    """
    Pay down an approved loan from its account.

    The payment is clamped to the remaining balance and never triggers an
    overdraft loan. The loan becomes PAID when its balance reaches zero.

    Returns:
        The amount actually paid

    Raises:
        InvalidTransition: If the loan is not approved
        AccountFrozen / InsufficientFundsAndOverdraftDenied: From the debit
    """
    expect_kind(loan, KIND_LOAN, "loan")
    amount = ledger.to_amount(amount)
    if loan.state is not LoanState.APPROVED:
        raise InvalidTransition(f"Loan {loan.id} is {loan.state.value}, not approved")

    accrue(ledger, loan)
    payment = min(amount, loan.balance)
    debit(ledger, loan.account.target, payment, allow_overdraft=False)

    loan.balance = loan.balance - payment
    log.info("loan %s paid %s, remaining %s", loan.id, payment, loan.balance)
    if loan.balance == ZERO:
        change_loan_state(ledger, loan, LoanState.PAID)
    return payment


# ============================================================================
# SHARES
# ============================================================================

def create_share(ledger: Ledger, account: Account) -> Optional[Share]:
    """Issue one share owned by account. Returns None unless publicly traded."""
    expect_kind(account, KIND_ACCOUNT, "account")
    if not account.publically_traded:
        return None

    share = Share(id=new_id())
    share.issuing_account.target = account
    share.owner.target = account
    ledger.register(share)
    account.shares.add(share)
    account.total_shares += 1
    log.info("share %s issued by account %s", share.id, account.id)
    return share


def clear_share_owner(share: Share) -> bool:
    """
    Detach share from its owner.

    Returns:
        True if the share was found in the owner's index
    """
    expect_kind(share, KIND_SHARE, "share")
    owner = share.owner.target
    if owner is None:
        return False
    share.owner.target = None
    if owner.shares.remove(share):
        return True
    log.warning("share %s was not indexed under its owner %s", share.id, owner.id)
    return False


def set_share_owner(share: Share, account: Account) -> None:
    """Transfer share to account, keeping both owners' indexes consistent."""
    expect_kind(share, KIND_SHARE, "share")
    expect_kind(account, KIND_ACCOUNT, "account")
    previous = share.owner.target
    clear_share_owner(share)
    share.owner.target = account
    account.shares.add(share)
    log.info("share %s moved from %s to %s",
             share.id, getattr(previous, "id", None), account.id)
