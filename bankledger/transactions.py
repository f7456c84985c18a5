"""
transactions.py - Transaction records and their state machine

A transaction moves money (or a share) between accounts in steps. Each call
to tick() performs at most one step for the transaction's current state; an
external driver (TransactionEngine, or the request handler) decides when to
tick.

State graph:

    pending_hold        -> pending_approval, pending_transaction, cancelled
    pending_approval    -> approved, cancelled
    pending_transaction -> complete, cancelled
    approved            -> complete, cancelled
    complete            -> pending_revert_hold
    pending_revert_hold -> revert_hold
    revert_hold         -> reverted

cancelled and reverted are terminal. complete is terminal unless a revert is
requested.

Tick actions by type:

    currency_transfer: pending_hold         debit source       -> pending_approval
                       approved             credit destination -> complete
                       pending_revert_hold  debit destination  -> revert_hold
                       revert_hold          credit source      -> reverted
    deposit:           approved             credit account     -> complete
    withdrawal:        approved             debit account      -> complete | cancelled
    share_transfer:    pending_hold         source owns share  -> pending_transaction
                       pending_transaction  linked complete    -> complete (share moves)
                                            linked cancelled   -> cancelled
                                            linked reverted    -> cancelled

A share with an active share transfer is reserved: no second transfer of it
can be opened until the first one finishes. If the source has lost the share
by the time the payment completes, the share transfer is cancelled and the
payment is reverted.

A refused debit (frozen account, insufficient funds) never escapes tick():
it is stored on the transaction as last_error and the state is left as is.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, TYPE_CHECKING
import logging

from .core import (
    COLLECTION_ACCOUNTS, COLLECTION_SHARES, COLLECTION_TRANSACTIONS,
    KIND_ACCOUNT, KIND_SHARE, KIND_TRANSACTION,
    AccountFrozen, InsufficientFundsAndOverdraftDenied, InvalidTransition,
    Ref, RefList, TransactionState, TransactionType, ValidationError,
    expect_kind, new_id,
)
from .entities import Account, Share, credit, debit, set_share_owner

if TYPE_CHECKING:
    from .ledger import Ledger

log = logging.getLogger(__name__)

S = TransactionState
T = TransactionType

_EDGES = {
    S.PENDING_HOLD: {S.PENDING_APPROVAL, S.PENDING_TRANSACTION, S.CANCELLED},
    S.PENDING_APPROVAL: {S.APPROVED, S.CANCELLED},
    S.PENDING_TRANSACTION: {S.COMPLETE, S.CANCELLED},
    S.APPROVED: {S.COMPLETE, S.CANCELLED},
    S.COMPLETE: {S.PENDING_REVERT_HOLD},
    S.PENDING_REVERT_HOLD: {S.REVERT_HOLD},
    S.REVERT_HOLD: {S.REVERTED},
}

TERMINAL_STATES = frozenset({S.CANCELLED, S.REVERTED, S.COMPLETE})

# Errors a balance operation may refuse with during a tick.
_REFUSALS = (AccountFrozen, InsufficientFundsAndOverdraftDenied)


@dataclass(eq=False)
class Transaction:
    """
    One transfer between accounts.

    Attributes:
        type: currency_transfer, share_transfer, deposit or withdrawal
        state: Current position in the state graph
        created, updated: Ledger time of creation and of the last state change
        balance: Amount moved (None for share transfers)
        accounts: [source, destination], or [account] for deposit/withdrawal
        share: Share being moved (share transfers only)
        linked: Currency transfer paying for a share transfer
        last_error: Code of the most recent refused tick, if any
    """
    kind: ClassVar[str] = KIND_TRANSACTION

    id: str
    type: TransactionType
    state: TransactionState
    created: datetime
    updated: datetime
    balance: Optional[Decimal] = None
    accounts: RefList = field(default_factory=lambda: RefList(COLLECTION_ACCOUNTS))
    share: Ref = field(default_factory=lambda: Ref(COLLECTION_SHARES))
    linked: Ref = field(default_factory=lambda: Ref(COLLECTION_TRANSACTIONS))
    last_error: Optional[str] = None

    @property
    def source(self) -> Account:
        return self.accounts[0]

    @property
    def destination(self) -> Account:
        return self.accounts[len(self.accounts) - 1]

    def __repr__(self) -> str:
        amount = f", {self.balance}" if self.balance is not None else ""
        return f"Transaction({self.id}, {self.type.value}, {self.state.value}{amount})"


# ============================================================================
# CONSTRUCTION
# ============================================================================

def _open(
    ledger: Ledger,
    tx_type: TransactionType,
    state: TransactionState,
    accounts: Tuple[Account, ...],
    balance: Optional[Decimal] = None,
) -> Transaction:
    now = ledger.current_time
    tx = Transaction(
        id=new_id(),
        type=tx_type,
        state=state,
        created=now,
        updated=now,
        balance=balance,
    )
    for account in accounts:
        tx.accounts.add(account)
    ledger.register(tx)
    for account in accounts:
        account.transactions.add(tx)
    log.info("transaction %s created: %s %s", tx.id, tx_type.value,
             balance if balance is not None else "")
    return tx


def new_currency_transfer(ledger: Ledger, amount: Any, source: Account, destination: Account) -> Transaction:
    """
    Start moving amount from source to destination.

    Raises:
        ValidationError: If amount is not positive or source is destination
    """
    expect_kind(source, KIND_ACCOUNT, "source")
    expect_kind(destination, KIND_ACCOUNT, "destination")
    amount = ledger.to_amount(amount)
    if source is destination:
        raise ValidationError("source and destination must be different accounts")
    return _open(ledger, T.CURRENCY_TRANSFER, S.PENDING_HOLD, (source, destination), amount)


def new_deposit(ledger: Ledger, amount: Any, account: Account) -> Transaction:
    """Create an approved deposit; the next tick credits the account."""
    expect_kind(account, KIND_ACCOUNT, "account")
    amount = ledger.to_amount(amount)
    return _open(ledger, T.DEPOSIT, S.APPROVED, (account,), amount)


def new_withdrawal(ledger: Ledger, amount: Any, account: Account) -> Tuple[Transaction, bool]:
    """
    Create a withdrawal and tick it once.

    Returns:
        (transaction, succeeded). On refusal the transaction is cancelled and
        last_error holds the reason.
    """
    expect_kind(account, KIND_ACCOUNT, "account")
    amount = ledger.to_amount(amount)
    tx = _open(ledger, T.WITHDRAWAL, S.APPROVED, (account,), amount)
    tick(ledger, tx)
    return tx, tx.state is S.COMPLETE


def pending_sale(share: Share) -> Optional[Transaction]:
    """The active share transfer holding share, if any."""
    owner = share.owner.target
    if owner is None:
        return None
    for tx in owner.transactions:
        if tx.type is T.SHARE_TRANSFER and tx.share.target is share and is_active(tx):
            return tx
    return None


def _check_not_reserved(share: Share) -> None:
    held = pending_sale(share)
    if held is not None:
        raise ValidationError(f"Share {share.id} is already being sold in transaction {held.id}")


def share_transfers_for(payment: Transaction) -> List[Transaction]:
    """Share transfers whose settlement depends on payment."""
    return [
        tx for tx in payment.source.transactions
        if tx.type is T.SHARE_TRANSFER and tx.linked.target is payment
    ]


def new_share_transfer(
    ledger: Ledger,
    share: Share,
    source: Account,
    destination: Account,
    linked: Transaction,
) -> Transaction:
    """
    Start moving share from source to destination once linked completes.

    Raises:
        ValidationError: If source does not own the share, source is
            destination, or linked is not a currency transfer
    """
    expect_kind(share, KIND_SHARE, "share")
    expect_kind(source, KIND_ACCOUNT, "source")
    expect_kind(destination, KIND_ACCOUNT, "destination")
    expect_kind(linked, KIND_TRANSACTION, "linked")
    if source is destination:
        raise ValidationError("source and destination must be different accounts")
    if share.owner.target is not source:
        raise ValidationError(f"Share {share.id} is not owned by account {source.id}")
    if linked.type is not T.CURRENCY_TRANSFER:
        raise ValidationError(f"Linked transaction {linked.id} is not a currency transfer")
    _check_not_reserved(share)

    tx = _open(ledger, T.SHARE_TRANSFER, S.PENDING_HOLD, (source, destination))
    tx.share.target = share
    tx.linked.target = linked
    return tx


def new_share_trade(
    ledger: Ledger,
    share: Share,
    buyer: Account,
    price: Any,
) -> Tuple[Transaction, Transaction]:
    """
    Sell share to buyer: a currency transfer buyer -> owner plus a share
    transfer linked to it.

    Returns:
        (payment, share_transfer)

    Raises:
        ValidationError: If the share has no owner or is already being sold
    """
    expect_kind(share, KIND_SHARE, "share")
    seller = share.owner.target
    if seller is None:
        raise ValidationError(f"Share {share.id} has no owner")
    _check_not_reserved(share)
    payment = new_currency_transfer(ledger, price, buyer, seller)
    transfer = new_share_transfer(ledger, share, seller, buyer, payment)
    return payment, transfer


# ============================================================================
# STATE MACHINE
# ============================================================================

def _move(ledger: Ledger, tx: Transaction, state: TransactionState) -> None:
    if state not in _EDGES.get(tx.state, ()):
        raise InvalidTransition(f"Transaction {tx.id}: {tx.state.value} -> {state.value}")
    previous = tx.state
    tx.state = state
    tx.updated = ledger.current_time
    log.info("transaction %s: %s -> %s", tx.id, previous.value, state.value)


def _attempt(tx: Transaction, action: Callable[[], Any]) -> bool:
    """Run a balance operation, recording a refusal instead of raising."""
    try:
        action()
    except _REFUSALS as exc:
        tx.last_error = exc.code
        log.debug("transaction %s refused: %s", tx.id, exc)
        return False
    tx.last_error = None
    return True


def _hold(ledger: Ledger, tx: Transaction) -> bool:
    if not _attempt(tx, lambda: debit(ledger, tx.source, tx.balance)):
        return False
    _move(ledger, tx, S.PENDING_APPROVAL)
    return True


def _settle(ledger: Ledger, tx: Transaction) -> bool:
    credit(ledger, tx.destination, tx.balance)
    _move(ledger, tx, S.COMPLETE)
    return True


def _revert_hold(ledger: Ledger, tx: Transaction) -> bool:
    if not _attempt(tx, lambda: debit(ledger, tx.destination, tx.balance)):
        return False
    _move(ledger, tx, S.REVERT_HOLD)
    return True


def _revert_return(ledger: Ledger, tx: Transaction) -> bool:
    credit(ledger, tx.source, tx.balance)
    _move(ledger, tx, S.REVERTED)
    return True


def _deposit(ledger: Ledger, tx: Transaction) -> bool:
    credit(ledger, tx.destination, tx.balance)
    _move(ledger, tx, S.COMPLETE)
    return True


def _withdraw(ledger: Ledger, tx: Transaction) -> bool:
    if _attempt(tx, lambda: debit(ledger, tx.source, tx.balance)):
        _move(ledger, tx, S.COMPLETE)
    else:
        _move(ledger, tx, S.CANCELLED)
    return True


def _share_hold(ledger: Ledger, tx: Transaction) -> bool:
    if tx.share.target is not None and tx.share.target.owner.target is tx.source:
        _move(ledger, tx, S.PENDING_TRANSACTION)
    else:
        tx.last_error = ValidationError.code
        _move(ledger, tx, S.CANCELLED)
    return True


def _share_settle(ledger: Ledger, tx: Transaction) -> bool:
    linked = tx.linked.target
    if linked is None:
        return False
    if linked.state is S.COMPLETE:
        share = tx.share.target
        if share is None or share.owner.target is not tx.source:
            log.warning("transaction %s: source %s no longer owns the share, refunding %s",
                        tx.id, tx.source.id, linked.id)
            tx.last_error = ValidationError.code
            _move(ledger, tx, S.CANCELLED)
            _move(ledger, linked, S.PENDING_REVERT_HOLD)
            return True
        set_share_owner(share, tx.destination)
        _move(ledger, tx, S.COMPLETE)
        return True
    if linked.state in (S.CANCELLED, S.PENDING_REVERT_HOLD, S.REVERT_HOLD, S.REVERTED):
        _move(ledger, tx, S.CANCELLED)
        return True
    return False


_TICKS: Dict[Tuple[TransactionType, TransactionState], Callable[[Ledger, Transaction], bool]] = {
    (T.CURRENCY_TRANSFER, S.PENDING_HOLD): _hold,
    (T.CURRENCY_TRANSFER, S.APPROVED): _settle,
    (T.CURRENCY_TRANSFER, S.PENDING_REVERT_HOLD): _revert_hold,
    (T.CURRENCY_TRANSFER, S.REVERT_HOLD): _revert_return,
    (T.DEPOSIT, S.APPROVED): _deposit,
    (T.WITHDRAWAL, S.APPROVED): _withdraw,
    (T.SHARE_TRANSFER, S.PENDING_HOLD): _share_hold,
    (T.SHARE_TRANSFER, S.PENDING_TRANSACTION): _share_settle,
}


def tick(ledger: Ledger, tx: Transaction) -> bool:
    """
    Perform at most one step of tx.

    Returns:
        True if the state changed
    """
    expect_kind(tx, KIND_TRANSACTION, "transaction")
    action = _TICKS.get((tx.type, tx.state))
    if action is None:
        log.debug("transaction %s: nothing to do in %s", tx.id, tx.state.value)
        return False
    return action(ledger, tx)


def is_active(tx: Transaction) -> bool:
    """True if tick() has an action for the transaction's current state."""
    return (tx.type, tx.state) in _TICKS


def is_terminal(tx: Transaction) -> bool:
    return tx.state in TERMINAL_STATES


def approve(ledger: Ledger, tx: Transaction) -> Transaction:
    """
    Approve a held currency transfer.

    Raises:
        InvalidTransition: Unless tx is a currency transfer in pending_approval
    """
    expect_kind(tx, KIND_TRANSACTION, "transaction")
    if tx.type is not T.CURRENCY_TRANSFER or tx.state is not S.PENDING_APPROVAL:
        raise InvalidTransition(f"Transaction {tx.id} cannot be approved from {tx.state.value}")
    _move(ledger, tx, S.APPROVED)
    return tx


def cancel(ledger: Ledger, tx: Transaction) -> Transaction:
    """
    Cancel a transaction that has not settled.

    A currency transfer whose hold was already taken refunds the source.

    Raises:
        InvalidTransition: If tx cannot be cancelled in its current state
    """
    expect_kind(tx, KIND_TRANSACTION, "transaction")
    if tx.type is T.CURRENCY_TRANSFER:
        if tx.state in (S.PENDING_APPROVAL, S.APPROVED):
            credit(ledger, tx.source, tx.balance)
            _move(ledger, tx, S.CANCELLED)
            return tx
        if tx.state is S.PENDING_HOLD:
            _move(ledger, tx, S.CANCELLED)
            return tx
    elif tx.type is T.DEPOSIT:
        if tx.state is S.APPROVED:
            _move(ledger, tx, S.CANCELLED)
            return tx
    elif tx.type is T.SHARE_TRANSFER:
        if tx.state in (S.PENDING_HOLD, S.PENDING_TRANSACTION):
            _move(ledger, tx, S.CANCELLED)
            return tx
    raise InvalidTransition(f"Transaction {tx.id} ({tx.type.value}) cannot be cancelled from {tx.state.value}")


def revert(ledger: Ledger, tx: Transaction) -> Transaction:
    """
    Request reversal of a completed currency transfer.

    The funds move back over the next two ticks.

    Raises:
        InvalidTransition: Unless tx is a completed currency transfer, or if
            tx paid for a share that has already been delivered
    """
    expect_kind(tx, KIND_TRANSACTION, "transaction")
    if tx.type is not T.CURRENCY_TRANSFER or tx.state is not S.COMPLETE:
        raise InvalidTransition(f"Transaction {tx.id} cannot be reverted from {tx.state.value}")
    if any(other.state is S.COMPLETE for other in share_transfers_for(tx)):
        raise InvalidTransition(f"Transaction {tx.id} paid for a delivered share")
    _move(ledger, tx, S.PENDING_REVERT_HOLD)
    return tx
