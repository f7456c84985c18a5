"""
handler.py - Request handler

The boundary between the secure RPC channel and the ledger. Requests arrive
already decrypted and verified; `Request.username` is the authenticated
caller (None before logIn/signUp). Every operation is authorized here, then
delegated to the entity and transaction functions.

This is the only place LedgerErrors become error responses. Anything that is
not a LedgerError is a bug and propagates.

Operations (payload keys):
    get                 collection, id
    signUp, logIn       username, password
    createAccount       name, [options] (see CALLER_ACCOUNT_OPTIONS)
    addAccountOwner     account, username
    transfer            source, destination, amount
    approveTransaction  transaction
    cancelTransaction   transaction
    revertTransaction   transaction
    deposit, withdraw   account, amount
    requestLoan         account, amount
    payLoan             loan, amount
    issueShare          account
    tradeShare          share, buyer, price

A share trade is proposed by the buyer's owner and approved (or declined
with cancelTransaction) by the seller's owner.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional
import logging

from .core import (
    COLLECTION_ACCOUNTS, COLLECTION_CREDENTIALS, COLLECTION_LOANS,
    COLLECTION_SHARES, COLLECTION_TRANSACTIONS, COLLECTION_USERS,
    AccessDenied, AuthenticationFailed, LedgerError, LoanState,
    TransactionType, ValidationError,
)
from .entities import (
    Account, User, accrue, authenticate, create_account, create_loan,
    create_share, create_user, link_account, pay_loan,
)
from .ledger import Ledger
from .persistence import reference_encode
from .transactions import (
    Transaction, approve, cancel, is_active, new_currency_transfer,
    new_deposit, new_share_trade, new_withdrawal, revert,
    share_transfers_for, tick,
)

log = logging.getLogger(__name__)

# Account options a caller may choose. The rest (opening balance, rate,
# overdraft ceiling) are bank terms from LedgerConfig.
CALLER_ACCOUNT_OPTIONS = frozenset({
    "interest_type", "do_interest", "do_overdraft", "publically_traded",
})


@dataclass(frozen=True)
class Request:
    """A decoded, authenticated request."""
    operation: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    username: Optional[str] = None


@dataclass
class Response:
    """
    Result of one request.

    ok is True with result set, or False with error set to the LedgerError
    code. Some refusals (a withdrawal that was cancelled) also carry the
    affected record in result.
    """
    ok: bool
    result: Any = None
    error: Optional[str] = None
    message: str = ""


class RequestHandler:
    """
    Dispatches requests against one ledger.

    Args:
        ledger: The ledger to serve
        clock: Optional callable returning the wall time; when given, the
            ledger clock is advanced to it before each request
    """

    def __init__(self, ledger: Ledger, clock: Optional[Callable[[], datetime]] = None):
        self.ledger = ledger
        self.clock = clock
        self._operations: Dict[str, Callable[[Request], Any]] = {
            "get": self._get,
            "signUp": self._sign_up,
            "logIn": self._log_in,
            "createAccount": self._create_account,
            "addAccountOwner": self._add_account_owner,
            "transfer": self._transfer,
            "approveTransaction": self._approve_transaction,
            "cancelTransaction": self._cancel_transaction,
            "revertTransaction": self._revert_transaction,
            "deposit": self._deposit,
            "withdraw": self._withdraw,
            "requestLoan": self._request_loan,
            "payLoan": self._pay_loan,
            "issueShare": self._issue_share,
            "tradeShare": self._trade_share,
        }

    @property
    def operations(self):
        return sorted(self._operations)

    def handle(self, request: Request) -> Response:
        """Process one request to completion."""
        log.debug("request %s from %s", request.operation, request.username)
        if self.clock is not None:
            now = self.ledger.normalize_time(self.clock())
            if now > self.ledger.current_time:
                self.ledger.advance_time(now)

        operation = self._operations.get(request.operation)
        try:
            if operation is None:
                raise ValidationError(f"Unknown operation: {request.operation!r}")
            if not isinstance(request.payload, Mapping):
                raise ValidationError("payload must be a mapping")
            result = operation(request)
        except LedgerError as exc:
            log.debug("request %s failed: %s", request.operation, exc.code)
            return Response(ok=False, error=exc.code, message=str(exc))

        if isinstance(result, Response):
            return result
        return Response(ok=True, result=result)

    # ========================================================================
    # PAYLOAD AND AUTHORIZATION HELPERS
    # ========================================================================

    @staticmethod
    def _text(request: Request, key: str) -> str:
        value = request.payload.get(key)
        if not isinstance(value, str) or not value:
            raise ValidationError(f"payload field {key!r} must be a non-empty string")
        return value

    @staticmethod
    def _number(request: Request, key: str) -> Any:
        if key not in request.payload:
            raise ValidationError(f"payload field {key!r} is required")
        return request.payload[key]

    def _caller(self, request: Request) -> User:
        if request.username is None or request.username not in self.ledger.users:
            raise AccessDenied("A logged-in user is required")
        return self.ledger.users[request.username]

    def _owned_account(self, user: User, account_id: str) -> Account:
        account = self.ledger.get_account(account_id)
        if user not in account.owners:
            raise AccessDenied(f"{user.id} does not own account {account_id}")
        return account

    def _require_owner(self, user: User, account: Optional[Account]) -> None:
        if account is None or user not in account.owners:
            raise AccessDenied(f"{user.id} does not own the account")

    def _can_read(self, user: Optional[User], collection: str, record: Any) -> bool:
        if collection == COLLECTION_SHARES:
            return True
        if user is None or collection == COLLECTION_CREDENTIALS:
            return False
        if collection == COLLECTION_USERS:
            return record is user
        if collection == COLLECTION_ACCOUNTS:
            return user in record.owners
        if collection == COLLECTION_LOANS:
            account = record.account.target
            return account is not None and user in account.owners
        if collection == COLLECTION_TRANSACTIONS:
            return any(user in account.owners for account in record.accounts)
        return False

    def _tick_linked(self, tx: Transaction) -> None:
        """Tick share transfers waiting on tx."""
        for other in share_transfers_for(tx):
            if is_active(other):
                tick(self.ledger, other)

    def _require_approver(self, user: User, tx: Transaction) -> None:
        # A share sale needs the seller's consent; other transfers the payer's.
        if share_transfers_for(tx):
            self._require_owner(user, tx.destination)
        else:
            self._require_owner(user, tx.source)

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def _get(self, request: Request) -> Any:
        collection = self._text(request, "collection")
        record_id = self._text(request, "id")
        if collection == COLLECTION_CREDENTIALS:
            raise AccessDenied("Credentials are never readable")
        record = self.ledger.get(collection, record_id)

        user = self.ledger.users.get(request.username) if request.username else None
        if not self._can_read(user, collection, record):
            raise AccessDenied(f"Not permitted to read {collection}/{record_id}")

        if collection == COLLECTION_ACCOUNTS:
            accrue(self.ledger, record)
        elif collection == COLLECTION_LOANS and record.state is LoanState.APPROVED:
            accrue(self.ledger, record)
        return reference_encode(record)

    def _sign_up(self, request: Request) -> Any:
        user = create_user(self.ledger, self._text(request, "username"), self._text(request, "password"))
        return reference_encode(user)

    def _log_in(self, request: Request) -> Any:
        username = self._text(request, "username")
        if not authenticate(self.ledger, username, self._text(request, "password")):
            raise AuthenticationFailed("Unknown user or wrong password")
        return reference_encode(self.ledger.users[username])

    def _create_account(self, request: Request) -> Any:
        user = self._caller(request)
        options = request.payload.get("options") or {}
        if not isinstance(options, Mapping) or not all(isinstance(k, str) for k in options):
            raise ValidationError("options must be a mapping of option names")
        terms = {f.name for f in fields(self.ledger.config.account)}
        restricted = sorted((set(options) & terms) - CALLER_ACCOUNT_OPTIONS)
        if restricted:
            raise AccessDenied(f"Account options not open to callers: {', '.join(restricted)}")
        account = create_account(self.ledger, user, self._text(request, "name"), **options)
        return reference_encode(account)

    def _add_account_owner(self, request: Request) -> Any:
        user = self._caller(request)
        account = self._owned_account(user, self._text(request, "account"))
        new_owner = self.ledger.get_user(self._text(request, "username"))
        link_account(new_owner, account)
        return reference_encode(account)

    def _transfer(self, request: Request) -> Any:
        user = self._caller(request)
        source = self._owned_account(user, self._text(request, "source"))
        destination = self.ledger.get_account(self._text(request, "destination"))
        tx = new_currency_transfer(self.ledger, self._number(request, "amount"), source, destination)
        tick(self.ledger, tx)
        return reference_encode(tx)

    def _approve_transaction(self, request: Request) -> Any:
        user = self._caller(request)
        tx = self.ledger.get_transaction(self._text(request, "transaction"))
        self._require_approver(user, tx)
        approve(self.ledger, tx)
        tick(self.ledger, tx)
        self._tick_linked(tx)
        return reference_encode(tx)

    def _cancel_transaction(self, request: Request) -> Any:
        user = self._caller(request)
        tx = self.ledger.get_transaction(self._text(request, "transaction"))
        if not (share_transfers_for(tx) and user in tx.destination.owners):
            self._require_owner(user, tx.source)
        cancel(self.ledger, tx)
        if tx.type is TransactionType.CURRENCY_TRANSFER:
            self._tick_linked(tx)
        return reference_encode(tx)

    def _revert_transaction(self, request: Request) -> Any:
        user = self._caller(request)
        tx = self.ledger.get_transaction(self._text(request, "transaction"))
        self._require_owner(user, tx.source)
        revert(self.ledger, tx)
        while is_active(tx) and tick(self.ledger, tx):
            pass
        return reference_encode(tx)

    def _deposit(self, request: Request) -> Any:
        user = self._caller(request)
        account = self._owned_account(user, self._text(request, "account"))
        tx = new_deposit(self.ledger, self._number(request, "amount"), account)
        tick(self.ledger, tx)
        return reference_encode(tx)

    def _withdraw(self, request: Request) -> Any:
        user = self._caller(request)
        account = self._owned_account(user, self._text(request, "account"))
        tx, succeeded = new_withdrawal(self.ledger, self._number(request, "amount"), account)
        if not succeeded:
            return Response(
                ok=False,
                result=reference_encode(tx),
                error=tx.last_error,
                message=f"Withdrawal {tx.id} was cancelled",
            )
        return reference_encode(tx)

    def _request_loan(self, request: Request) -> Any:
        user = self._caller(request)
        account = self._owned_account(user, self._text(request, "account"))
        loan = create_loan(self.ledger, account, self._number(request, "amount"))
        return reference_encode(loan)

    def _pay_loan(self, request: Request) -> Any:
        user = self._caller(request)
        loan = self.ledger.get_loan(self._text(request, "loan"))
        self._require_owner(user, loan.account.target)
        paid = pay_loan(self.ledger, loan, self._number(request, "amount"))
        return {"paid": str(paid), "loan": reference_encode(loan)}

    def _issue_share(self, request: Request) -> Any:
        user = self._caller(request)
        account = self._owned_account(user, self._text(request, "account"))
        share = create_share(self.ledger, account)
        if share is None:
            raise ValidationError(f"Account {account.id} is not publicly traded")
        return reference_encode(share)

    def _trade_share(self, request: Request) -> Any:
        user = self._caller(request)
        buyer = self._owned_account(user, self._text(request, "buyer"))
        share = self.ledger.get_share(self._text(request, "share"))
        payment, transfer = new_share_trade(self.ledger, share, buyer, self._number(request, "price"))
        tick(self.ledger, payment)
        tick(self.ledger, transfer)
        return {"payment": reference_encode(payment), "transfer": reference_encode(transfer)}
