"""
test_request_handler.py - Unit tests for the request handler

Tests:
- Sign up / log in
- Authorization rules for reads and mutations
- Each operation end to end through Request / Response
- Errors become error responses with stable codes
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from bankledger import (
    LedgerError, Request, RequestHandler, Response, TransactionState as S,
)

from tests.helpers import T0, DAY, call


def open_account(handler, username, name="checking", **options):
    response = call(handler, "createAccount", username, name=name, options=options or None)
    assert response.ok, response
    return response.result["id"]


class TestAuth:

    def test_sign_up_duplicate(self, handler):
        response = call(handler, "signUp", username="alice", password="x")
        assert response.ok is False
        assert response.error == "DuplicateUser"

    def test_log_in(self, handler):
        response = call(handler, "logIn", username="alice", password="alice-pw")
        assert response.ok
        assert response.result["id"] == "alice"
        assert "credential" in response.result

    def test_log_in_wrong_password(self, handler):
        response = call(handler, "logIn", username="alice", password="bob-pw")
        assert response.ok is False
        assert response.error == "AuthenticationFailed"

    def test_log_in_unknown_user(self, handler):
        assert call(handler, "logIn", username="zed", password="x").error == "AuthenticationFailed"

    def test_mutation_requires_caller(self, handler):
        response = call(handler, "createAccount", name="checking")
        assert response.error == "AccessDenied"


class TestGet:

    def test_own_account(self, handler):
        account_id = open_account(handler, "alice")
        response = call(handler, "get", "alice", collection="accounts", id=account_id)
        assert response.ok
        assert response.result["balance"] == "1000.00"
        assert response.result["owners"] == {"ref": "users", "ids": ["alice"]}

    def test_other_users_account(self, handler):
        account_id = open_account(handler, "alice")
        response = call(handler, "get", "bob", collection="accounts", id=account_id)
        assert response.error == "AccessDenied"

    def test_credentials_never_readable(self, handler, ledger):
        credential_id = ledger.users["alice"].credential.target.id
        response = call(handler, "get", "alice", collection="credentials", id=credential_id)
        assert response.error == "AccessDenied"

    def test_users_only_self(self, handler):
        assert call(handler, "get", "alice", collection="users", id="alice").ok
        assert call(handler, "get", "alice", collection="users", id="bob").error == "AccessDenied"

    def test_shares_public(self, handler):
        account_id = open_account(handler, "bob", "corp", publically_traded=True)
        share_id = call(handler, "issueShare", "bob", account=account_id).result["id"]
        response = call(handler, "get", None, collection="shares", id=share_id)
        assert response.ok
        assert response.result["owner"] == {"ref": "accounts", "id": account_id}

    def test_missing_record(self, handler):
        assert call(handler, "get", "alice", collection="accounts", id="nope").error == "NotFound"

    def test_unknown_collection(self, handler):
        assert call(handler, "get", "alice", collection="planets", id="x").error == "ValidationError"

    def test_get_accrues_interest(self, handler, ledger):
        account_id = open_account(handler, "alice", do_interest=True)
        ledger.advance_time(T0 + DAY)
        response = call(handler, "get", "alice", collection="accounts", id=account_id)
        assert response.result["balance"] == "1010.00"

    def test_transaction_visible_to_both_sides(self, handler):
        alice_id = open_account(handler, "alice")
        bob_id = open_account(handler, "bob")
        tx_id = call(handler, "transfer", "alice", source=alice_id, destination=bob_id, amount="5").result["id"]
        assert call(handler, "get", "bob", collection="transactions", id=tx_id).ok
        call(handler, "signUp", username="carol", password="c")
        assert call(handler, "get", "carol", collection="transactions", id=tx_id).error == "AccessDenied"


class TestAccounts:

    def test_create_with_options(self, handler):
        response = call(handler, "createAccount", "alice", name="plain",
                        options={"do_interest": False, "interest_type": "simple"})
        assert response.ok
        assert response.result["balance"] == "1000.00"
        assert response.result["interest"]["interest_type"] == "simple"

    @pytest.mark.parametrize("options", [
        {"balance": "1000000000"},
        {"max_auto_approved_loan": "1000000000"},
        {"interest_rate": "5"},
    ])
    def test_bank_terms_not_open_to_callers(self, handler, ledger, options):
        response = call(handler, "createAccount", "alice", name="rich", options=options)
        assert response.error == "AccessDenied"
        assert ledger.accounts == {}

    def test_create_unknown_option(self, handler):
        response = call(handler, "createAccount", "alice", name="x", options={"colour": "red"})
        assert response.error == "ValidationError"

    def test_add_owner(self, handler):
        account_id = open_account(handler, "alice")
        assert call(handler, "addAccountOwner", "alice", account=account_id, username="bob").ok
        assert call(handler, "get", "bob", collection="accounts", id=account_id).ok

    def test_add_owner_requires_ownership(self, handler):
        account_id = open_account(handler, "alice")
        response = call(handler, "addAccountOwner", "bob", account=account_id, username="bob")
        assert response.error == "AccessDenied"

    def test_add_unknown_owner(self, handler):
        account_id = open_account(handler, "alice")
        response = call(handler, "addAccountOwner", "alice", account=account_id, username="zed")
        assert response.error == "NotFound"


class TestTransfers:

    def test_transfer_then_approve(self, handler, ledger):
        alice_id = open_account(handler, "alice")
        bob_id = open_account(handler, "bob")

        response = call(handler, "transfer", "alice", source=alice_id, destination=bob_id, amount="100")
        assert response.ok
        assert response.result["state"] == "pending_approval"
        tx_id = response.result["id"]

        response = call(handler, "approveTransaction", "alice", transaction=tx_id)
        assert response.result["state"] == "complete"
        assert ledger.accounts[alice_id].balance == Decimal("900.00")
        assert ledger.accounts[bob_id].balance == Decimal("1100.00")

    def test_transfer_from_foreign_account(self, handler):
        alice_id = open_account(handler, "alice")
        bob_id = open_account(handler, "bob")
        response = call(handler, "transfer", "bob", source=alice_id, destination=bob_id, amount="1")
        assert response.error == "AccessDenied"

    def test_approve_by_destination_denied(self, handler):
        alice_id = open_account(handler, "alice")
        bob_id = open_account(handler, "bob")
        tx_id = call(handler, "transfer", "alice", source=alice_id, destination=bob_id, amount="1").result["id"]
        assert call(handler, "approveTransaction", "bob", transaction=tx_id).error == "AccessDenied"

    def test_cancel_refunds(self, handler, ledger):
        alice_id = open_account(handler, "alice")
        bob_id = open_account(handler, "bob")
        tx_id = call(handler, "transfer", "alice", source=alice_id, destination=bob_id, amount="100").result["id"]
        response = call(handler, "cancelTransaction", "alice", transaction=tx_id)
        assert response.result["state"] == "cancelled"
        assert ledger.accounts[alice_id].balance == Decimal("1000.00")

    def test_cancel_complete_refused(self, handler):
        alice_id = open_account(handler, "alice")
        bob_id = open_account(handler, "bob")
        tx_id = call(handler, "transfer", "alice", source=alice_id, destination=bob_id, amount="1").result["id"]
        call(handler, "approveTransaction", "alice", transaction=tx_id)
        assert call(handler, "cancelTransaction", "alice", transaction=tx_id).error == "InvalidTransition"

    def test_revert(self, handler, ledger):
        alice_id = open_account(handler, "alice")
        bob_id = open_account(handler, "bob")
        tx_id = call(handler, "transfer", "alice", source=alice_id, destination=bob_id, amount="100").result["id"]
        call(handler, "approveTransaction", "alice", transaction=tx_id)
        response = call(handler, "revertTransaction", "alice", transaction=tx_id)
        assert response.result["state"] == "reverted"
        assert ledger.accounts[alice_id].balance == Decimal("1000.00")
        assert ledger.accounts[bob_id].balance == Decimal("1000.00")

    @pytest.mark.parametrize("amount", ["-5", "0", "abc", None])
    def test_bad_amount(self, handler, amount):
        alice_id = open_account(handler, "alice")
        bob_id = open_account(handler, "bob")
        response = call(handler, "transfer", "alice", source=alice_id, destination=bob_id, amount=amount)
        assert response.error == "ValidationError"

    def test_missing_field(self, handler):
        alice_id = open_account(handler, "alice")
        response = call(handler, "transfer", "alice", source=alice_id, amount="1")
        assert response.error == "ValidationError"


class TestDepositWithdraw:

    def test_deposit(self, handler, ledger):
        account_id = open_account(handler, "alice")
        response = call(handler, "deposit", "alice", account=account_id, amount="20")
        assert response.result["state"] == "complete"
        assert ledger.accounts[account_id].balance == Decimal("1020.00")

    def test_withdraw(self, handler, ledger):
        account_id = open_account(handler, "alice")
        response = call(handler, "withdraw", "alice", account=account_id, amount="20")
        assert response.ok
        assert ledger.accounts[account_id].balance == Decimal("980.00")

    def test_withdraw_refused_carries_record(self, handler, ledger):
        account_id = open_account(handler, "alice")
        response = call(handler, "withdraw", "alice", account=account_id, amount="5000")
        assert response.ok is False
        assert response.error == "InsufficientFundsAndOverdraftDenied"
        assert response.result["state"] == "cancelled"
        assert ledger.accounts[account_id].balance == Decimal("1000.00")


class TestLoans:

    def test_request_and_pay(self, handler, ledger):
        account_id = open_account(handler, "alice")
        loan = call(handler, "requestLoan", "alice", account=account_id, amount="200").result
        assert loan["state"] == "approved"
        assert ledger.accounts[account_id].balance == Decimal("1200.00")

        response = call(handler, "payLoan", "alice", loan=loan["id"], amount="50")
        assert response.result["paid"] == "50.00"
        assert response.result["loan"]["balance"] == "150.00"

    def test_large_loan_pending(self, handler):
        account_id = open_account(handler, "alice")
        loan = call(handler, "requestLoan", "alice", account=account_id, amount="5000").result
        assert loan["state"] == "pending"
        assert call(handler, "payLoan", "alice", loan=loan["id"], amount="1").error == "InvalidTransition"

    def test_pay_foreign_loan(self, handler):
        account_id = open_account(handler, "alice")
        loan_id = call(handler, "requestLoan", "alice", account=account_id, amount="200").result["id"]
        assert call(handler, "payLoan", "bob", loan=loan_id, amount="1").error == "AccessDenied"


class TestShares:

    def test_issue_requires_public_account(self, handler):
        account_id = open_account(handler, "bob")
        assert call(handler, "issueShare", "bob", account=account_id).error == "ValidationError"

    def test_trade(self, handler, ledger):
        corp_id = open_account(handler, "bob", "corp", publically_traded=True)
        share_id = call(handler, "issueShare", "bob", account=corp_id).result["id"]
        buyer_id = open_account(handler, "alice")

        response = call(handler, "tradeShare", "alice", share=share_id, buyer=buyer_id, price="10")
        assert response.result["payment"]["state"] == "pending_approval"
        assert response.result["transfer"]["state"] == "pending_transaction"

        payment_id = response.result["payment"]["id"]
        assert call(handler, "approveTransaction", "bob", transaction=payment_id).ok
        share = ledger.shares[share_id]
        assert share.owner.target is ledger.accounts[buyer_id]
        assert ledger.accounts[corp_id].balance == Decimal("1010.00")
        assert ledger.accounts[buyer_id].balance == Decimal("990.00")

    def test_buyer_cannot_approve_own_purchase(self, handler, ledger):
        corp_id = open_account(handler, "bob", "corp", publically_traded=True)
        share_id = call(handler, "issueShare", "bob", account=corp_id).result["id"]
        buyer_id = open_account(handler, "alice")
        result = call(handler, "tradeShare", "alice", share=share_id, buyer=buyer_id, price="0.01").result

        response = call(handler, "approveTransaction", "alice", transaction=result["payment"]["id"])
        assert response.error == "AccessDenied"
        assert ledger.shares[share_id].owner.target is ledger.accounts[corp_id]
        assert ledger.accounts[corp_id].balance == Decimal("1000.00")

    def test_seller_declines(self, handler, ledger):
        corp_id = open_account(handler, "bob", "corp", publically_traded=True)
        share_id = call(handler, "issueShare", "bob", account=corp_id).result["id"]
        buyer_id = open_account(handler, "alice")
        result = call(handler, "tradeShare", "alice", share=share_id, buyer=buyer_id, price="0.01").result

        assert call(handler, "cancelTransaction", "bob", transaction=result["payment"]["id"]).ok
        assert ledger.transactions[result["transfer"]["id"]].state is S.CANCELLED
        assert ledger.accounts[buyer_id].balance == Decimal("1000.00")

    def test_share_sold_once(self, handler, ledger):
        corp_id = open_account(handler, "bob", "corp", publically_traded=True)
        share_id = call(handler, "issueShare", "bob", account=corp_id).result["id"]
        first_id = open_account(handler, "alice", "first")
        second_id = open_account(handler, "alice", "second")

        first = call(handler, "tradeShare", "alice", share=share_id, buyer=first_id, price="10")
        second = call(handler, "tradeShare", "alice", share=share_id, buyer=second_id, price="10")
        assert first.ok
        assert second.error == "ValidationError"

        call(handler, "approveTransaction", "bob", transaction=first.result["payment"]["id"])
        assert ledger.shares[share_id].owner.target is ledger.accounts[first_id]
        assert ledger.accounts[corp_id].balance == Decimal("1010.00")
        assert ledger.accounts[second_id].balance == Decimal("1000.00")

    def test_cancelled_trade(self, handler, ledger):
        corp_id = open_account(handler, "bob", "corp", publically_traded=True)
        share_id = call(handler, "issueShare", "bob", account=corp_id).result["id"]
        buyer_id = open_account(handler, "alice")
        result = call(handler, "tradeShare", "alice", share=share_id, buyer=buyer_id, price="10").result

        call(handler, "cancelTransaction", "alice", transaction=result["payment"]["id"])
        transfer = ledger.transactions[result["transfer"]["id"]]
        assert transfer.state is S.CANCELLED
        assert ledger.shares[share_id].owner.target is ledger.accounts[corp_id]


class TestDispatch:

    def test_unknown_operation(self, handler):
        response = handler.handle(Request("launchRocket", {}, "alice"))
        assert response == Response(ok=False, error="ValidationError", message="Unknown operation: 'launchRocket'")

    def test_operations_listed(self, handler):
        assert "tradeShare" in handler.operations
        assert len(handler.operations) == 15

    def test_payload_must_be_mapping(self, handler):
        assert handler.handle(Request("get", ["accounts"], "alice")).error == "ValidationError"

    def test_clock_advances_ledger(self, ledger):
        handler = RequestHandler(ledger, clock=lambda: datetime(2025, 3, 1))
        handler.handle(Request("signUp", {"username": "carol", "password": "p"}))
        assert ledger.current_time == datetime(2025, 3, 1)

    def test_clock_never_moves_backwards(self, ledger):
        ledger.advance_time(datetime(2025, 6, 1))
        handler = RequestHandler(ledger, clock=lambda: datetime(2025, 3, 1))
        assert handler.handle(Request("signUp", {"username": "carol", "password": "p"})).ok
        assert ledger.current_time == datetime(2025, 6, 1)

    def test_aware_clock(self, ledger):
        plus_one = timezone(timedelta(hours=1))
        handler = RequestHandler(ledger, clock=lambda: datetime(2025, 3, 1, 9, 0, tzinfo=plus_one))
        assert handler.handle(Request("signUp", {"username": "carol", "password": "p"})).ok
        assert ledger.current_time == datetime(2025, 3, 1, 8, 0)

    def test_non_ledger_errors_propagate(self, handler):
        def explode(request):
            raise RuntimeError("bug")
        handler._operations["explode"] = explode
        with pytest.raises(RuntimeError):
            handler.handle(Request("explode", {}, "alice"))
