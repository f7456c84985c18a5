"""
bankledger - Multi-user bank ledger

Accounts, loans, transfers and shares held in one in-memory object graph,
with a transaction state machine, interest accrual and durable snapshots.

Usage:
    from bankledger import Ledger, create_user, create_account, new_currency_transfer

    ledger = Ledger("main")
    alice = create_user(ledger, "alice", alice_client_hash)
    bob = create_user(ledger, "bob", bob_client_hash)
    checking = create_account(ledger, alice, "checking")
    savings = create_account(ledger, bob, "savings")

    tx = new_currency_transfer(ledger, "250.00", checking, savings)
    tick(ledger, tx)          # hold funds      -> pending_approval
    approve(ledger, tx)       #                 -> approved
    tick(ledger, tx)          # credit savings  -> complete

    save_ledger(ledger, FileStore("bank.json"))
"""


# Core types
from .core import (
    AccountState,
    LoanState,
    InterestType,
    TransactionType,
    TransactionState,
    LedgerError,
    ValidationError,
    NotFound,
    AccountFrozen,
    InsufficientFundsAndOverdraftDenied,
    InvalidTransition,
    DuplicateUser,
    AccessDenied,
    AuthenticationFailed,
    RecordTypeError,
    PersistenceError,
    DanglingReference,
    UnresolvableReference,
    Ref,
    RefList,
    COLLECTIONS,
    INTEREST_PERIOD,
)

# Configuration
from .config import AccountDefaults, LoanDefaults, LedgerConfig

# Interest
from .interest import Interest, calculate_interest, apply_interest

# Ledger
from .ledger import Ledger

# Entities
from .entities import (
    Credential,
    User,
    Account,
    Loan,
    Share,
    accrue,
    create_user,
    authenticate,
    link_account,
    create_account,
    auto_approval_headroom,
    debit,
    credit,
    set_account_state,
    create_loan,
    change_loan_state,
    approve_loan,
    pay_loan,
    create_share,
    clear_share_owner,
    set_share_owner,
)

# Transactions
from .transactions import (
    Transaction,
    new_currency_transfer,
    new_deposit,
    new_withdrawal,
    new_share_transfer,
    new_share_trade,
    pending_sale,
    share_transfers_for,
    tick,
    approve,
    cancel,
    revert,
    is_active,
    is_terminal,
)

# Engine
from .engine import TransactionEngine

# Persistence
from .persistence import (
    reference_encode,
    reference_decode,
    retype_graph,
    encode_ledger,
    decode_ledger,
    save_ledger,
    load_ledger,
)
from .store import DurableStore, MemoryStore, FileStore

# Request handling
from .handler import Request, Response, RequestHandler

__all__ = [
    # Core
    'AccountState', 'LoanState', 'InterestType', 'TransactionType', 'TransactionState',
    'LedgerError', 'ValidationError', 'NotFound', 'AccountFrozen',
    'InsufficientFundsAndOverdraftDenied', 'InvalidTransition', 'DuplicateUser',
    'AccessDenied', 'AuthenticationFailed', 'RecordTypeError',
    'PersistenceError', 'DanglingReference', 'UnresolvableReference',
    'Ref', 'RefList', 'COLLECTIONS', 'INTEREST_PERIOD',
    # Configuration
    'AccountDefaults', 'LoanDefaults', 'LedgerConfig',
    # Interest
    'Interest', 'calculate_interest', 'apply_interest',
    # Ledger
    'Ledger',
    # Entities
    'Credential', 'User', 'Account', 'Loan', 'Share',
    'accrue', 'create_user', 'authenticate', 'link_account',
    'create_account', 'auto_approval_headroom', 'debit', 'credit', 'set_account_state',
    'create_loan', 'change_loan_state', 'approve_loan', 'pay_loan',
    'create_share', 'clear_share_owner', 'set_share_owner',
    # Transactions
    'Transaction', 'new_currency_transfer', 'new_deposit', 'new_withdrawal',
    'new_share_transfer', 'new_share_trade', 'pending_sale', 'share_transfers_for',
    'tick', 'approve', 'cancel', 'revert', 'is_active', 'is_terminal',
    # Engine
    'TransactionEngine',
    # Persistence
    'reference_encode', 'reference_decode', 'retype_graph',
    'encode_ledger', 'decode_ledger', 'save_ledger', 'load_ledger',
    'DurableStore', 'MemoryStore', 'FileStore',
    # Request handling
    'Request', 'Response', 'RequestHandler',
]

__version__ = '0.1.0'
