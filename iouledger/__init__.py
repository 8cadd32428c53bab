"""
iouledger - Bilateral IOU ledger with notarised finality

Parties lend cash to each other, producing Debt states that are paid down
over time. Every change is a transaction signed by all participants and
finalized by a notary that prevents double-spends.

Usage:
    import asyncio
    from iouledger import Node, InMemoryNetwork, InMemoryNotary, ISSUING_AUTHORITY

    async def main():
        network, notary = InMemoryNetwork(), InMemoryNotary()
        bank = Node(ISSUING_AUTHORITY, network, notary)
        alice = Node("O=PartyA,L=London,C=GB", network, notary)
        bob = Node("O=PartyB,L=New York,C=US", network, notary)

        # Mint and hand out cash
        await bank.issue_cash(100)
        await bank.transfer_cash(100, alice.me)

        # Alice lends 50 to Bob; Bob pays back 30 of it
        await alice.create_debt(50, bob.me)
        debt = bob.query_debts()[0].state
        await bob.settle_debt(debt.linear_id, 30)

    asyncio.run(main())
"""

# Core types
from .core import (
    Party,
    CashState,
    DebtState,
    ContractState,
    StateRef,
    StateAndRef,
    CommandType,
    Command,
    Transaction,
    TransactionSignature,
    SignedTransaction,
    NotarisedTransaction,
    canonicalize,
    compute_tx_id,
    LedgerError,
    BuildError,
    ReferenceNotFoundError,
    StaleReferenceError,
    InsufficientFundsError,
    SelfDealingError,
    OwnershipError,
    ValidationError,
    MalformedCommandError,
    CounterpartyRejectedError,
    SignatureError,
    DoubleSpendError,
    CommunicationError,
    NotaryError,
    ProtocolError,
    ISSUING_AUTHORITY,
    DEFAULT_NOTARY,
    DEFAULT_DEBT_CEILING,
)

# Keys
from .keys import DEFAULT_ISSUER, KeyPair, verify_signature, check_signatures

# Validation
from .contract import validate, verify

# Building
from .builder import (
    CashMovement,
    TransactionBuilder,
    plan_cash_movement,
    build_create_debt,
    build_settle_debt,
    build_issue_cash,
    build_transfer_cash,
)

# Vault
from .vault import Vault, RecordResult

# Notary
from .notary import Finalized, Conflict, NotaryService, InMemoryNotary

# Messaging
from .messaging import Propose, Accept, Reject, Finalised, InMemoryNetwork

# Agreement protocol
from .protocol import (
    ProtocolState,
    ProtocolConfig,
    TRANSITIONS,
    transition,
    CounterpartyPolicy,
    DebtCeilingPolicy,
    AgreementProtocol,
    CounterpartyResponder,
)

# Node
from .node import Node

__all__ = [
    # Core
    'Party', 'CashState', 'DebtState', 'ContractState', 'StateRef', 'StateAndRef',
    'CommandType', 'Command', 'Transaction', 'TransactionSignature',
    'SignedTransaction', 'NotarisedTransaction', 'canonicalize', 'compute_tx_id',
    'ISSUING_AUTHORITY', 'DEFAULT_NOTARY', 'DEFAULT_DEBT_CEILING',
    # Errors
    'LedgerError', 'BuildError', 'ReferenceNotFoundError', 'StaleReferenceError',
    'InsufficientFundsError', 'SelfDealingError', 'OwnershipError',
    'ValidationError', 'MalformedCommandError', 'CounterpartyRejectedError',
    'SignatureError', 'DoubleSpendError', 'CommunicationError', 'NotaryError',
    'ProtocolError',
    # Keys
    'DEFAULT_ISSUER', 'KeyPair', 'verify_signature', 'check_signatures',
    # Validation
    'validate', 'verify',
    # Building
    'CashMovement', 'TransactionBuilder', 'plan_cash_movement',
    'build_create_debt', 'build_settle_debt', 'build_issue_cash', 'build_transfer_cash',
    # Vault
    'Vault', 'RecordResult',
    # Notary
    'Finalized', 'Conflict', 'NotaryService', 'InMemoryNotary',
    # Messaging
    'Propose', 'Accept', 'Reject', 'Finalised', 'InMemoryNetwork',
    # Protocol
    'ProtocolState', 'ProtocolConfig', 'TRANSITIONS', 'transition',
    'CounterpartyPolicy', 'DebtCeilingPolicy', 'AgreementProtocol', 'CounterpartyResponder',
    # Node
    'Node',
]

__version__ = '0.1.0'
