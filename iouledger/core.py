"""
Core types and pure functions for the IOU ledger.

This module provides the foundational data structures for the ledger:
1. Identities: Party and its owning key
2. Immutable states: CashState, DebtState, and references to them
3. Commands and transactions: Command, Transaction, SignedTransaction,
   NotarisedTransaction
4. Exceptions: LedgerError and the build/validation/finality taxonomy
5. Canonical serialization used for content-addressed transaction ids

States are never mutated. A transaction consumes existing state versions
(by reference) and produces new ones; the only way to "change" a Debt or a
Cash holding is to replace it.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import datetime
from enum import Enum
import hashlib
import uuid
from typing import (
    Any, FrozenSet, Iterable, List, Optional, Tuple, Union,
)


# ============================================================================
# CONSTANTS
# ============================================================================

# The only identity allowed to mint new Cash.
ISSUING_AUTHORITY = "O=PartyC,L=Paris,C=FR"

# Name of the notary every transaction is addressed to unless told otherwise.
DEFAULT_NOTARY = "O=Notary,L=London,C=GB"

# Counterparties refuse IOUs above this value by default.
DEFAULT_DEBT_CEILING = 100


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class BuildError(LedgerError):
    """Raised when a transaction cannot be assembled from the caller's intent."""
    pass


class ReferenceNotFoundError(BuildError):
    """Raised when a state reference is not current in the vault (absent or stale)."""

    def __init__(self, ref: Optional['StateRef'], message: Optional[str] = None):
        self.ref = ref
        super().__init__(message or f"State {ref} not found")


class StaleReferenceError(ReferenceNotFoundError):
    """Raised when a state reference has already been consumed (no longer current)."""

    def __init__(self, ref: 'StateRef', consumed_by: Optional[str] = None):
        self.consumed_by = consumed_by
        detail = f" by transaction {consumed_by}" if consumed_by else ""
        super().__init__(ref, f"State {ref} has already been consumed{detail}")


class InsufficientFundsError(BuildError):
    """Raised when a cash state cannot cover the amount required."""

    def __init__(self, available: int, required: int, ref: Optional['StateRef'] = None):
        self.available = available
        self.required = required
        self.ref = ref
        where = f" in {ref}" if ref else ""
        super().__init__(
            f"Insufficient funds{where}: {available} available, {required} required"
        )


class SelfDealingError(BuildError):
    """Raised when both sides of a debt or payment are the same party."""
    pass


class OwnershipError(BuildError):
    """Raised when the initiating party does not own or owe what it is spending."""
    pass


class ValidationError(LedgerError):
    """
    Raised when a transaction violates a contract rule.

    Attributes:
        rule: Human-readable description of the violated invariant
        command: Command kind whose rule set was being applied (if known)
    """

    def __init__(self, rule: str, command: Optional['CommandType'] = None):
        self.rule = rule
        self.command = command
        prefix = f"[{command.name}] " if isinstance(command, CommandType) else ""
        super().__init__(f"{prefix}{rule}")


class MalformedCommandError(ValidationError):
    """Raised when a transaction has no command, several commands, or an unknown one."""
    pass


class CounterpartyRejectedError(ValidationError):
    """Raised on the initiator when the counterparty refuses to sign."""

    def __init__(self, party: 'Party', reason: str):
        self.party = party
        self.reason = reason
        super().__init__(f"{party.name} refused to sign: {reason}")


class SignatureError(LedgerError):
    """Raised when a signature is invalid or a required signature is missing."""
    pass


class DoubleSpendError(LedgerError):
    """
    Raised when the notary reports that an input was already consumed.

    Attributes:
        tx_id: Transaction that was refused
        conflicting_tx_id: Finalized transaction that consumed the input first
        refs: The contested input references
    """

    def __init__(self, tx_id: str, conflicting_tx_id: str, refs: Tuple['StateRef', ...] = ()):
        self.tx_id = tx_id
        self.conflicting_tx_id = conflicting_tx_id
        self.refs = tuple(refs)
        contested = ", ".join(str(r) for r in self.refs) or "no inputs"
        super().__init__(
            f"Transaction {tx_id[:12]} conflicts with {conflicting_tx_id[:12]} over {contested}"
        )


class CommunicationError(LedgerError):
    """Raised when a counterparty or the notary is unreachable or times out."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Communication with {target} failed: {reason}")


class NotaryError(LedgerError):
    """Raised when the notary refuses to consider a submission at all."""
    pass


class ProtocolError(LedgerError):
    """Raised on an illegal agreement state transition."""
    pass


# ============================================================================
# IDENTITIES
# ============================================================================

Key = str  # hex-encoded Ed25519 verify key


@dataclass(frozen=True, slots=True)
class Party:
    """
    A named participant in the network.

    Attributes:
        name: Stable legal identity (X.500 style, e.g. "O=PartyA,L=London,C=GB")
        owning_key: Hex-encoded public key used to verify this party's signatures
    """
    name: str
    owning_key: Key

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Party name cannot be empty")
        if not self.owning_key:
            raise ValueError("Party owning_key cannot be empty")

    def __repr__(self) -> str:
        return f"Party({self.name})"


# ============================================================================
# STATES
# ============================================================================

def _check_amount(amount: Any, what: str) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"{what} amount must be int, got {type(amount).__name__}")


@dataclass(frozen=True, slots=True)
class CashState:
    """
    A fungible cash holding.

    Cash has no identity of its own: a holding is consumed whole and replaced
    by new holdings. Participants default to the owner alone.

    Attributes:
        amount: Non-negative integer value
        owner: Party holding the cash
        participants: Parties that must sign any transaction consuming it
    """
    amount: int
    owner: Party
    participants: FrozenSet[Party] = frozenset()

    def __post_init__(self):
        _check_amount(self.amount, "Cash")
        if self.amount < 0:
            raise ValueError(f"Cash amount cannot be negative, got {self.amount}")
        participants = frozenset(self.participants) or frozenset({self.owner})
        object.__setattr__(self, 'participants', participants)

    def with_owner(self, owner: Party) -> CashState:
        return CashState(self.amount, owner)

    def __repr__(self) -> str:
        return f"Cash({self.amount}, owner={self.owner.name})"


def new_linear_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class DebtState:
    """
    An IOU: the borrower owes the lender `amount`.

    The linear_id is shared by every version of the same debt. A partial
    payment produces a successor with the same id and a smaller amount.

    Attributes:
        amount: Positive integer still owed
        lender: Party owed the money
        borrower: Party owing the money
        linear_id: Identifier stable across revisions
    """
    amount: int
    lender: Party
    borrower: Party
    linear_id: str = field(default_factory=new_linear_id)

    def __post_init__(self):
        _check_amount(self.amount, "Debt")
        if self.amount <= 0:
            raise ValueError(f"Debt amount must be positive, got {self.amount}")
        if not self.linear_id:
            raise ValueError("Debt linear_id cannot be empty")

    @property
    def participants(self) -> FrozenSet[Party]:
        return frozenset({self.lender, self.borrower})

    def revised(self, amount: int) -> DebtState:
        """Successor version with a new outstanding amount."""
        return replace(self, amount=amount)

    def __repr__(self) -> str:
        return (f"Debt({self.amount}, lender={self.lender.name}, "
                f"borrower={self.borrower.name}, id={self.linear_id[:8]})")


ContractState = Union[CashState, DebtState]


@dataclass(frozen=True, slots=True, order=True)
class StateRef:
    """Pointer to output `index` of the finalized transaction `tx_id`."""
    tx_id: str
    index: int

    def __post_init__(self):
        if not self.tx_id:
            raise ValueError("StateRef tx_id cannot be empty")
        if self.index < 0:
            raise ValueError(f"StateRef index cannot be negative, got {self.index}")

    def __str__(self) -> str:
        return f"{self.tx_id[:12]}({self.index})"


@dataclass(frozen=True, slots=True)
class StateAndRef:
    """A loaded state together with the reference it was loaded from."""
    state: ContractState
    ref: StateRef


# ============================================================================
# COMMANDS
# ============================================================================

class CommandType(Enum):
    """Intent of a transaction. Exactly one drives validation."""
    CREATE = "create"
    PAY = "pay"
    PARTIAL_PAY = "partial_pay"
    ISSUE = "issue"
    TRANSFER = "transfer"
    TRANSFER_PARTIAL = "transfer_partial"


@dataclass(frozen=True, slots=True)
class Command:
    """A command kind plus the keys that must sign for it."""
    kind: CommandType
    signers: FrozenSet[Key]

    def __post_init__(self):
        object.__setattr__(self, 'signers', frozenset(self.signers))


def participant_keys(states: Iterable[ContractState]) -> FrozenSet[Key]:
    """Owning keys of every participant of every state."""
    return frozenset(p.owning_key for s in states for p in s.participants)


# ============================================================================
# CANONICAL SERIALIZATION
# ============================================================================

def canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Ordering of sets and dict keys never affects the output, so
    semantically identical transactions always hash identically.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{type(value).__name__}.{value.name}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if is_dataclass(value) and not isinstance(value, type):
        body = ",".join(f"{f.name}={canonicalize(getattr(value, f.name))}" for f in fields(value))
        return f"{type(value).__name__}{{{body}}}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{canonicalize(k)}:{canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(canonicalize(item) for item in value) + "]"
    if isinstance(value, (set, frozenset)):
        return "<" + ",".join(sorted(canonicalize(item) for item in value)) + ">"
    return f"R:{repr(value)}"


def compute_tx_id(
    inputs: Tuple[StateAndRef, ...],
    outputs: Tuple[ContractState, ...],
    commands: Tuple[Command, ...],
    notary: str,
    salt: str = "",
) -> str:
    """Deterministic SHA-256 content hash of a transaction."""
    content = "|".join([
        f"inputs:{canonicalize(inputs)}",
        f"outputs:{canonicalize(outputs)}",
        f"commands:{canonicalize(commands)}",
        f"notary:{notary}",
        f"salt:{salt}",
    ])
    return hashlib.sha256(content.encode()).hexdigest()


# ============================================================================
# TRANSACTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Transaction:
    """
    A proposed state transition - represents INTENT.

    Attributes:
        inputs: Ordered states being consumed, with their references
        outputs: New states being produced
        commands: Command(s) describing the intent (valid transactions carry one)
        notary: Name of the notary that must finalize it
        salt: Distinguishes otherwise identical transactions (repeated issuance)
        tx_id: Content hash (computed when omitted; must match when given)
    """
    inputs: Tuple[StateAndRef, ...]
    outputs: Tuple[ContractState, ...]
    commands: Tuple[Command, ...]
    notary: str = DEFAULT_NOTARY
    salt: str = ""
    tx_id: str = field(default="")

    def __post_init__(self):
        object.__setattr__(self, 'inputs', tuple(self.inputs))
        object.__setattr__(self, 'outputs', tuple(self.outputs))
        object.__setattr__(self, 'commands', tuple(self.commands))
        if not self.inputs and not self.outputs:
            raise ValueError("Transaction must consume or produce at least one state")
        refs = [sar.ref for sar in self.inputs]
        if len(set(refs)) != len(refs):
            raise ValueError("Transaction consumes the same reference twice")
        content_id = self.content_id()
        if not self.tx_id:
            object.__setattr__(self, 'tx_id', content_id)
        elif self.tx_id != content_id:
            raise ValueError(f"tx_id {self.tx_id[:12]} does not match the content hash {content_id[:12]}")

    def content_id(self) -> str:
        """Recompute the id from the fields; equals tx_id for an untampered transaction."""
        return compute_tx_id(self.inputs, self.outputs, self.commands, self.notary, self.salt)

    @property
    def command(self) -> Command:
        """The single command; anything else is malformed."""
        if len(self.commands) != 1:
            raise MalformedCommandError(
                f"A transaction must carry exactly one command, found {len(self.commands)}"
            )
        return self.commands[0]

    @property
    def input_states(self) -> Tuple[ContractState, ...]:
        return tuple(sar.state for sar in self.inputs)

    @property
    def input_refs(self) -> Tuple[StateRef, ...]:
        return tuple(sar.ref for sar in self.inputs)

    @property
    def required_signers(self) -> FrozenSet[Key]:
        return frozenset(k for c in self.commands for k in c.signers)

    @property
    def participants(self) -> FrozenSet[Party]:
        return frozenset(
            p for s in self.input_states + self.outputs for p in s.participants
        )

    def out_ref(self, index: int) -> StateRef:
        if not 0 <= index < len(self.outputs):
            raise IndexError(f"Transaction has no output {index}")
        return StateRef(self.tx_id, index)

    def output_refs(self) -> List[StateAndRef]:
        return [StateAndRef(s, StateRef(self.tx_id, i)) for i, s in enumerate(self.outputs)]

    def __repr__(self) -> str:
        w = 90
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        kinds = ", ".join(c.kind.name for c in self.commands) or "none"
        lines = [
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.tx_id)}│",
            f"├{bar}┤",
            f"│{pad('   command : ' + kinds)}│",
            f"│{pad('   notary  : ' + self.notary)}│",
            f"├{bar}┤",
            f"│{pad(' Inputs (' + str(len(self.inputs)) + '):')}│",
        ]
        for sar in self.inputs:
            lines.append(f"│{pad('   ' + str(sar.ref) + ' ' + repr(sar.state))}│")
        lines.append(f"│{pad(' Outputs (' + str(len(self.outputs)) + '):')}│")
        for i, state in enumerate(self.outputs):
            lines.append(f"│{pad(f'   [{i}] {state!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class TransactionSignature:
    """A signature over a transaction id by the holder of `by`."""
    by: Key
    signature: str


@dataclass(frozen=True, slots=True)
class SignedTransaction:
    """A transaction plus the signatures collected so far."""
    tx: Transaction
    sigs: Tuple[TransactionSignature, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'sigs', tuple(self.sigs))

    @property
    def tx_id(self) -> str:
        return self.tx.tx_id

    @property
    def signers(self) -> FrozenSet[Key]:
        return frozenset(s.by for s in self.sigs)

    def missing_signers(self) -> FrozenSet[Key]:
        return self.tx.required_signers - self.signers

    def with_signature(self, sig: TransactionSignature) -> SignedTransaction:
        """Return a copy carrying `sig`; a key already present is replaced."""
        kept = tuple(s for s in self.sigs if s.by != sig.by)
        return SignedTransaction(self.tx, kept + (sig,))


@dataclass(frozen=True, slots=True)
class NotarisedTransaction:
    """
    A fully signed transaction the notary has finalized - represents FACT.

    Attributes:
        stx: The signed transaction
        timestamp: Finality time assigned by the notary
        notary_signature: The notary's signature over the transaction id
    """
    stx: SignedTransaction
    timestamp: datetime
    notary_signature: TransactionSignature

    @property
    def tx(self) -> Transaction:
        return self.stx.tx

    @property
    def tx_id(self) -> str:
        return self.stx.tx_id


def states_of_type(states: Iterable[ContractState], kind: type) -> List[Any]:
    return [s for s in states if isinstance(s, kind)]
