"""
protocol.py - Two-party agreement protocol

An agreement takes a transaction from intent to finality:

    BUILDING -> LOCALLY_VALIDATED -> LOCALLY_SIGNED -> AWAITING_COUNTERSIGNATURE
             -> COUNTERSIGNED -> AWAITING_FINALITY -> FINALIZED

with REJECTED reachable from every non-terminal state. Transitions are data
(TRANSITIONS) checked by transition(); AgreementProtocol drives the
initiator side and CounterpartyResponder answers proposals on the other.

Suspension points are the counterparty round-trip and the notary round-trip.
A CommunicationError at either leaves the agreement where it was, and
resume() continues from the last unacknowledged step. Before resubmitting to
the notary, resume() checks whether the transaction is already final, so a
notarised transaction is never submitted twice.

Local state changes only after finality, through Vault.record_finalized().
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple
import asyncio
import logging
import uuid

from .core import (
    DebtState, NotarisedTransaction, Party, SignedTransaction, Transaction,
    BuildError, CommunicationError, CounterpartyRejectedError, DoubleSpendError,
    LedgerError, NotaryError, ProtocolError, SignatureError, ValidationError,
    DEFAULT_DEBT_CEILING,
)
from .contract import verify
from .keys import DEFAULT_ISSUER, KeyPair, check_signatures, verify_signature
from .messaging import Accept, Channel, Finalised, Propose, Reject, Response
from .notary import Conflict, Finalized, NotaryService
from .vault import Vault

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class ProtocolConfig:
    """
    Timeouts and retry limits for one node's agreements.

    Attributes:
        counterparty_timeout: Seconds to wait for a signature response
        notary_timeout: Seconds to wait for the notary's answer
        finality_timeout: Seconds to wait when distributing the final result
        communication_retries: Automatic resume() attempts after a
                               CommunicationError (0 = surface immediately)
    """
    counterparty_timeout: Optional[float] = 10.0
    notary_timeout: Optional[float] = 10.0
    finality_timeout: Optional[float] = 10.0
    communication_retries: int = 0

    def __post_init__(self):
        if self.communication_retries < 0:
            raise ValueError("communication_retries cannot be negative")


# ============================================================================
# STATE MACHINE
# ============================================================================

class ProtocolState(str, Enum):
    """Stage of an agreement."""
    BUILDING = "building"
    LOCALLY_VALIDATED = "locally_validated"
    LOCALLY_SIGNED = "locally_signed"
    AWAITING_COUNTERSIGNATURE = "awaiting_countersignature"
    COUNTERSIGNED = "countersigned"
    AWAITING_FINALITY = "awaiting_finality"
    FINALIZED = "finalized"
    REJECTED = "rejected"


_S = ProtocolState

TRANSITIONS: Dict[ProtocolState, FrozenSet[ProtocolState]] = {
    _S.BUILDING: frozenset({_S.LOCALLY_VALIDATED, _S.REJECTED}),
    _S.LOCALLY_VALIDATED: frozenset({_S.LOCALLY_SIGNED, _S.REJECTED}),
    # Straight to COUNTERSIGNED when the initiator is the only signer.
    _S.LOCALLY_SIGNED: frozenset({_S.AWAITING_COUNTERSIGNATURE, _S.COUNTERSIGNED, _S.REJECTED}),
    _S.AWAITING_COUNTERSIGNATURE: frozenset({_S.COUNTERSIGNED, _S.REJECTED}),
    _S.COUNTERSIGNED: frozenset({_S.AWAITING_FINALITY, _S.REJECTED}),
    _S.AWAITING_FINALITY: frozenset({_S.FINALIZED, _S.REJECTED}),
    _S.FINALIZED: frozenset(),
    _S.REJECTED: frozenset(),
}

TERMINAL_STATES = frozenset({_S.FINALIZED, _S.REJECTED})

_RESUMABLE = frozenset({
    _S.LOCALLY_SIGNED, _S.AWAITING_COUNTERSIGNATURE, _S.COUNTERSIGNED, _S.AWAITING_FINALITY,
})


def transition(current: ProtocolState, target: ProtocolState) -> ProtocolState:
    """Return `target` if the move is legal, else raise ProtocolError."""
    if target not in TRANSITIONS[current]:
        raise ProtocolError(f"Illegal transition {current.name} -> {target.name}")
    return target


# ============================================================================
# COUNTERPARTY POLICIES
# ============================================================================

class CounterpartyPolicy:
    """Business check a counterparty applies on top of the contract rules."""

    def check(self, tx: Transaction) -> None:
        """Raise ValidationError to refuse `tx`."""
        raise NotImplementedError


@dataclass(frozen=True)
class DebtCeilingPolicy(CounterpartyPolicy):
    """Refuse any transaction producing a Debt above `ceiling`."""
    ceiling: int = DEFAULT_DEBT_CEILING

    def check(self, tx: Transaction) -> None:
        for debt in tx.outputs:
            if isinstance(debt, DebtState) and debt.amount > self.ceiling:
                raise ValidationError(
                    f"I won't accept IOUs with a value over {self.ceiling}.", tx.command.kind
                )


# ============================================================================
# INITIATOR
# ============================================================================

class AgreementProtocol:
    """
    Initiator side of one agreement.

    Args:
        me: Initiating party
        keys: Initiator's key pair
        vault: Initiator's vault (read by `build`, written on finality)
        channel: Route to counterparties
        notary: Notary service
        build: Produces the unsigned transaction; may raise BuildError
        config: Timeouts and retries
        issuer: Party allowed to issue cash (passed to validation)

    Attributes:
        state: Current ProtocolState
        history: Every state visited, in order
        stx: Signed transaction once signing has started
        notarised: Final result once FINALIZED
        error: The error that moved the agreement to REJECTED
        undelivered: Parties that have not yet received the final result
    """

    def __init__(
        self,
        me: Party,
        keys: KeyPair,
        vault: Vault,
        channel: Channel,
        notary: NotaryService,
        build: Callable[[], Transaction],
        config: Optional[ProtocolConfig] = None,
        issuer: Party = DEFAULT_ISSUER,
    ):
        if keys.public_key != me.owning_key:
            raise ValueError("Key pair does not match the initiating party")
        self.me = me
        self.keys = keys
        self.vault = vault
        self.channel = channel
        self.notary = notary
        self.build = build
        self.config = config or ProtocolConfig()
        self.issuer = issuer
        self.session_id = uuid.uuid4().hex
        self.state = ProtocolState.BUILDING
        self.history: List[ProtocolState] = [ProtocolState.BUILDING]
        self.stx: Optional[SignedTransaction] = None
        self.notarised: Optional[NotarisedTransaction] = None
        self.error: Optional[LedgerError] = None
        self.undelivered: List[Party] = []

    # ------------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------------

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def tx_id(self) -> Optional[str]:
        return self.stx.tx_id if self.stx else None

    def _advance(self, target: ProtocolState) -> None:
        self.state = transition(self.state, target)
        self.history.append(target)
        logger.debug("[PROTOCOL] %s %s -> %s", self.session_id[:8], self.history[-2].name, target.name)

    def _reject(self, error: LedgerError) -> LedgerError:
        self.error = error
        self._advance(ProtocolState.REJECTED)
        logger.warning("[PROTOCOL] %s rejected: %s", self.session_id[:8], error)
        return error

    def _counterparties(self) -> List[Party]:
        """Parties whose signatures are still missing, in name order."""
        missing = self.stx.missing_signers()
        parties = {p for p in self.stx.tx.participants if p.owning_key in missing and p != self.me}
        return sorted(parties, key=lambda p: p.name)

    # ------------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------------

    async def run(self) -> NotarisedTransaction:
        """
        Take the agreement from BUILDING to FINALIZED.

        Raises:
            BuildError: Building failed; nothing was sent
            ValidationError: Local validation failed; nothing was sent
            CounterpartyRejectedError: The counterparty refused to sign
            DoubleSpendError: The notary reported a conflict
            CommunicationError: A round-trip failed; call resume() to retry
        """
        if self.state is not ProtocolState.BUILDING:
            raise ProtocolError(f"Agreement {self.session_id[:8]} already started ({self.state.name})")
        tx = self._build()
        self._validate(tx)
        self._sign(tx)
        return await self._complete()

    async def resume(self) -> NotarisedTransaction:
        """Continue from the last unacknowledged step after a CommunicationError."""
        if self.state is ProtocolState.FINALIZED:
            await self.redistribute()
            return self.notarised
        if self.state not in _RESUMABLE:
            raise ProtocolError(f"Agreement {self.session_id[:8]} cannot be resumed from {self.state.name}")
        logger.info("[PROTOCOL] %s resuming from %s", self.session_id[:8], self.state.name)
        return await self._complete()

    async def _complete(self) -> NotarisedTransaction:
        if self.state in (ProtocolState.LOCALLY_SIGNED, ProtocolState.AWAITING_COUNTERSIGNATURE):
            await self._collect_signatures()
        if self.state in (ProtocolState.COUNTERSIGNED, ProtocolState.AWAITING_FINALITY):
            await self._finalise()
        await self.redistribute()
        return self.notarised

    # ------------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------------

    def _build(self) -> Transaction:
        try:
            tx = self.build()
        except BuildError as e:
            raise self._reject(e)
        logger.debug("[PROTOCOL] %s built %s", self.session_id[:8], tx.tx_id[:12])
        return tx

    def _validate(self, tx: Transaction) -> None:
        try:
            verify(tx, self.issuer)
        except ValidationError as e:
            raise self._reject(e)
        self._advance(ProtocolState.LOCALLY_VALIDATED)

    def _sign(self, tx: Transaction) -> None:
        if self.me.owning_key not in tx.required_signers:
            raise self._reject(SignatureError(f"{self.me.name} is not a required signer of {tx.tx_id[:12]}"))
        self.stx = SignedTransaction(tx).with_signature(self.keys.sign(tx.tx_id))
        self._advance(ProtocolState.LOCALLY_SIGNED)

    async def _collect_signatures(self) -> None:
        counterparties = self._counterparties()
        if not counterparties:
            if self.stx.missing_signers():
                raise self._reject(SignatureError(
                    f"No known party holds the missing keys of {self.stx.tx_id[:12]}"
                ))
            self._advance(ProtocolState.COUNTERSIGNED)
            return

        if self.state is ProtocolState.LOCALLY_SIGNED:
            self._advance(ProtocolState.AWAITING_COUNTERSIGNATURE)

        for party in counterparties:
            message = Propose(self.me, self.stx, self.session_id)
            response: Response = await self.channel.send_proposal(
                party, message, self.config.counterparty_timeout
            )
            if isinstance(response, Reject):
                raise self._reject(CounterpartyRejectedError(party, response.reason))
            sig = response.signature
            if sig.by != party.owning_key or not verify_signature(self.stx.tx_id, sig):
                raise self._reject(SignatureError(f"Invalid signature returned by {party.name}"))
            self.stx = self.stx.with_signature(sig)

        try:
            check_signatures(self.stx)
        except SignatureError as e:
            raise self._reject(e)
        self._advance(ProtocolState.COUNTERSIGNED)

    async def _finalise(self) -> None:
        tx_id = self.stx.tx_id
        finality: Optional[Finalized] = None

        if self.state is ProtocolState.COUNTERSIGNED:
            self._advance(ProtocolState.AWAITING_FINALITY)
        elif self.vault.is_recorded(tx_id):
            self.notarised = next(n for n in self.vault.transaction_log if n.tx_id == tx_id)
            self._advance(ProtocolState.FINALIZED)
            return
        else:
            finality = await self._ask_notary(self.notary.get_finality(tx_id))

        if finality is None:
            try:
                result = await self._ask_notary(self.notary.notarize(self.stx))
            except NotaryError as e:
                raise self._reject(e)
            if isinstance(result, Conflict):
                raise self._reject(DoubleSpendError(result.tx_id, result.conflicting_tx_id, result.refs))
            finality = result

        self.notarised = NotarisedTransaction(self.stx, finality.timestamp, finality.signature)
        self.vault.record_finalized(self.notarised)
        self._advance(ProtocolState.FINALIZED)
        self.undelivered = sorted(
            (p for p in self.stx.tx.participants if p != self.me), key=lambda p: p.name
        )
        logger.info("[PROTOCOL] %s finalized %s", self.session_id[:8], tx_id[:12])

    async def _ask_notary(self, call):
        try:
            return await asyncio.wait_for(call, self.config.notary_timeout)
        except asyncio.TimeoutError as e:
            raise CommunicationError(self.notary.name, f"no response within {self.config.notary_timeout}s") from e

    async def redistribute(self) -> None:
        """
        Send the final result to every participant that has not received it.

        A participant that cannot be reached stays in `undelivered`; the
        transaction itself is already final.
        """
        if self.state is not ProtocolState.FINALIZED:
            return
        pending, self.undelivered = self.undelivered, []
        for party in pending:
            try:
                await self.channel.send_finalised(
                    party, Finalised(self.me, self.notarised), self.config.finality_timeout
                )
            except (CommunicationError, SignatureError) as e:
                logger.error("[PROTOCOL] could not deliver %s to %s: %s",
                             self.notarised.tx_id[:12], party.name, e)
                self.undelivered.append(party)


# ============================================================================
# COUNTERPARTY
# ============================================================================

class CounterpartyResponder:
    """
    Answers proposals addressed to one party and records final results.

    A proposal is signed only if the sender's own signature is present and
    valid, this party is a required signer, the contract rules hold, and
    every policy accepts it.

    Attributes:
        rejections: (tx_id, reason) for every refused proposal
    """

    def __init__(
        self,
        me: Party,
        keys: KeyPair,
        vault: Vault,
        notary_key: Optional[str] = None,
        policies: Sequence[CounterpartyPolicy] = (),
        issuer: Party = DEFAULT_ISSUER,
    ):
        self.me = me
        self.keys = keys
        self.vault = vault
        self.notary_key = notary_key
        self.policies: Tuple[CounterpartyPolicy, ...] = tuple(policies)
        self.issuer = issuer
        self.rejections: List[Tuple[str, str]] = []

    def check_proposal(self, message: Propose) -> None:
        """Raise ValidationError or SignatureError if the proposal must be refused."""
        stx = message.stx
        tx = stx.tx
        if self.me.owning_key not in tx.required_signers:
            raise ValidationError(f"{self.me.name} is not a required signer.")
        if message.sender.owning_key not in stx.signers:
            raise SignatureError(f"Proposal is not signed by its sender {message.sender.name}")
        check_signatures(stx, allowed_missing=stx.missing_signers())
        verify(tx, self.issuer)
        for policy in self.policies:
            policy.check(tx)

    async def on_proposal(self, message: Propose) -> Response:
        tx_id = message.stx.tx_id
        try:
            self.check_proposal(message)
        except (ValidationError, SignatureError) as e:
            reason = e.rule if isinstance(e, ValidationError) else str(e)
            self.rejections.append((tx_id, reason))
            logger.warning("[PROTOCOL] %s refuses %s from %s: %s",
                           self.me.name, tx_id[:12], message.sender.name, reason)
            return Reject(reason)
        logger.debug("[PROTOCOL] %s signs %s", self.me.name, tx_id[:12])
        return Accept(self.keys.sign(tx_id))

    async def on_finalised(self, message: Finalised) -> None:
        notarised = message.notarised
        check_signatures(notarised.stx)
        if self.notary_key is not None:
            sig = notarised.notary_signature
            if sig.by != self.notary_key or not verify_signature(notarised.tx_id, sig):
                raise SignatureError(f"Invalid notary signature on {notarised.tx_id[:12]}")
        self.vault.record_finalized(notarised)
