"""
vault.py - A node's view of the current states

The Vault is the only place a node's notion of "current" changes. It is
mutated exclusively by record_finalized(), which takes a notarised
transaction and, in one step, retires every consumed reference and installs
every produced state the node participates in.

Key responsibilities:
    - Dereference StateRefs for the builder (stale vs. unknown references)
    - Record finalized transactions atomically and idempotently
    - Answer queries over current debts and cash
"""

from __future__ import annotations
from enum import Enum
from typing import Dict, List, Optional, Set
import logging
import threading

from .core import (
    CashState, ContractState, DebtState, NotarisedTransaction, Party,
    StateAndRef, StateRef,
    ReferenceNotFoundError, StaleReferenceError,
)

logger = logging.getLogger(__name__)


class RecordResult(Enum):
    """
    Outcome of recording a finalized transaction.

    RECORDED: The transaction's effects were applied to the vault.
    ALREADY_RECORDED: The transaction id was seen before; nothing changed.
    """
    RECORDED = "recorded"
    ALREADY_RECORDED = "already_recorded"


class Vault:
    """
    In-memory store of the states relevant to one party.

    A state is relevant if the owning party is one of its participants.
    Consumed references are remembered (with the consuming transaction) so
    that a stale reference is distinguishable from one never seen.

    Thread Safety:
        Mutation and queries share one lock; a query never observes a
        half-recorded transaction.

    Example:
        vault = Vault(me)
        vault.record_finalized(notarised)
        for debt in vault.current_debts():
            print(debt.state.amount)
    """

    def __init__(self, owner: Party, verbose: bool = False):
        """
        Create a vault.

        Args:
            owner: Party whose states this vault keeps
            verbose: Print each recorded transaction (default: False)
        """
        self.owner = owner
        self.verbose = verbose
        self._current: Dict[StateRef, ContractState] = {}
        self._consumed: Dict[StateRef, str] = {}
        self.seen_tx_ids: Set[str] = set()
        self.transaction_log: List[NotarisedTransaction] = []
        self._lock = threading.RLock()

    # ========================================================================
    # LOOKUPS
    # ========================================================================

    def load_current_state(self, ref: StateRef) -> StateAndRef:
        """
        Dereference a state reference.

        Raises:
            StaleReferenceError: The state was consumed by a finalized transaction
            ReferenceNotFoundError: The reference was never recorded here
        """
        with self._lock:
            if ref in self._current:
                return StateAndRef(self._current[ref], ref)
            if ref in self._consumed:
                raise StaleReferenceError(ref, self._consumed[ref])
        raise ReferenceNotFoundError(ref)

    def is_recorded(self, tx_id: str) -> bool:
        with self._lock:
            return tx_id in self.seen_tx_ids

    def current_states(self) -> List[StateAndRef]:
        with self._lock:
            return [StateAndRef(s, r) for r, s in sorted(self._current.items())]

    def current_debts(self) -> List[StateAndRef]:
        return [sar for sar in self.current_states() if isinstance(sar.state, DebtState)]

    def current_cash(self) -> List[StateAndRef]:
        return [sar for sar in self.current_states() if isinstance(sar.state, CashState)]

    def debts_as_lender(self, include_consumed: bool = False) -> List[StateAndRef]:
        """
        Debts where the owner is the lender.

        With `include_consumed`, every recorded version is returned in
        recording order, including those since revised or paid off.
        """
        if not include_consumed:
            return [sar for sar in self.current_debts() if sar.state.lender == self.owner]
        with self._lock:
            produced = [sar for notarised in self.transaction_log for sar in notarised.tx.output_refs()]
        return [sar for sar in produced
                if isinstance(sar.state, DebtState) and sar.state.lender == self.owner]

    def find_debt(self, linear_id: str) -> StateAndRef:
        """Current version of the debt with this linear id."""
        for sar in self.current_debts():
            if sar.state.linear_id == linear_id:
                return sar
        raise ReferenceNotFoundError(None, f"Debt with id {linear_id} not found")

    def balance(self) -> int:
        """Total cash owned by this vault's party."""
        return sum(sar.state.amount for sar in self.current_cash() if sar.state.owner == self.owner)

    def largest_cash(self) -> Optional[StateAndRef]:
        """The owner's largest cash holding, or None."""
        owned = [sar for sar in self.current_cash() if sar.state.owner == self.owner]
        if not owned:
            return None
        return max(owned, key=lambda sar: (sar.state.amount, sar.ref))

    # ========================================================================
    # RECORDING (Mutating)
    # ========================================================================

    def record_finalized(self, notarised: NotarisedTransaction) -> RecordResult:
        """
        Apply a finalized transaction's effects atomically.

        All consumed references are retired and all relevant outputs are
        installed under a single lock acquisition. Recording is idempotent:
        a transaction id is applied at most once.

        Args:
            notarised: Transaction finalized by the notary

        Returns:
            RecordResult.RECORDED or RecordResult.ALREADY_RECORDED
        """
        tx = notarised.tx
        with self._lock:
            if tx.tx_id in self.seen_tx_ids:
                logger.debug("[VAULT] %s already recorded %s", self.owner.name, tx.tx_id[:12])
                return RecordResult.ALREADY_RECORDED

            for ref in tx.input_refs:
                self._current.pop(ref, None)
                self._consumed[ref] = tx.tx_id

            produced = 0
            for sar in tx.output_refs():
                if self.owner in sar.state.participants:
                    self._current[sar.ref] = sar.state
                    produced += 1

            self.seen_tx_ids.add(tx.tx_id)
            self.transaction_log.append(notarised)

        logger.info(
            "[VAULT] %s recorded %s: %d consumed, %d produced",
            self.owner.name, tx.tx_id[:12], len(tx.inputs), produced,
        )
        if self.verbose:
            print(repr(tx))
            print(f"✓ RECORDED by {self.owner.name} at {notarised.timestamp}")
        return RecordResult.RECORDED
