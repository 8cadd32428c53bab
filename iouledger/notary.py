"""
notary.py - Notary contract and an in-memory implementation

The notary is the single point that orders consumption of states across the
whole network. It sees fully signed transactions and answers with exactly
one of:

    Finalized(tx_id, timestamp, signature)   every input is now consumed
    Conflict(tx_id, conflicting_tx_id, refs) some input was consumed before

Submitting the same transaction twice yields Finalized then a self-Conflict;
nothing is ever consumed twice.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple, Union
import asyncio
import logging

from .core import (
    SignedTransaction, StateRef, TransactionSignature,
    NotaryError, SignatureError,
    DEFAULT_NOTARY,
)
from .keys import KeyPair, check_signatures

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Finalized:
    """The transaction is final; its inputs are consumed network-wide."""
    tx_id: str
    timestamp: datetime
    signature: TransactionSignature


@dataclass(frozen=True, slots=True)
class Conflict:
    """At least one input was already consumed by `conflicting_tx_id`."""
    tx_id: str
    conflicting_tx_id: str
    refs: Tuple[StateRef, ...]

    @property
    def is_self_conflict(self) -> bool:
        return self.tx_id == self.conflicting_tx_id


NotaryResult = Union[Finalized, Conflict]


class NotaryService(Protocol):
    """What the agreement protocol needs from a notary."""

    name: str

    async def notarize(self, stx: SignedTransaction) -> NotaryResult:
        ...

    async def get_finality(self, tx_id: str) -> Optional[Finalized]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryNotary:
    """
    Single-process notary double.

    Consumption is serialized by an asyncio lock, so concurrent submissions
    spending the same reference are decided strictly first-come.

    Args:
        name: Notary identity transactions must address
        keys: Key pair used for finality signatures
        clock: Source of finality timestamps
        latency: Seconds to wait before deciding (lets tests interleave)
    """

    def __init__(
        self,
        name: str = DEFAULT_NOTARY,
        keys: Optional[KeyPair] = None,
        clock: Callable[[], datetime] = _utcnow,
        latency: float = 0.0,
    ):
        self.name = name
        self.keys = keys or KeyPair.from_name(name)
        self.clock = clock
        self.latency = latency
        self._consumed: Dict[StateRef, str] = {}
        self._finalized: Dict[str, Finalized] = {}
        self._lock = asyncio.Lock()
        self.submissions = 0

    @property
    def public_key(self) -> str:
        return self.keys.public_key

    def consumed_by(self, ref: StateRef) -> Optional[str]:
        return self._consumed.get(ref)

    def is_notarised(self, tx_id: str) -> bool:
        return tx_id in self._finalized

    async def get_finality(self, tx_id: str) -> Optional[Finalized]:
        return self._finalized.get(tx_id)

    async def notarize(self, stx: SignedTransaction) -> NotaryResult:
        """
        Consume every input of `stx` exactly once, or report the conflict.

        Raises:
            NotaryError: Wrong notary, or signatures missing/invalid
        """
        tx = stx.tx
        self.submissions += 1
        if tx.notary != self.name:
            raise NotaryError(f"Transaction {tx.tx_id[:12]} is addressed to {tx.notary}, not {self.name}")
        try:
            check_signatures(stx)
        except SignatureError as e:
            raise NotaryError(f"Refusing to notarise {tx.tx_id[:12]}: {e}") from e

        if self.latency:
            await asyncio.sleep(self.latency)

        async with self._lock:
            if tx.tx_id in self._finalized:
                logger.warning("[NOTARY] %s resubmitted after finality", tx.tx_id[:12])
                return Conflict(tx.tx_id, tx.tx_id, tx.input_refs)

            contested = [ref for ref in tx.input_refs if ref in self._consumed]
            if contested:
                winner = self._consumed[contested[0]]
                logger.warning(
                    "[NOTARY] %s conflicts with %s over %s",
                    tx.tx_id[:12], winner[:12], ", ".join(str(r) for r in contested),
                )
                return Conflict(tx.tx_id, winner, tuple(contested))

            for ref in tx.input_refs:
                self._consumed[ref] = tx.tx_id
            finality = Finalized(tx.tx_id, self.clock(), self.keys.sign(tx.tx_id))
            self._finalized[tx.tx_id] = finality

        logger.info("[NOTARY] finalized %s (%d inputs)", tx.tx_id[:12], len(tx.inputs))
        return finality
