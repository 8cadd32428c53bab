"""
messaging.py - Counterparty channel

Messages exchanged between the two parties of an agreement:

    Propose(sender, stx, session_id)  ->  Accept(signature) | Reject(reason)
    Finalised(sender, notarised)          (one-way, after notary finality)

InMemoryNetwork routes messages to the responder registered for a party
name. An unknown, disconnected or slow recipient surfaces as
CommunicationError; silence is never read as refusal.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Set, Union
import asyncio
import logging

from .core import (
    NotarisedTransaction, Party, SignedTransaction, TransactionSignature,
    CommunicationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Propose:
    sender: Party
    stx: SignedTransaction
    session_id: str


@dataclass(frozen=True, slots=True)
class Accept:
    signature: TransactionSignature


@dataclass(frozen=True, slots=True)
class Reject:
    reason: str


Response = Union[Accept, Reject]


@dataclass(frozen=True, slots=True)
class Finalised:
    sender: Party
    notarised: NotarisedTransaction


class Responder(Protocol):
    """The receiving side of a party's channel."""

    async def on_proposal(self, message: Propose) -> Response:
        ...

    async def on_finalised(self, message: Finalised) -> None:
        ...


class Channel(Protocol):
    """What the agreement protocol needs to reach other parties."""

    async def send_proposal(self, recipient: Party, message: Propose, timeout: Optional[float]) -> Response:
        ...

    async def send_finalised(self, recipient: Party, message: Finalised, timeout: Optional[float]) -> None:
        ...


class InMemoryNetwork:
    """
    Routes messages between responders living in one process.

    Args:
        latency: Seconds each delivery takes
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._endpoints: Dict[str, Responder] = {}
        self._parties: Dict[str, Party] = {}
        self._unreachable: Set[str] = set()

    def register(self, party: Party, responder: Responder) -> None:
        if party.name in self._endpoints:
            raise ValueError(f"Party {party.name} already registered")
        self._endpoints[party.name] = responder
        self._parties[party.name] = party

    def peers(self) -> List[Party]:
        """Every registered party, in name order."""
        return [self._parties[name] for name in sorted(self._parties)]

    def disconnect(self, party: Party) -> None:
        self._unreachable.add(party.name)

    def reconnect(self, party: Party) -> None:
        self._unreachable.discard(party.name)

    def _endpoint(self, recipient: Party) -> Responder:
        endpoint = self._endpoints.get(recipient.name)
        if endpoint is None:
            raise CommunicationError(recipient.name, "unknown party")
        if recipient.name in self._unreachable:
            raise CommunicationError(recipient.name, "party unreachable")
        return endpoint

    async def _deliver(self, recipient: Party, call, timeout: Optional[float]):
        async def delivery():
            if self.latency:
                await asyncio.sleep(self.latency)
            return await call

        try:
            return await asyncio.wait_for(delivery(), timeout)
        except asyncio.TimeoutError as e:
            raise CommunicationError(recipient.name, f"no response within {timeout}s") from e

    async def send_proposal(self, recipient: Party, message: Propose, timeout: Optional[float] = None) -> Response:
        endpoint = self._endpoint(recipient)
        logger.debug("[NET] %s -> %s: propose %s", message.sender.name, recipient.name, message.stx.tx_id[:12])
        return await self._deliver(recipient, endpoint.on_proposal(message), timeout)

    async def send_finalised(self, recipient: Party, message: Finalised, timeout: Optional[float] = None) -> None:
        endpoint = self._endpoint(recipient)
        logger.debug("[NET] %s -> %s: finalised %s", message.sender.name, recipient.name, message.notarised.tx_id[:12])
        await self._deliver(recipient, endpoint.on_finalised(message), timeout)
