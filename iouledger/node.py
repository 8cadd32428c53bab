"""
node.py - One party's entry point to the network

A Node bundles a party's identity, keys, vault and responder, and exposes
the operations a caller can request:

    create_debt(amount, counterparty)      lend cash, producing a Debt
    settle_debt(linear_id, amount=None)    pay a Debt fully or in part
    issue_cash(amount)                     mint cash (issuing authority only)
    transfer_cash(amount, recipient)       give cash to another party

Each returns the finalized transaction id or raises a LedgerError. Queries
read the local vault only.
"""

from __future__ import annotations
from typing import Callable, List, Optional, Sequence
import logging

from .core import (
    Party, StateAndRef, StateRef, Transaction,
    CommunicationError, InsufficientFundsError,
)
from .builder import build_create_debt, build_issue_cash, build_settle_debt, build_transfer_cash
from .keys import DEFAULT_ISSUER, KeyPair
from .messaging import InMemoryNetwork
from .notary import NotaryService
from .protocol import (
    AgreementProtocol, CounterpartyPolicy, CounterpartyResponder, DebtCeilingPolicy,
    ProtocolConfig,
)
from .vault import Vault

logger = logging.getLogger(__name__)


class Node:
    """
    A party on the network.

    Args:
        name: Legal name, e.g. "O=PartyA,L=London,C=GB"
        network: Channel shared with the other nodes
        notary: Notary service finalizing this node's transactions
        keys: Signing keys (default: derived from the name)
        config: Protocol timeouts and retries
        policies: Checks applied before co-signing (default: DebtCeilingPolicy())
        issuer: Cash issuing authority (name and key)
        verbose: Print each recorded transaction

    Example:
        network, notary = InMemoryNetwork(), InMemoryNotary()
        bank = Node(ISSUING_AUTHORITY, network, notary)
        alice = Node("O=PartyA,L=London,C=GB", network, notary)
        await bank.issue_cash(100)
        await bank.transfer_cash(100, alice.me)
        await alice.create_debt(50, bank.me)
    """

    def __init__(
        self,
        name: str,
        network: InMemoryNetwork,
        notary: NotaryService,
        keys: Optional[KeyPair] = None,
        config: Optional[ProtocolConfig] = None,
        policies: Optional[Sequence[CounterpartyPolicy]] = None,
        issuer: Party = DEFAULT_ISSUER,
        verbose: bool = False,
    ):
        self.keys = keys or KeyPair.from_name(name)
        self._me = Party(name, self.keys.public_key)
        self.network = network
        self.notary = notary
        self.config = config or ProtocolConfig()
        self.issuer = issuer
        self.vault = Vault(self._me, verbose=verbose)
        self.responder = CounterpartyResponder(
            self._me, self.keys, self.vault,
            notary_key=getattr(notary, "public_key", None),
            policies=(DebtCeilingPolicy(),) if policies is None else policies,
            issuer=issuer,
        )
        self.agreements: List[AgreementProtocol] = []
        network.register(self._me, self.responder)

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def me(self) -> Party:
        return self._me

    def query_debts(self) -> List[StateAndRef]:
        return self.vault.current_debts()

    def query_cash(self) -> List[StateAndRef]:
        return self.vault.current_cash()

    def my_debts(self, include_consumed: bool = False) -> List[StateAndRef]:
        """Debts where this node is the lender, optionally with past versions."""
        return self.vault.debts_as_lender(include_consumed)

    def peers(self) -> List[Party]:
        """Other parties registered on the network, excluding this node and the notary."""
        return [p for p in self.network.peers() if p != self._me and p.name != self.notary.name]

    def balance(self) -> int:
        return self.vault.balance()

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def _funding(self, cash_ref: Optional[StateRef], required: int) -> StateRef:
        if cash_ref is not None:
            return cash_ref
        largest = self.vault.largest_cash()
        if largest is None:
            raise InsufficientFundsError(0, required)
        return largest.ref

    async def _execute(self, build: Callable[[], Transaction]) -> str:
        agreement = AgreementProtocol(
            self._me, self.keys, self.vault, self.network, self.notary, build,
            config=self.config, issuer=self.issuer,
        )
        self.agreements.append(agreement)
        try:
            notarised = await agreement.run()
        except CommunicationError as e:
            notarised = await self._resume(agreement, e)
        return notarised.tx_id

    async def _resume(self, agreement: AgreementProtocol, error: CommunicationError):
        for attempt in range(1, self.config.communication_retries + 1):
            logger.info("[NODE] %s retry %d after: %s", self._me.name, attempt, error)
            try:
                return await agreement.resume()
            except CommunicationError as e:
                error = e
        logger.error("[NODE] %s gave up after %d retries: %s", self._me.name, self.config.communication_retries, error)
        raise error

    async def create_debt(self, amount: int, counterparty: Party, cash_ref: Optional[StateRef] = None) -> str:
        """Lend `amount` to `counterparty`; returns the transaction id."""
        def build():
            ref = self._funding(cash_ref, amount)
            return build_create_debt(self.vault, self._me, counterparty, amount, ref, self.notary.name)
        return await self._execute(build)

    async def settle_debt(self, linear_id: str, amount: Optional[int] = None,
                          cash_ref: Optional[StateRef] = None) -> str:
        """Pay the debt identified by `linear_id`, fully when `amount` is None."""
        def build():
            debt = self.vault.find_debt(linear_id)
            ref = self._funding(cash_ref, debt.state.amount if amount is None else amount)
            return build_settle_debt(self.vault, self._me, debt.ref, ref, amount, self.notary.name)
        return await self._execute(build)

    async def issue_cash(self, amount: int) -> str:
        return await self._execute(
            lambda: build_issue_cash(self._me, amount, self.issuer, self.notary.name)
        )

    async def transfer_cash(self, amount: int, recipient: Party, cash_ref: Optional[StateRef] = None) -> str:
        def build():
            ref = self._funding(cash_ref, amount)
            return build_transfer_cash(self.vault, self._me, recipient, amount, ref, self.notary.name)
        return await self._execute(build)

    def __repr__(self) -> str:
        return f"Node({self._me.name}, balance={self.balance()})"
