"""
test_agreement_scenarios.py - End-to-end agreement scenarios

Tests complete flows between nodes over the in-memory network and notary:
- Cash issuance and distribution
- Scenario A: lending funded by a larger cash holding
- Scenario B: partial payment, then full payment
- Scenario C: settlement with insufficient cash
- Scenario D: counterparty refuses a debt above its ceiling
- Scenario E: two concurrent payments race for the same debt
- Node queries: peers and lender history
- Recovery from an unreachable counterparty
"""

import asyncio

import pytest

from iouledger import (
    BuildError, CommunicationError, CounterpartyRejectedError, DebtCeilingPolicy,
    DoubleSpendError, InMemoryNetwork, InMemoryNotary, InsufficientFundsError, KeyPair,
    Node, OwnershipError, Party, ProtocolConfig, ProtocolState, ReferenceNotFoundError,
)

from tests.factories import PARTY_A, PARTY_B, PARTY_C


async def fund(bank: Node, node: Node, amount: int) -> None:
    await bank.issue_cash(amount)
    await bank.transfer_cash(amount, node.me)


def states(node: Node):
    return sorted((repr(sar.state) for sar in node.vault.current_states()))


class TestCashDistribution:

    @pytest.mark.asyncio
    async def test_issue_and_transfer(self, nodes):
        bank, alice, _ = nodes
        await bank.issue_cash(100)
        assert bank.balance() == 100

        await bank.transfer_cash(60, alice.me)

        assert bank.balance() == 40
        assert alice.balance() == 60

    @pytest.mark.asyncio
    async def test_repeated_issuance_gets_distinct_ids(self, nodes):
        bank, _, _ = nodes
        first = await bank.issue_cash(100)
        second = await bank.issue_cash(100)
        assert first != second
        assert bank.balance() == 200

    @pytest.mark.asyncio
    async def test_only_issuer_can_issue(self, nodes):
        _, alice, _ = nodes
        with pytest.raises(OwnershipError):
            await alice.issue_cash(100)
        assert alice.agreements[-1].state is ProtocolState.REJECTED

    @pytest.mark.asyncio
    async def test_transfer_without_cash(self, nodes):
        _, alice, bob = nodes
        with pytest.raises(InsufficientFundsError):
            await alice.transfer_cash(10, bob.me)


class TestScenarioA:
    """Create(50) funded by Cash(100): Debt(50) + Cash(50, lender) + Cash(50, borrower)."""

    @pytest.mark.asyncio
    async def test_create_debt(self, nodes, notary):
        bank, alice, bob = nodes
        await fund(bank, alice, 100)

        tx_id = await alice.create_debt(50, bob.me)

        assert notary.is_notarised(tx_id)
        assert alice.balance() == 50
        assert bob.balance() == 50

        alice_debts = [sar.state for sar in alice.query_debts()]
        bob_debts = [sar.state for sar in bob.query_debts()]
        assert alice_debts == bob_debts
        debt, = alice_debts
        assert (debt.amount, debt.lender, debt.borrower) == (50, alice.me, bob.me)
        assert [sar.state for sar in alice.my_debts()] == [debt]
        assert bob.my_debts() == []

    @pytest.mark.asyncio
    async def test_create_debt_from_explicit_holding(self, nodes):
        bank, alice, bob = nodes
        await fund(bank, alice, 30)
        await fund(bank, alice, 80)
        small = min(alice.query_cash(), key=lambda sar: sar.state.amount)

        await alice.create_debt(30, bob.me, cash_ref=small.ref)

        assert [sar.state.amount for sar in alice.query_cash()] == [80]

    @pytest.mark.asyncio
    async def test_cannot_lend_to_self(self, nodes):
        bank, alice, _ = nodes
        await fund(bank, alice, 100)
        with pytest.raises(BuildError):
            await alice.create_debt(10, alice.me)
        assert alice.balance() == 100


class TestScenarioB:
    """PartialPay 50 -> 20, then Pay retires the debt."""

    @pytest.mark.asyncio
    async def test_partial_then_full_payment(self, nodes):
        bank, alice, bob = nodes
        await fund(bank, alice, 100)
        await alice.create_debt(50, bob.me)
        linear_id = bob.query_debts()[0].state.linear_id

        await bob.settle_debt(linear_id, 30)

        debt = bob.vault.find_debt(linear_id).state
        assert debt.amount == 20
        assert alice.vault.find_debt(linear_id).state == debt
        assert alice.balance() == 80
        assert bob.balance() == 20

        await bob.settle_debt(linear_id)

        assert bob.query_debts() == []
        assert alice.query_debts() == []
        assert alice.balance() == 100
        assert bob.balance() == 0

    @pytest.mark.asyncio
    async def test_overpayment_rejected_before_any_flow(self, nodes, notary):
        bank, alice, bob = nodes
        await fund(bank, alice, 100)
        await alice.create_debt(50, bob.me)
        linear_id = bob.query_debts()[0].state.linear_id
        submissions = notary.submissions

        with pytest.raises(BuildError, match="exceeds the debt"):
            await bob.settle_debt(linear_id, 60)
        assert notary.submissions == submissions

    @pytest.mark.asyncio
    async def test_lender_cannot_settle(self, nodes):
        bank, alice, bob = nodes
        await fund(bank, alice, 100)
        await alice.create_debt(50, bob.me)
        linear_id = alice.query_debts()[0].state.linear_id

        with pytest.raises(OwnershipError, match="borrower"):
            await alice.settle_debt(linear_id, 10)

    @pytest.mark.asyncio
    async def test_unknown_debt(self, nodes):
        _, _, bob = nodes
        with pytest.raises(ReferenceNotFoundError):
            await bob.settle_debt("no-such-debt")


class TestScenarioC:
    """Pay of Debt(20) with only Cash(15): fails in the builder."""

    @pytest.mark.asyncio
    async def test_insufficient_funds_before_signing(self, nodes, notary):
        bank, alice, bob = nodes
        await fund(bank, alice, 20)
        await alice.create_debt(20, bob.me)
        await bob.transfer_cash(5, alice.me)
        assert bob.balance() == 15
        linear_id = bob.query_debts()[0].state.linear_id
        submissions = notary.submissions
        before = (states(alice), states(bob))

        with pytest.raises(InsufficientFundsError) as exc:
            await bob.settle_debt(linear_id)

        assert (exc.value.available, exc.value.required) == (15, 20)
        agreement = bob.agreements[-1]
        assert agreement.history == [ProtocolState.BUILDING, ProtocolState.REJECTED]
        assert agreement.stx is None
        assert notary.submissions == submissions
        assert (states(alice), states(bob)) == before


class TestScenarioD:
    """Counterparty refuses a Debt above its ceiling; nothing changes anywhere."""

    @pytest.mark.asyncio
    async def test_ceiling_refusal(self, nodes, notary):
        bank, alice, bob = nodes
        await fund(bank, bob, 200)
        submissions = notary.submissions
        before = (states(alice), states(bob))

        with pytest.raises(CounterpartyRejectedError, match="over 100"):
            await bob.create_debt(150, alice.me)

        assert bob.agreements[-1].state is ProtocolState.REJECTED
        assert notary.submissions == submissions
        assert (states(alice), states(bob)) == before
        assert alice.responder.rejections

    @pytest.mark.asyncio
    async def test_custom_ceiling(self, network, notary):
        bank = Node(PARTY_C, network, notary)
        lender = Node(PARTY_A, network, notary)
        generous = Node(PARTY_B, network, notary, policies=[DebtCeilingPolicy(500)])
        await fund(bank, lender, 200)

        await lender.create_debt(150, generous.me)

        assert generous.query_debts()[0].state.amount == 150


class TestScenarioE:
    """Two concurrent payments against the same debt: one wins, one conflicts."""

    @pytest.mark.asyncio
    async def test_concurrent_partial_payments(self):
        network = InMemoryNetwork(latency=0.01)
        notary = InMemoryNotary(latency=0.01)
        bank = Node(PARTY_C, network, notary)
        alice = Node(PARTY_A, network, notary)
        bob = Node(PARTY_B, network, notary)
        await fund(bank, alice, 100)
        await alice.create_debt(50, bob.me)
        linear_id = bob.query_debts()[0].state.linear_id

        results = await asyncio.gather(
            bob.settle_debt(linear_id, 10),
            bob.settle_debt(linear_id, 20),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, str)]
        losers = [r for r in results if isinstance(r, DoubleSpendError)]
        assert len(winners) == 1 and len(losers) == 1
        assert losers[0].conflicting_tx_id == winners[0]

        paid = 10 if results[0] == winners[0] else 20
        assert bob.vault.find_debt(linear_id).state.amount == 50 - paid
        assert alice.vault.find_debt(linear_id).state.amount == 50 - paid
        assert alice.balance() == 50 + paid
        assert bob.balance() == 50 - paid
        assert not bob.vault.is_recorded(losers[0].tx_id)


class TestNodeQueries:

    def test_peers_exclude_self_and_notary(self, nodes):
        bank, alice, bob = nodes
        assert alice.peers() == [bob.me, bank.me]
        assert bank.peers() == [alice.me, bob.me]

    @pytest.mark.asyncio
    async def test_my_debts_history(self, nodes):
        bank, alice, bob = nodes
        await fund(bank, alice, 100)
        await alice.create_debt(50, bob.me)
        linear_id = alice.my_debts()[0].state.linear_id
        await fund(bank, bob, 30)
        await bob.settle_debt(linear_id, 30)

        assert [sar.state.amount for sar in alice.my_debts()] == [20]
        assert [sar.state.amount for sar in alice.my_debts(include_consumed=True)] == [50, 20]

        await bob.settle_debt(linear_id)

        assert alice.my_debts() == []
        assert [sar.state.amount for sar in alice.my_debts(include_consumed=True)] == [50, 20]
        assert bob.my_debts(include_consumed=True) == []


class TestRecovery:

    @pytest.mark.asyncio
    async def test_retry_after_counterparty_returns(self, network, notary):
        bank = Node(PARTY_C, network, notary)
        alice = Node(PARTY_A, network, notary)
        bob = Node(PARTY_B, network, notary)
        await fund(bank, alice, 100)
        network.disconnect(bob.me)

        with pytest.raises(CommunicationError):
            await alice.create_debt(50, bob.me)
        agreement = alice.agreements[-1]
        assert agreement.state is ProtocolState.AWAITING_COUNTERSIGNATURE
        assert alice.balance() == 100

        network.reconnect(bob.me)
        await agreement.resume()

        assert agreement.state is ProtocolState.FINALIZED
        assert alice.balance() == 50
        assert bob.balance() == 50

    @pytest.mark.asyncio
    async def test_automatic_retries_exhausted(self, network, notary):
        bank = Node(PARTY_C, network, notary)
        alice = Node(PARTY_A, network, notary, config=ProtocolConfig(communication_retries=2))
        bob = Node(PARTY_B, network, notary)
        await fund(bank, alice, 100)
        network.disconnect(bob.me)

        with pytest.raises(CommunicationError):
            await alice.create_debt(50, bob.me)
        assert alice.agreements[-1].state is ProtocolState.AWAITING_COUNTERSIGNATURE

    @pytest.mark.asyncio
    async def test_unknown_counterparty(self, nodes):
        bank, alice, _ = nodes
        await fund(bank, alice, 100)
        stranger = Party("O=Stranger,L=Oslo,C=NO", KeyPair.from_name("stranger").public_key)

        with pytest.raises(CommunicationError, match="unknown party"):
            await alice.create_debt(50, stranger)
