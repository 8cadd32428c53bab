"""
test_messaging.py - Unit tests for the in-memory counterparty channel
"""

import asyncio

import pytest

from iouledger import (
    Accept, CashState, CommunicationError, InMemoryNetwork, Propose, Reject,
    SignedTransaction, build_transfer_cash,
)

from tests.factories import seed


class SlowResponder:
    async def on_proposal(self, message):
        await asyncio.sleep(1)
        return Reject("too late")

    async def on_finalised(self, message):
        pass


class EchoResponder:
    def __init__(self, keys):
        self.keys = keys

    async def on_proposal(self, message):
        return Accept(self.keys.sign(message.stx.tx_id))

    async def on_finalised(self, message):
        pass


@pytest.fixture
def proposal(alice, bob, alice_vault):
    cash, = seed(alice_vault, states=(CashState(10, alice),))
    tx = build_transfer_cash(alice_vault, alice, bob, 10, cash.ref)
    return Propose(alice, SignedTransaction(tx), "session")


class TestInMemoryNetwork:

    def test_duplicate_registration_rejected(self, network, bob, bob_keys):
        network.register(bob, EchoResponder(bob_keys))
        with pytest.raises(ValueError, match="already registered"):
            network.register(bob, EchoResponder(bob_keys))

    def test_peers_in_name_order(self, network, alice, alice_keys, bob, bob_keys):
        assert network.peers() == []
        network.register(bob, EchoResponder(bob_keys))
        network.register(alice, EchoResponder(alice_keys))
        assert network.peers() == [alice, bob]

    @pytest.mark.asyncio
    async def test_delivers_to_registered_party(self, network, bob, bob_keys, proposal):
        network.register(bob, EchoResponder(bob_keys))
        response = await network.send_proposal(bob, proposal)
        assert response.signature.by == bob.owning_key

    @pytest.mark.asyncio
    async def test_unknown_party(self, network, bob, proposal):
        with pytest.raises(CommunicationError, match="unknown party") as exc:
            await network.send_proposal(bob, proposal)
        assert exc.value.target == bob.name

    @pytest.mark.asyncio
    async def test_disconnected_party(self, network, bob, bob_keys, proposal):
        network.register(bob, EchoResponder(bob_keys))
        network.disconnect(bob)
        with pytest.raises(CommunicationError, match="unreachable"):
            await network.send_proposal(bob, proposal)
        network.reconnect(bob)
        assert isinstance(await network.send_proposal(bob, proposal), Accept)

    @pytest.mark.asyncio
    async def test_silence_is_a_timeout_not_a_refusal(self, network, bob, proposal):
        network.register(bob, SlowResponder())
        with pytest.raises(CommunicationError, match="no response within"):
            await network.send_proposal(bob, proposal, timeout=0.01)

    @pytest.mark.asyncio
    async def test_latency_applied(self, bob, bob_keys, proposal):
        network = InMemoryNetwork(latency=0.02)
        network.register(bob, EchoResponder(bob_keys))
        loop = asyncio.get_running_loop()
        started = loop.time()
        await network.send_proposal(bob, proposal)
        assert loop.time() - started >= 0.015
