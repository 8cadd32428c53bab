"""
conftest.py - Shared pytest fixtures for iouledger tests

Provides common fixtures used across unit and functional tests:
- Parties and their key pairs (A lends, B borrows, C issues cash)
- Empty vaults for each party
- In-memory network and notary
- Fully wired nodes
"""

import pytest

from iouledger import InMemoryNetwork, InMemoryNotary, Node, Vault

from tests.factories import PARTY_A, PARTY_B, PARTY_C, make_party


# =============================================================================
# PARTIES
# =============================================================================

@pytest.fixture
def party_a():
    return make_party(PARTY_A)


@pytest.fixture
def party_b():
    return make_party(PARTY_B)


@pytest.fixture
def alice(party_a):
    return party_a[0]


@pytest.fixture
def alice_keys(party_a):
    return party_a[1]


@pytest.fixture
def bob(party_b):
    return party_b[0]


@pytest.fixture
def bob_keys(party_b):
    return party_b[1]


@pytest.fixture
def issuer():
    return make_party(PARTY_C)[0]


# =============================================================================
# VAULTS
# =============================================================================

@pytest.fixture
def alice_vault(alice):
    return Vault(alice)


@pytest.fixture
def bob_vault(bob):
    return Vault(bob)


# =============================================================================
# NETWORK
# =============================================================================

@pytest.fixture
def network():
    return InMemoryNetwork()


@pytest.fixture
def notary():
    return InMemoryNotary()


@pytest.fixture
def nodes(network, notary):
    """(bank, alice, bob) nodes sharing one network and notary."""
    bank = Node(PARTY_C, network, notary)
    a = Node(PARTY_A, network, notary)
    b = Node(PARTY_B, network, notary)
    return bank, a, b
