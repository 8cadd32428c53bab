"""
Canonicalization Conformance Tests

INVARIANT: Semantically equivalent values produce identical representations.

    ∀ v1, v2: v1 == v2 ⟹ canonicalize(v1) == canonicalize(v2)

Transaction ids are content hashes over this representation, so the
signer set order never changes an id while any change of content does.
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from iouledger import (
    CashState, Command, CommandType, DebtState, Transaction, canonicalize,
)

from tests.factories import genesis, make_party, PARTY_A, PARTY_B


A, _ = make_party(PARTY_A)
B, _ = make_party(PARTY_B)

key_sets = st.lists(st.text(alphabet="0123456789abcdef", min_size=4, max_size=8),
                    min_size=1, max_size=6, unique=True)


class TestCanonicalization:
    """Property-based canonicalization tests."""

    @given(keys=key_sets, rng=st.randoms())
    @settings(max_examples=50)
    def test_set_order_irrelevant(self, keys, rng):
        """
        PROPERTY: A frozenset renders the same whatever its insertion order.
        """
        shuffled = list(keys)
        rng.shuffle(shuffled)
        assert canonicalize(frozenset(keys)) == canonicalize(frozenset(shuffled))

    @given(amount=st.integers(min_value=1, max_value=10_000))
    @settings(max_examples=50)
    def test_equal_transactions_share_id(self, amount):
        """
        PROPERTY: Two independently constructed equal transactions hash identically.
        """
        source = genesis(CashState(amount, A)).output_refs()[0]

        def build(signers):
            return Transaction((source,), (CashState(amount, B),),
                               (Command(CommandType.TRANSFER, signers),))

        assert build([A.owning_key, B.owning_key]).tx_id == build([B.owning_key, A.owning_key]).tx_id

    @given(
        amount=st.integers(min_value=1, max_value=10_000),
        delta=st.integers(min_value=1, max_value=100),
    )
    @settings(max_examples=50)
    def test_content_change_changes_id(self, amount, delta):
        """
        PROPERTY: Any change in an output amount changes the id.
        """
        debt = DebtState(amount, A, B)
        assert genesis(debt).tx_id != genesis(debt.revised(amount + delta)).tx_id

    @given(salt=st.text(min_size=1, max_size=16))
    @settings(max_examples=50)
    def test_salt_changes_id(self, salt):
        """
        PROPERTY: A salt distinguishes otherwise identical transactions.
        """
        plain = genesis(CashState(10, A))
        salted = Transaction(plain.inputs, plain.outputs, plain.commands, salt=salt)
        assert plain.tx_id != salted.tx_id
