"""
builder.py - Transaction Builder

Turns a caller's intent ("lend 50 to P2 out of this cash", "pay 30 off this
debt") into an unsigned Transaction carrying exactly one command.

Every intent that moves cash goes through plan_cash_movement(), which owns
the single decision of how a cash holding covers a required amount:

    cash.amount - required >  0  -> split: payment + change back to the owner
    cash.amount - required == 0  -> whole holding changes hands
    cash.amount - required <  0  -> InsufficientFundsError

All builders fail fast with a BuildError subclass before anything is signed
or sent.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple
import uuid

from .core import (
    CashState, Command, CommandType, ContractState, DebtState, Party,
    StateAndRef, StateRef, Transaction,
    BuildError, InsufficientFundsError, OwnershipError, SelfDealingError,
    DEFAULT_NOTARY, participant_keys,
)
from .keys import DEFAULT_ISSUER


class StateLoader(Protocol):
    """Anything that can dereference a StateRef (normally a Vault)."""

    def load_current_state(self, ref: StateRef) -> StateAndRef:
        ...


# ============================================================================
# CASH MOVEMENT PLAN
# ============================================================================

@dataclass(frozen=True, slots=True)
class CashMovement:
    """
    How one cash holding pays `required` to a payee.

    Attributes:
        command: TRANSFER (whole holding) or TRANSFER_PARTIAL (with change)
        consumed: The cash holding being spent
        outputs: Payment first, then change if any
        change: Amount returned to the original owner
    """
    command: CommandType
    consumed: StateAndRef
    outputs: Tuple[CashState, ...]
    change: int

    @property
    def is_split(self) -> bool:
        return self.change > 0


def plan_cash_movement(cash: StateAndRef, payee: Party, required: int) -> CashMovement:
    """
    Decide how `cash` covers a payment of `required` to `payee`.

    Raises:
        BuildError: If required is not positive or the state is not Cash
        InsufficientFundsError: If the holding is smaller than required
    """
    if not isinstance(cash.state, CashState):
        raise BuildError(f"State {cash.ref} is not cash")
    if required <= 0:
        raise BuildError(f"Amount to pay must be positive, got {required}")

    difference = cash.state.amount - required
    if difference < 0:
        raise InsufficientFundsError(cash.state.amount, required, cash.ref)

    payment = CashState(required, payee)
    if difference > 0:
        change = CashState(difference, cash.state.owner)
        return CashMovement(CommandType.TRANSFER_PARTIAL, cash, (payment, change), difference)
    return CashMovement(CommandType.TRANSFER, cash, (payment,), 0)


# ============================================================================
# BUILDER
# ============================================================================

class TransactionBuilder:
    """
    Accumulates inputs, outputs and one command kind.

    The command's signers are derived when the transaction is built: every
    participant of every state touched must sign. Each built transaction
    gets a fresh salt, so two identical intents never share an id.

    Example:
        tx = (TransactionBuilder()
              .add_input(cash)
              .add_output(CashState(100, bob))
              .set_command(CommandType.TRANSFER)
              .to_transaction())
    """

    def __init__(self, notary: str = DEFAULT_NOTARY):
        self.notary = notary
        self.inputs: List[StateAndRef] = []
        self.outputs: List[ContractState] = []
        self.command: Optional[CommandType] = None

    def add_input(self, sar: StateAndRef) -> TransactionBuilder:
        self.inputs.append(sar)
        return self

    def add_output(self, state: ContractState) -> TransactionBuilder:
        self.outputs.append(state)
        return self

    def add_movement(self, movement: CashMovement) -> TransactionBuilder:
        self.add_input(movement.consumed)
        for state in movement.outputs:
            self.add_output(state)
        return self

    def set_command(self, kind: CommandType) -> TransactionBuilder:
        self.command = kind
        return self

    def to_transaction(self) -> Transaction:
        if self.command is None:
            raise BuildError("No command set on the transaction")
        touched = [sar.state for sar in self.inputs] + self.outputs
        command = Command(self.command, participant_keys(touched))
        return Transaction(
            inputs=tuple(self.inputs),
            outputs=tuple(self.outputs),
            commands=(command,),
            notary=self.notary,
            salt=uuid.uuid4().hex,
        )


# ============================================================================
# INTENTS
# ============================================================================

def load_owned_cash(loader: StateLoader, ref: StateRef, me: Party) -> StateAndRef:
    """Load a cash holding and check that `me` owns it."""
    sar = loader.load_current_state(ref)
    if not isinstance(sar.state, CashState):
        raise BuildError(f"State {ref} is not cash")
    if sar.state.owner != me:
        raise OwnershipError(f"I must own the cash being spent ({ref} belongs to {sar.state.owner.name})")
    return sar


def build_create_debt(
    loader: StateLoader,
    me: Party,
    counterparty: Party,
    amount: int,
    cash_ref: StateRef,
    notary: str = DEFAULT_NOTARY,
) -> Transaction:
    """
    Lend `amount` to `counterparty`, funded from the cash at `cash_ref`.

    Produces the new Debt (me as lender), the payment to the borrower and,
    when the holding is larger than the loan, change back to me.
    """
    if counterparty == me:
        raise SelfDealingError("I cannot lend to myself")
    if amount <= 0:
        raise BuildError(f"Debt amount must be positive, got {amount}")
    cash = load_owned_cash(loader, cash_ref, me)
    movement = plan_cash_movement(cash, counterparty, amount)
    return (TransactionBuilder(notary)
            .add_movement(movement)
            .add_output(DebtState(amount, lender=me, borrower=counterparty))
            .set_command(CommandType.CREATE)
            .to_transaction())


def build_settle_debt(
    loader: StateLoader,
    me: Party,
    debt_ref: StateRef,
    cash_ref: StateRef,
    amount: Optional[int] = None,
    notary: str = DEFAULT_NOTARY,
) -> Transaction:
    """
    Pay off a debt, fully or in part, from the cash at `cash_ref`.

    Args:
        amount: Amount to pay. None or the full outstanding amount settles
                the debt (PAY); a smaller positive amount leaves a revised
                debt (PARTIAL_PAY).

    Raises:
        OwnershipError: I am not the borrower, or do not own the cash
        BuildError: The amount is not positive or exceeds the debt
        InsufficientFundsError: The cash holding cannot cover the payment
    """
    debt = loader.load_current_state(debt_ref)
    if not isinstance(debt.state, DebtState):
        raise BuildError(f"State {debt_ref} is not a debt")
    if debt.state.borrower != me:
        raise OwnershipError("I must be the borrower of the debt being paid")

    outstanding = debt.state.amount
    if amount is None or amount == outstanding:
        kind, required, successor = CommandType.PAY, outstanding, None
    elif amount <= 0:
        raise BuildError(f"Payment must be positive, got {amount}")
    elif amount > outstanding:
        raise BuildError(f"Payment of {amount} exceeds the debt of {outstanding}")
    else:
        kind, required = CommandType.PARTIAL_PAY, amount
        successor = debt.state.revised(outstanding - amount)

    cash = load_owned_cash(loader, cash_ref, me)
    movement = plan_cash_movement(cash, debt.state.lender, required)

    builder = TransactionBuilder(notary).add_input(debt).add_movement(movement)
    if successor is not None:
        builder.add_output(successor)
    return builder.set_command(kind).to_transaction()


def build_issue_cash(
    me: Party,
    amount: int,
    issuer: Party = DEFAULT_ISSUER,
    notary: str = DEFAULT_NOTARY,
) -> Transaction:
    """Mint new cash owned by the issuing authority."""
    if me != issuer:
        raise OwnershipError(f"Only {issuer.name} may issue cash")
    if amount <= 0:
        raise BuildError(f"Issued amount must be positive, got {amount}")
    return (TransactionBuilder(notary)
            .add_output(CashState(amount, me))
            .set_command(CommandType.ISSUE)
            .to_transaction())


def build_transfer_cash(
    loader: StateLoader,
    me: Party,
    recipient: Party,
    amount: int,
    cash_ref: StateRef,
    notary: str = DEFAULT_NOTARY,
) -> Transaction:
    """Give `amount` of the cash at `cash_ref` to `recipient`."""
    if recipient == me:
        raise SelfDealingError("I cannot transfer cash to myself")
    cash = load_owned_cash(loader, cash_ref, me)
    movement = plan_cash_movement(cash, recipient, amount)
    return (TransactionBuilder(notary)
            .add_movement(movement)
            .set_command(movement.command)
            .to_transaction())
