"""
contract.py - Transaction Validation Engine

Pure rules deciding whether a set of consumed and produced states is an
acceptable transition for a given command:

    validate(command, inputs, outputs, signers) -> None   (or ValidationError)
    verify(transaction) -> None                           (or ValidationError)

Every command has one rule function. Sub-checks shared between commands
(cardinality, signer completeness, conservation, the cash leg that funds or
repays a debt) are small predicates composed by the rule functions, so a
check means the same thing wherever it is applied.

No function here reads anything beyond its arguments.
"""

from __future__ import annotations
from typing import Callable, Dict, FrozenSet, Iterable, List, Sequence, Union

from .core import (
    CashState, Command, CommandType, ContractState, DebtState, Key, Transaction,
    Party, ValidationError, MalformedCommandError,
    participant_keys, states_of_type,
)
from .keys import DEFAULT_ISSUER


RuleSet = Callable[[CommandType, Sequence[ContractState], Sequence[ContractState], FrozenSet[Key], Party], None]


# ============================================================================
# SHARED PREDICATES
# ============================================================================

def require(condition: bool, rule: str, command: CommandType) -> None:
    """Raise ValidationError describing `rule` unless `condition` holds."""
    if not condition:
        raise ValidationError(rule, command)


def cash_of(states: Iterable[ContractState]) -> List[CashState]:
    return states_of_type(states, CashState)


def debts_of(states: Iterable[ContractState]) -> List[DebtState]:
    return states_of_type(states, DebtState)


def signers_complete(states: Iterable[ContractState], signers: FrozenSet[Key]) -> bool:
    return participant_keys(states) <= signers


def cash_conserved(inputs: Sequence[ContractState], outputs: Sequence[ContractState]) -> bool:
    return sum(c.amount for c in cash_of(inputs)) == sum(c.amount for c in cash_of(outputs))


def check_cash_leg(
    command: CommandType,
    inputs: Sequence[ContractState],
    outputs: Sequence[ContractState],
    payer,
    payee,
    amount: int,
    amount_rule: str,
) -> None:
    """
    The cash movement linked to a debt: `payer` spends a Cash input and
    `payee` receives a Cash output worth exactly `amount`.

    Other Cash states may coexist, as long as one such pair exists and total
    Cash is conserved.
    """
    spent = [c for c in cash_of(inputs) if c.owner == payer]
    require(bool(spent), f"The cash spent must be owned by {payer.name}.", command)
    received = [c for c in cash_of(outputs) if c.owner == payee]
    require(bool(received), f"The new cash must be owned by {payee.name}.", command)
    require(any(c.amount == amount for c in received), amount_rule, command)
    require(cash_conserved(inputs, outputs),
            "The total cash consumed must equal the total cash produced.", command)


def _no_debts(command: CommandType, inputs, outputs) -> None:
    require(not debts_of(inputs) and not debts_of(outputs),
            "Cash commands cannot consume or produce Debt states.", command)


# ============================================================================
# RULE SETS
# ============================================================================

def _verify_create(command, inputs, outputs, signers, issuer) -> None:
    require(not debts_of(inputs), "No Debt inputs should be consumed when issuing a Debt.", command)
    debts_out = debts_of(outputs)
    require(len(debts_out) == 1, "Only one Debt output state should be created.", command)
    debt = debts_out[0]
    require(debt.lender != debt.borrower,
            "The lender and the borrower cannot be the same entity.", command)
    require(signers_complete([debt], signers), "All of the participants must be signers.", command)
    require(debt.amount > 0, "The Debt's value must be positive.", command)
    check_cash_leg(
        command, inputs, outputs, payer=debt.lender, payee=debt.borrower, amount=debt.amount,
        amount_rule="The value of the debt must equal the value transferred.",
    )


def _verify_pay(command, inputs, outputs, signers, issuer) -> None:
    require(not debts_of(outputs), "No Debt outputs should be produced when paying a Debt.", command)
    debts_in = debts_of(inputs)
    require(len(debts_in) == 1, "Only one Debt input should be consumed.", command)
    debt = debts_in[0]
    require(signers_complete([debt], signers), "All of the participants must be signers.", command)
    check_cash_leg(
        command, inputs, outputs, payer=debt.borrower, payee=debt.lender, amount=debt.amount,
        amount_rule="The value of the debt must equal the value transferred.",
    )


def _verify_partial_pay(command, inputs, outputs, signers, issuer) -> None:
    debts_in = debts_of(inputs)
    debts_out = debts_of(outputs)
    require(len(debts_in) == 1, "Only one Debt input should be consumed.", command)
    require(len(debts_out) == 1, "Only one Debt output should be produced.", command)
    before, after = debts_in[0], debts_out[0]
    require(before.linear_id == after.linear_id, "The Debt id cannot change.", command)
    require(before.lender == after.lender, "The lender cannot change.", command)
    require(before.borrower == after.borrower, "The borrower cannot change.", command)
    require(before.participants == after.participants, "The participants cannot change.", command)
    require(after.amount > 0, "The remaining Debt must be positive.", command)
    require(after.amount < before.amount,
            "The remaining Debt must be smaller than the Debt consumed.", command)
    require(signers_complete([before], signers), "All of the participants must be signers.", command)
    check_cash_leg(
        command, inputs, outputs, payer=before.borrower, payee=before.lender,
        amount=before.amount - after.amount,
        amount_rule="The value subtracted from the debt must equal the value transferred.",
    )


def _verify_issue(command, inputs, outputs, signers, issuer) -> None:
    _no_debts(command, inputs, outputs)
    require(not cash_of(inputs), "No Cash inputs should be consumed when issuing Cash.", command)
    cash_out = cash_of(outputs)
    require(len(cash_out) == 1, "Only one Cash output state should be created.", command)
    issued = cash_out[0]
    require(issued.owner == issuer, f"The issuer must be {issuer.name}.", command)
    require(signers_complete([issued], signers), "All of the participants must be signers.", command)
    require(issued.amount > 0, "The value must be positive.", command)


def _verify_transfer(command, inputs, outputs, signers, issuer) -> None:
    _no_debts(command, inputs, outputs)
    cash_in, cash_out = cash_of(inputs), cash_of(outputs)
    require(len(cash_in) == 1, "Only one Cash input should be consumed.", command)
    require(len(cash_out) == 1, "Only one Cash output should be produced.", command)
    source, moved = cash_in[0], cash_out[0]
    require(moved.owner != source.owner, "A new owner must hold the cash.", command)
    require(moved.amount == source.amount,
            "The total after the transfer must equal the original value.", command)
    require(moved.amount > 0, "The new owner must hold a positive value.", command)


def _verify_transfer_partial(command, inputs, outputs, signers, issuer) -> None:
    _no_debts(command, inputs, outputs)
    cash_in, cash_out = cash_of(inputs), cash_of(outputs)
    require(len(cash_in) == 1, "Only one Cash input should be consumed.", command)
    require(len(cash_out) == 2, "Two Cash outputs should be produced.", command)
    source = cash_in[0]
    retained = [c for c in cash_out if c.owner == source.owner]
    moved = [c for c in cash_out if c.owner != source.owner]
    require(len(retained) == 1, "The original owner must keep some of the cash.", command)
    require(len(moved) == 1, "A new owner must hold some of the cash.", command)
    require(retained[0].amount + moved[0].amount == source.amount,
            "The total after the transfer must equal the original value.", command)
    require(retained[0].amount > 0, "The original owner must keep a positive value.", command)
    require(moved[0].amount > 0, "The new owner must hold a positive value.", command)


_RULES: Dict[CommandType, RuleSet] = {
    CommandType.CREATE: _verify_create,
    CommandType.PAY: _verify_pay,
    CommandType.PARTIAL_PAY: _verify_partial_pay,
    CommandType.ISSUE: _verify_issue,
    CommandType.TRANSFER: _verify_transfer,
    CommandType.TRANSFER_PARTIAL: _verify_transfer_partial,
}


# ============================================================================
# ENTRY POINTS
# ============================================================================

def _resolve_command(command) -> CommandType:
    if isinstance(command, (list, tuple)):
        if len(command) != 1:
            raise MalformedCommandError(
                f"A transaction must carry exactly one command, found {len(command)}"
            )
        command = command[0]
    if isinstance(command, Command):
        command = command.kind
    if not isinstance(command, CommandType) or command not in _RULES:
        raise MalformedCommandError(f"Unrecognized command: {command!r}")
    return command


def validate(
    command: Union[CommandType, Command, Sequence[Command]],
    inputs: Sequence[ContractState],
    outputs: Sequence[ContractState],
    signers: Iterable[Key],
    issuer: Party = DEFAULT_ISSUER,
) -> None:
    """
    Check a proposed transition against the rules of its command.

    Args:
        command: The command kind, a Command, or a sequence of commands
                 (which must hold exactly one)
        inputs: States being consumed
        outputs: States being produced
        signers: Keys that sign the transaction
        issuer: Party (name and key) allowed to issue Cash

    Raises:
        MalformedCommandError: No command, several commands, or an unknown one
        ValidationError: The first violated rule
    """
    kind = _resolve_command(command)
    signer_set = frozenset(signers)
    _RULES[kind](kind, tuple(inputs), tuple(outputs), signer_set, issuer)
    require(signers_complete(tuple(inputs) + tuple(outputs), signer_set),
            "Every participant of every state must be a signer.", kind)


def verify(tx: Transaction, issuer: Party = DEFAULT_ISSUER) -> None:
    """Validate a whole transaction using its own command and declared signers."""
    validate(tx.commands, tx.input_states, tx.outputs, tx.required_signers, issuer)
