"""
Balance calculator: pure functions over transaction history.

This module is the only place that knows how a transaction type
moves a ledger balance. The TransactionPoster uses it one
transaction at a time, statements use it to derive opening
balances, and the repair job uses it to recompute whole histories.
Both paths run the same arithmetic, so an incremental posting and
a full recompute always agree.

All arithmetic is done on Decimal; results are rounded to cents
only when they leave this module.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from iolta_ledger.exceptions import InvalidAmountError, InvalidTransactionTypeError
from iolta_ledger.models.enums import TransactionType

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

# Money columns are Numeric(19, 2): at most 17 integer digits.
MAX_INTEGER_DIGITS = 17
MAX_BALANCE = Decimal("99999999999999999.99")

CREDIT_TYPES = frozenset({TransactionType.DEPOSIT, TransactionType.INTEREST})
DEBIT_TYPES = frozenset({TransactionType.WITHDRAWAL, TransactionType.FEE})

# Type that undoes each type's effect when posted with the same amount.
REVERSAL_TYPES = {
    TransactionType.DEPOSIT: TransactionType.WITHDRAWAL,
    TransactionType.WITHDRAWAL: TransactionType.DEPOSIT,
    TransactionType.INTEREST: TransactionType.FEE,
    TransactionType.FEE: TransactionType.INTEREST,
}


@dataclass(frozen=True)
class LedgerBalance:
    """Result of running a history through the calculator."""
    balance: Decimal
    balances_after: tuple[Decimal, ...]


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_transaction_type(value: Any) -> TransactionType:
    """Coerce a raw value to a TransactionType or reject it."""
    if isinstance(value, TransactionType):
        return value
    try:
        return TransactionType(value)
    except ValueError:
        raise InvalidTransactionTypeError(value) from None


def parse_amount(value: Any) -> Decimal:
    """
    Coerce a raw amount to a positive Decimal with at most two
    decimal places.

    Floats are converted through str() so 0.1 stays 0.1. Amounts
    with sub-cent precision are rejected, never rounded.
    """
    if isinstance(value, bool):
        raise InvalidAmountError(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(value) from None

    if not amount.is_finite():
        raise InvalidAmountError(value)
    if amount <= 0:
        raise InvalidAmountError(value, "amount must be greater than zero")
    if amount.adjusted() >= MAX_INTEGER_DIGITS:
        raise InvalidAmountError(value, "amount exceeds the largest supported value")
    if amount != amount.quantize(CENTS):
        raise InvalidAmountError(value, "amount has more than 2 decimal places")
    return to_cents(amount)


def signed_amount(amount: Decimal, transaction_type: Any) -> Decimal:
    """Return the amount with the sign its type applies to a ledger."""
    transaction_type = parse_transaction_type(transaction_type)
    if transaction_type in CREDIT_TYPES:
        return amount
    if transaction_type in DEBIT_TYPES:
        return -amount
    raise InvalidTransactionTypeError(transaction_type)


def apply_transaction(balance: Decimal, amount: Decimal, transaction_type: Any) -> Decimal:
    """Incremental rule: last known balance plus one transaction."""
    return to_cents(balance + signed_amount(amount, transaction_type))


def compute_ledger_balance(
    transactions: Iterable[Any],
    opening_balance: Decimal = ZERO,
) -> LedgerBalance:
    """
    Compute the final balance and running balance_after sequence.

    transactions must already be in posting order (created_at,
    then id). Each item needs .amount and .transaction_type
    attributes; ORM rows and plain records both work. An empty
    history yields the opening balance.
    """
    balance = opening_balance
    balances_after = []
    for txn in transactions:
        amount = txn.amount if isinstance(txn.amount, Decimal) else Decimal(str(txn.amount))
        balance = balance + signed_amount(amount, txn.transaction_type)
        balances_after.append(to_cents(balance))
    return LedgerBalance(
        balance=to_cents(balance),
        balances_after=tuple(balances_after),
    )
