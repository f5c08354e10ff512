"""
Typed exceptions for the trust ledger engine.

Every failure a caller can see is its own class, carrying a
machine-readable error_code, the HTTP status the API layer should
use, a human message and structured details. Callers catch by
type, never by parsing messages.

    IoltaError
    +-- ValidationError
    |   +-- InvalidAmountError
    |   +-- InvalidTransactionTypeError
    +-- ReferentialIntegrityError
    |   +-- TrustAccountNotFoundError
    |   +-- LedgerNotFoundError
    |   +-- TransactionNotFoundError
    |   +-- TrustAccountMismatchError
    +-- LedgerStateError
    |   +-- DuplicateLedgerError
    +-- IdempotencyConflictError
    +-- InsufficientFundsError
    +-- ConcurrencyConflictError
    +-- StorageError

InsufficientFundsError is a business-rule rejection, not a fault.
ConcurrencyConflictError and StorageError are the only classes
whose details are not shown to end users.
"""

from decimal import Decimal
from typing import Any


class IoltaError(Exception):
    """Base class for every error raised by the ledger engine."""

    error_code = "ERR_IOLTA"
    status_code = 400
    # Message shown to end users instead of the internal one.
    public_message: str | None = None

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def user_message(self) -> str:
        return self.public_message or self.message


# --- Input validation ---

class ValidationError(IoltaError):
    """Bad input shape; rejected before any datastore access."""
    error_code = "ERR_VALIDATION"
    status_code = 422


class InvalidAmountError(ValidationError):
    error_code = "ERR_INVALID_AMOUNT"

    def __init__(self, amount: Any, reason: str = "amount must be a positive value with at most 2 decimal places"):
        super().__init__(
            f"Invalid amount {amount!r}: {reason}",
            {"amount": str(amount)},
        )


class InvalidTransactionTypeError(ValidationError):
    error_code = "ERR_INVALID_TRANSACTION_TYPE"

    def __init__(self, transaction_type: Any):
        super().__init__(
            f"Unknown transaction type {transaction_type!r}",
            {"transaction_type": str(transaction_type)},
        )


# --- Referential integrity ---

class ReferentialIntegrityError(IoltaError):
    error_code = "ERR_REFERENTIAL"
    status_code = 404


class TrustAccountNotFoundError(ReferentialIntegrityError):
    error_code = "ERR_TRUST_ACCOUNT_NOT_FOUND"

    def __init__(self, trust_account_id: int):
        self.trust_account_id = trust_account_id
        super().__init__(
            f"Trust account {trust_account_id} not found",
            {"trust_account_id": trust_account_id},
        )


class LedgerNotFoundError(ReferentialIntegrityError):
    error_code = "ERR_LEDGER_NOT_FOUND"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details)

    @classmethod
    def for_id(cls, client_ledger_id: int) -> "LedgerNotFoundError":
        return cls(
            f"Client ledger {client_ledger_id} not found",
            {"client_ledger_id": client_ledger_id},
        )

    @classmethod
    def for_client(cls, client_id: str) -> "LedgerNotFoundError":
        return cls(
            f"No client ledger found for client '{client_id}'",
            {"client_id": client_id},
        )


class TransactionNotFoundError(ReferentialIntegrityError):
    error_code = "ERR_TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: int):
        super().__init__(
            f"Transaction {transaction_id} not found",
            {"transaction_id": transaction_id},
        )


class TrustAccountMismatchError(ReferentialIntegrityError):
    """The ledger exists but belongs to a different trust account."""
    error_code = "ERR_TRUST_ACCOUNT_MISMATCH"
    status_code = 409

    def __init__(self, client_ledger_id: int, trust_account_id: int, actual_trust_account_id: int):
        super().__init__(
            f"Client ledger {client_ledger_id} does not belong to "
            f"trust account {trust_account_id}",
            {
                "client_ledger_id": client_ledger_id,
                "trust_account_id": trust_account_id,
                "actual_trust_account_id": actual_trust_account_id,
            },
        )


# --- Lifecycle / state ---

class LedgerStateError(IoltaError):
    """The operation is not allowed in the entity's current state."""
    error_code = "ERR_LEDGER_STATE"
    status_code = 409


class DuplicateLedgerError(LedgerStateError):
    error_code = "ERR_DUPLICATE_LEDGER"

    def __init__(self, trust_account_id: int, client_id: str, matter_number: str | None):
        super().__init__(
            f"Client '{client_id}' already has an active ledger"
            + (f" for matter '{matter_number}'" if matter_number else "")
            + f" in trust account {trust_account_id}",
            {
                "trust_account_id": trust_account_id,
                "client_id": client_id,
                "matter_number": matter_number,
            },
        )


class IdempotencyConflictError(IoltaError):
    """An idempotency key was reused for a different posting."""
    error_code = "ERR_IDEMPOTENCY_CONFLICT"
    status_code = 409

    def __init__(self, idempotency_key: str, transaction_id: int):
        super().__init__(
            f"Idempotency key '{idempotency_key}' was already used "
            f"for a different posting (transaction {transaction_id})",
            {"idempotency_key": idempotency_key, "transaction_id": transaction_id},
        )


# --- Business rule ---

class InsufficientFundsError(IoltaError):
    error_code = "ERR_INSUFFICIENT_FUNDS"
    status_code = 422

    def __init__(self, client_ledger_id: int, available: Decimal, requested: Decimal):
        self.client_ledger_id = client_ledger_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient funds in client ledger {client_ledger_id}: "
            f"available={available}, requested={requested}",
            {
                "client_ledger_id": client_ledger_id,
                "available": str(available),
                "requested": str(requested),
            },
        )


# --- System ---

class ConcurrencyConflictError(IoltaError):
    """Optimistic-lock conflict that survived the bounded retries."""
    error_code = "ERR_CONCURRENCY_CONFLICT"
    status_code = 409
    public_message = "The ledger was busy. Please try again."


class StorageError(IoltaError):
    error_code = "ERR_STORAGE"
    status_code = 503
    public_message = "A storage error occurred. Please try again."
