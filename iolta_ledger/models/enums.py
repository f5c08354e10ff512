"""
Shared enumerations for database models.

Using Python enums mapped to database enums ensures that
only valid values can be stored.
"""

import enum


class TransactionType(str, enum.Enum):
    """Kind of money movement on a client ledger."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    FEE = "fee"
    INTEREST = "interest"


class TransactionStatus(str, enum.Enum):
    COMPLETED = "completed"
    REVERSED = "reversed"


class FundType(str, enum.Enum):
    """What the money held in trust is for."""
    RETAINER = "retainer"
    SETTLEMENT = "settlement"
    TRUST = "trust"
    OPERATING = "operating"
    OTHER = "other"


class AccountStatus(str, enum.Enum):
    """Lifecycle status shared by trust accounts and client ledgers."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"


class ReconciliationStatus(str, enum.Enum):
    COMPLETED = "completed"
    DISCREPANCY = "discrepancy"


# Valid status transitions. CLOSED is terminal.
VALID_TRANSITIONS: dict[AccountStatus, set[AccountStatus]] = {
    AccountStatus.ACTIVE: {AccountStatus.INACTIVE, AccountStatus.CLOSED},
    AccountStatus.INACTIVE: {AccountStatus.ACTIVE, AccountStatus.CLOSED},
    AccountStatus.CLOSED: set(),
}

# Sentinel recorded when a ledger's jurisdiction was not supplied.
UNKNOWN_JURISDICTION = "Unknown"
