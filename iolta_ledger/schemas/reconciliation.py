"""
Pydantic schemas for statements, reconciliation and repair.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from iolta_ledger.models.enums import AccountStatus, ReconciliationStatus
from iolta_ledger.schemas.transaction import TransactionResponse
from iolta_ledger.schemas.trust_account import (
    ClientLedgerResponse,
    TrustAccountResponse,
)


class StatementResponse(BaseModel):
    ledger: ClientLedgerResponse
    start_date: datetime | None
    end_date: datetime | None
    opening_balance: Decimal
    closing_balance: Decimal
    current_balance: Decimal
    total_credits: Decimal
    total_debits: Decimal
    transactions: list[TransactionResponse]
    generated_at: datetime

    model_config = {"from_attributes": True}


class ClientBalanceResponse(BaseModel):
    client_ledger_id: int
    client_id: str
    client_name: str
    matter_number: str | None
    jurisdiction: str
    status: AccountStatus
    balance: Decimal
    flags: list[str]

    model_config = {"from_attributes": True}


class OutstandingItemResponse(BaseModel):
    transaction_id: int
    client_ledger_id: int
    transaction_type: str
    amount: Decimal
    description: str
    check_number: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ReconciliationReportResponse(BaseModel):
    """
    Result of comparing a trust account against its ledgers.

    difference is always present, including when it is zero.
    bank_difference compares the adjusted bank balance (bank minus
    outstanding checks plus deposits in transit) with the book.
    """
    trust_account: TrustAccountResponse
    status: str
    is_balanced: bool
    as_of: datetime
    trust_account_balance: Decimal
    total_client_balances: Decimal
    difference: Decimal
    bank_balance: Decimal | None
    adjusted_bank_balance: Decimal | None
    bank_difference: Decimal | None
    outstanding_checks: list[OutstandingItemResponse]
    outstanding_deposits: list[OutstandingItemResponse]
    outstanding_checks_total: Decimal
    outstanding_deposits_total: Decimal
    client_balances: list[ClientBalanceResponse]
    balances_by_jurisdiction: dict[str, Decimal]
    anomalies: list[str]
    recent_transactions: list[TransactionResponse]
    generated_at: datetime

    model_config = {"from_attributes": True}


class ReconciliationCreate(BaseModel):
    """Request to record a reconciliation against a bank statement."""
    bank_balance: Decimal = Field(ge=0, max_digits=19, decimal_places=2)
    reconciler_id: int | None = None
    notes: str | None = Field(default=None, max_length=2000)


class ClearTransactionRequest(BaseModel):
    """Mark one transaction as cleared by the bank."""
    cleared_at: datetime | None = None
    bank_reference: str | None = Field(default=None, max_length=100)


class ClearTransactionsRequest(ClearTransactionRequest):
    """Mark several transactions of one trust account as cleared."""
    transaction_ids: list[int] = Field(min_length=1, max_length=500)


class ReconciliationRecordResponse(BaseModel):
    id: int
    trust_account_id: int
    reconciliation_date: date
    bank_balance: Decimal | None
    adjusted_bank_balance: Decimal | None
    book_balance: Decimal
    client_ledger_total: Decimal
    difference: Decimal
    bank_difference: Decimal | None
    outstanding_checks: list[OutstandingItemResponse]
    outstanding_deposits: list[OutstandingItemResponse]
    is_balanced: bool
    status: ReconciliationStatus
    notes: str | None
    reconciler_id: int | None
    created_at: datetime

    model_config = {"from_attributes": True}


class LedgerDriftResponse(BaseModel):
    client_ledger_id: int
    cached_balance: Decimal
    computed_balance: Decimal

    model_config = {"from_attributes": True}


class SnapshotMismatchResponse(BaseModel):
    transaction_id: int
    client_ledger_id: int
    stored_balance_after: Decimal
    computed_balance_after: Decimal

    model_config = {"from_attributes": True}


class BalanceRecomputeResponse(BaseModel):
    trust_account_id: int
    ledgers_checked: int
    account_balance_before: Decimal
    account_balance_computed: Decimal
    ledger_drifts: list[LedgerDriftResponse]
    snapshot_mismatches: list[SnapshotMismatchResponse]
    negative_ledger_ids: list[int]
    has_drift: bool
    applied: bool

    model_config = {"from_attributes": True}


class RecomputeResponse(BaseModel):
    recompute: BalanceRecomputeResponse
    reconciliation: ReconciliationReportResponse

    model_config = {"from_attributes": True}
