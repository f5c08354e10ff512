"""
Pydantic schemas for trust account and client ledger operations.

These define the API contract. They are separate from the
database models because the API shape and the storage shape
are often different.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from iolta_ledger.models.enums import AccountStatus


# --- Trust Account Schemas ---

class TrustAccountCreate(BaseModel):
    """Request to open a trust account for a firm."""
    merchant_id: int = Field(gt=0)
    account_name: str = Field(min_length=1, max_length=255)
    bank_name: str = Field(min_length=1, max_length=255)
    account_number: str = Field(min_length=1, max_length=64)
    routing_number: str = Field(min_length=1, max_length=32)
    jurisdiction: str = Field(min_length=1, max_length=100)
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class TrustAccountResponse(BaseModel):
    id: int
    merchant_id: int
    account_name: str
    bank_name: str
    account_number: str
    routing_number: str
    jurisdiction: str
    currency: str
    status: AccountStatus
    balance: Decimal
    last_reconciliation_date: date | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StatusUpdate(BaseModel):
    """Request to change the status of an account or ledger."""
    new_status: AccountStatus
    reason: str | None = Field(default=None, max_length=255)


# --- Client Ledger Schemas ---

class ClientLedgerCreate(BaseModel):
    """
    Request to onboard a client (and optionally one matter) to a
    trust account. A missing jurisdiction is stored as "Unknown".
    """
    client_id: str = Field(min_length=1, max_length=100)
    client_name: str = Field(min_length=1, max_length=255)
    matter_name: str | None = Field(default=None, max_length=255)
    matter_number: str | None = Field(default=None, max_length=100)
    jurisdiction: str | None = Field(default=None, max_length=100)


class ClientLedgerResponse(BaseModel):
    id: int
    trust_account_id: int
    merchant_id: int
    client_id: str
    client_name: str
    matter_name: str | None
    matter_number: str | None
    jurisdiction: str
    status: AccountStatus
    balance: Decimal
    current_balance: Decimal
    last_transaction_date: datetime | None
    closed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}
