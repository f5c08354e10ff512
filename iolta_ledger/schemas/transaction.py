"""
Pydantic schemas for posting operations.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from iolta_ledger.models.enums import FundType, TransactionStatus, TransactionType
from iolta_ledger.schemas.trust_account import ClientLedgerResponse


class PostingFields(BaseModel):
    """Descriptive fields shared by every posting request."""
    description: str = Field(default="Trust transaction", min_length=1, max_length=255)
    fund_type: FundType = FundType.TRUST
    check_number: str | None = Field(default=None, max_length=50)
    reference_number: str | None = Field(default=None, max_length=100)
    payee: str | None = Field(default=None, max_length=255)
    payor: str | None = Field(default=None, max_length=255)
    created_by: int | None = None
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=100)


class TransactionCreate(PostingFields):
    client_ledger_id: int
    trust_account_id: int
    amount: Decimal = Field(gt=0, max_digits=19, decimal_places=2)
    transaction_type: TransactionType


class TransferCreate(PostingFields):
    description: str = Field(
        default="Transfer between client ledgers", min_length=1, max_length=255
    )
    trust_account_id: int
    source_ledger_id: int
    destination_ledger_id: int
    amount: Decimal = Field(gt=0, max_digits=19, decimal_places=2)


class ReversalCreate(BaseModel):
    description: str | None = Field(default=None, min_length=1, max_length=255)
    created_by: int | None = None
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=100)


class TransactionResponse(BaseModel):
    id: int
    external_id: uuid.UUID
    trust_account_id: int
    client_ledger_id: int
    transaction_type: TransactionType
    status: TransactionStatus
    fund_type: FundType
    amount: Decimal
    balance_after: Decimal
    description: str
    check_number: str | None
    reference_number: str | None
    payee: str | None
    payor: str | None
    created_by: int | None
    idempotency_key: str | None
    reversal_of_id: int | None
    transfer_id: uuid.UUID | None
    cleared_at: datetime | None
    bank_reference: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class PostingResponse(BaseModel):
    """A posted transaction together with the ledger it changed."""
    transaction: TransactionResponse
    ledger: ClientLedgerResponse
    replayed: bool

    model_config = {"from_attributes": True}


class TransferResponse(BaseModel):
    transfer_id: uuid.UUID
    withdrawal: TransactionResponse
    deposit: TransactionResponse
    source_ledger: ClientLedgerResponse
    destination_ledger: ClientLedgerResponse
    replayed: bool

    model_config = {"from_attributes": True}
