"""
Posting endpoints.

Every money movement goes through the IoltaService to the
TransactionPoster. A repeated idempotency key answers 200 with
the original posting instead of 201.
"""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from iolta_ledger.api.dependencies import (
    committing,
    get_iolta_service,
    get_reconciliation_service,
)
from iolta_ledger.models.base import get_db
from iolta_ledger.schemas.reconciliation import ClearTransactionRequest
from iolta_ledger.schemas.transaction import (
    PostingResponse,
    ReversalCreate,
    TransactionCreate,
    TransactionResponse,
    TransferCreate,
    TransferResponse,
)
from iolta_ledger.services.iolta_service import IoltaService
from iolta_ledger.services.reconciliation_service import ReconciliationService

router = APIRouter(prefix="/iolta/transactions", tags=["Transactions"])


@router.post("", response_model=PostingResponse, status_code=201)
def record_transaction(
    request: TransactionCreate,
    response: Response,
    db: Session = Depends(get_db),
    service: IoltaService = Depends(get_iolta_service),
):
    """Post a deposit, withdrawal, fee or interest transaction."""
    with committing(db):
        result = service.record_transaction(request)
    if result.replayed:
        response.status_code = 200
    return PostingResponse.model_validate(result)


@router.post("/transfer", response_model=TransferResponse, status_code=201)
def transfer_between_ledgers(
    request: TransferCreate,
    response: Response,
    db: Session = Depends(get_db),
    service: IoltaService = Depends(get_iolta_service),
):
    """Move funds between two ledgers of one trust account."""
    with committing(db):
        result = service.transfer_between_ledgers(request)
    if result.replayed:
        response.status_code = 200
    return TransferResponse.model_validate(result)


@router.post(
    "/{transaction_id}/reverse",
    response_model=PostingResponse,
    status_code=201,
)
def reverse_transaction(
    transaction_id: int,
    response: Response,
    request: ReversalCreate | None = None,
    db: Session = Depends(get_db),
    service: IoltaService = Depends(get_iolta_service),
):
    """Reverse a completed transaction by posting its opposite."""
    with committing(db):
        result = service.reverse_transaction(transaction_id, request)
    if result.replayed:
        response.status_code = 200
    return PostingResponse.model_validate(result)


@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    service: IoltaService = Depends(get_iolta_service),
):
    return service.get_transaction(transaction_id)


@router.post("/{transaction_id}/clear", response_model=TransactionResponse)
def mark_transaction_cleared(
    transaction_id: int,
    request: ClearTransactionRequest | None = None,
    db: Session = Depends(get_db),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Mark a transaction as cleared by the bank."""
    request = request or ClearTransactionRequest()
    with committing(db):
        txn = service.mark_transaction_cleared(
            transaction_id, request.cleared_at, request.bank_reference
        )
    return txn
