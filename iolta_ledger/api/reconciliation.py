"""
Reconciliation endpoints.

An out-of-balance account is still a 200 response: the report's
status and difference fields carry the result.
"""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from iolta_ledger.api.dependencies import committing, get_reconciliation_service
from iolta_ledger.models.base import get_db
from iolta_ledger.schemas.reconciliation import (
    ClearTransactionsRequest,
    ReconciliationCreate,
    ReconciliationRecordResponse,
    ReconciliationReportResponse,
    RecomputeResponse,
)
from iolta_ledger.schemas.transaction import TransactionResponse
from iolta_ledger.services.reconciliation_service import ReconciliationService

router = APIRouter(prefix="/iolta/trust-accounts", tags=["Reconciliation"])


@router.get(
    "/{trust_account_id}/reconciliation",
    response_model=ReconciliationReportResponse,
)
def reconcile(
    trust_account_id: int,
    as_of: datetime | None = None,
    bank_balance: Decimal | None = Query(default=None, ge=0, max_digits=19, decimal_places=2),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    report = service.reconcile(trust_account_id, as_of=as_of, bank_balance=bank_balance)
    return ReconciliationReportResponse.model_validate(report)


@router.post(
    "/{trust_account_id}/reconciliations",
    response_model=ReconciliationRecordResponse,
    status_code=201,
)
def record_reconciliation(
    trust_account_id: int,
    request: ReconciliationCreate,
    db: Session = Depends(get_db),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Reconcile against a bank statement balance and save the result."""
    with committing(db):
        record, _ = service.record_reconciliation(trust_account_id, request)
    return record


@router.get(
    "/{trust_account_id}/reconciliations",
    response_model=list[ReconciliationRecordResponse],
)
def list_reconciliations(
    trust_account_id: int,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    return service.list_reconciliations(trust_account_id)


@router.post("/{trust_account_id}/recompute", response_model=RecomputeResponse)
def recompute_and_reconcile(
    trust_account_id: int,
    apply: bool = False,
    db: Session = Depends(get_db),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Recompute every cached balance from history and reconcile.

    Without apply=true nothing is written.
    """
    with committing(db):
        report = service.recompute_and_reconcile(trust_account_id, apply=apply)
    return RecomputeResponse.model_validate(report)


@router.post(
    "/{trust_account_id}/transactions/clear",
    response_model=list[TransactionResponse],
)
def mark_transactions_cleared(
    trust_account_id: int,
    request: ClearTransactionsRequest,
    db: Session = Depends(get_db),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Mark transactions as cleared from a bank statement."""
    with committing(db):
        cleared = service.mark_transactions_cleared(trust_account_id, request)
    return cleared
