"""
Client ledger endpoints: lookup, status and statements.
"""

from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from iolta_ledger.api.dependencies import committing, get_iolta_service
from iolta_ledger.models.base import get_db
from iolta_ledger.schemas.reconciliation import StatementResponse
from iolta_ledger.schemas.transaction import TransactionResponse
from iolta_ledger.schemas.trust_account import ClientLedgerResponse, StatusUpdate
from iolta_ledger.services.iolta_service import IoltaService

router = APIRouter(prefix="/iolta/ledgers", tags=["Client Ledgers"])


# Declared before /{client_ledger_id} routes so a client id is
# never parsed as a ledger id.
@router.get("/by-client/{client_id}", response_model=ClientLedgerResponse)
def get_client_ledger_by_client(
    client_id: str,
    trust_account_id: int | None = None,
    matter_number: str | None = None,
    service: IoltaService = Depends(get_iolta_service),
):
    """Look up a ledger by the owning client's id."""
    return service.get_client_ledger_by_client(client_id, trust_account_id, matter_number)


@router.get("/{client_ledger_id}", response_model=ClientLedgerResponse)
def get_client_ledger(
    client_ledger_id: int,
    service: IoltaService = Depends(get_iolta_service),
):
    """Look up a ledger by its own id."""
    return service.get_client_ledger(client_ledger_id)


@router.patch("/{client_ledger_id}/status", response_model=ClientLedgerResponse)
def change_client_ledger_status(
    client_ledger_id: int,
    request: StatusUpdate,
    db: Session = Depends(get_db),
    service: IoltaService = Depends(get_iolta_service),
):
    """Change ledger status. Closing requires a zero balance."""
    with committing(db):
        ledger = service.change_client_ledger_status(client_ledger_id, request)
    return ledger


@router.get(
    "/{client_ledger_id}/transactions",
    response_model=list[TransactionResponse],
)
def list_ledger_transactions(
    client_ledger_id: int,
    service: IoltaService = Depends(get_iolta_service),
):
    """All transactions of a ledger, oldest first."""
    return service.list_ledger_transactions(client_ledger_id)


@router.get("/{client_ledger_id}/statement", response_model=StatementResponse)
def get_client_ledger_statement(
    client_ledger_id: int,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    service: IoltaService = Depends(get_iolta_service),
):
    statement = service.get_client_ledger_statement(client_ledger_id, start_date, end_date)
    return StatementResponse.model_validate(statement)
