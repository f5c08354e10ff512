"""
Trust account and client ledger onboarding endpoints.

The API layer is thin: it handles HTTP concerns (status codes,
commit or rollback) and delegates all business logic to the
IoltaService.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from iolta_ledger.api.dependencies import committing, get_iolta_service
from iolta_ledger.models.base import get_db
from iolta_ledger.schemas.trust_account import (
    ClientLedgerCreate,
    ClientLedgerResponse,
    StatusUpdate,
    TrustAccountCreate,
    TrustAccountResponse,
)
from iolta_ledger.services.iolta_service import IoltaService

router = APIRouter(prefix="/iolta/trust-accounts", tags=["Trust Accounts"])


@router.post("", response_model=TrustAccountResponse, status_code=201)
def create_trust_account(
    request: TrustAccountCreate,
    db: Session = Depends(get_db),
    service: IoltaService = Depends(get_iolta_service),
):
    """Open a trust account with a zero balance."""
    with committing(db):
        account = service.create_trust_account(request)
    return account


@router.get("", response_model=list[TrustAccountResponse])
def list_trust_accounts(
    merchant_id: int = Query(gt=0),
    service: IoltaService = Depends(get_iolta_service),
):
    return service.list_trust_accounts(merchant_id)


@router.get("/{trust_account_id}", response_model=TrustAccountResponse)
def get_trust_account(
    trust_account_id: int,
    service: IoltaService = Depends(get_iolta_service),
):
    return service.get_trust_account(trust_account_id)


@router.patch("/{trust_account_id}/status", response_model=TrustAccountResponse)
def change_trust_account_status(
    trust_account_id: int,
    request: StatusUpdate,
    db: Session = Depends(get_db),
    service: IoltaService = Depends(get_iolta_service),
):
    """
    Change trust account status.

    A trust account holding client funds cannot be closed.
    """
    with committing(db):
        account = service.change_trust_account_status(trust_account_id, request)
    return account


@router.post(
    "/{trust_account_id}/ledgers",
    response_model=ClientLedgerResponse,
    status_code=201,
)
def create_client_ledger(
    trust_account_id: int,
    request: ClientLedgerCreate,
    db: Session = Depends(get_db),
    service: IoltaService = Depends(get_iolta_service),
):
    """Onboard a client (and optionally a matter) to the trust account."""
    with committing(db):
        ledger = service.create_client_ledger(trust_account_id, request)
    return ledger


@router.get("/{trust_account_id}/ledgers", response_model=list[ClientLedgerResponse])
def list_client_ledgers(
    trust_account_id: int,
    service: IoltaService = Depends(get_iolta_service),
):
    return service.list_client_ledgers(trust_account_id)
