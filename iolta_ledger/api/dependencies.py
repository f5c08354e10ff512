"""
Dependency wiring.

One session per request; the store, poster and services built on
it are passed down explicitly instead of living in module-level
singletons. FastAPI caches each dependency per request, so every
object here shares the request's session.
"""

from contextlib import contextmanager

from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from iolta_ledger.config import get_settings
from iolta_ledger.exceptions import IoltaError, StorageError
from iolta_ledger.models.base import get_db
from iolta_ledger.services.iolta_service import IoltaService
from iolta_ledger.services.reconciliation_service import ReconciliationService
from iolta_ledger.services.transaction_poster import TransactionPoster
from iolta_ledger.store import LedgerStore


def get_store(db: Session = Depends(get_db)) -> LedgerStore:
    return LedgerStore(db)


def get_poster(store: LedgerStore = Depends(get_store)) -> TransactionPoster:
    return TransactionPoster(store, max_attempts=get_settings().POSTING_MAX_ATTEMPTS)


def get_iolta_service(
    store: LedgerStore = Depends(get_store),
    poster: TransactionPoster = Depends(get_poster),
) -> IoltaService:
    return IoltaService(store, poster, default_currency=get_settings().DEFAULT_CURRENCY)


def get_reconciliation_service(
    store: LedgerStore = Depends(get_store),
    poster: TransactionPoster = Depends(get_poster),
) -> ReconciliationService:
    return ReconciliationService(
        store, poster, recent_limit=get_settings().RECONCILIATION_RECENT_LIMIT
    )


@contextmanager
def committing(db: Session):
    """
    Commit the request's unit of work, or roll it back.

    Typed errors pass through unchanged; a failing commit becomes
    a StorageError.
    """
    try:
        yield
        db.commit()
    except IoltaError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError("Storage failure while committing") from exc
