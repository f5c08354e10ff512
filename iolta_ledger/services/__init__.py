"""Business logic services."""

from iolta_ledger.services.transaction_poster import TransactionPoster
from iolta_ledger.services.iolta_service import IoltaService
from iolta_ledger.services.reconciliation_service import ReconciliationService

__all__ = ["TransactionPoster", "IoltaService", "ReconciliationService"]
