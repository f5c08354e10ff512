"""
Database models package.

All models must be imported here so that Alembic can discover
them through Base.metadata when generating migrations.
"""

from iolta_ledger.models.base import Base
from iolta_ledger.models.enums import (
    AccountStatus,
    FundType,
    ReconciliationStatus,
    TransactionStatus,
    TransactionType,
)
from iolta_ledger.models.audit_log import AuditLog
from iolta_ledger.models.trust_account import TrustAccount
from iolta_ledger.models.client_ledger import ClientLedger
from iolta_ledger.models.transaction import Transaction
from iolta_ledger.models.reconciliation import Reconciliation

__all__ = [
    "Base",
    "AccountStatus",
    "FundType",
    "ReconciliationStatus",
    "TransactionStatus",
    "TransactionType",
    "AuditLog",
    "TrustAccount",
    "ClientLedger",
    "Transaction",
    "Reconciliation",
]
