"""
Audit log model.

Records significant ledger events for compliance and debugging.
Rows are written inside the same database transaction as the
change they describe, so the log never disagrees with the ledger.
"""

from datetime import datetime

from sqlalchemy import String, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from iolta_ledger.models.base import Base, utcnow


class AuditLog(Base):
    """
    Immutable record of a ledger event.

    Like transactions, audit rows are append-only.
    """

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
