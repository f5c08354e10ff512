"""
Reconciliation record model.

A saved snapshot of one reconciliation run: the bank statement
balance, the book (trust account) balance and the client ledger
total at that moment, together with the items that had not yet
cleared the bank. Records are append-only.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Integer, Boolean, Date, DateTime, Numeric, Text, JSON,
    ForeignKey, Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from iolta_ledger.models.base import Base, utcnow
from iolta_ledger.models.enums import ReconciliationStatus


class Reconciliation(Base):
    __tablename__ = "iolta_reconciliations"

    id: Mapped[int] = mapped_column(primary_key=True)
    trust_account_id: Mapped[int] = mapped_column(
        ForeignKey("iolta_trust_accounts.id"), nullable=False, index=True
    )
    reconciliation_date: Mapped[date] = mapped_column(Date, nullable=False)
    bank_balance: Mapped[Decimal | None] = mapped_column(
        Numeric(19, 2), nullable=True
    )
    adjusted_bank_balance: Mapped[Decimal | None] = mapped_column(
        Numeric(19, 2), nullable=True
    )
    book_balance: Mapped[Decimal] = mapped_column(
        Numeric(19, 2), nullable=False
    )
    client_ledger_total: Mapped[Decimal] = mapped_column(
        Numeric(19, 2), nullable=False
    )
    difference: Mapped[Decimal] = mapped_column(
        Numeric(19, 2), nullable=False
    )
    bank_difference: Mapped[Decimal | None] = mapped_column(
        Numeric(19, 2), nullable=True
    )
    # Lists of {"transaction_id", "transaction_type", "amount",
    # "description", "check_number", "created_at"}.
    outstanding_checks: Mapped[list] = mapped_column(
        JSON, nullable=False, default=list
    )
    outstanding_deposits: Mapped[list] = mapped_column(
        JSON, nullable=False, default=list
    )
    is_balanced: Mapped[bool] = mapped_column(Boolean, nullable=False)
    status: Mapped[ReconciliationStatus] = mapped_column(
        SAEnum(
            ReconciliationStatus,
            name="reconciliation_status_enum",
            create_constraint=True,
        ),
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reconciler_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<Reconciliation {self.id} account={self.trust_account_id} "
            f"{self.status.value}>"
        )
