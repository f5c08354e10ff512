"""
Trust account model.

A trust account is the pooled bank account a firm holds client
money in. Its balance is never written directly by callers: it
moves only as the effect of postings on its client ledgers, and
must always equal the sum of those ledgers.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String, Integer, Date, DateTime, Numeric,
    CheckConstraint, Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from iolta_ledger.models.base import Base, utcnow
from iolta_ledger.models.enums import AccountStatus, VALID_TRANSITIONS


class TrustAccount(Base):
    __tablename__ = "iolta_trust_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_trust_account_balance_nonnegative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    merchant_id: Mapped[int] = mapped_column(
        Integer, nullable=False, index=True
    )
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_number: Mapped[str] = mapped_column(String(64), nullable=False)
    routing_number: Mapped[str] = mapped_column(String(32), nullable=False)
    jurisdiction: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD"
    )
    status: Mapped[AccountStatus] = mapped_column(
        SAEnum(
            AccountStatus,
            name="trust_account_status_enum",
            create_constraint=True,
        ),
        nullable=False,
        default=AccountStatus.ACTIVE,
    )
    balance: Mapped[Decimal] = mapped_column(
        Numeric(19, 2), nullable=False, default=Decimal("0.00")
    )
    last_reconciliation_date: Mapped[date | None] = mapped_column(
        Date, nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    ledgers: Mapped[list["ClientLedger"]] = relationship(
        back_populates="trust_account",
        order_by="ClientLedger.id",
    )

    # Concurrent writers bump the version; a stale write fails
    # instead of silently overwriting the balance.
    __mapper_args__ = {"version_id_col": version}

    def can_transition_to(self, new_status: AccountStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def __repr__(self) -> str:
        return (
            f"<TrustAccount {self.id} merchant={self.merchant_id} "
            f"{self.balance} {self.currency} ({self.status.value})>"
        )
