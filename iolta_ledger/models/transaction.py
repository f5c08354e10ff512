"""
Transaction model.

A transaction is one immutable money movement on a client ledger.
amount, transaction_type and balance_after are written once at
posting time and never updated; a mistake is corrected by posting
a reversing transaction that points back via reversal_of_id.

The bank side is tracked separately: cleared_at and bank_reference
are set once, when the item shows up on a bank statement. Until
then the transaction is outstanding for reconciliation.

Idempotency is enforced via the idempotency_key unique constraint.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String, Integer, DateTime, Numeric, ForeignKey,
    CheckConstraint, ForeignKeyConstraint, Index,
    Enum as SAEnum, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from iolta_ledger.models.base import Base, utcnow
from iolta_ledger.models.enums import (
    FundType,
    TransactionStatus,
    TransactionType,
)


class Transaction(Base):
    __tablename__ = "iolta_transactions"
    __table_args__ = (
        # The ledger must belong to the transaction's own trust account.
        ForeignKeyConstraint(
            ["client_ledger_id", "trust_account_id"],
            ["iolta_client_ledgers.id", "iolta_client_ledgers.trust_account_id"],
            name="fk_transaction_ledger_trust_account",
        ),
        CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
        CheckConstraint(
            "balance_after >= 0", name="ck_transaction_balance_after_nonnegative"
        ),
        Index("ix_transactions_ledger_order", "client_ledger_id", "created_at", "id"),
        Index("ix_transactions_account_cleared", "trust_account_id", "cleared_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    external_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, unique=True, nullable=False, default=uuid.uuid4
    )
    trust_account_id: Mapped[int] = mapped_column(
        ForeignKey("iolta_trust_accounts.id"), nullable=False, index=True
    )
    client_ledger_id: Mapped[int] = mapped_column(
        Integer, nullable=False
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        String(100), unique=True, nullable=True
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(
            TransactionType,
            name="transaction_type_enum",
            create_constraint=True,
        ),
        nullable=False,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(
            TransactionStatus,
            name="transaction_status_enum",
            create_constraint=True,
        ),
        nullable=False,
        default=TransactionStatus.COMPLETED,
    )
    fund_type: Mapped[FundType] = mapped_column(
        SAEnum(FundType, name="fund_type_enum", create_constraint=True),
        nullable=False,
        default=FundType.TRUST,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(19, 2), nullable=False
    )
    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(19, 2), nullable=False
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    check_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payee: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reversal_of_id: Mapped[int | None] = mapped_column(
        ForeignKey("iolta_transactions.id"), nullable=True
    )
    transfer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, nullable=True, index=True
    )
    cleared_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    bank_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    @property
    def is_cleared(self) -> bool:
        return self.cleared_at is not None

    def __repr__(self) -> str:
        return (
            f"<Transaction {self.id} {self.transaction_type.value} "
            f"{self.amount} -> {self.balance_after} ({self.status.value})>"
        )
