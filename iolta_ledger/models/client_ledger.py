"""
Client ledger model.

A client ledger is one client's (or one matter's) share of a
pooled trust account. Its balance is a cache of the signed sum of
its transactions and is only ever mutated by the TransactionPoster.
Ledgers with history are never deleted, only closed.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String, Integer, DateTime, Numeric, ForeignKey,
    CheckConstraint, Index, UniqueConstraint,
    Enum as SAEnum, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from iolta_ledger.models.base import Base, utcnow
from iolta_ledger.models.enums import (
    AccountStatus,
    UNKNOWN_JURISDICTION,
    VALID_TRANSITIONS,
)


class ClientLedger(Base):
    __tablename__ = "iolta_client_ledgers"
    __table_args__ = (
        # Target of the composite foreign key on transactions, which
        # pins every transaction to its ledger's own trust account.
        UniqueConstraint("id", "trust_account_id", name="uq_ledger_id_trust_account"),
        CheckConstraint("balance >= 0", name="ck_ledger_balance_nonnegative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    trust_account_id: Mapped[int] = mapped_column(
        ForeignKey("iolta_trust_accounts.id"), nullable=False, index=True
    )
    merchant_id: Mapped[int] = mapped_column(
        Integer, nullable=False, index=True
    )
    client_id: Mapped[str] = mapped_column(
        String(100), nullable=False, index=True
    )
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    matter_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    matter_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    jurisdiction: Mapped[str] = mapped_column(
        String(100), nullable=False, default=UNKNOWN_JURISDICTION
    )
    status: Mapped[AccountStatus] = mapped_column(
        SAEnum(
            AccountStatus,
            name="client_ledger_status_enum",
            create_constraint=True,
        ),
        nullable=False,
        default=AccountStatus.ACTIVE,
    )
    balance: Mapped[Decimal] = mapped_column(
        Numeric(19, 2), nullable=False, default=Decimal("0.00")
    )
    last_transaction_date: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    trust_account: Mapped["TrustAccount"] = relationship(
        back_populates="ledgers"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def current_balance(self) -> Decimal:
        return self.balance

    def can_transition_to(self, new_status: AccountStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def __repr__(self) -> str:
        return (
            f"<ClientLedger {self.id} client={self.client_id} "
            f"{self.balance} ({self.status.value})>"
        )


# At most one active ledger per client and matter within a trust
# account. A missing matter number counts as one matter.
Index(
    "uq_active_ledger_client_matter",
    ClientLedger.trust_account_id,
    ClientLedger.client_id,
    func.coalesce(ClientLedger.matter_number, ""),
    unique=True,
    postgresql_where=ClientLedger.status == AccountStatus.ACTIVE,
    sqlite_where=ClientLedger.status == AccountStatus.ACTIVE,
)
