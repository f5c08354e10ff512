"""
Ledger store: the persistence boundary of the trust ledger engine.

Every query the services run goes through this class. It wraps
a single SQLAlchemy session; the caller that owns the session
(one per request) controls the outer commit or rollback.

Write paths lock ledger rows with SELECT ... FOR UPDATE and always
re-read them (populate_existing) so a posting sees the balance
as committed, never a stale copy from the identity map. Several
ledgers are locked in id order, so two postings never wait on
each other in opposite orders.

Postings do not lock the trust account row. Its aggregate balance
is moved by a single conditional UPDATE issued as the last write
of a posting, so the row is held only from that statement to the
commit.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, SessionTransaction

from iolta_ledger.models.audit_log import AuditLog
from iolta_ledger.models.base import utcnow
from iolta_ledger.models.client_ledger import ClientLedger
from iolta_ledger.models.enums import AccountStatus
from iolta_ledger.models.reconciliation import Reconciliation
from iolta_ledger.models.transaction import Transaction
from iolta_ledger.models.trust_account import TrustAccount


class LedgerStore:

    def __init__(self, db: Session):
        self.db = db

    # --- Unit of work ---

    def savepoint(self) -> SessionTransaction:
        """
        Open a nested transaction.

        Used as a context manager: on an exception every write made
        inside it is rolled back and the objects involved are
        expired, leaving the rest of the session untouched.
        """
        return self.db.begin_nested()

    def add(self, obj: Any) -> Any:
        self.db.add(obj)
        return obj

    def flush(self) -> None:
        self.db.flush()

    def refresh(self, obj: Any) -> None:
        self.db.refresh(obj)

    # --- Trust accounts ---

    def get_trust_account(self, trust_account_id: int) -> TrustAccount | None:
        return self.db.get(TrustAccount, trust_account_id)

    def read_trust_account(self, trust_account_id: int) -> TrustAccount | None:
        """Re-read a trust account from the database without locking it."""
        return self.db.execute(
            select(TrustAccount)
            .where(TrustAccount.id == trust_account_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def add_to_trust_account_balance(self, trust_account: TrustAccount, delta: Decimal) -> bool:
        """
        Move an active trust account's balance by delta in place.

        The UPDATE only matches while the account is active, so a
        posting that raced a status change updates nothing and gets
        False back. The version is bumped like any ORM write and the
        in-memory object is refreshed to the stored values.
        """
        result = self.db.execute(
            update(TrustAccount)
            .where(
                TrustAccount.id == trust_account.id,
                TrustAccount.status == AccountStatus.ACTIVE,
            )
            .values(
                balance=TrustAccount.balance + delta,
                version=TrustAccount.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.db.refresh(trust_account)
        return True

    def lock_trust_account(self, trust_account_id: int) -> TrustAccount | None:
        return self.db.execute(
            select(TrustAccount)
            .where(TrustAccount.id == trust_account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def share_lock_trust_account(self, trust_account_id: int) -> TrustAccount | None:
        """
        Read a trust account under a shared row lock.

        Postings take an exclusive lock on the account row before
        they commit, so holding a shared lock guarantees that every
        ledger read afterwards in this transaction belongs to the
        same committed state as the account balance.
        """
        return self.db.execute(
            select(TrustAccount)
            .where(TrustAccount.id == trust_account_id)
            .with_for_update(read=True)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def list_trust_accounts(self, merchant_id: int) -> list[TrustAccount]:
        accounts = self.db.execute(
            select(TrustAccount)
            .where(TrustAccount.merchant_id == merchant_id)
            .order_by(TrustAccount.id)
        ).scalars().all()
        return list(accounts)

    # --- Client ledgers ---

    def get_client_ledger(self, client_ledger_id: int) -> ClientLedger | None:
        return self.db.get(ClientLedger, client_ledger_id)

    def lock_client_ledger(self, client_ledger_id: int) -> ClientLedger | None:
        return self.db.execute(
            select(ClientLedger)
            .where(ClientLedger.id == client_ledger_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def lock_client_ledgers(self, client_ledger_ids: list[int]) -> dict[int, ClientLedger]:
        """Lock several ledgers in ascending id order."""
        ledgers = self.db.execute(
            select(ClientLedger)
            .where(ClientLedger.id.in_(client_ledger_ids))
            .order_by(ClientLedger.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        return {ledger.id: ledger for ledger in ledgers}

    def list_client_ledgers(self, trust_account_id: int) -> list[ClientLedger]:
        ledgers = self.db.execute(
            select(ClientLedger)
            .where(ClientLedger.trust_account_id == trust_account_id)
            .order_by(ClientLedger.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return list(ledgers)

    def find_client_ledgers(
        self,
        client_id: str,
        trust_account_id: int | None = None,
        matter_number: str | None = None,
        active_only: bool = False,
    ) -> list[ClientLedger]:
        query = select(ClientLedger).where(ClientLedger.client_id == client_id)
        if trust_account_id is not None:
            query = query.where(ClientLedger.trust_account_id == trust_account_id)
        if matter_number is not None:
            query = query.where(ClientLedger.matter_number == matter_number)
        if active_only:
            query = query.where(ClientLedger.status == AccountStatus.ACTIVE)
        return list(self.db.execute(query.order_by(ClientLedger.id)).scalars().all())

    def find_active_ledger(
        self, trust_account_id: int, client_id: str, matter_number: str | None
    ) -> ClientLedger | None:
        query = select(ClientLedger).where(
            ClientLedger.trust_account_id == trust_account_id,
            ClientLedger.client_id == client_id,
            ClientLedger.status == AccountStatus.ACTIVE,
        )
        if matter_number is None:
            query = query.where(ClientLedger.matter_number.is_(None))
        else:
            query = query.where(ClientLedger.matter_number == matter_number)
        return self.db.execute(query).scalars().first()

    # --- Transactions ---

    def get_transaction(self, transaction_id: int) -> Transaction | None:
        return self.db.get(Transaction, transaction_id)

    def get_transaction_by_idempotency_key(self, idempotency_key: str) -> Transaction | None:
        return self.db.execute(
            select(Transaction).where(Transaction.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def lock_transactions(self, transaction_ids: list[int]) -> dict[int, Transaction]:
        """Lock several transactions in ascending id order."""
        rows = self.db.execute(
            select(Transaction)
            .where(Transaction.id.in_(transaction_ids))
            .order_by(Transaction.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        return {txn.id: txn for txn in rows}

    def uncleared_trust_account_transactions(
        self, trust_account_id: int, as_of: datetime
    ) -> list[Transaction]:
        """
        Transactions posted by as_of that had not cleared the bank
        by then, in posting order. Transfer legs never reach the
        bank and are left out.
        """
        query = (
            select(Transaction)
            .where(
                Transaction.trust_account_id == trust_account_id,
                Transaction.transfer_id.is_(None),
                Transaction.created_at <= as_of,
                or_(Transaction.cleared_at.is_(None), Transaction.cleared_at > as_of),
            )
            .order_by(Transaction.created_at, Transaction.id)
        )
        return list(self.db.execute(query).scalars().all())

    def get_transfer_legs(self, transfer_id) -> list[Transaction]:
        legs = self.db.execute(
            select(Transaction)
            .where(Transaction.transfer_id == transfer_id)
            .order_by(Transaction.id)
        ).scalars().all()
        return list(legs)

    def list_ledger_transactions(
        self,
        client_ledger_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        before: datetime | None = None,
    ) -> list[Transaction]:
        """
        Return a ledger's transactions in posting order.

        start and end are inclusive bounds; before is exclusive and
        is used to collect the history preceding a statement period.
        """
        query = select(Transaction).where(
            Transaction.client_ledger_id == client_ledger_id
        )
        if start is not None:
            query = query.where(Transaction.created_at >= start)
        if end is not None:
            query = query.where(Transaction.created_at <= end)
        if before is not None:
            query = query.where(Transaction.created_at < before)
        query = query.order_by(Transaction.created_at, Transaction.id)
        return list(self.db.execute(query).scalars().all())

    def recent_trust_account_transactions(
        self,
        trust_account_id: int,
        limit: int,
        as_of: datetime | None = None,
    ) -> list[Transaction]:
        """Newest first."""
        query = select(Transaction).where(
            Transaction.trust_account_id == trust_account_id
        )
        if as_of is not None:
            query = query.where(Transaction.created_at <= as_of)
        query = query.order_by(
            Transaction.created_at.desc(), Transaction.id.desc()
        ).limit(limit)
        return list(self.db.execute(query).scalars().all())

    # --- Reconciliations ---

    def list_reconciliations(self, trust_account_id: int) -> list[Reconciliation]:
        records = self.db.execute(
            select(Reconciliation)
            .where(Reconciliation.trust_account_id == trust_account_id)
            .order_by(Reconciliation.created_at.desc(), Reconciliation.id.desc())
        ).scalars().all()
        return list(records)

    # --- Audit ---

    def record_audit(self, event_type: str, **details: Any) -> AuditLog:
        entry = AuditLog(
            event_type=event_type,
            details=json.dumps(details, default=str, sort_keys=True),
        )
        self.db.add(entry)
        return entry
