"""
Reconciliation service: the trust accounting health check.

A trust account's balance must equal the sum of its client
ledgers to the cent. This service compares the two and, when a
bank statement balance is supplied, compares the book balance
with the bank balance adjusted for items still in transit:

    adjusted bank = bank - outstanding checks + deposits in transit

A transaction is in transit until it is marked cleared with the
date it appeared on a bank statement.

An unbalanced account is a normal result, never an exception:
the report carries the difference (zero included) and a
discrepancy status. Only storage failures raise.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from iolta_ledger.exceptions import (
    LedgerStateError,
    StorageError,
    TransactionNotFoundError,
    TrustAccountNotFoundError,
    ValidationError,
)
from iolta_ledger.models.base import as_naive_utc, utcnow
from iolta_ledger.models.enums import AccountStatus, ReconciliationStatus
from iolta_ledger.models.reconciliation import Reconciliation
from iolta_ledger.models.transaction import Transaction
from iolta_ledger.models.trust_account import TrustAccount
from iolta_ledger.schemas.reconciliation import (
    ClearTransactionsRequest,
    ReconciliationCreate,
)
from iolta_ledger.services.balance_calculator import CREDIT_TYPES, ZERO, to_cents
from iolta_ledger.services.transaction_poster import (
    BalanceRecompute,
    TransactionPoster,
)
from iolta_ledger.store import LedgerStore

logger = logging.getLogger(__name__)

BALANCED = "balanced"
DISCREPANCY = "discrepancy"

CLOSED_WITH_BALANCE = "closed_with_balance"
NEGATIVE_BALANCE = "negative_balance"


@dataclass
class ClientBalanceLine:
    client_ledger_id: int
    client_id: str
    client_name: str
    matter_number: str | None
    jurisdiction: str
    status: AccountStatus
    balance: Decimal
    flags: list[str] = field(default_factory=list)


@dataclass
class OutstandingItem:
    """A posted transaction the bank had not cleared as of the report."""
    transaction_id: int
    client_ledger_id: int
    transaction_type: str
    amount: Decimal
    description: str
    check_number: str | None
    created_at: datetime

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "OutstandingItem":
        return cls(
            transaction_id=txn.id,
            client_ledger_id=txn.client_ledger_id,
            transaction_type=txn.transaction_type.value,
            amount=txn.amount,
            description=txn.description,
            check_number=txn.check_number,
            created_at=txn.created_at,
        )

    def as_record(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "client_ledger_id": self.client_ledger_id,
            "transaction_type": self.transaction_type,
            "amount": str(self.amount),
            "description": self.description,
            "check_number": self.check_number,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ReconciliationReport:
    trust_account: TrustAccount
    as_of: datetime
    trust_account_balance: Decimal
    total_client_balances: Decimal
    difference: Decimal
    bank_balance: Decimal | None
    adjusted_bank_balance: Decimal | None
    bank_difference: Decimal | None
    outstanding_checks: list[OutstandingItem]
    outstanding_deposits: list[OutstandingItem]
    client_balances: list[ClientBalanceLine]
    balances_by_jurisdiction: dict[str, Decimal]
    anomalies: list[str]
    recent_transactions: list[Transaction]
    generated_at: datetime

    @property
    def outstanding_checks_total(self) -> Decimal:
        return to_cents(sum((item.amount for item in self.outstanding_checks), ZERO))

    @property
    def outstanding_deposits_total(self) -> Decimal:
        return to_cents(sum((item.amount for item in self.outstanding_deposits), ZERO))

    @property
    def is_balanced(self) -> bool:
        """
        Book balance equals the ledger total exactly, and equals
        the adjusted bank balance too when one was supplied.
        """
        if self.difference != 0:
            return False
        return self.bank_difference is None or self.bank_difference == 0

    @property
    def status(self) -> str:
        return BALANCED if self.is_balanced else DISCREPANCY


@dataclass
class RecomputeReport:
    recompute: BalanceRecompute
    reconciliation: ReconciliationReport


def split_outstanding(
    pending: list[Transaction],
) -> tuple[list[OutstandingItem], list[OutstandingItem]]:
    """
    Sort uncleared transactions into checks (money out) and
    deposits in transit (money in).

    A transaction reversed before either side cleared never
    reaches the bank, so the pair is dropped.
    """
    pending_ids = {txn.id for txn in pending}
    cancelled = {
        txn.reversal_of_id for txn in pending
        if txn.reversal_of_id is not None and txn.reversal_of_id in pending_ids
    }
    checks, deposits = [], []
    for txn in pending:
        if txn.id in cancelled or txn.reversal_of_id in cancelled:
            continue
        item = OutstandingItem.from_transaction(txn)
        if txn.transaction_type in CREDIT_TYPES:
            deposits.append(item)
        else:
            checks.append(item)
    return checks, deposits


class ReconciliationService:

    def __init__(
        self,
        store: LedgerStore,
        poster: TransactionPoster,
        clock: Callable[[], datetime] = utcnow,
        recent_limit: int = 50,
    ):
        self.store = store
        self.poster = poster
        self._clock = clock
        self.recent_limit = recent_limit

    def reconcile(
        self,
        trust_account_id: int,
        as_of: datetime | None = None,
        bank_balance: Decimal | None = None,
    ) -> ReconciliationReport:
        """
        Compare a trust account's balance with its client ledgers.

        Every ledger counts toward the total, closed ones included;
        a closed ledger still holding money is flagged rather than
        skipped. The account row is read under a shared lock so the
        ledger balances come from the same committed state.
        """
        return self._build_report(
            trust_account_id,
            as_of,
            bank_balance,
            self.store.share_lock_trust_account,
        )

    def record_reconciliation(
        self, trust_account_id: int, request: ReconciliationCreate
    ) -> tuple[Reconciliation, ReconciliationReport]:
        """
        Reconcile against a bank statement and keep the result.

        Saves a reconciliation record, outstanding items included,
        and stamps the account's last reconciliation date whether
        or not it balanced. The account row is about to be written,
        so it is locked exclusively from the start.
        """
        report = self._build_report(
            trust_account_id,
            None,
            request.bank_balance,
            self.store.lock_trust_account,
        )
        account = report.trust_account
        record = Reconciliation(
            trust_account_id=trust_account_id,
            reconciliation_date=report.as_of.date(),
            bank_balance=report.bank_balance,
            adjusted_bank_balance=report.adjusted_bank_balance,
            book_balance=report.trust_account_balance,
            client_ledger_total=report.total_client_balances,
            difference=report.difference,
            bank_difference=report.bank_difference,
            outstanding_checks=[item.as_record() for item in report.outstanding_checks],
            outstanding_deposits=[item.as_record() for item in report.outstanding_deposits],
            is_balanced=report.is_balanced,
            status=(
                ReconciliationStatus.COMPLETED
                if report.is_balanced
                else ReconciliationStatus.DISCREPANCY
            ),
            notes=request.notes,
            reconciler_id=request.reconciler_id,
            created_at=report.generated_at,
        )
        try:
            with self.store.savepoint():
                self.store.add(record)
                account.last_reconciliation_date = report.as_of.date()
                self.store.flush()
                self.store.record_audit(
                    "reconciliation.recorded",
                    reconciliation_id=record.id,
                    trust_account_id=trust_account_id,
                    is_balanced=report.is_balanced,
                    difference=report.difference,
                    bank_difference=report.bank_difference,
                )
                self.store.flush()
        except SQLAlchemyError as exc:
            logger.exception("Storage failure recording reconciliation")
            raise StorageError(
                f"Storage failure recording reconciliation of trust account {trust_account_id}"
            ) from exc

        logger.info(
            "Recorded reconciliation %s for trust account %s (%s)",
            record.id, trust_account_id, record.status.value,
        )
        return record, report

    def list_reconciliations(self, trust_account_id: int) -> list[Reconciliation]:
        """Saved reconciliations, newest first."""
        if self.store.get_trust_account(trust_account_id) is None:
            raise TrustAccountNotFoundError(trust_account_id)
        return self.store.list_reconciliations(trust_account_id)

    def mark_transactions_cleared(
        self, trust_account_id: int, request: ClearTransactionsRequest
    ) -> list[Transaction]:
        """
        Record that transactions appeared on a bank statement.

        cleared_at defaults to now. Only cleared_at and
        bank_reference are written; amounts and balances are never
        touched. A transaction clears once: clearing it again is a
        LedgerStateError, and nothing is written if any of the
        requested transactions is rejected.
        """
        if self.store.get_trust_account(trust_account_id) is None:
            raise TrustAccountNotFoundError(trust_account_id)
        cleared_at = as_naive_utc(request.cleared_at) or self._clock()
        transaction_ids = sorted(set(request.transaction_ids))

        try:
            with self.store.savepoint():
                rows = self.store.lock_transactions(transaction_ids)
                for transaction_id in transaction_ids:
                    txn = rows.get(transaction_id)
                    if txn is None:
                        raise TransactionNotFoundError(transaction_id)
                    self._check_clearable(txn, trust_account_id, cleared_at)
                for txn in rows.values():
                    txn.cleared_at = cleared_at
                    txn.bank_reference = request.bank_reference
                self.store.record_audit(
                    "transactions.cleared",
                    trust_account_id=trust_account_id,
                    transaction_ids=transaction_ids,
                    cleared_at=cleared_at,
                    bank_reference=request.bank_reference,
                )
                self.store.flush()
        except SQLAlchemyError as exc:
            logger.exception("Storage failure clearing transactions")
            raise StorageError(
                f"Storage failure clearing transactions of trust account {trust_account_id}"
            ) from exc

        logger.info(
            "Cleared %d transaction(s) of trust account %s as of %s",
            len(transaction_ids), trust_account_id, cleared_at.isoformat(),
        )
        return [rows[transaction_id] for transaction_id in transaction_ids]

    def mark_transaction_cleared(
        self,
        transaction_id: int,
        cleared_at: datetime | None = None,
        bank_reference: str | None = None,
    ) -> Transaction:
        txn = self.store.get_transaction(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)
        (cleared,) = self.mark_transactions_cleared(
            txn.trust_account_id,
            ClearTransactionsRequest(
                transaction_ids=[transaction_id],
                cleared_at=cleared_at,
                bank_reference=bank_reference,
            ),
        )
        return cleared

    def recompute_and_reconcile(
        self, trust_account_id: int, apply: bool = False
    ) -> RecomputeReport:
        """
        Operator repair: recompute every balance from history, then
        reconcile.

        With apply=False this only reports. With apply=True drifted
        cached balances are corrected first, so the reconciliation
        describes the repaired state. On a healthy account both
        modes change nothing.
        """
        recompute = self.poster.recompute_balances(trust_account_id, apply=apply)
        return RecomputeReport(
            recompute=recompute,
            reconciliation=self.reconcile(trust_account_id),
        )

    # --- Helpers ---

    @staticmethod
    def _check_clearable(txn: Transaction, trust_account_id: int, cleared_at: datetime) -> None:
        if txn.trust_account_id != trust_account_id:
            raise ValidationError(
                f"Transaction {txn.id} does not belong to trust account {trust_account_id}",
                {"transaction_id": txn.id, "trust_account_id": trust_account_id},
            )
        if txn.cleared_at is not None:
            raise LedgerStateError(
                f"Transaction {txn.id} already cleared on {txn.cleared_at.isoformat()}",
                {"transaction_id": txn.id, "cleared_at": txn.cleared_at.isoformat()},
            )
        if cleared_at < txn.created_at:
            raise ValidationError(
                f"Transaction {txn.id} cannot clear before it was posted",
                {
                    "transaction_id": txn.id,
                    "created_at": txn.created_at.isoformat(),
                    "cleared_at": cleared_at.isoformat(),
                },
            )

    def _build_report(
        self,
        trust_account_id: int,
        as_of: datetime | None,
        bank_balance: Decimal | None,
        load_account: Callable[[int], TrustAccount | None],
    ) -> ReconciliationReport:
        as_of = as_naive_utc(as_of) or self._clock()
        try:
            account = load_account(trust_account_id)
            if account is None:
                raise TrustAccountNotFoundError(trust_account_id)
            ledgers = self.store.list_client_ledgers(trust_account_id)
            pending = self.store.uncleared_trust_account_transactions(trust_account_id, as_of)
            recent = self.store.recent_trust_account_transactions(
                trust_account_id, self.recent_limit, as_of=as_of
            )
        except SQLAlchemyError as exc:
            logger.exception("Storage failure reconciling trust account %s", trust_account_id)
            raise StorageError(
                f"Storage failure during reconciliation of trust account {trust_account_id}"
            ) from exc

        lines = []
        anomalies = []
        by_jurisdiction: dict[str, Decimal] = defaultdict(lambda: ZERO)
        total = ZERO
        for ledger in ledgers:
            line = ClientBalanceLine(
                client_ledger_id=ledger.id,
                client_id=ledger.client_id,
                client_name=ledger.client_name,
                matter_number=ledger.matter_number,
                jurisdiction=ledger.jurisdiction,
                status=ledger.status,
                balance=ledger.balance,
            )
            if ledger.status == AccountStatus.CLOSED and ledger.balance != 0:
                line.flags.append(CLOSED_WITH_BALANCE)
                anomalies.append(
                    f"Closed client ledger {ledger.id} holds {ledger.balance}"
                )
            if ledger.balance < 0:
                line.flags.append(NEGATIVE_BALANCE)
                anomalies.append(
                    f"Client ledger {ledger.id} has a negative balance of {ledger.balance}"
                )
            lines.append(line)
            by_jurisdiction[ledger.jurisdiction] += ledger.balance
            total += ledger.balance

        total = to_cents(total)
        difference = to_cents(account.balance - total)
        if difference != 0:
            anomalies.append(
                f"Trust account balance {account.balance} differs from "
                f"client ledger total {total} by {difference}"
            )

        checks, deposits = split_outstanding(pending)
        adjusted_bank_balance = None
        bank_difference = None
        if bank_balance is not None:
            bank_balance = to_cents(Decimal(bank_balance))
            adjusted_bank_balance = to_cents(
                bank_balance
                - sum((item.amount for item in checks), ZERO)
                + sum((item.amount for item in deposits), ZERO)
            )
            bank_difference = to_cents(adjusted_bank_balance - account.balance)
            if bank_difference != 0:
                anomalies.append(
                    f"Adjusted bank balance {adjusted_bank_balance} differs from "
                    f"trust account balance {account.balance} by {bank_difference}"
                )

        report = ReconciliationReport(
            trust_account=account,
            as_of=as_of,
            trust_account_balance=account.balance,
            total_client_balances=total,
            difference=difference,
            bank_balance=bank_balance,
            adjusted_bank_balance=adjusted_bank_balance,
            bank_difference=bank_difference,
            outstanding_checks=checks,
            outstanding_deposits=deposits,
            client_balances=lines,
            balances_by_jurisdiction={
                name: to_cents(amount) for name, amount in sorted(by_jurisdiction.items())
            },
            anomalies=anomalies,
            recent_transactions=recent,
            generated_at=self._clock(),
        )

        if report.is_balanced:
            logger.info(
                "Trust account %s reconciled: %s across %d ledger(s), "
                "%d outstanding item(s)",
                trust_account_id, total, len(lines), len(checks) + len(deposits),
            )
        else:
            logger.warning(
                "Trust account %s out of balance: difference=%s bank_difference=%s",
                trust_account_id, difference, bank_difference,
            )
        return report
