"""
IOLTA service: trust account and client ledger lifecycle.

This service owns creation, lookup and status changes of trust
accounts and client ledgers, and produces client statements.
It never moves money itself: every posting is delegated to the
TransactionPoster, which owns the atomicity guarantees.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from iolta_ledger.exceptions import (
    DuplicateLedgerError,
    LedgerNotFoundError,
    LedgerStateError,
    StorageError,
    TransactionNotFoundError,
    TrustAccountNotFoundError,
    ValidationError,
)
from iolta_ledger.models.base import as_naive_utc, utcnow
from iolta_ledger.models.client_ledger import ClientLedger
from iolta_ledger.models.enums import AccountStatus, UNKNOWN_JURISDICTION
from iolta_ledger.models.transaction import Transaction
from iolta_ledger.models.trust_account import TrustAccount
from iolta_ledger.schemas.transaction import (
    ReversalCreate,
    TransactionCreate,
    TransferCreate,
)
from iolta_ledger.schemas.trust_account import (
    ClientLedgerCreate,
    StatusUpdate,
    TrustAccountCreate,
)
from iolta_ledger.services.balance_calculator import (
    CREDIT_TYPES,
    ZERO,
    compute_ledger_balance,
)
from iolta_ledger.services.transaction_poster import (
    PostingMetadata,
    PostingResult,
    TransactionPoster,
    TransferResult,
)
from iolta_ledger.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class LedgerStatement:
    """Transactions of one ledger within a period, with balances."""
    ledger: ClientLedger
    start_date: datetime | None
    end_date: datetime | None
    opening_balance: Decimal
    closing_balance: Decimal
    current_balance: Decimal
    total_credits: Decimal
    total_debits: Decimal
    transactions: list[Transaction]
    generated_at: datetime


class IoltaService:

    def __init__(
        self,
        store: LedgerStore,
        poster: TransactionPoster,
        clock: Callable[[], datetime] = utcnow,
        default_currency: str = "USD",
    ):
        self.store = store
        self.poster = poster
        self._clock = clock
        self.default_currency = default_currency

    # --- Trust accounts ---

    def create_trust_account(self, request: TrustAccountCreate) -> TrustAccount:
        """
        Open a trust account with a zero balance.

        merchant_id is required and never defaulted: every trust
        account is owned by an explicit firm from creation.
        """
        account = TrustAccount(
            merchant_id=request.merchant_id,
            account_name=request.account_name,
            bank_name=request.bank_name,
            account_number=request.account_number,
            routing_number=request.routing_number,
            jurisdiction=request.jurisdiction,
            currency=(request.currency or self.default_currency).upper(),
            status=AccountStatus.ACTIVE,
            balance=ZERO,
        )
        self._flush("trust account creation", account)
        self.store.record_audit(
            "trust_account.created",
            trust_account_id=account.id,
            merchant_id=account.merchant_id,
        )
        logger.info(
            "Created trust account %s for merchant %s", account.id, account.merchant_id
        )
        return account

    def get_trust_account(self, trust_account_id: int) -> TrustAccount:
        account = self.store.get_trust_account(trust_account_id)
        if account is None:
            raise TrustAccountNotFoundError(trust_account_id)
        return account

    def list_trust_accounts(self, merchant_id: int) -> list[TrustAccount]:
        return self.store.list_trust_accounts(merchant_id)

    def change_trust_account_status(
        self, trust_account_id: int, request: StatusUpdate
    ) -> TrustAccount:
        """
        Move a trust account through its lifecycle.

        A trust account cannot be closed while any of its client
        ledgers still holds money.
        """
        account = self.store.lock_trust_account(trust_account_id)
        if account is None:
            raise TrustAccountNotFoundError(trust_account_id)
        self._check_transition(account, request.new_status, "Trust account", trust_account_id)

        if request.new_status == AccountStatus.CLOSED:
            funded = [
                ledger.id for ledger in self.store.list_client_ledgers(trust_account_id)
                if ledger.balance != 0
            ]
            if funded or account.balance != 0:
                raise LedgerStateError(
                    f"Trust account {trust_account_id} still holds client funds",
                    {"trust_account_id": trust_account_id, "funded_ledger_ids": funded},
                )

        old_status = account.status
        account.status = request.new_status
        self.store.record_audit(
            "trust_account.status_changed",
            trust_account_id=trust_account_id,
            old_status=old_status.value,
            new_status=request.new_status.value,
            reason=request.reason,
        )
        self._flush("trust account status change")
        return account

    # --- Client ledgers ---

    def create_client_ledger(
        self, trust_account_id: int, request: ClientLedgerCreate
    ) -> ClientLedger:
        """
        Onboard a client (and optionally a matter) to a trust account.

        The ledger starts active with a zero balance. A client and
        matter may have at most one active ledger per trust account.
        """
        account = self.get_trust_account(trust_account_id)
        if account.status == AccountStatus.CLOSED:
            raise LedgerStateError(
                f"Trust account {trust_account_id} is closed",
                {"trust_account_id": trust_account_id},
            )

        matter_number = request.matter_number or None
        if self.store.find_active_ledger(trust_account_id, request.client_id, matter_number):
            raise DuplicateLedgerError(trust_account_id, request.client_id, matter_number)

        ledger = ClientLedger(
            trust_account_id=trust_account_id,
            merchant_id=account.merchant_id,
            client_id=request.client_id,
            client_name=request.client_name,
            matter_name=request.matter_name,
            matter_number=matter_number,
            jurisdiction=(request.jurisdiction or "").strip() or UNKNOWN_JURISDICTION,
            status=AccountStatus.ACTIVE,
            balance=ZERO,
        )
        try:
            with self.store.savepoint():
                self.store.add(ledger)
                self.store.flush()
        except IntegrityError as exc:
            # Another request created the same ledger first.
            raise DuplicateLedgerError(
                trust_account_id, request.client_id, matter_number
            ) from exc
        except SQLAlchemyError as exc:
            logger.exception("Storage failure creating client ledger")
            raise StorageError("Storage failure during client ledger creation") from exc

        self.store.record_audit(
            "client_ledger.created",
            client_ledger_id=ledger.id,
            trust_account_id=trust_account_id,
        )
        logger.info(
            "Created client ledger %s in trust account %s", ledger.id, trust_account_id
        )
        return ledger

    def get_client_ledger(self, client_ledger_id: int) -> ClientLedger:
        """Look up a ledger by its own id."""
        ledger = self.store.get_client_ledger(client_ledger_id)
        if ledger is None:
            raise LedgerNotFoundError.for_id(client_ledger_id)
        return ledger

    def get_client_ledger_by_client(
        self,
        client_id: str,
        trust_account_id: int | None = None,
        matter_number: str | None = None,
    ) -> ClientLedger:
        """
        Look up a ledger by the owning client's id.

        Client ids and ledger ids are different namespaces; this is
        the only lookup that accepts a client id. When several
        ledgers match, the active one wins; if the client still has
        more than one, the caller must name the matter.
        """
        matches = self.store.find_client_ledgers(
            client_id, trust_account_id, matter_number
        )
        if not matches:
            raise LedgerNotFoundError.for_client(client_id)
        if len(matches) > 1:
            active = [l for l in matches if l.status == AccountStatus.ACTIVE]
            if len(active) == 1:
                return active[0]
            raise ValidationError(
                f"Client '{client_id}' has {len(matches)} ledgers; "
                f"specify trust_account_id or matter_number",
                {
                    "client_id": client_id,
                    "client_ledger_ids": [l.id for l in matches],
                },
            )
        return matches[0]

    def list_client_ledgers(self, trust_account_id: int) -> list[ClientLedger]:
        self.get_trust_account(trust_account_id)
        return self.store.list_client_ledgers(trust_account_id)

    def change_client_ledger_status(
        self, client_ledger_id: int, request: StatusUpdate
    ) -> ClientLedger:
        """
        Move a client ledger through its lifecycle.

        Closing requires a zero balance. Ledgers are never deleted.
        """
        ledger = self.store.lock_client_ledger(client_ledger_id)
        if ledger is None:
            raise LedgerNotFoundError.for_id(client_ledger_id)
        self._check_transition(ledger, request.new_status, "Client ledger", client_ledger_id)

        if request.new_status == AccountStatus.CLOSED:
            if ledger.balance != 0:
                raise LedgerStateError(
                    f"Client ledger {client_ledger_id} still holds {ledger.balance}",
                    {"client_ledger_id": client_ledger_id, "balance": str(ledger.balance)},
                )
            ledger.closed_at = self._clock()
        elif request.new_status == AccountStatus.ACTIVE:
            other = self.store.find_active_ledger(
                ledger.trust_account_id, ledger.client_id, ledger.matter_number
            )
            if other is not None and other.id != ledger.id:
                raise DuplicateLedgerError(
                    ledger.trust_account_id, ledger.client_id, ledger.matter_number
                )

        old_status = ledger.status
        ledger.status = request.new_status
        self.store.record_audit(
            "client_ledger.status_changed",
            client_ledger_id=client_ledger_id,
            old_status=old_status.value,
            new_status=request.new_status.value,
            reason=request.reason,
        )
        self._flush("client ledger status change")
        return ledger

    # --- Money movement ---

    def record_transaction(self, request: TransactionCreate) -> PostingResult:
        """
        Validate that both referenced records exist, then post.

        The poster re-checks everything under its row locks; this
        pre-check only gives callers a precise not-found error.
        """
        self.get_trust_account(request.trust_account_id)
        self.get_client_ledger(request.client_ledger_id)
        return self.poster.post_transaction(
            client_ledger_id=request.client_ledger_id,
            trust_account_id=request.trust_account_id,
            amount=request.amount,
            transaction_type=request.transaction_type,
            metadata=self._metadata(request),
            idempotency_key=request.idempotency_key,
        )

    def transfer_between_ledgers(self, request: TransferCreate) -> TransferResult:
        self.get_trust_account(request.trust_account_id)
        self.get_client_ledger(request.source_ledger_id)
        self.get_client_ledger(request.destination_ledger_id)
        return self.poster.post_transfer(
            source_ledger_id=request.source_ledger_id,
            destination_ledger_id=request.destination_ledger_id,
            trust_account_id=request.trust_account_id,
            amount=request.amount,
            metadata=self._metadata(request),
            idempotency_key=request.idempotency_key,
        )

    def reverse_transaction(
        self, transaction_id: int, request: ReversalCreate | None = None
    ) -> PostingResult:
        request = request or ReversalCreate()
        metadata = None
        if request.description or request.created_by is not None:
            original = self.get_transaction(transaction_id)
            metadata = PostingMetadata(
                description=request.description or f"Reversal of transaction {transaction_id}",
                fund_type=original.fund_type,
                reference_number=original.reference_number,
                created_by=request.created_by,
            )
        return self.poster.reverse_transaction(
            transaction_id,
            metadata=metadata,
            idempotency_key=request.idempotency_key,
        )

    def get_transaction(self, transaction_id: int) -> Transaction:
        txn = self.store.get_transaction(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)
        return txn

    def list_ledger_transactions(self, client_ledger_id: int) -> list[Transaction]:
        """All transactions of a ledger, oldest first."""
        self.get_client_ledger(client_ledger_id)
        return self.store.list_ledger_transactions(client_ledger_id)

    # --- Statements ---

    def get_client_ledger_statement(
        self,
        client_ledger_id: int,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> LedgerStatement:
        """
        Build a statement for a ledger and an optional period.

        The opening balance is everything posted strictly before
        start_date; the closing balance is the opening balance plus
        the period's lines. Both come from the balance calculator,
        so with an open-ended period the closing balance equals the
        ledger's current balance. Period bounds may carry a UTC
        offset; they are compared in UTC.
        """
        start_date = as_naive_utc(start_date)
        end_date = as_naive_utc(end_date)
        if start_date and end_date and start_date > end_date:
            raise ValidationError(
                "start_date must not be after end_date",
                {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )
        ledger = self.get_client_ledger(client_ledger_id)

        if start_date is not None:
            prior = self.store.list_ledger_transactions(client_ledger_id, before=start_date)
            opening = compute_ledger_balance(prior).balance
        else:
            opening = ZERO

        lines = self.store.list_ledger_transactions(
            client_ledger_id, start=start_date, end=end_date
        )
        closing = compute_ledger_balance(lines, opening_balance=opening).balance

        total_credits = sum(
            (t.amount for t in lines if t.transaction_type in CREDIT_TYPES), ZERO
        )
        total_debits = sum(
            (t.amount for t in lines if t.transaction_type not in CREDIT_TYPES), ZERO
        )

        if end_date is None and closing != ledger.balance:
            logger.warning(
                "Statement for ledger %s: computed closing %s differs from cached balance %s",
                client_ledger_id, closing, ledger.balance,
            )

        return LedgerStatement(
            ledger=ledger,
            start_date=start_date,
            end_date=end_date,
            opening_balance=opening,
            closing_balance=closing,
            current_balance=ledger.balance,
            total_credits=total_credits,
            total_debits=total_debits,
            transactions=lines,
            generated_at=self._clock(),
        )

    # --- Helpers ---

    @staticmethod
    def _metadata(request) -> PostingMetadata:
        return PostingMetadata(
            description=request.description,
            fund_type=request.fund_type,
            check_number=request.check_number,
            reference_number=request.reference_number,
            payee=request.payee,
            payor=request.payor,
            created_by=request.created_by,
        )

    @staticmethod
    def _check_transition(record, new_status: AccountStatus, label: str, record_id: int) -> None:
        if not record.can_transition_to(new_status):
            raise LedgerStateError(
                f"{label} {record_id}: cannot transition from "
                f"{record.status.value} to {new_status.value}",
                {"current_status": record.status.value, "new_status": new_status.value},
            )

    def _flush(self, what: str, new_object=None) -> None:
        try:
            if new_object is not None:
                self.store.add(new_object)
            self.store.flush()
        except SQLAlchemyError as exc:
            logger.exception("Storage failure during %s", what)
            raise StorageError(f"Storage failure during {what}") from exc
