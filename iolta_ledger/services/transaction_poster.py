"""
Transaction poster: the only writer of trust transactions.

Every money movement in the system goes through this class:
single postings, ledger-to-ledger transfers, reversals and the
operator repair of cached balances. Each operation:

1. Validates its input (amount, type) before touching the database
2. Replays an earlier result if the idempotency key was seen before
3. Locks the client ledger row(s) and reads the trust account
4. Checks referential integrity, status and available funds
5. Writes the transaction row(s), the ledger balance and an audit
   row, then moves the account balance with one conditional
   UPDATE, all inside one savepoint

Only the ledger rows are locked for the whole operation, so
postings to different ledgers contend only for the short UPDATE
of their shared account row. Postings on one ledger are stamped
in lock order: created_at never goes backwards on a ledger even
if the clock does.

If any step fails, the savepoint is rolled back and nothing is
written. Stale-version conflicts are retried a bounded number of
times; every other failure is surfaced to the caller untouched.
The caller owns the outer commit.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from iolta_ledger.exceptions import (
    ConcurrencyConflictError,
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidAmountError,
    LedgerNotFoundError,
    LedgerStateError,
    StorageError,
    TransactionNotFoundError,
    TrustAccountMismatchError,
    TrustAccountNotFoundError,
    ValidationError,
)
from iolta_ledger.models.base import utcnow
from iolta_ledger.models.client_ledger import ClientLedger
from iolta_ledger.models.enums import (
    AccountStatus,
    FundType,
    TransactionStatus,
    TransactionType,
)
from iolta_ledger.models.transaction import Transaction
from iolta_ledger.models.trust_account import TrustAccount
from iolta_ledger.services.balance_calculator import (
    MAX_BALANCE,
    REVERSAL_TYPES,
    ZERO,
    apply_transaction,
    compute_ledger_balance,
    parse_amount,
    parse_transaction_type,
    signed_amount,
    to_cents,
)
from iolta_ledger.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostingMetadata:
    """Descriptive fields recorded on a transaction."""
    description: str = "Trust transaction"
    fund_type: FundType = FundType.TRUST
    check_number: str | None = None
    reference_number: str | None = None
    payee: str | None = None
    payor: str | None = None
    created_by: int | None = None


@dataclass
class PostingResult:
    transaction: Transaction
    ledger: ClientLedger
    replayed: bool = False


@dataclass
class TransferResult:
    transfer_id: uuid.UUID
    withdrawal: Transaction
    deposit: Transaction
    source_ledger: ClientLedger
    destination_ledger: ClientLedger
    replayed: bool = False


@dataclass(frozen=True)
class LedgerDrift:
    client_ledger_id: int
    cached_balance: Decimal
    computed_balance: Decimal


@dataclass(frozen=True)
class SnapshotMismatch:
    transaction_id: int
    client_ledger_id: int
    stored_balance_after: Decimal
    computed_balance_after: Decimal


@dataclass
class BalanceRecompute:
    trust_account_id: int
    ledgers_checked: int
    account_balance_before: Decimal
    account_balance_computed: Decimal
    ledger_drifts: list[LedgerDrift] = field(default_factory=list)
    snapshot_mismatches: list[SnapshotMismatch] = field(default_factory=list)
    negative_ledger_ids: list[int] = field(default_factory=list)
    applied: bool = False

    @property
    def has_drift(self) -> bool:
        return bool(self.ledger_drifts) or (
            self.account_balance_before != self.account_balance_computed
        )


class TransactionPoster:

    def __init__(
        self,
        store: LedgerStore,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
    ):
        self.store = store
        self._clock = clock
        self.max_attempts = max(1, max_attempts)

    # --- Public operations ---

    def post_transaction(
        self,
        client_ledger_id: int,
        trust_account_id: int,
        amount: Any,
        transaction_type: Any,
        metadata: PostingMetadata | None = None,
        idempotency_key: str | None = None,
    ) -> PostingResult:
        """
        Post one deposit, withdrawal, fee or interest transaction.

        Raises InvalidAmountError / InvalidTransactionTypeError before
        any database access, LedgerNotFoundError,
        TrustAccountNotFoundError or TrustAccountMismatchError for bad
        references, LedgerStateError for a closed or inactive ledger
        or account, and InsufficientFundsError when a debit exceeds
        the ledger balance. None of them leave any write behind.
        """
        amount = parse_amount(amount)
        transaction_type = parse_transaction_type(transaction_type)
        metadata = metadata or PostingMetadata()

        def replay() -> PostingResult | None:
            return self._replay_posting(
                idempotency_key, client_ledger_id, trust_account_id,
                amount, transaction_type,
            )

        if idempotency_key:
            existing = replay()
            if existing:
                return existing

        def operation() -> PostingResult:
            ledger = self._lock_ledger(client_ledger_id, trust_account_id)
            account = self._read_account(trust_account_id)
            txn = self._apply(
                ledger, account, amount, transaction_type, metadata,
                idempotency_key, self._posting_time(ledger),
            )
            self.store.flush()
            self._move_account_balance(account, signed_amount(amount, transaction_type))
            return PostingResult(transaction=txn, ledger=ledger)

        result = self._run_atomically(
            operation,
            f"posting on ledger {client_ledger_id}",
            replay if idempotency_key else None,
        )
        if not result.replayed:
            logger.info(
                "Posted %s %s on ledger %s (trust account %s), balance_after=%s",
                transaction_type.value, amount, client_ledger_id,
                trust_account_id, result.transaction.balance_after,
            )
        return result

    def post_transfer(
        self,
        source_ledger_id: int,
        destination_ledger_id: int,
        trust_account_id: int,
        amount: Any,
        metadata: PostingMetadata | None = None,
        idempotency_key: str | None = None,
    ) -> TransferResult:
        """
        Move funds between two ledgers of the same trust account.

        Posts a withdrawal on the source and a deposit on the
        destination sharing one transfer_id. Both legs commit
        together; the trust account balance is unchanged.
        """
        amount = parse_amount(amount)
        if source_ledger_id == destination_ledger_id:
            raise ValidationError(
                "Cannot transfer to the same client ledger",
                {"client_ledger_id": source_ledger_id},
            )
        metadata = metadata or PostingMetadata(description="Transfer between client ledgers")

        def replay() -> TransferResult | None:
            return self._replay_transfer(
                idempotency_key, source_ledger_id, destination_ledger_id,
                trust_account_id, amount,
            )

        if idempotency_key:
            existing = replay()
            if existing:
                return existing

        def operation() -> TransferResult:
            ledgers = self.store.lock_client_ledgers(
                [source_ledger_id, destination_ledger_id]
            )
            source = self._check_ledger(
                ledgers.get(source_ledger_id), source_ledger_id, trust_account_id
            )
            destination = self._check_ledger(
                ledgers.get(destination_ledger_id), destination_ledger_id, trust_account_id
            )
            # Net zero for the account: its balance row is not written.
            account = self._read_account(trust_account_id)

            transfer_id = uuid.uuid4()
            now = self._posting_time(source, destination)
            withdrawal = self._apply(
                source, account, amount, TransactionType.WITHDRAWAL, metadata,
                idempotency_key, now, transfer_id=transfer_id,
            )
            deposit = self._apply(
                destination, account, amount, TransactionType.DEPOSIT, metadata,
                None, now, transfer_id=transfer_id,
            )
            self.store.flush()
            return TransferResult(
                transfer_id=transfer_id,
                withdrawal=withdrawal,
                deposit=deposit,
                source_ledger=source,
                destination_ledger=destination,
            )

        result = self._run_atomically(
            operation,
            f"transfer from ledger {source_ledger_id} to {destination_ledger_id}",
            replay if idempotency_key else None,
        )
        if not result.replayed:
            logger.info(
                "Transferred %s from ledger %s to ledger %s (transfer %s)",
                amount, source_ledger_id, destination_ledger_id, result.transfer_id,
            )
        return result

    def reverse_transaction(
        self,
        transaction_id: int,
        metadata: PostingMetadata | None = None,
        idempotency_key: str | None = None,
    ) -> PostingResult:
        """
        Undo a transaction by posting its opposite.

        The original row keeps its amount, type and balance_after;
        only its status changes to REVERSED. Reversing a credit whose
        funds have since been disbursed fails with
        InsufficientFundsError like any other debit.
        """
        original = self.store.get_transaction(transaction_id)
        if original is None:
            raise TransactionNotFoundError(transaction_id)

        ledger_id = original.client_ledger_id
        trust_account_id = original.trust_account_id
        amount = original.amount
        reversal_type = REVERSAL_TYPES[original.transaction_type]

        def replay() -> PostingResult | None:
            result = self._replay_posting(
                idempotency_key, ledger_id, trust_account_id, amount, reversal_type,
            )
            if result and result.transaction.reversal_of_id != transaction_id:
                raise IdempotencyConflictError(idempotency_key, result.transaction.id)
            return result

        if idempotency_key:
            existing = replay()
            if existing:
                return existing

        def operation() -> PostingResult:
            ledger = self._lock_ledger(ledger_id, trust_account_id)
            account = self._read_account(trust_account_id)
            # Reversals of the same transaction serialize on the
            # ledger lock; re-read the status under it.
            self.store.refresh(original)

            if original.reversal_of_id is not None:
                raise LedgerStateError(
                    f"Transaction {transaction_id} is itself a reversal",
                    {"transaction_id": transaction_id},
                )
            if original.transfer_id is not None:
                raise LedgerStateError(
                    f"Transaction {transaction_id} is one leg of a transfer "
                    f"and cannot be reversed on its own",
                    {"transaction_id": transaction_id},
                )
            if original.status == TransactionStatus.REVERSED:
                raise LedgerStateError(
                    f"Transaction {transaction_id} has already been reversed",
                    {"transaction_id": transaction_id},
                )

            reversal_metadata = metadata or PostingMetadata(
                description=f"Reversal of transaction {transaction_id}",
                fund_type=original.fund_type,
                reference_number=original.reference_number,
            )
            txn = self._apply(
                ledger, account, amount, reversal_type, reversal_metadata,
                idempotency_key, self._posting_time(ledger), reversal_of_id=transaction_id,
            )
            original.status = TransactionStatus.REVERSED
            self.store.flush()
            self._move_account_balance(account, signed_amount(amount, reversal_type))
            return PostingResult(transaction=txn, ledger=ledger)

        result = self._run_atomically(
            operation,
            f"reversal of transaction {transaction_id}",
            replay if idempotency_key else None,
        )
        if not result.replayed:
            logger.info(
                "Reversed transaction %s with transaction %s on ledger %s",
                transaction_id, result.transaction.id, ledger_id,
            )
        return result

    def recompute_balances(self, trust_account_id: int, apply: bool = False) -> BalanceRecompute:
        """
        Re-derive every cached balance of a trust account from history.

        Each ledger's full transaction history is run through the
        balance calculator. Drift between the cached and computed
        balances is reported; with apply=True the cached ledger
        balances and the account aggregate are corrected in one
        atomic unit. Stored balance_after snapshots are compared but
        never rewritten. On a healthy account nothing changes.
        """

        def operation() -> BalanceRecompute:
            account = self.store.get_trust_account(trust_account_id)
            if account is None:
                raise TrustAccountNotFoundError(trust_account_id)

            ledgers = self.store.list_client_ledgers(trust_account_id)
            if apply:
                if ledgers:
                    locked = self.store.lock_client_ledgers([l.id for l in ledgers])
                    ledgers = [locked[l.id] for l in ledgers]
                account = self._lock_account(trust_account_id)

            result = BalanceRecompute(
                trust_account_id=trust_account_id,
                ledgers_checked=len(ledgers),
                account_balance_before=account.balance,
                account_balance_computed=ZERO,
            )
            total = ZERO
            computed_by_ledger = {}
            for ledger in ledgers:
                history = self.store.list_ledger_transactions(ledger.id)
                computed = compute_ledger_balance(history)
                for txn, expected in zip(history, computed.balances_after):
                    if txn.balance_after != expected:
                        result.snapshot_mismatches.append(SnapshotMismatch(
                            transaction_id=txn.id,
                            client_ledger_id=ledger.id,
                            stored_balance_after=txn.balance_after,
                            computed_balance_after=expected,
                        ))
                if computed.balance != ledger.balance:
                    result.ledger_drifts.append(LedgerDrift(
                        client_ledger_id=ledger.id,
                        cached_balance=ledger.balance,
                        computed_balance=computed.balance,
                    ))
                if computed.balance < 0:
                    result.negative_ledger_ids.append(ledger.id)
                computed_by_ledger[ledger.id] = computed.balance
                total += computed.balance
            result.account_balance_computed = to_cents(total)

            if apply and result.has_drift:
                if result.negative_ledger_ids:
                    raise LedgerStateError(
                        "Transaction history drives ledgers negative; "
                        "balances cannot be restated automatically",
                        {"client_ledger_ids": result.negative_ledger_ids},
                    )
                for ledger in ledgers:
                    ledger.balance = computed_by_ledger[ledger.id]
                account.balance = result.account_balance_computed
                self.store.record_audit(
                    "balances.recomputed",
                    trust_account_id=trust_account_id,
                    account_balance_before=result.account_balance_before,
                    account_balance_after=result.account_balance_computed,
                    ledger_drifts=[
                        {
                            "client_ledger_id": d.client_ledger_id,
                            "cached": d.cached_balance,
                            "computed": d.computed_balance,
                        }
                        for d in result.ledger_drifts
                    ],
                )
                self.store.flush()
                result.applied = True
            return result

        result = self._run_atomically(
            operation, f"recompute of trust account {trust_account_id}"
        )
        if result.applied:
            logger.warning(
                "Restated balances of trust account %s: %d ledger(s) corrected, "
                "account %s -> %s",
                trust_account_id, len(result.ledger_drifts),
                result.account_balance_before, result.account_balance_computed,
            )
        elif result.has_drift or result.snapshot_mismatches:
            logger.warning(
                "Trust account %s has drift: %d ledger(s), %d snapshot mismatch(es)",
                trust_account_id, len(result.ledger_drifts),
                len(result.snapshot_mismatches),
            )
        return result

    # --- Internals ---

    def _run_atomically(
        self,
        operation: Callable[[], Any],
        what: str,
        replay: Callable[[], Any] | None = None,
    ) -> Any:
        """
        Run operation inside a savepoint, retrying stale-version
        conflicts up to max_attempts times.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.store.savepoint():
                    return operation()
            except StaleDataError as exc:
                if attempt == self.max_attempts:
                    logger.warning(
                        "Giving up on %s after %d concurrent update conflict(s)",
                        what, attempt,
                    )
                    raise ConcurrencyConflictError(
                        f"Concurrent update conflict during {what}",
                        {"attempts": attempt},
                    ) from exc
                logger.warning(
                    "Concurrent update during %s, retrying (attempt %d of %d)",
                    what, attempt, self.max_attempts,
                )
            except IntegrityError as exc:
                # Lost a race on the same idempotency key: the winner's
                # row is now visible and is the answer.
                if replay is not None:
                    existing = replay()
                    if existing:
                        return existing
                logger.exception("Integrity violation during %s", what)
                raise StorageError(
                    f"Integrity violation during {what}"
                ) from exc
            except SQLAlchemyError as exc:
                logger.exception("Storage failure during %s", what)
                raise StorageError(f"Storage failure during {what}") from exc

    def _check_ledger(
        self,
        ledger: ClientLedger | None,
        client_ledger_id: int,
        trust_account_id: int,
    ) -> ClientLedger:
        if ledger is None:
            raise LedgerNotFoundError.for_id(client_ledger_id)
        if ledger.trust_account_id != trust_account_id:
            logger.warning(
                "Rejected posting: ledger %s belongs to trust account %s, not %s",
                client_ledger_id, ledger.trust_account_id, trust_account_id,
            )
            raise TrustAccountMismatchError(
                client_ledger_id, trust_account_id, ledger.trust_account_id
            )
        if ledger.status != AccountStatus.ACTIVE:
            raise LedgerStateError(
                f"Client ledger {client_ledger_id} is {ledger.status.value}; "
                f"postings require an active ledger",
                {"client_ledger_id": client_ledger_id, "status": ledger.status.value},
            )
        return ledger

    def _lock_ledger(self, client_ledger_id: int, trust_account_id: int) -> ClientLedger:
        return self._check_ledger(
            self.store.lock_client_ledger(client_ledger_id),
            client_ledger_id,
            trust_account_id,
        )

    def _lock_account(self, trust_account_id: int) -> TrustAccount:
        account = self.store.lock_trust_account(trust_account_id)
        if account is None:
            raise TrustAccountNotFoundError(trust_account_id)
        return account

    def _read_account(self, trust_account_id: int) -> TrustAccount:
        account = self.store.read_trust_account(trust_account_id)
        if account is None:
            raise TrustAccountNotFoundError(trust_account_id)
        if account.status != AccountStatus.ACTIVE:
            raise LedgerStateError(
                f"Trust account {trust_account_id} is {account.status.value}; "
                f"postings require an active account",
                {"trust_account_id": trust_account_id, "status": account.status.value},
            )
        return account

    def _move_account_balance(self, account: TrustAccount, delta: Decimal) -> None:
        if account.balance + delta > MAX_BALANCE:
            raise InvalidAmountError(
                abs(delta), "posting would exceed the largest supported balance"
            )
        if not self.store.add_to_trust_account_balance(account, delta):
            # Closed or deactivated after it was read.
            raise LedgerStateError(
                f"Trust account {account.id} is no longer active; "
                f"postings require an active account",
                {"trust_account_id": account.id},
            )

    def _posting_time(self, *ledgers: ClientLedger) -> datetime:
        """
        Timestamp for a posting on the given locked ledgers: the
        clock, but never earlier than a ledger's last posting.
        """
        now = self._clock()
        for ledger in ledgers:
            last = ledger.last_transaction_date
            if last is not None and last > now:
                logger.warning(
                    "Clock is behind ledger %s (last posting %s, clock %s); "
                    "stamping with the last posting time",
                    ledger.id, last.isoformat(), now.isoformat(),
                )
                now = last
        return now

    def _apply(
        self,
        ledger: ClientLedger,
        account: TrustAccount,
        amount: Decimal,
        transaction_type: TransactionType,
        metadata: PostingMetadata,
        idempotency_key: str | None,
        now: datetime,
        reversal_of_id: int | None = None,
        transfer_id: uuid.UUID | None = None,
    ) -> Transaction:
        """
        Check funds, then write the transaction and the ledger
        balance. The account balance is the caller's to move.
        """
        new_balance = apply_transaction(ledger.balance, amount, transaction_type)
        if new_balance < 0:
            logger.warning(
                "Rejected %s of %s on ledger %s: available %s",
                transaction_type.value, amount, ledger.id, ledger.balance,
            )
            raise InsufficientFundsError(ledger.id, ledger.balance, amount)
        if new_balance > MAX_BALANCE:
            raise InvalidAmountError(
                amount, "posting would exceed the largest supported balance"
            )

        txn = Transaction(
            external_id=uuid.uuid4(),
            trust_account_id=account.id,
            client_ledger_id=ledger.id,
            idempotency_key=idempotency_key,
            transaction_type=transaction_type,
            status=TransactionStatus.COMPLETED,
            fund_type=metadata.fund_type,
            amount=amount,
            balance_after=new_balance,
            description=metadata.description,
            check_number=metadata.check_number,
            reference_number=metadata.reference_number,
            payee=metadata.payee,
            payor=metadata.payor,
            created_by=metadata.created_by,
            reversal_of_id=reversal_of_id,
            transfer_id=transfer_id,
            created_at=now,
        )
        self.store.add(txn)

        ledger.balance = new_balance
        ledger.last_transaction_date = now

        self.store.record_audit(
            "transaction.posted",
            transaction=str(txn.external_id),
            trust_account_id=account.id,
            client_ledger_id=ledger.id,
            transaction_type=transaction_type.value,
            amount=amount,
            balance_after=new_balance,
            reversal_of_id=reversal_of_id,
            transfer_id=transfer_id,
        )
        return txn

    def _replay_posting(
        self,
        idempotency_key: str,
        client_ledger_id: int,
        trust_account_id: int,
        amount: Decimal,
        transaction_type: TransactionType,
    ) -> PostingResult | None:
        existing = self.store.get_transaction_by_idempotency_key(idempotency_key)
        if existing is None:
            return None
        if (
            existing.client_ledger_id != client_ledger_id
            or existing.trust_account_id != trust_account_id
            or existing.amount != amount
            or existing.transaction_type != transaction_type
        ):
            raise IdempotencyConflictError(idempotency_key, existing.id)

        logger.info(
            "Idempotency key %s replayed transaction %s", idempotency_key, existing.id
        )
        return PostingResult(
            transaction=existing,
            ledger=self.store.get_client_ledger(existing.client_ledger_id),
            replayed=True,
        )

    def _replay_transfer(
        self,
        idempotency_key: str,
        source_ledger_id: int,
        destination_ledger_id: int,
        trust_account_id: int,
        amount: Decimal,
    ) -> TransferResult | None:
        withdrawal = self.store.get_transaction_by_idempotency_key(idempotency_key)
        if withdrawal is None:
            return None
        legs = (
            self.store.get_transfer_legs(withdrawal.transfer_id)
            if withdrawal.transfer_id else []
        )
        deposit = next(
            (leg for leg in legs if leg.transaction_type == TransactionType.DEPOSIT),
            None,
        )
        if (
            deposit is None
            or withdrawal.transaction_type != TransactionType.WITHDRAWAL
            or withdrawal.client_ledger_id != source_ledger_id
            or deposit.client_ledger_id != destination_ledger_id
            or withdrawal.trust_account_id != trust_account_id
            or withdrawal.amount != amount
        ):
            raise IdempotencyConflictError(idempotency_key, withdrawal.id)

        logger.info(
            "Idempotency key %s replayed transfer %s", idempotency_key, withdrawal.transfer_id
        )
        return TransferResult(
            transfer_id=withdrawal.transfer_id,
            withdrawal=withdrawal,
            deposit=deposit,
            source_ledger=self.store.get_client_ledger(source_ledger_id),
            destination_ledger=self.store.get_client_ledger(destination_ledger_id),
            replayed=True,
        )
