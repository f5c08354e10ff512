"""
Tests for the TransactionPoster: postings, transfers, reversals,
idempotency, atomicity and the balance recompute.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, text, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from iolta_ledger.exceptions import (
    ConcurrencyConflictError,
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransactionTypeError,
    LedgerNotFoundError,
    LedgerStateError,
    StorageError,
    TransactionNotFoundError,
    TrustAccountMismatchError,
    ValidationError,
)
from iolta_ledger.models.audit_log import AuditLog
from iolta_ledger.models.client_ledger import ClientLedger
from iolta_ledger.models.enums import (
    AccountStatus,
    TransactionStatus,
    TransactionType,
)
from iolta_ledger.models.transaction import Transaction
from iolta_ledger.schemas.trust_account import (
    ClientLedgerCreate,
    StatusUpdate,
    TrustAccountCreate,
)
from iolta_ledger.services.transaction_poster import PostingMetadata, TransactionPoster


def setup_ledger(iolta_service, db_session, client_id="C-100", account=None):
    """Helper: trust account (created if needed) plus one active ledger."""
    if account is None:
        account = iolta_service.create_trust_account(TrustAccountCreate(
            merchant_id=7,
            account_name="Smith & Jones IOLTA",
            bank_name="First Bank",
            account_number="000123456",
            routing_number="021000021",
            jurisdiction="NY",
        ))
    ledger = iolta_service.create_client_ledger(account.id, ClientLedgerCreate(
        client_id=client_id,
        client_name="Jane Client",
        matter_number=f"M-{client_id}",
        jurisdiction="NY",
    ))
    db_session.commit()
    return account, ledger


def transaction_count(db_session):
    return db_session.execute(select(func.count(Transaction.id))).scalar_one()


def bump_version(db_session, table, row_id):
    """Helper: write a row the way another session would, behind the ORM's back."""
    db_session.connection().execute(
        text(f"UPDATE {table} SET version = version + 1 WHERE id = :id"),
        {"id": row_id},
    )


class TestPostTransaction:

    def test_deposit_sets_balance_and_snapshot(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)

        result = poster.post_transaction(
            ledger.id, account.id, Decimal("1000.00"), TransactionType.DEPOSIT
        )
        db_session.commit()

        assert result.replayed is False
        assert result.transaction.balance_after == Decimal("1000.00")
        assert result.transaction.status == TransactionStatus.COMPLETED
        assert result.ledger.balance == Decimal("1000.00")
        assert account.balance == Decimal("1000.00")

    def test_withdrawal_within_balance(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "1000.00", "deposit")

        result = poster.post_transaction(ledger.id, account.id, "300.00", "withdrawal")
        db_session.commit()

        assert result.transaction.balance_after == Decimal("700.00")
        assert ledger.balance == Decimal("700.00")
        assert account.balance == Decimal("700.00")

    def test_overdraft_is_rejected_without_writes(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "1000.00", "deposit")
        poster.post_transaction(ledger.id, account.id, "300.00", "withdrawal")
        db_session.commit()
        before = transaction_count(db_session)

        with pytest.raises(InsufficientFundsError) as excinfo:
            poster.post_transaction(ledger.id, account.id, "800.00", "withdrawal")

        assert excinfo.value.available == Decimal("700.00")
        assert excinfo.value.requested == Decimal("800.00")
        assert transaction_count(db_session) == before
        assert ledger.balance == Decimal("700.00")
        assert account.balance == Decimal("700.00")

    def test_fee_cannot_exceed_balance(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        with pytest.raises(InsufficientFundsError):
            poster.post_transaction(ledger.id, account.id, "0.01", "fee")

    def test_withdrawal_of_exact_balance_leaves_zero(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "55.55", "deposit")
        result = poster.post_transaction(ledger.id, account.id, "55.55", "withdrawal")
        assert result.transaction.balance_after == Decimal("0.00")

    def test_metadata_is_recorded(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        result = poster.post_transaction(
            ledger.id, account.id, "2500.00", "deposit",
            metadata=PostingMetadata(
                description="Settlement proceeds",
                check_number="1042",
                payor="Acme Insurance",
                created_by=3,
            ),
        )
        assert result.transaction.description == "Settlement proceeds"
        assert result.transaction.check_number == "1042"
        assert result.transaction.payor == "Acme Insurance"
        assert result.transaction.created_by == 3

    @pytest.mark.parametrize("amount", ["0", "-5.00", "10.005", "1e20"])
    def test_invalid_amount(self, iolta_service, poster, db_session, amount):
        account, ledger = setup_ledger(iolta_service, db_session)
        with pytest.raises(InvalidAmountError):
            poster.post_transaction(ledger.id, account.id, amount, "deposit")

    def test_invalid_type(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        with pytest.raises(InvalidTransactionTypeError):
            poster.post_transaction(ledger.id, account.id, "10.00", "refund")

    def test_unknown_ledger(self, iolta_service, poster, db_session):
        account, _ = setup_ledger(iolta_service, db_session)
        with pytest.raises(LedgerNotFoundError):
            poster.post_transaction(9999, account.id, "10.00", "deposit")

    def test_ledger_of_another_account_is_rejected(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        other = iolta_service.create_trust_account(TrustAccountCreate(
            merchant_id=7,
            account_name="Second IOLTA",
            bank_name="Other Bank",
            account_number="999",
            routing_number="111",
            jurisdiction="NJ",
        ))
        db_session.commit()

        with pytest.raises(TrustAccountMismatchError):
            poster.post_transaction(ledger.id, other.id, "10.00", "deposit")
        assert transaction_count(db_session) == 0

    def test_closed_ledger_rejects_postings(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        iolta_service.change_client_ledger_status(
            ledger.id, StatusUpdate(new_status=AccountStatus.CLOSED)
        )
        db_session.commit()

        with pytest.raises(LedgerStateError, match="closed"):
            poster.post_transaction(ledger.id, account.id, "10.00", "deposit")

    def test_inactive_account_rejects_postings(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        iolta_service.change_trust_account_status(
            account.id, StatusUpdate(new_status=AccountStatus.INACTIVE)
        )
        db_session.commit()

        with pytest.raises(LedgerStateError, match="inactive"):
            poster.post_transaction(ledger.id, account.id, "10.00", "deposit")

    def test_posting_writes_audit_row(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "10.00", "deposit")
        db_session.commit()

        events = db_session.execute(
            select(AuditLog.event_type).where(AuditLog.event_type == "transaction.posted")
        ).scalars().all()
        assert len(events) == 1


class TestAtomicity:

    def test_failure_after_flush_rolls_back_every_write(
        self, iolta_service, poster, store, db_session, monkeypatch
    ):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "100.00", "deposit")
        db_session.commit()

        real_flush = store.flush

        def failing_flush():
            real_flush()
            raise OperationalError("UPDATE", {}, Exception("connection lost"))

        monkeypatch.setattr(store, "flush", failing_flush)

        with pytest.raises(StorageError):
            poster.post_transaction(ledger.id, account.id, "40.00", "deposit")

        monkeypatch.undo()
        assert transaction_count(db_session) == 1
        assert db_session.get(ClientLedger, ledger.id).balance == Decimal("100.00")
        assert store.get_trust_account(account.id).balance == Decimal("100.00")

    def test_rejection_inside_transfer_leaves_both_ledgers(
        self, iolta_service, poster, db_session
    ):
        account, source = setup_ledger(iolta_service, db_session, client_id="C-1")
        _, destination = setup_ledger(iolta_service, db_session, client_id="C-2", account=account)
        poster.post_transaction(source.id, account.id, "50.00", "deposit")
        db_session.commit()

        with pytest.raises(InsufficientFundsError):
            poster.post_transfer(source.id, destination.id, account.id, "80.00")

        assert source.balance == Decimal("50.00")
        assert destination.balance == Decimal("0.00")
        assert transaction_count(db_session) == 1


class TestConcurrencyRetry:

    def test_stale_copy_cannot_overwrite_a_newer_row(self, iolta_service, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        bump_version(db_session, "iolta_client_ledgers", ledger.id)

        ledger.balance = Decimal("999.00")

        with pytest.raises(StaleDataError):
            db_session.flush()

    def test_conflicting_write_is_retried_on_a_fresh_row(
        self, iolta_service, poster, store, db_session, monkeypatch
    ):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "100.00", "deposit")
        db_session.commit()
        real_lock = store.lock_client_ledger
        calls = {"count": 0}

        def lock_then_lose_race(client_ledger_id):
            locked = real_lock(client_ledger_id)
            calls["count"] += 1
            if calls["count"] == 1:
                # Another writer commits between our read and our write.
                bump_version(db_session, "iolta_client_ledgers", client_ledger_id)
            return locked

        monkeypatch.setattr(store, "lock_client_ledger", lock_then_lose_race)

        result = poster.post_transaction(ledger.id, account.id, "25.00", "deposit")
        db_session.commit()

        assert calls["count"] == 2
        assert result.transaction.balance_after == Decimal("125.00")
        assert transaction_count(db_session) == 2
        assert db_session.get(ClientLedger, ledger.id).balance == Decimal("125.00")
        assert store.get_trust_account(account.id).balance == Decimal("125.00")

    def test_stale_write_is_retried(
        self, iolta_service, poster, store, db_session, monkeypatch
    ):
        account, ledger = setup_ledger(iolta_service, db_session)
        real_lock = store.lock_client_ledger
        calls = {"count": 0}

        def flaky_lock(client_ledger_id):
            calls["count"] += 1
            if calls["count"] == 1:
                raise StaleDataError("version mismatch")
            return real_lock(client_ledger_id)

        monkeypatch.setattr(store, "lock_client_ledger", flaky_lock)

        result = poster.post_transaction(ledger.id, account.id, "75.00", "deposit")

        assert calls["count"] == 2
        assert result.transaction.balance_after == Decimal("75.00")
        assert transaction_count(db_session) == 1

    def test_gives_up_after_max_attempts(
        self, iolta_service, store, db_session, clock, monkeypatch
    ):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster = TransactionPoster(store, clock=clock, max_attempts=2)

        def always_stale(client_ledger_id):
            raise StaleDataError("version mismatch")

        monkeypatch.setattr(store, "lock_client_ledger", always_stale)

        with pytest.raises(ConcurrencyConflictError) as excinfo:
            poster.post_transaction(ledger.id, account.id, "75.00", "deposit")

        assert excinfo.value.details == {"attempts": 2}
        assert excinfo.value.user_message == "The ledger was busy. Please try again."
        assert transaction_count(db_session) == 0


class TestAccountContention:

    def test_postings_never_lock_the_account_row(
        self, iolta_service, poster, store, db_session, monkeypatch
    ):
        account, source = setup_ledger(iolta_service, db_session, client_id="C-1")
        _, destination = setup_ledger(iolta_service, db_session, client_id="C-2", account=account)

        def no_account_lock(trust_account_id):
            raise AssertionError("account row locked by a posting")

        monkeypatch.setattr(store, "lock_trust_account", no_account_lock)

        poster.post_transaction(source.id, account.id, "300.00", "deposit")
        poster.post_transfer(source.id, destination.id, account.id, "100.00")
        withdrawal = poster.post_transaction(destination.id, account.id, "40.00", "withdrawal")
        poster.reverse_transaction(withdrawal.transaction.id)
        db_session.commit()

        assert account.balance == Decimal("300.00")
        assert source.balance == Decimal("200.00")
        assert destination.balance == Decimal("100.00")

    def test_account_closed_mid_posting_is_rejected(
        self, iolta_service, poster, store, db_session, monkeypatch
    ):
        account, ledger = setup_ledger(iolta_service, db_session)
        stale = store.get_trust_account(account.id)
        assert stale.status == AccountStatus.ACTIVE
        db_session.connection().execute(
            text("UPDATE iolta_trust_accounts SET status = 'CLOSED' WHERE id = :id"),
            {"id": account.id},
        )
        monkeypatch.setattr(store, "read_trust_account", lambda trust_account_id: stale)

        with pytest.raises(LedgerStateError, match="no longer active"):
            poster.post_transaction(ledger.id, account.id, "10.00", "deposit")

        monkeypatch.undo()
        assert transaction_count(db_session) == 0
        assert db_session.get(ClientLedger, ledger.id).balance == Decimal("0.00")

    def test_account_balance_bumps_version(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        version_before = account.version

        poster.post_transaction(ledger.id, account.id, "10.00", "deposit")

        assert account.version == version_before + 1


class TestPostingOrder:

    def test_clock_stepping_back_keeps_posting_order(
        self, iolta_service, poster, db_session, clock
    ):
        account, ledger = setup_ledger(iolta_service, db_session)
        first = poster.post_transaction(ledger.id, account.id, "100.00", "deposit")
        posted_at = first.transaction.created_at
        clock.set(posted_at - timedelta(seconds=5))

        second = poster.post_transaction(ledger.id, account.id, "100.00", "withdrawal")
        db_session.commit()

        assert second.transaction.created_at == posted_at
        history = iolta_service.list_ledger_transactions(ledger.id)
        assert [t.id for t in history] == [first.transaction.id, second.transaction.id]
        assert [t.balance_after for t in history] == [Decimal("100.00"), Decimal("0.00")]

        report = poster.recompute_balances(account.id)
        assert report.snapshot_mismatches == []
        assert report.has_drift is False

    def test_transfer_legs_follow_the_later_ledger(
        self, iolta_service, poster, db_session, clock
    ):
        account, source = setup_ledger(iolta_service, db_session, client_id="C-1")
        _, destination = setup_ledger(iolta_service, db_session, client_id="C-2", account=account)
        deposit = poster.post_transaction(source.id, account.id, "80.00", "deposit")
        posted_at = deposit.transaction.created_at
        clock.set(posted_at - timedelta(minutes=1))

        transfer = poster.post_transfer(source.id, destination.id, account.id, "30.00")

        assert transfer.withdrawal.created_at == posted_at
        assert transfer.deposit.created_at == posted_at
        assert poster.recompute_balances(account.id).snapshot_mismatches == []

    def test_clock_moving_forward_is_used_as_is(self, iolta_service, poster, db_session, clock):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "10.00", "deposit")
        later = clock.advance(hours=1)

        result = poster.post_transaction(ledger.id, account.id, "10.00", "deposit")

        assert result.transaction.created_at == later
        assert ledger.last_transaction_date == later


class TestAmountLimits:

    def test_amount_beyond_column_precision_is_rejected_before_any_write(
        self, iolta_service, poster, store, db_session, monkeypatch
    ):
        account, ledger = setup_ledger(iolta_service, db_session)

        def no_lock(client_ledger_id):
            raise AssertionError("database touched")

        monkeypatch.setattr(store, "lock_client_ledger", no_lock)

        with pytest.raises(InvalidAmountError, match="largest supported value"):
            poster.post_transaction(ledger.id, account.id, "1e20", "deposit")

    def test_balance_beyond_column_precision_is_rejected(
        self, iolta_service, poster, db_session
    ):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "99999999999999999.99", "deposit")

        with pytest.raises(InvalidAmountError, match="largest supported balance"):
            poster.post_transaction(ledger.id, account.id, "0.01", "deposit")

        assert transaction_count(db_session) == 1


class TestIdempotency:

    def test_same_key_replays_original(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        first = poster.post_transaction(
            ledger.id, account.id, "500.00", "deposit", idempotency_key="dep-1"
        )
        db_session.commit()

        second = poster.post_transaction(
            ledger.id, account.id, "500.00", "deposit", idempotency_key="dep-1"
        )

        assert second.replayed is True
        assert second.transaction.id == first.transaction.id
        assert ledger.balance == Decimal("500.00")
        assert transaction_count(db_session) == 1

    def test_same_key_different_payload_conflicts(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(
            ledger.id, account.id, "500.00", "deposit", idempotency_key="dep-1"
        )

        with pytest.raises(IdempotencyConflictError):
            poster.post_transaction(
                ledger.id, account.id, "501.00", "deposit", idempotency_key="dep-1"
            )


class TestTransfer:

    def test_transfer_moves_funds_between_ledgers(self, iolta_service, poster, db_session):
        account, source = setup_ledger(iolta_service, db_session, client_id="C-1")
        _, destination = setup_ledger(iolta_service, db_session, client_id="C-2", account=account)
        poster.post_transaction(source.id, account.id, "400.00", "deposit")

        result = poster.post_transfer(source.id, destination.id, account.id, "150.00")
        db_session.commit()

        assert result.withdrawal.transfer_id == result.deposit.transfer_id == result.transfer_id
        assert result.withdrawal.balance_after == Decimal("250.00")
        assert result.deposit.balance_after == Decimal("150.00")
        assert source.balance == Decimal("250.00")
        assert destination.balance == Decimal("150.00")
        assert account.balance == Decimal("400.00")

    def test_transfer_to_same_ledger_is_rejected(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        with pytest.raises(ValidationError):
            poster.post_transfer(ledger.id, ledger.id, account.id, "10.00")

    def test_transfer_replay(self, iolta_service, poster, db_session):
        account, source = setup_ledger(iolta_service, db_session, client_id="C-1")
        _, destination = setup_ledger(iolta_service, db_session, client_id="C-2", account=account)
        poster.post_transaction(source.id, account.id, "400.00", "deposit")
        first = poster.post_transfer(
            source.id, destination.id, account.id, "100.00", idempotency_key="xfer-1"
        )

        second = poster.post_transfer(
            source.id, destination.id, account.id, "100.00", idempotency_key="xfer-1"
        )

        assert second.replayed is True
        assert second.transfer_id == first.transfer_id
        assert source.balance == Decimal("300.00")


class TestReversal:

    def test_reversing_a_deposit(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        original = poster.post_transaction(ledger.id, account.id, "200.00", "deposit")

        result = poster.reverse_transaction(original.transaction.id)
        db_session.commit()

        assert result.transaction.transaction_type == TransactionType.WITHDRAWAL
        assert result.transaction.reversal_of_id == original.transaction.id
        assert result.transaction.balance_after == Decimal("0.00")
        assert original.transaction.status == TransactionStatus.REVERSED
        # The original's own figures never change.
        assert original.transaction.amount == Decimal("200.00")
        assert original.transaction.balance_after == Decimal("200.00")
        assert account.balance == Decimal("0.00")

    def test_reversing_a_fee_posts_interest(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "100.00", "deposit")
        fee = poster.post_transaction(ledger.id, account.id, "15.00", "fee")

        result = poster.reverse_transaction(fee.transaction.id)

        assert result.transaction.transaction_type == TransactionType.INTEREST
        assert ledger.balance == Decimal("100.00")

    def test_cannot_reverse_twice(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        original = poster.post_transaction(ledger.id, account.id, "200.00", "deposit")
        poster.reverse_transaction(original.transaction.id)

        with pytest.raises(LedgerStateError, match="already been reversed"):
            poster.reverse_transaction(original.transaction.id)

    def test_cannot_reverse_a_reversal(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        original = poster.post_transaction(ledger.id, account.id, "200.00", "deposit")
        reversal = poster.reverse_transaction(original.transaction.id)

        with pytest.raises(LedgerStateError, match="itself a reversal"):
            poster.reverse_transaction(reversal.transaction.id)

    def test_cannot_reverse_transfer_leg(self, iolta_service, poster, db_session):
        account, source = setup_ledger(iolta_service, db_session, client_id="C-1")
        _, destination = setup_ledger(iolta_service, db_session, client_id="C-2", account=account)
        poster.post_transaction(source.id, account.id, "100.00", "deposit")
        transfer = poster.post_transfer(source.id, destination.id, account.id, "100.00")

        with pytest.raises(LedgerStateError, match="transfer"):
            poster.reverse_transaction(transfer.deposit.id)

    def test_reversing_disbursed_deposit_fails(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        deposit = poster.post_transaction(ledger.id, account.id, "200.00", "deposit")
        poster.post_transaction(ledger.id, account.id, "150.00", "withdrawal")

        with pytest.raises(InsufficientFundsError):
            poster.reverse_transaction(deposit.transaction.id)
        assert deposit.transaction.status == TransactionStatus.COMPLETED

    def test_unknown_transaction(self, poster):
        with pytest.raises(TransactionNotFoundError):
            poster.reverse_transaction(424242)


class TestRecomputeBalances:

    def test_healthy_account_is_a_no_op(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "300.00", "deposit")
        poster.post_transaction(ledger.id, account.id, "20.00", "fee")
        db_session.commit()
        version_before = ledger.version

        result = poster.recompute_balances(account.id, apply=True)

        assert result.has_drift is False
        assert result.applied is False
        assert result.snapshot_mismatches == []
        assert ledger.balance == Decimal("280.00")
        assert ledger.version == version_before

    def test_drift_is_reported_then_repaired(self, iolta_service, poster, db_session):
        account, ledger = setup_ledger(iolta_service, db_session)
        poster.post_transaction(ledger.id, account.id, "300.00", "deposit")
        db_session.commit()
        db_session.execute(
            update(ClientLedger)
            .where(ClientLedger.id == ledger.id)
            .values(balance=Decimal("310.00"))
        )
        db_session.commit()

        report = poster.recompute_balances(account.id)
        assert report.applied is False
        assert len(report.ledger_drifts) == 1
        assert report.ledger_drifts[0].cached_balance == Decimal("310.00")
        assert report.ledger_drifts[0].computed_balance == Decimal("300.00")

        repaired = poster.recompute_balances(account.id, apply=True)
        db_session.commit()
        assert repaired.applied is True
        assert db_session.get(ClientLedger, ledger.id).balance == Decimal("300.00")

        again = poster.recompute_balances(account.id, apply=True)
        assert again.has_drift is False
