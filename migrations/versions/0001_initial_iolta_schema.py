"""initial iolta ledger schema

Revision ID: 0001_initial_iolta_schema
Revises:
Create Date: 2026-10-18 09:00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_initial_iolta_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACCOUNT_STATUSES = ("ACTIVE", "INACTIVE", "CLOSED")


def upgrade() -> None:
    op.create_table(
        "iolta_trust_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("merchant_id", sa.Integer(), nullable=False),
        sa.Column("account_name", sa.String(255), nullable=False),
        sa.Column("bank_name", sa.String(255), nullable=False),
        sa.Column("account_number", sa.String(64), nullable=False),
        sa.Column("routing_number", sa.String(32), nullable=False),
        sa.Column("jurisdiction", sa.String(100), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*ACCOUNT_STATUSES, name="trust_account_status_enum"),
            nullable=False,
        ),
        sa.Column("balance", sa.Numeric(19, 2), nullable=False),
        sa.Column("last_reconciliation_date", sa.Date(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_trust_account_balance_nonnegative"),
    )
    op.create_index(
        "ix_iolta_trust_accounts_merchant_id", "iolta_trust_accounts", ["merchant_id"]
    )

    op.create_table(
        "iolta_client_ledgers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "trust_account_id",
            sa.Integer(),
            sa.ForeignKey("iolta_trust_accounts.id"),
            nullable=False,
        ),
        sa.Column("merchant_id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.String(100), nullable=False),
        sa.Column("client_name", sa.String(255), nullable=False),
        sa.Column("matter_name", sa.String(255), nullable=True),
        sa.Column("matter_number", sa.String(100), nullable=True),
        sa.Column("jurisdiction", sa.String(100), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*ACCOUNT_STATUSES, name="client_ledger_status_enum"),
            nullable=False,
        ),
        sa.Column("balance", sa.Numeric(19, 2), nullable=False),
        sa.Column("last_transaction_date", sa.DateTime(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("id", "trust_account_id", name="uq_ledger_id_trust_account"),
        sa.CheckConstraint("balance >= 0", name="ck_ledger_balance_nonnegative"),
    )
    op.create_index(
        "ix_iolta_client_ledgers_trust_account_id", "iolta_client_ledgers", ["trust_account_id"]
    )
    op.create_index(
        "ix_iolta_client_ledgers_merchant_id", "iolta_client_ledgers", ["merchant_id"]
    )
    op.create_index(
        "ix_iolta_client_ledgers_client_id", "iolta_client_ledgers", ["client_id"]
    )
    op.execute(
        """
        CREATE UNIQUE INDEX uq_active_ledger_client_matter
        ON iolta_client_ledgers (trust_account_id, client_id, coalesce(matter_number, ''))
        WHERE status = 'ACTIVE'
        """
    )

    op.create_table(
        "iolta_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.Uuid(), nullable=False, unique=True),
        sa.Column(
            "trust_account_id",
            sa.Integer(),
            sa.ForeignKey("iolta_trust_accounts.id"),
            nullable=False,
        ),
        sa.Column("client_ledger_id", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(100), nullable=True, unique=True),
        sa.Column(
            "transaction_type",
            sa.Enum(
                "DEPOSIT", "WITHDRAWAL", "FEE", "INTEREST",
                name="transaction_type_enum",
            ),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("COMPLETED", "REVERSED", name="transaction_status_enum"),
            nullable=False,
        ),
        sa.Column(
            "fund_type",
            sa.Enum(
                "RETAINER", "SETTLEMENT", "TRUST", "OPERATING", "OTHER",
                name="fund_type_enum",
            ),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(19, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(19, 2), nullable=False),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("check_number", sa.String(50), nullable=True),
        sa.Column("reference_number", sa.String(100), nullable=True),
        sa.Column("payee", sa.String(255), nullable=True),
        sa.Column("payor", sa.String(255), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column(
            "reversal_of_id",
            sa.Integer(),
            sa.ForeignKey("iolta_transactions.id"),
            nullable=True,
        ),
        sa.Column("transfer_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ["client_ledger_id", "trust_account_id"],
            ["iolta_client_ledgers.id", "iolta_client_ledgers.trust_account_id"],
            name="fk_transaction_ledger_trust_account",
        ),
        sa.CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
        sa.CheckConstraint(
            "balance_after >= 0", name="ck_transaction_balance_after_nonnegative"
        ),
    )
    op.create_index(
        "ix_iolta_transactions_trust_account_id", "iolta_transactions", ["trust_account_id"]
    )
    op.create_index(
        "ix_iolta_transactions_transfer_id", "iolta_transactions", ["transfer_id"]
    )
    op.create_index(
        "ix_transactions_ledger_order",
        "iolta_transactions",
        ["client_ledger_id", "created_at", "id"],
    )

    op.create_table(
        "iolta_reconciliations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "trust_account_id",
            sa.Integer(),
            sa.ForeignKey("iolta_trust_accounts.id"),
            nullable=False,
        ),
        sa.Column("reconciliation_date", sa.Date(), nullable=False),
        sa.Column("bank_balance", sa.Numeric(19, 2), nullable=True),
        sa.Column("book_balance", sa.Numeric(19, 2), nullable=False),
        sa.Column("client_ledger_total", sa.Numeric(19, 2), nullable=False),
        sa.Column("difference", sa.Numeric(19, 2), nullable=False),
        sa.Column("bank_difference", sa.Numeric(19, 2), nullable=True),
        sa.Column("is_balanced", sa.Boolean(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("COMPLETED", "DISCREPANCY", name="reconciliation_status_enum"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("reconciler_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_iolta_reconciliations_trust_account_id",
        "iolta_reconciliations",
        ["trust_account_id"],
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    # Transactions are append-only apart from the status flag a
    # reversal sets on the original.
    if op.get_bind().dialect.name == "postgresql":
        op.execute(
            """
            CREATE OR REPLACE FUNCTION prevent_iolta_transaction_mutation()
            RETURNS trigger AS $$
            BEGIN
                IF NEW.amount <> OLD.amount
                   OR NEW.transaction_type <> OLD.transaction_type
                   OR NEW.balance_after <> OLD.balance_after THEN
                    RAISE EXCEPTION 'iolta_transactions amounts are immutable';
                END IF;
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        op.execute(
            """
            CREATE TRIGGER trg_iolta_transactions_immutable
            BEFORE UPDATE ON iolta_transactions
            FOR EACH ROW
            EXECUTE FUNCTION prevent_iolta_transaction_mutation();
            """
        )
        op.execute(
            """
            CREATE OR REPLACE FUNCTION prevent_iolta_transaction_delete()
            RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'iolta_transactions is append-only';
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        op.execute(
            """
            CREATE TRIGGER trg_iolta_transactions_no_delete
            BEFORE DELETE ON iolta_transactions
            FOR EACH ROW
            EXECUTE FUNCTION prevent_iolta_transaction_delete();
            """
        )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS trg_iolta_transactions_no_delete ON iolta_transactions")
        op.execute("DROP TRIGGER IF EXISTS trg_iolta_transactions_immutable ON iolta_transactions")
        op.execute("DROP FUNCTION IF EXISTS prevent_iolta_transaction_delete()")
        op.execute("DROP FUNCTION IF EXISTS prevent_iolta_transaction_mutation()")

    op.drop_table("audit_log")
    op.drop_index("ix_iolta_reconciliations_trust_account_id", table_name="iolta_reconciliations")
    op.drop_table("iolta_reconciliations")
    op.drop_index("ix_transactions_ledger_order", table_name="iolta_transactions")
    op.drop_index("ix_iolta_transactions_transfer_id", table_name="iolta_transactions")
    op.drop_index("ix_iolta_transactions_trust_account_id", table_name="iolta_transactions")
    op.drop_table("iolta_transactions")
    op.execute("DROP INDEX IF EXISTS uq_active_ledger_client_matter")
    op.drop_index("ix_iolta_client_ledgers_client_id", table_name="iolta_client_ledgers")
    op.drop_index("ix_iolta_client_ledgers_merchant_id", table_name="iolta_client_ledgers")
    op.drop_index("ix_iolta_client_ledgers_trust_account_id", table_name="iolta_client_ledgers")
    op.drop_table("iolta_client_ledgers")
    op.drop_index("ix_iolta_trust_accounts_merchant_id", table_name="iolta_trust_accounts")
    op.drop_table("iolta_trust_accounts")

    bind = op.get_bind()
    for enum_name in (
        "reconciliation_status_enum",
        "fund_type_enum",
        "transaction_status_enum",
        "transaction_type_enum",
        "client_ledger_status_enum",
        "trust_account_status_enum",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
