"""transaction clearing and outstanding items

Revision ID: 0002_transaction_clearing
Revises: 0001_initial_iolta_schema
Create Date: 2026-10-18 15:00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0002_transaction_clearing"
down_revision: Union[str, Sequence[str], None] = "0001_initial_iolta_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("iolta_transactions", sa.Column("cleared_at", sa.DateTime(), nullable=True))
    op.add_column(
        "iolta_transactions", sa.Column("bank_reference", sa.String(100), nullable=True)
    )
    op.create_index(
        "ix_transactions_account_cleared",
        "iolta_transactions",
        ["trust_account_id", "cleared_at"],
    )

    op.add_column(
        "iolta_reconciliations",
        sa.Column("adjusted_bank_balance", sa.Numeric(19, 2), nullable=True),
    )
    op.add_column(
        "iolta_reconciliations",
        sa.Column("outstanding_checks", sa.JSON(), nullable=False, server_default="[]"),
    )
    op.add_column(
        "iolta_reconciliations",
        sa.Column("outstanding_deposits", sa.JSON(), nullable=False, server_default="[]"),
    )

    # Besides the reversal status flag, the only later write a
    # transaction accepts is clearing it, once.
    if op.get_bind().dialect.name == "postgresql":
        op.execute(
            """
            CREATE OR REPLACE FUNCTION prevent_iolta_transaction_mutation()
            RETURNS trigger AS $$
            BEGIN
                IF NEW.amount <> OLD.amount
                   OR NEW.transaction_type <> OLD.transaction_type
                   OR NEW.balance_after <> OLD.balance_after
                   OR NEW.client_ledger_id <> OLD.client_ledger_id
                   OR NEW.trust_account_id <> OLD.trust_account_id
                   OR NEW.created_at <> OLD.created_at THEN
                    RAISE EXCEPTION 'iolta_transactions amounts are immutable';
                END IF;
                IF OLD.cleared_at IS NOT NULL
                   AND (NEW.cleared_at IS DISTINCT FROM OLD.cleared_at
                        OR NEW.bank_reference IS DISTINCT FROM OLD.bank_reference) THEN
                    RAISE EXCEPTION 'iolta_transactions clearing is final';
                END IF;
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;
            """
        )


def downgrade() -> None:
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

    op.drop_column("iolta_reconciliations", "outstanding_deposits")
    op.drop_column("iolta_reconciliations", "outstanding_checks")
    op.drop_column("iolta_reconciliations", "adjusted_bank_balance")
    op.drop_index("ix_transactions_account_cleared", table_name="iolta_transactions")
    op.drop_column("iolta_transactions", "bank_reference")
    op.drop_column("iolta_transactions", "cleared_at")
