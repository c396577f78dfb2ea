"""circle ledger schema

Revision ID: 202610011200
Revises:
Create Date: 2026-10-01 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610011200"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "circles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "currency_code", sa.String(length=3), nullable=False, server_default="JPY"
        ),
        sa.Column("current_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("circle_id", sa.Integer(), sa.ForeignKey("circles.id"), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("circle_id", "name", name="uq_tag_circle_name"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("circle_id", sa.Integer(), sa.ForeignKey("circles.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("diff_from_previous", sa.Integer()),
        sa.Column(
            "expense_category",
            sa.Enum(
                "food",
                "daily",
                "transport",
                "entertainment",
                "utility",
                "medical",
                "other",
                name="expensecategory",
            ),
        ),
        sa.Column("place", sa.String(length=120)),
        sa.Column(
            "income_category",
            sa.Enum(
                "salary",
                "bonus",
                "investment",
                "transfer",
                "other",
                name="incomecategory",
            ),
        ),
        sa.Column("source", sa.String(length=120)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "kind = 'checkpoint' OR amount > 0", name="ck_entries_flow_amount_positive"
        ),
    )
    op.create_index(
        "ix_entries_circle_occurred",
        "ledger_entries",
        ["circle_id", "occurred_at", "id"],
    )
    op.create_index(
        "ix_entries_circle_kind_occurred",
        "ledger_entries",
        ["circle_id", "kind", "occurred_at"],
    )

    op.create_table(
        "entry_tags",
        sa.Column(
            "entry_id",
            sa.Integer(),
            sa.ForeignKey("ledger_entries.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "monthly_aggregates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("circle_id", sa.Integer(), sa.ForeignKey("circles.id"), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("expense_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expense_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("circle_id", "year", "month", name="uq_aggregate_circle_month"),
    )

    op.create_table(
        "balance_changes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("circle_id", sa.Integer(), sa.ForeignKey("circles.id"), nullable=False),
        sa.Column("user_id", sa.Integer()),
        sa.Column(
            "kind",
            sa.Enum(
                "checkpoint", "debit", "credit", "reconcile", name="balancechangekind"
            ),
            nullable=False,
        ),
        sa.Column("is_delete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("entry_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_balance_changes_circle", "balance_changes", ["circle_id", "id"])


def downgrade():
    op.drop_index("ix_balance_changes_circle", table_name="balance_changes")
    op.drop_table("balance_changes")
    op.drop_table("monthly_aggregates")
    op.drop_table("entry_tags")
    op.drop_index("ix_entries_circle_kind_occurred", table_name="ledger_entries")
    op.drop_index("ix_entries_circle_occurred", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("tags")
    op.drop_table("circles")
