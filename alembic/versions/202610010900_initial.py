"""initial schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPES = ("income", "expense", "transfer")


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        sa.Column("color", sa.String(length=7)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )

    op.create_table(
        "connections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("institution_id", sa.String(length=120)),
        sa.Column("institution_name", sa.String(length=120), nullable=False),
        sa.Column("item_id", sa.String(length=120), nullable=False, unique=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "active", "error", "inactive", name="connectionstatus"
            ),
            nullable=False,
        ),
        sa.Column("last_sync_at", sa.DateTime()),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_connections_status_last_sync", "connections", ["status", "last_sync_at"]
    )
    op.create_index("ix_connections_user", "connections", ["user_id"])

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "checking",
                "savings",
                "investment",
                "credit_card",
                "other",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        sa.Column("bank_name", sa.String(length=120)),
        sa.Column("external_id", sa.String(length=120)),
        sa.Column("provider", sa.String(length=40)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_sync_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "external_id", name="uq_account_user_external"),
    )

    op.create_table(
        "recurring_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column("interval", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("next_run_date", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("tags_json", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("interval > 0", name="ck_template_interval_positive"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
    )
    op.create_index(
        "ix_templates_active_next_run",
        "recurring_templates",
        ["is_active", "next_run_date"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("external_id", sa.String(length=120), unique=True),
        sa.Column("notes", sa.Text()),
        sa.Column("tags_json", sa.Text()),
        sa.Column(
            "auto_categorized", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("confidence_score", sa.Float()),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "parent_template_id",
            sa.Integer(),
            sa.ForeignKey("recurring_templates.id"),
        ),
        sa.Column("status", sa.String(length=40)),
        sa.Column("payment_method", sa.String(length=40)),
        sa.Column("reference_number", sa.String(length=120)),
        sa.Column("mcc", sa.String(length=10)),
        sa.Column("bank_category", sa.String(length=120)),
        sa.Column("provider_code", sa.String(length=120)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "parent_template_id", "date", name="uq_txn_template_occurrence"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_type_date",
        "transactions",
        ["user_id", "type", "date"],
    )


def downgrade():
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_templates_active_next_run", table_name="recurring_templates")
    op.drop_table("recurring_templates")
    op.drop_table("accounts")
    op.drop_index("ix_connections_user", table_name="connections")
    op.drop_index("ix_connections_status_last_sync", table_name="connections")
    op.drop_table("connections")
    op.drop_table("categories")
