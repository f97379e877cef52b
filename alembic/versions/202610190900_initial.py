"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False),
        sa.Column("institution_name", sa.String(length=255), nullable=False),
        sa.Column("account_name", sa.String(length=255), nullable=False),
        sa.Column(
            "account_type",
            sa.Enum("checking", "savings", "credit", "loan", name="accounttype"),
            nullable=False,
        ),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index("ix_bank_accounts_family_id", "bank_accounts", ["family_id"])

    op.create_table(
        "income_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "received_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("actual_date", sa.Date()),
        sa.Column(
            "status",
            sa.Enum("scheduled", "received", "cancelled", name="incomestatus"),
            nullable=False,
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
        sa.CheckConstraint(
            "received_amount_cents >= 0", name="ck_income_received_positive"
        ),
    )
    op.create_index(
        "ix_income_events_family_date", "income_events", ["family_id", "scheduled_date"]
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("target_percentage_bp", sa.Integer(), nullable=False),
        sa.Column("color", sa.String(length=7)),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint(
            "target_percentage_bp >= 0 AND target_percentage_bp <= 10000",
            name="ck_budget_category_percentage_range",
        ),
    )
    op.create_index(
        "ix_budget_categories_family_active",
        "budget_categories",
        ["family_id", "is_active"],
    )

    op.create_table(
        "budget_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False),
        sa.Column(
            "income_event_id",
            sa.Integer(),
            sa.ForeignKey("income_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "budget_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("percentage_bp", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "income_event_id", "budget_category_id", name="uq_allocation_event_category"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_allocation_amount_positive"),
    )

    op.create_table(
        "spending_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False),
        sa.Column(
            "budget_category_id", sa.Integer(), sa.ForeignKey("budget_categories.id")
        ),
        sa.Column(
            "parent_category_id", sa.Integer(), sa.ForeignKey("spending_categories.id")
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("color", sa.String(length=7)),
        sa.Column("icon", sa.String(length=50)),
        sa.Column("monthly_target_cents", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "family_id", "name", name="uq_spending_category_family_name"
        ),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False),
        sa.Column("payee", sa.String(length=255), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_date", sa.Date()),
        sa.Column(
            "status",
            sa.Enum("scheduled", "paid", "overdue", name="paymentstatus"),
            nullable=False,
        ),
        sa.Column(
            "spending_category_id", sa.Integer(), sa.ForeignKey("spending_categories.id")
        ),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_payment_amount_positive"),
    )
    op.create_index(
        "ix_payments_family_status_due", "payments", ["family_id", "status", "due_date"]
    )

    op.create_table(
        "payment_attributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False),
        sa.Column(
            "payment_id",
            sa.Integer(),
            sa.ForeignKey("payments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "income_event_id",
            sa.Integer(),
            sa.ForeignKey("income_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "attribution_type",
            sa.Enum("manual", "automatic", name="attributiontype"),
            nullable=False,
        ),
        sa.Column("created_by", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_attribution_amount_positive"),
    )
    op.create_index("ix_attributions_payment", "payment_attributions", ["payment_id"])
    op.create_index(
        "ix_attributions_income_event", "payment_attributions", ["income_event_id"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False),
        sa.Column(
            "bank_account_id",
            sa.Integer(),
            sa.ForeignKey("bank_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("merchant_name", sa.String(length=255)),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "spending_category_id", sa.Integer(), sa.ForeignKey("spending_categories.id")
        ),
        sa.Column(
            "user_categorized", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "category_confidence", sa.Float(), nullable=False, server_default="0"
        ),
        sa.Column("pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "matched_payment_id",
            sa.Integer(),
            sa.ForeignKey("payments.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "category_confidence >= 0 AND category_confidence <= 1",
            name="ck_transactions_confidence_range",
        ),
    )
    op.create_index("ix_transactions_family_date", "transactions", ["family_id", "date"])
    op.create_index(
        "ix_transactions_family_category_date",
        "transactions",
        ["family_id", "spending_category_id", "date"],
    )


def downgrade():
    op.drop_table("transactions")
    op.drop_table("payment_attributions")
    op.drop_table("payments")
    op.drop_table("spending_categories")
    op.drop_table("budget_allocations")
    op.drop_table("budget_categories")
    op.drop_table("income_events")
    op.drop_table("bank_accounts")
