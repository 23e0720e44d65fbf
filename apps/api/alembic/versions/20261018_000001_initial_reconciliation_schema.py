"""create payment reconciliation schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("subscription_status", sa.String(), nullable=False),
        sa.Column("subscription_plan", sa.String(), nullable=True),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credit_balance", sa.Integer(), nullable=False),
        sa.Column("provider_customer_id", sa.String(), nullable=True),
        sa.Column("provider_subscription_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credit_balance >= 0", name="ck_accounts_credit_balance_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_accounts_email"), "accounts", ["email"], unique=True)
    op.create_index(op.f("ix_accounts_provider_customer_id"), "accounts", ["provider_customer_id"], unique=False)
    op.create_index(op.f("ix_accounts_provider_subscription_id"), "accounts", ["provider_subscription_id"], unique=False)

    op.create_table(
        "plans",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("plan_type", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("has_annual_pricing", sa.Boolean(), nullable=False),
        sa.Column("annual_price_cents", sa.Integer(), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("max_rollover_credits", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_plans_plan_type"), "plans", ["plan_type"], unique=True)

    op.create_table(
        "suppliers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("website", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("location", sa.String(), nullable=False),
        sa.Column("certifications", sa.JSON(), nullable=False),
        sa.Column("capabilities", sa.JSON(), nullable=False),
        sa.Column("lead_time", sa.String(), nullable=True),
        sa.Column("min_order_quantity", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_suppliers_category"), "suppliers", ["category"], unique=False)
    op.create_index(op.f("ix_suppliers_is_active"), "suppliers", ["is_active"], unique=False)

    op.create_table(
        "buyer_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("budget", sa.String(), nullable=True),
        sa.Column("quantity", sa.String(), nullable=True),
        sa.Column("timeline", sa.String(), nullable=True),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("requirements", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_buyer_requests_account_id"), "buyer_requests", ["account_id"], unique=False)
    op.create_index(op.f("ix_buyer_requests_email"), "buyer_requests", ["email"], unique=False)

    op.create_table(
        "managed_services",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("item_name", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("urgency", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("service_fee_amount_cents", sa.Integer(), nullable=False),
        sa.Column("service_fee_status", sa.String(), nullable=False),
        sa.Column("service_fee_payment_id", sa.String(), nullable=True),
        sa.Column("service_fee_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("savings_fee_amount_cents", sa.Integer(), nullable=True),
        sa.Column("savings_fee_status", sa.String(), nullable=False),
        sa.Column("savings_fee_payment_id", sa.String(), nullable=True),
        sa.Column("savings_fee_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_managed_services_account_id"), "managed_services", ["account_id"], unique=False)
    op.create_index(op.f("ix_managed_services_email"), "managed_services", ["email"], unique=False)

    op.create_table(
        "match_reports",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("preview_json", sa.JSON(), nullable=True),
        sa.Column("suppliers_json", sa.JSON(), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_record_id", sa.String(), nullable=True),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["request_id"], ["buyer_requests.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_match_reports_request_id"), "match_reports", ["request_id"], unique=True)
    op.create_index(op.f("ix_match_reports_email"), "match_reports", ["email"], unique=False)

    op.create_table(
        "payment_records",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("match_report_id", sa.String(), nullable=True),
        sa.Column("managed_service_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("provider_session_id", sa.String(), nullable=True),
        sa.Column("provider_payment_intent_id", sa.String(), nullable=True),
        sa.Column("provider_customer_id", sa.String(), nullable=True),
        sa.Column("provider_subscription_id", sa.String(), nullable=True),
        sa.Column("provider_invoice_id", sa.String(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("plan_type", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["match_report_id"], ["match_reports.id"]),
        sa.ForeignKeyConstraint(["managed_service_id"], ["managed_services.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_invoice_id"),
    )
    op.create_index(op.f("ix_payment_records_request_id"), "payment_records", ["request_id"], unique=False)
    op.create_index(op.f("ix_payment_records_match_report_id"), "payment_records", ["match_report_id"], unique=False)
    op.create_index(op.f("ix_payment_records_managed_service_id"), "payment_records", ["managed_service_id"], unique=False)
    op.create_index(op.f("ix_payment_records_email"), "payment_records", ["email"], unique=False)
    op.create_index(op.f("ix_payment_records_provider_session_id"), "payment_records", ["provider_session_id"], unique=True)
    op.create_index(
        op.f("ix_payment_records_provider_payment_intent_id"),
        "payment_records",
        ["provider_payment_intent_id"],
        unique=False,
    )
    op.create_index(op.f("ix_payment_records_status"), "payment_records", ["status"], unique=False)
    op.create_index(op.f("ix_payment_records_created_at"), "payment_records", ["created_at"], unique=False)

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("match_report_id", sa.String(), nullable=True),
        sa.Column("payment_record_id", sa.String(), nullable=True),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("credits_before", sa.Integer(), nullable=False),
        sa.Column("credits_after", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_credit_transactions_account_id"), "credit_transactions", ["account_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_email"), "credit_transactions", ["email"], unique=False)
    op.create_index(op.f("ix_credit_transactions_request_id"), "credit_transactions", ["request_id"], unique=False)
    op.create_index(
        op.f("ix_credit_transactions_payment_record_id"),
        "credit_transactions",
        ["payment_record_id"],
        unique=False,
    )
    op.create_index(op.f("ix_credit_transactions_created_at"), "credit_transactions", ["created_at"], unique=False)
    op.create_index(
        "ix_credit_transactions_account_created",
        "credit_transactions",
        ["account_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("credit_transactions")
    op.drop_table("payment_records")
    op.drop_table("match_reports")
    op.drop_table("managed_services")
    op.drop_table("buyer_requests")
    op.drop_table("suppliers")
    op.drop_table("plans")
    op.drop_table("accounts")
