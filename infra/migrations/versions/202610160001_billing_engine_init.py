"""billing lifecycle engine tables

Revision ID: 202610160001
Revises:
Create Date: 2026-10-16
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "202610160001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_tenant_id", "events", ["tenant_id"])
    op.create_index("ix_events_ts", "events", ["ts"])
    op.create_index("ix_events_actor_id", "events", ["actor_id"])
    op.create_index("ix_events_correlation_id", "events", ["correlation_id"])

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("billing_email", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tenants_name", "tenants", ["name"], unique=True)
    op.create_index("ix_tenants_created_at", "tenants", ["created_at"])

    op.create_table(
        "plans",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tier", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("monthly_price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("annual_price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        sa.Column("limits", sa.JSON(), nullable=False),
        sa.Column("requires_quote", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plans_tier", "plans", ["tier"], unique=True)
    op.create_index("ix_plans_is_active", "plans", ["is_active"])
    op.create_index("ix_plans_created_at", "plans", ["created_at"])

    op.create_table(
        "tenant_plan_states",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("billing_cycle", sa.String(length=20), nullable=True),
        sa.Column("external_customer_id", sa.String(), nullable=True),
        sa.Column("external_subscription_id", sa.String(), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("quote_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quote_approved_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tenant_plan_states_tenant_id", "tenant_plan_states", ["tenant_id"], unique=True)
    op.create_index("ix_tenant_plan_states_plan_id", "tenant_plan_states", ["plan_id"])
    op.create_index("ix_tenant_plan_states_status", "tenant_plan_states", ["status"])
    op.create_index(
        "ix_tenant_plan_states_external_customer_id",
        "tenant_plan_states",
        ["external_customer_id"],
    )
    op.create_index(
        "ix_tenant_plan_states_external_subscription_id",
        "tenant_plan_states",
        ["external_subscription_id"],
    )
    op.create_index("ix_tenant_plan_states_created_at", "tenant_plan_states", ["created_at"])
    op.create_index("ix_tenant_plan_states_updated_at", "tenant_plan_states", ["updated_at"])
    op.create_index(
        "ix_tenant_plan_states_tenant_status",
        "tenant_plan_states",
        ["tenant_id", "status"],
    )

    op.create_table(
        "plan_history",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("old_plan_id", sa.String(), nullable=True),
        sa.Column("new_plan_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["old_plan_id"], ["plans.id"]),
        sa.ForeignKeyConstraint(["new_plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plan_history_tenant_id", "plan_history", ["tenant_id"])
    op.create_index("ix_plan_history_actor_id", "plan_history", ["actor_id"])
    op.create_index("ix_plan_history_created_at", "plan_history", ["created_at"])
    op.create_index("ix_plan_history_tenant_created", "plan_history", ["tenant_id", "created_at"])

    op.create_table(
        "quote_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("requested_plan_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("requested_by", sa.String(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolution_note", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["requested_plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_quote_requests_tenant_id", "quote_requests", ["tenant_id"])
    op.create_index("ix_quote_requests_status", "quote_requests", ["status"])
    op.create_index("ix_quote_requests_created_at", "quote_requests", ["created_at"])
    op.create_index(
        "uq_quote_requests_tenant_open",
        "quote_requests",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status = 'OPEN'"),
        sqlite_where=sa.text("status = 'OPEN'"),
    )

    op.create_table(
        "plan_overrides",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("original_plan_id", sa.String(), nullable=False),
        sa.Column("original_status", sa.String(length=20), nullable=False),
        sa.Column("override_plan_id", sa.String(), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["original_plan_id"], ["plans.id"]),
        sa.ForeignKeyConstraint(["override_plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plan_overrides_tenant_id", "plan_overrides", ["tenant_id"])
    op.create_index("ix_plan_overrides_created_at", "plan_overrides", ["created_at"])
    op.create_index("ix_plan_overrides_active_end", "plan_overrides", ["is_active", "end_at"])
    op.create_index(
        "uq_plan_overrides_tenant_active",
        "plan_overrides",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )

    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("external_event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_processed_webhook_events_external_event_id",
        "processed_webhook_events",
        ["external_event_id"],
        unique=True,
    )
    op.create_index("ix_processed_webhook_events_event_type", "processed_webhook_events", ["event_type"])
    op.create_index(
        "ix_processed_webhook_events_processed_at",
        "processed_webhook_events",
        ["processed_at"],
    )

    op.create_table(
        "billing_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("external_session_id", sa.String(), nullable=True),
        sa.Column("external_subscription_id", sa.String(), nullable=True),
        sa.Column("external_invoice_id", sa.String(), nullable=True),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("billing_cycle", sa.String(length=20), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_session_id", name="uq_billing_transactions_session"),
        sa.UniqueConstraint("external_invoice_id", name="uq_billing_transactions_invoice"),
    )
    op.create_index("ix_billing_transactions_tenant_id", "billing_transactions", ["tenant_id"])
    op.create_index("ix_billing_transactions_status", "billing_transactions", ["status"])
    op.create_index(
        "ix_billing_transactions_external_subscription_id",
        "billing_transactions",
        ["external_subscription_id"],
    )
    op.create_index("ix_billing_transactions_created_at", "billing_transactions", ["created_at"])

    op.create_table(
        "billing_invoices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("invoice_number", sa.String(), nullable=False),
        sa.Column("document_locator", sa.String(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["transaction_id"], ["billing_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id", name="uq_billing_invoices_transaction"),
        sa.UniqueConstraint("invoice_number", name="uq_billing_invoices_number"),
    )
    op.create_index("ix_billing_invoices_tenant_id", "billing_invoices", ["tenant_id"])
    op.create_index("ix_billing_invoices_created_at", "billing_invoices", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_billing_invoices_created_at", table_name="billing_invoices")
    op.drop_index("ix_billing_invoices_tenant_id", table_name="billing_invoices")
    op.drop_table("billing_invoices")

    op.drop_index("ix_billing_transactions_created_at", table_name="billing_transactions")
    op.drop_index("ix_billing_transactions_external_subscription_id", table_name="billing_transactions")
    op.drop_index("ix_billing_transactions_status", table_name="billing_transactions")
    op.drop_index("ix_billing_transactions_tenant_id", table_name="billing_transactions")
    op.drop_table("billing_transactions")

    op.drop_index("ix_processed_webhook_events_processed_at", table_name="processed_webhook_events")
    op.drop_index("ix_processed_webhook_events_event_type", table_name="processed_webhook_events")
    op.drop_index("ix_processed_webhook_events_external_event_id", table_name="processed_webhook_events")
    op.drop_table("processed_webhook_events")

    op.drop_index("uq_plan_overrides_tenant_active", table_name="plan_overrides")
    op.drop_index("ix_plan_overrides_active_end", table_name="plan_overrides")
    op.drop_index("ix_plan_overrides_created_at", table_name="plan_overrides")
    op.drop_index("ix_plan_overrides_tenant_id", table_name="plan_overrides")
    op.drop_table("plan_overrides")

    op.drop_index("uq_quote_requests_tenant_open", table_name="quote_requests")
    op.drop_index("ix_quote_requests_created_at", table_name="quote_requests")
    op.drop_index("ix_quote_requests_status", table_name="quote_requests")
    op.drop_index("ix_quote_requests_tenant_id", table_name="quote_requests")
    op.drop_table("quote_requests")

    op.drop_index("ix_plan_history_tenant_created", table_name="plan_history")
    op.drop_index("ix_plan_history_created_at", table_name="plan_history")
    op.drop_index("ix_plan_history_actor_id", table_name="plan_history")
    op.drop_index("ix_plan_history_tenant_id", table_name="plan_history")
    op.drop_table("plan_history")

    op.drop_index("ix_tenant_plan_states_tenant_status", table_name="tenant_plan_states")
    op.drop_index("ix_tenant_plan_states_updated_at", table_name="tenant_plan_states")
    op.drop_index("ix_tenant_plan_states_created_at", table_name="tenant_plan_states")
    op.drop_index("ix_tenant_plan_states_external_subscription_id", table_name="tenant_plan_states")
    op.drop_index("ix_tenant_plan_states_external_customer_id", table_name="tenant_plan_states")
    op.drop_index("ix_tenant_plan_states_status", table_name="tenant_plan_states")
    op.drop_index("ix_tenant_plan_states_plan_id", table_name="tenant_plan_states")
    op.drop_index("ix_tenant_plan_states_tenant_id", table_name="tenant_plan_states")
    op.drop_table("tenant_plan_states")

    op.drop_index("ix_plans_created_at", table_name="plans")
    op.drop_index("ix_plans_is_active", table_name="plans")
    op.drop_index("ix_plans_tier", table_name="plans")
    op.drop_table("plans")

    op.drop_index("ix_tenants_created_at", table_name="tenants")
    op.drop_index("ix_tenants_name", table_name="tenants")
    op.drop_table("tenants")

    op.drop_index("ix_events_correlation_id", table_name="events")
    op.drop_index("ix_events_actor_id", table_name="events")
    op.drop_index("ix_events_ts", table_name="events")
    op.drop_index("ix_events_tenant_id", table_name="events")
    op.drop_index("ix_events_event_type", table_name="events")
    op.drop_table("events")
