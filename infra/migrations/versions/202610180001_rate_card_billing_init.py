"""rate cards, contract links, billable activities and invoices

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610180001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_customer_id", "events", ["customer_id"])
    op.create_index("ix_events_ts", "events", ["ts"])
    op.create_index("ix_events_actor_id", "events", ["actor_id"])
    op.create_index("ix_events_correlation_id", "events", ["correlation_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_ts", "audit_logs", ["ts"])

    op.create_table(
        "customers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_customers_code", "customers", ["code"], unique=True)
    op.create_index("ix_customers_name", "customers", ["name"])
    op.create_index("ix_customers_created_at", "customers", ["created_at"])

    op.create_table(
        "contracts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("contract_number", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("DRAFT", "ACTIVE", "EXPIRED", "TERMINATED", name="contractstatus", native_enum=False),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_contracts_customer_id", "contracts", ["customer_id"])
    op.create_index("ix_contracts_contract_number", "contracts", ["contract_number"], unique=True)
    op.create_index("ix_contracts_status", "contracts", ["status"])
    op.create_index("ix_contracts_created_at", "contracts", ["created_at"])

    op.create_table(
        "rate_cards",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column(
            "rate_card_type",
            sa.Enum("STANDARD", "ADJUSTMENT", name="ratecardtype", native_enum=False),
            nullable=False,
        ),
        sa.Column("parent_rate_card_id", sa.String(), nullable=True),
        sa.Column("supersedes_id", sa.String(), nullable=True),
        sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rates", sa.JSON(), nullable=False),
        sa.Column("billing_cycles", sa.JSON(), nullable=False),
        sa.Column("minimum_monthly_charge", sa.Numeric(12, 2), nullable=True),
        sa.Column("based_on_template", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_by", sa.String(), nullable=True),
        sa.Column("archived_reason", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["parent_rate_card_id"], ["rate_cards.id"]),
        sa.ForeignKeyConstraint(["supersedes_id"], ["rate_cards.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rate_cards_customer_id", "rate_cards", ["customer_id"])
    op.create_index("ix_rate_cards_rate_card_type", "rate_cards", ["rate_card_type"])
    op.create_index("ix_rate_cards_parent_rate_card_id", "rate_cards", ["parent_rate_card_id"])
    op.create_index("ix_rate_cards_supersedes_id", "rate_cards", ["supersedes_id"])
    op.create_index("ix_rate_cards_effective_date", "rate_cards", ["effective_date"])
    op.create_index("ix_rate_cards_expires_date", "rate_cards", ["expires_date"])
    op.create_index("ix_rate_cards_is_active", "rate_cards", ["is_active"])
    op.create_index("ix_rate_cards_deactivated_at", "rate_cards", ["deactivated_at"])
    op.create_index("ix_rate_cards_archived_at", "rate_cards", ["archived_at"])
    op.create_index("ix_rate_cards_created_by", "rate_cards", ["created_by"])
    op.create_index("ix_rate_cards_created_at", "rate_cards", ["created_at"])
    op.create_index("ix_rate_cards_updated_at", "rate_cards", ["updated_at"])
    op.create_index("ix_rate_cards_customer_active", "rate_cards", ["customer_id", "is_active"])
    op.create_index("ix_rate_cards_customer_effective", "rate_cards", ["customer_id", "effective_date"])
    op.create_index(
        "uq_rate_cards_customer_standard_version",
        "rate_cards",
        ["customer_id", "version"],
        unique=True,
        sqlite_where=sa.text("rate_card_type = 'STANDARD'"),
        postgresql_where=sa.text("rate_card_type = 'STANDARD'"),
    )

    op.create_table(
        "rate_card_contracts",
        sa.Column("rate_card_id", sa.String(), nullable=False),
        sa.Column("contract_id", sa.String(), nullable=False),
        sa.Column(
            "link_type",
            sa.Enum("PRIMARY", "ADDENDUM", "AMENDMENT", name="contractlinktype", native_enum=False),
            nullable=False,
        ),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("linked_by", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["rate_card_id"], ["rate_cards.id"]),
        sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"]),
        sa.PrimaryKeyConstraint("rate_card_id", "contract_id"),
    )
    op.create_index("ix_rate_card_contracts_contract_id", "rate_card_contracts", ["contract_id"])

    op.create_table(
        "billable_activities",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("activity_type", sa.String(), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False),
        sa.Column("unit", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("rate_override", sa.Numeric(12, 4), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("zone", sa.Integer(), nullable=True),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "customer_id",
            "reference_id",
            "occurred_at",
            "activity_type",
            name="uq_billable_activities_reference",
        ),
    )
    op.create_index("ix_billable_activities_customer_id", "billable_activities", ["customer_id"])
    op.create_index("ix_billable_activities_occurred_at", "billable_activities", ["occurred_at"])
    op.create_index("ix_billable_activities_activity_type", "billable_activities", ["activity_type"])
    op.create_index("ix_billable_activities_reference_id", "billable_activities", ["reference_id"])
    op.create_index("ix_billable_activities_created_at", "billable_activities", ["created_at"])
    op.create_index(
        "ix_billable_activities_customer_occurred",
        "billable_activities",
        ["customer_id", "occurred_at"],
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("invoice_number", sa.String(), nullable=False),
        sa.Column(
            "billing_cycle",
            sa.Enum("IMMEDIATE", "WEEKLY", "MONTHLY", name="billingcycle", native_enum=False),
            nullable=False,
        ),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "DRAFT",
                "ISSUED",
                "SENT",
                "PAID",
                "PARTIAL",
                "OVERDUE",
                "VOID",
                "CREDITED",
                name="invoicestatus",
                native_enum=False,
            ),
            nullable=False,
        ),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax", sa.Numeric(12, 2), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_due", sa.Numeric(12, 2), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data_snapshot", sa.JSON(), nullable=False),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"])
    op.create_index("ix_invoices_invoice_number", "invoices", ["invoice_number"], unique=True)
    op.create_index("ix_invoices_billing_cycle", "invoices", ["billing_cycle"])
    op.create_index("ix_invoices_period_start", "invoices", ["period_start"])
    op.create_index("ix_invoices_period_end", "invoices", ["period_end"])
    op.create_index("ix_invoices_status", "invoices", ["status"])
    op.create_index("ix_invoices_created_at", "invoices", ["created_at"])
    op.create_index("ix_invoices_updated_at", "invoices", ["updated_at"])
    op.create_index("ix_invoices_customer_period", "invoices", ["customer_id", "period_start", "period_end"])
    op.create_index(
        "uq_invoices_one_draft_per_period",
        "invoices",
        ["customer_id", "billing_cycle", "period_start", "period_end"],
        unique=True,
        sqlite_where=sa.text("status = 'DRAFT'"),
        postgresql_where=sa.text("status = 'DRAFT'"),
    )

    op.create_table(
        "invoice_lines",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("invoice_id", sa.String(), nullable=False),
        sa.Column("line_order", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("service_type", sa.String(), nullable=True),
        sa.Column("subtype", sa.String(), nullable=True),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False),
        sa.Column("unit", sa.String(), nullable=True),
        sa.Column("unit_rate", sa.Numeric(12, 4), nullable=False),
        sa.Column("line_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_priced", sa.Boolean(), nullable=False),
        sa.Column("activity_count", sa.Integer(), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoice_lines_invoice_id", "invoice_lines", ["invoice_id"])
    op.create_index("ix_invoice_lines_category", "invoice_lines", ["category"])


def downgrade() -> None:
    op.drop_index("ix_invoice_lines_category", table_name="invoice_lines")
    op.drop_index("ix_invoice_lines_invoice_id", table_name="invoice_lines")
    op.drop_table("invoice_lines")

    op.drop_index("uq_invoices_one_draft_per_period", table_name="invoices")
    op.drop_index("ix_invoices_customer_period", table_name="invoices")
    op.drop_index("ix_invoices_updated_at", table_name="invoices")
    op.drop_index("ix_invoices_created_at", table_name="invoices")
    op.drop_index("ix_invoices_status", table_name="invoices")
    op.drop_index("ix_invoices_period_end", table_name="invoices")
    op.drop_index("ix_invoices_period_start", table_name="invoices")
    op.drop_index("ix_invoices_billing_cycle", table_name="invoices")
    op.drop_index("ix_invoices_invoice_number", table_name="invoices")
    op.drop_index("ix_invoices_customer_id", table_name="invoices")
    op.drop_table("invoices")

    op.drop_index("ix_billable_activities_customer_occurred", table_name="billable_activities")
    op.drop_index("ix_billable_activities_created_at", table_name="billable_activities")
    op.drop_index("ix_billable_activities_reference_id", table_name="billable_activities")
    op.drop_index("ix_billable_activities_activity_type", table_name="billable_activities")
    op.drop_index("ix_billable_activities_occurred_at", table_name="billable_activities")
    op.drop_index("ix_billable_activities_customer_id", table_name="billable_activities")
    op.drop_table("billable_activities")

    op.drop_index("ix_rate_card_contracts_contract_id", table_name="rate_card_contracts")
    op.drop_table("rate_card_contracts")

    op.drop_index("uq_rate_cards_customer_standard_version", table_name="rate_cards")
    op.drop_index("ix_rate_cards_customer_effective", table_name="rate_cards")
    op.drop_index("ix_rate_cards_customer_active", table_name="rate_cards")
    op.drop_index("ix_rate_cards_updated_at", table_name="rate_cards")
    op.drop_index("ix_rate_cards_created_at", table_name="rate_cards")
    op.drop_index("ix_rate_cards_created_by", table_name="rate_cards")
    op.drop_index("ix_rate_cards_archived_at", table_name="rate_cards")
    op.drop_index("ix_rate_cards_deactivated_at", table_name="rate_cards")
    op.drop_index("ix_rate_cards_is_active", table_name="rate_cards")
    op.drop_index("ix_rate_cards_expires_date", table_name="rate_cards")
    op.drop_index("ix_rate_cards_effective_date", table_name="rate_cards")
    op.drop_index("ix_rate_cards_supersedes_id", table_name="rate_cards")
    op.drop_index("ix_rate_cards_parent_rate_card_id", table_name="rate_cards")
    op.drop_index("ix_rate_cards_rate_card_type", table_name="rate_cards")
    op.drop_index("ix_rate_cards_customer_id", table_name="rate_cards")
    op.drop_table("rate_cards")

    op.drop_index("ix_contracts_created_at", table_name="contracts")
    op.drop_index("ix_contracts_status", table_name="contracts")
    op.drop_index("ix_contracts_contract_number", table_name="contracts")
    op.drop_index("ix_contracts_customer_id", table_name="contracts")
    op.drop_table("contracts")

    op.drop_index("ix_customers_created_at", table_name="customers")
    op.drop_index("ix_customers_name", table_name="customers")
    op.drop_index("ix_customers_code", table_name="customers")
    op.drop_table("customers")

    op.drop_index("ix_audit_logs_ts", table_name="audit_logs")
    op.drop_index("ix_audit_logs_actor_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_events_correlation_id", table_name="events")
    op.drop_index("ix_events_actor_id", table_name="events")
    op.drop_index("ix_events_ts", table_name="events")
    op.drop_index("ix_events_customer_id", table_name="events")
    op.drop_index("ix_events_event_type", table_name="events")
    op.drop_table("events")
