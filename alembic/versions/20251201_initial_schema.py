# alembic/versions/20251201_initial_schema.py
"""initial schema: properties, tenants, invoices, payments, unmatched queue, M-Pesa tracking

Revision ID: 20251201_initial_schema
Revises:
Create Date: 2025-12-01
"""
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "20251201_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(14, 2)


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True, length=32)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    ]


def upgrade():
    op.create_table(
        "properties",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("landlord_id", sa.Integer, nullable=False),
        sa.Column("organization_id", sa.Integer, nullable=True),
        sa.Column("address", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix__properties__landlord_id", "properties", ["landlord_id"])
    op.create_index("ix__properties__organization_id", "properties", ["organization_id"])
    op.create_index("ix__properties__created_at", "properties", ["created_at"])

    op.create_table(
        "units",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "property_id",
            sa.Integer,
            sa.ForeignKey("properties.id", ondelete="CASCADE", name="fk__units__property_id__properties"),
            nullable=False,
        ),
        sa.Column("unit_number", sa.String(32), nullable=False),
        sa.Column("payment_account_number", sa.String(64), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix__units__property_id", "units", ["property_id"])
    op.create_index("ix__units__payment_account_number", "units", ["payment_account_number"])
    op.create_index("ix__units__created_at", "units", ["created_at"])
    op.create_index("ix_units_property_unit_number", "units", ["property_id", "unit_number"], unique=True)

    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "unit_id",
            sa.Integer,
            sa.ForeignKey("units.id", ondelete="RESTRICT", name="fk__tenants__unit_id__units"),
            nullable=False,
        ),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("lease_start", sa.Date, nullable=False),
        sa.Column("lease_end", sa.Date, nullable=True),
        sa.Column("monthly_rent", MONEY, nullable=False),
        sa.Column("rent_due_day", sa.Integer, nullable=False, server_default="1"),
        sa.Column("late_fee_grace_period_days", sa.Integer, nullable=False, server_default="5"),
        sa.Column("late_fee_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("late_fee_fixed_amount", MONEY, nullable=True),
        *_timestamps(),
        sa.CheckConstraint("rent_due_day >= 1 AND rent_due_day <= 31", name="ck__tenants__rent_due_day_range"),
        sa.CheckConstraint("late_fee_grace_period_days >= 0", name="ck__tenants__grace_non_negative"),
    )
    op.create_index("ix__tenants__unit_id", "tenants", ["unit_id"])
    op.create_index("ix__tenants__created_at", "tenants", ["created_at"])
    op.create_index("ix_tenants_unit_active", "tenants", ["unit_id", "is_active"])

    op.create_table(
        "landlord_payment_accounts",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("landlord_id", sa.Integer, nullable=False),
        sa.Column(
            "property_id",
            sa.Integer,
            sa.ForeignKey(
                "properties.id",
                ondelete="CASCADE",
                name="fk__landlord_payment_accounts__property_id__properties",
            ),
            nullable=True,
        ),
        sa.Column(
            "account_type",
            _enum("payment_account_type", "mpesa_paybill", "mpesa_till", "bank_account"),
            nullable=False,
        ),
        sa.Column("account_name", sa.String(120), nullable=False),
        sa.Column("mpesa_short_code", sa.String(20), nullable=True),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix__landlord_payment_accounts__landlord_id", "landlord_payment_accounts", ["landlord_id"])
    op.create_index("ix__landlord_payment_accounts__property_id", "landlord_payment_accounts", ["property_id"])
    op.create_index(
        "ix__landlord_payment_accounts__mpesa_short_code", "landlord_payment_accounts", ["mpesa_short_code"]
    )
    op.create_index("ix__landlord_payment_accounts__created_at", "landlord_payment_accounts", ["created_at"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "tenant_id",
            sa.Integer,
            sa.ForeignKey("tenants.id", ondelete="RESTRICT", name="fk__invoices__tenant_id__tenants"),
            nullable=False,
        ),
        sa.Column(
            "unit_id",
            sa.Integer,
            sa.ForeignKey("units.id", ondelete="RESTRICT", name="fk__invoices__unit_id__units"),
            nullable=False,
        ),
        sa.Column(
            "property_id",
            sa.Integer,
            sa.ForeignKey("properties.id", ondelete="RESTRICT", name="fk__invoices__property_id__properties"),
            nullable=False,
        ),
        sa.Column("landlord_id", sa.Integer, nullable=False),
        sa.Column("period_start", sa.Date, nullable=False),
        sa.Column("period_end", sa.Date, nullable=False),
        sa.Column("due_date", sa.Date, nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("opening_balance", MONEY, nullable=False, server_default="0"),
        sa.Column("balance", MONEY, nullable=False),
        sa.Column("late_fee_amount", MONEY, nullable=False, server_default="0"),
        sa.Column(
            "status",
            _enum("invoice_status", "draft", "issued", "partially_paid", "paid", "overdue", "void"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck__invoices__amount_non_negative"),
        sa.CheckConstraint("balance >= 0", name="ck__invoices__balance_non_negative"),
        sa.CheckConstraint("late_fee_amount >= 0", name="ck__invoices__late_fee_non_negative"),
    )
    op.create_index("ix__invoices__unit_id", "invoices", ["unit_id"])
    op.create_index("ix__invoices__property_id", "invoices", ["property_id"])
    op.create_index("ix__invoices__landlord_id", "invoices", ["landlord_id"])
    op.create_index("ix__invoices__created_at", "invoices", ["created_at"])
    op.create_index("ix_invoices_tenant_status_due", "invoices", ["tenant_id", "status", "due_date"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "tenant_id",
            sa.Integer,
            sa.ForeignKey("tenants.id", ondelete="RESTRICT", name="fk__payments__tenant_id__tenants"),
            nullable=False,
        ),
        sa.Column(
            "unit_id",
            sa.Integer,
            sa.ForeignKey("units.id", ondelete="RESTRICT", name="fk__payments__unit_id__units"),
            nullable=False,
        ),
        sa.Column(
            "landlord_account_id",
            sa.Integer,
            sa.ForeignKey(
                "landlord_payment_accounts.id",
                ondelete="SET NULL",
                name="fk__payments__landlord_account_id__landlord_payment_accounts",
            ),
            nullable=True,
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("unallocated_amount", MONEY, nullable=False),
        sa.Column("payment_date", sa.DateTime, nullable=False),
        sa.Column("due_date", sa.Date, nullable=True),
        sa.Column("period_start", sa.Date, nullable=False),
        sa.Column("period_end", sa.Date, nullable=False),
        sa.Column(
            "method",
            _enum("payment_method", "mpesa", "bank_transfer", "cash", "cheque", "other"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _enum("payment_status", "pending", "completed", "failed", "refunded", "partially_paid"),
            nullable=False,
        ),
        sa.Column("external_transaction_reference", sa.String(64), nullable=False),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("paybill_account_number", sa.String(64), nullable=True),
        sa.Column("phone_number", sa.String(20), nullable=True),
        sa.Column("payer_name", sa.String(200), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("confirmed_at", sa.DateTime, nullable=True),
        sa.Column("confirmed_by_user_id", sa.Integer, nullable=True),
        sa.Column("late_fee_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("external_transaction_reference", name="uq__payments__external_transaction_reference"),
        sa.CheckConstraint("amount > 0", name="ck__payments__amount_positive"),
        sa.CheckConstraint("unallocated_amount >= 0", name="ck__payments__unallocated_non_negative"),
        sa.CheckConstraint("unallocated_amount <= amount", name="ck__payments__unallocated_le_amount"),
    )
    op.create_index("ix__payments__tenant_id", "payments", ["tenant_id"])
    op.create_index("ix__payments__unit_id", "payments", ["unit_id"])
    op.create_index("ix__payments__correlation_id", "payments", ["correlation_id"])
    op.create_index("ix__payments__created_at", "payments", ["created_at"])
    op.create_index("ix_payments_tenant_date", "payments", ["tenant_id", "payment_date"])

    op.create_table(
        "payment_allocations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "payment_id",
            sa.Integer,
            sa.ForeignKey("payments.id", ondelete="CASCADE", name="fk__payment_allocations__payment_id__payments"),
            nullable=False,
        ),
        sa.Column(
            "invoice_id",
            sa.Integer,
            sa.ForeignKey("invoices.id", ondelete="RESTRICT", name="fk__payment_allocations__invoice_id__invoices"),
            nullable=False,
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("allocated_at", sa.DateTime, nullable=False),
        sa.CheckConstraint("amount > 0", name="ck__payment_allocations__amount_positive"),
    )
    op.create_index("ix__payment_allocations__payment_id", "payment_allocations", ["payment_id"])
    op.create_index("ix__payment_allocations__invoice_id", "payment_allocations", ["invoice_id"])

    op.create_table(
        "unmatched_payments",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("external_transaction_reference", sa.String(64), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("raw_account_reference", sa.String(128), nullable=True),
        sa.Column("phone_number", sa.String(20), nullable=True),
        sa.Column("payer_name", sa.String(200), nullable=True),
        sa.Column("business_short_code", sa.String(20), nullable=True),
        sa.Column("transaction_date", sa.DateTime, nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("raw_payload", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("landlord_id", sa.Integer, nullable=True),
        sa.Column("property_id", sa.Integer, nullable=True),
        sa.Column("status", _enum("unmatched_payment_status", "pending", "resolved", "ignored"), nullable=False),
        sa.Column(
            "resolved_payment_id",
            sa.Integer,
            sa.ForeignKey(
                "payments.id", ondelete="SET NULL", name="fk__unmatched_payments__resolved_payment_id__payments"
            ),
            nullable=True,
        ),
        sa.Column("resolved_by_user_id", sa.Integer, nullable=True),
        sa.Column("resolved_at", sa.DateTime, nullable=True),
        sa.Column("resolution_notes", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint(
            "external_transaction_reference", name="uq__unmatched_payments__external_transaction_reference"
        ),
        sa.CheckConstraint("amount > 0", name="ck__unmatched_payments__amount_positive"),
    )
    op.create_index("ix__unmatched_payments__correlation_id", "unmatched_payments", ["correlation_id"])
    op.create_index("ix__unmatched_payments__landlord_id", "unmatched_payments", ["landlord_id"])
    op.create_index("ix__unmatched_payments__property_id", "unmatched_payments", ["property_id"])
    op.create_index("ix__unmatched_payments__created_at", "unmatched_payments", ["created_at"])
    op.create_index("ix_unmatched_status_created", "unmatched_payments", ["status", "created_at"])

    op.create_table(
        "mpesa_transactions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("transaction_type", _enum("mpesa_transaction_type", "stk_push", "b2c"), nullable=False),
        sa.Column("external_request_id", sa.String(100), nullable=False),
        sa.Column("merchant_request_id", sa.String(100), nullable=True),
        sa.Column(
            "tenant_id",
            sa.Integer,
            sa.ForeignKey("tenants.id", ondelete="SET NULL", name="fk__mpesa_transactions__tenant_id__tenants"),
            nullable=True,
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=True),
        sa.Column("account_reference", sa.String(64), nullable=True),
        sa.Column("business_short_code", sa.String(20), nullable=True),
        sa.Column(
            "status",
            _enum("mpesa_transaction_status", "pending", "completed", "failed", "cancelled", "timeout"),
            nullable=False,
        ),
        sa.Column("result_code", sa.Integer, nullable=True),
        sa.Column("result_desc", sa.String(255), nullable=True),
        sa.Column("mpesa_receipt_number", sa.String(64), nullable=True),
        sa.Column("transaction_date", sa.DateTime, nullable=True),
        sa.Column(
            "payment_id",
            sa.Integer,
            sa.ForeignKey("payments.id", ondelete="SET NULL", name="fk__mpesa_transactions__payment_id__payments"),
            nullable=True,
        ),
        sa.Column(
            "callback_payload", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True
        ),
        sa.Column("callback_received_at", sa.DateTime, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("external_request_id", name="uq__mpesa_transactions__external_request_id"),
    )
    op.create_index("ix__mpesa_transactions__merchant_request_id", "mpesa_transactions", ["merchant_request_id"])
    op.create_index("ix__mpesa_transactions__mpesa_receipt_number", "mpesa_transactions", ["mpesa_receipt_number"])
    op.create_index("ix__mpesa_transactions__created_at", "mpesa_transactions", ["created_at"])
    op.create_index(
        "ix_mpesa_tx_type_status_created", "mpesa_transactions", ["transaction_type", "status", "created_at"]
    )


def downgrade():
    op.drop_table("mpesa_transactions")
    op.drop_table("unmatched_payments")
    op.drop_table("payment_allocations")
    op.drop_table("payments")
    op.drop_table("invoices")
    op.drop_table("landlord_payment_accounts")
    op.drop_table("tenants")
    op.drop_table("units")
    op.drop_table("properties")
