"""Order ledger: tenancy, customers, orders, line items, transactions, audit

Revision ID: 20261001_order_ledger
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_order_ledger"
down_revision = None
branch_labels = None
depends_on = None


NOW = sa.text("(CURRENT_TIMESTAMP)")
ZERO = sa.text("0")
FALSE = sa.text("0")
LIVE_REFERENCE_CLAUSE = "status IN ('pending', 'succeeded')"


def _cents(name):
    return sa.Column(name, sa.Integer(), nullable=False, server_default=ZERO)


def upgrade():
    op.create_table(
        "companies",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("companies", schema=None) as batch_op:
        batch_op.create_index("ix_companies_code", ["code"], unique=True)

    op.create_table(
        "locations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("code", sa.String(32), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "code", name="uq_locations_company_code"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("locations", schema=None) as batch_op:
        batch_op.create_index("ix_locations_company_id", ["company_id"], unique=False)

    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
        sa.Column("company_name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("tax_exempt", sa.Boolean(), nullable=False, server_default=FALSE),
        sa.Column("gateway_customer_ref", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.ForeignKeyConstraint(["location_id"], ["locations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customers", schema=None) as batch_op:
        batch_op.create_index("ix_customers_company_id", ["company_id"], unique=False)
        batch_op.create_index("ix_customers_location_id", ["location_id"], unique=False)
        batch_op.create_index("ix_customers_company_location", ["company_id", "location_id"], unique=False)
        batch_op.create_index("ix_customers_gateway_customer_ref", ["gateway_customer_ref"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(32), nullable=False, server_default="normal"),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        _cents("discount_bps"),
        _cents("tax_bps"),
        sa.Column("deferred", sa.Boolean(), nullable=False, server_default=FALSE),
        sa.Column("deferred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deferred_reason", sa.String(100), nullable=True),
        _cents("calculated_labor_cents"),
        _cents("calculated_parts_cents"),
        _cents("calculated_subcontracts_cents"),
        _cents("calculated_shop_supplies_cents"),
        _cents("calculated_subtotal_cents"),
        _cents("calculated_discount_cents"),
        _cents("calculated_tax_cents"),
        _cents("calculated_total_cents"),
        sa.Column("totals_computed_at", sa.DateTime(timezone=True), nullable=True),
        _cents("paid_cents"),
        _cents("refunded_cents"),
        _cents("due_cents"),
        _cents("credit_cents"),
        sa.Column("payment_status", sa.String(16), nullable=False, server_default="unpaid"),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=FALSE),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.ForeignKeyConstraint(["location_id"], ["locations.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("location_id", "order_number", name="uq_orders_location_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_company_id", ["company_id"], unique=False)
        batch_op.create_index("ix_orders_location_id", ["location_id"], unique=False)
        batch_op.create_index("ix_orders_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_payment_status", ["payment_status"], unique=False)
        batch_op.create_index("ix_orders_deleted", ["deleted"], unique=False)
        batch_op.create_index("ix_orders_location_status_created", ["location_id", "status", "created_at"], unique=False)

    op.create_table(
        "order_line_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(32), nullable=False, server_default="labor"),
        sa.Column("pricing", sa.String(32), nullable=False, server_default="fixed_price"),
        sa.Column("ordinal", sa.Integer(), nullable=False, server_default=ZERO),
        sa.Column("quantity_hundredths", sa.Integer(), nullable=False, server_default=sa.text("100")),
        _cents("labor_hours_hundredths"),
        _cents("fixed_price_cents"),
        _cents("labor_rate_cents"),
        _cents("parts_cost_cents"),
        _cents("discount_cents"),
        _cents("discount_bps"),
        _cents("tax_cents"),
        _cents("tax_bps"),
        sa.Column("taxable", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _cents("total_cents"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("hidden", sa.Boolean(), nullable=False, server_default=FALSE),
        sa.Column("deferred", sa.Boolean(), nullable=False, server_default=FALSE),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_line_items", schema=None) as batch_op:
        batch_op.create_index("ix_order_line_items_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_line_items_status", ["status"], unique=False)
        batch_op.create_index("ix_order_line_items_order_ordinal", ["order_id", "ordinal"], unique=False)

    op.create_table(
        "order_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("gateway", sa.String(32), nullable=False, server_default="manual"),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("payment_reference", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(64), nullable=True),
        sa.Column("related_transaction_id", sa.Integer(), nullable=True),
        sa.Column("override_applied", sa.Boolean(), nullable=False, server_default=FALSE),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.ForeignKeyConstraint(["location_id"], ["locations.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["related_transaction_id"], ["order_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_order_txns_idempotency_key"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_order_transactions_company_id", ["company_id"], unique=False)
        batch_op.create_index("ix_order_transactions_location_id", ["location_id"], unique=False)
        batch_op.create_index("ix_order_transactions_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_transactions_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_order_transactions_kind", ["kind"], unique=False)
        batch_op.create_index("ix_order_transactions_status", ["status"], unique=False)
        batch_op.create_index("ix_order_transactions_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_order_transactions_related_transaction_id", ["related_transaction_id"], unique=False)
        batch_op.create_index("ix_order_txns_order_created", ["order_id", "created_at"], unique=False)
        batch_op.create_index("ix_order_txns_status_created", ["status", "created_at"], unique=False)
    op.create_index(
        "uq_order_txns_gateway_reference",
        "order_transactions",
        ["gateway", "payment_reference"],
        unique=True,
        sqlite_where=sa.text(LIVE_REFERENCE_CLAUSE),
        postgresql_where=sa.text(LIVE_REFERENCE_CLAUSE),
    )

    op.create_table(
        "order_authorizations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("authorized_cost_cents", sa.Integer(), nullable=False),
        sa.Column("method", sa.String(32), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("authorized_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoke_reason", sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_authorizations", schema=None) as batch_op:
        batch_op.create_index("ix_order_authorizations_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_authorizations_customer_id", ["customer_id"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("note", sa.String(255), nullable=True),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["transaction_id"], ["order_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("audit_events", schema=None) as batch_op:
        batch_op.create_index("ix_audit_events_company_id", ["company_id"], unique=False)
        batch_op.create_index("ix_audit_events_event_type", ["event_type"], unique=False)
        batch_op.create_index("ix_audit_events_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_audit_events_transaction_id", ["transaction_id"], unique=False)
        batch_op.create_index("ix_audit_events_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_audit_events_order_occurred", ["order_id", "occurred_at"], unique=False)

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(32), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.ForeignKeyConstraint(["location_id"], ["locations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("location_id", "document_type", name="uq_doc_sequences_location_type"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("document_sequences", schema=None) as batch_op:
        batch_op.create_index("ix_document_sequences_location_id", ["location_id"], unique=False)


def downgrade():
    for table in (
        "document_sequences",
        "audit_events",
        "order_authorizations",
        "order_transactions",
        "order_line_items",
        "orders",
        "customers",
        "locations",
        "companies",
    ):
        op.drop_table(table)
