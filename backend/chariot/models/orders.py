from __future__ import annotations

from ..extensions import db
from chariot.money import bps_to_percent, from_hundredths
from chariot.time_utils import to_utc_z


class Order(db.Model):
    """
    Work order for a customer's vessel.

    The calculated_* and ledger columns are a materialized cache. They are
    written only by a full rollup / balance refresh pass that runs inside
    the same DB transaction as the mutation that triggered it; nothing else
    may assign them.

    Orders are tombstoned (deleted=True) rather than removed so that
    transactions keep a valid parent.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("location_id", "order_number", name="uq_orders_location_number"),
        db.Index("ix_orders_location_status_created", "location_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    order_number = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(32), nullable=False, default="open", index=True)  # open, in_progress, completed, invoiced
    priority = db.Column(db.String(32), nullable=False, default="normal")
    note = db.Column(db.Text, nullable=False, default="")

    # Order-level adjustments applied after line rollup (basis points)
    discount_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_bps = db.Column(db.Integer, nullable=False, default=0)

    deferred = db.Column(db.Boolean, nullable=False, default=False)
    deferred_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deferred_reason = db.Column(db.String(100), nullable=True)

    # Rollup cache
    calculated_labor_cents = db.Column(db.Integer, nullable=False, default=0)
    calculated_parts_cents = db.Column(db.Integer, nullable=False, default=0)
    calculated_subcontracts_cents = db.Column(db.Integer, nullable=False, default=0)
    calculated_shop_supplies_cents = db.Column(db.Integer, nullable=False, default=0)
    calculated_subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    calculated_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    calculated_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    calculated_total_cents = db.Column(db.Integer, nullable=False, default=0)
    totals_computed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Ledger cache
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)
    due_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default="unpaid", index=True)  # unpaid, partial, paid, overpaid

    deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    location = db.relationship("Location")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "location_id": self.location_id,
            "customer_id": self.customer_id,
            "order_number": self.order_number,
            "status": self.status,
            "priority": self.priority,
            "note": self.note,
            "discount_percent": bps_to_percent(self.discount_bps),
            "tax_percent": bps_to_percent(self.tax_bps),
            "deferred": self.deferred,
            "deferred_at": to_utc_z(self.deferred_at) if self.deferred_at else None,
            "deferred_reason": self.deferred_reason,
            "calculated_labor_cents": self.calculated_labor_cents,
            "calculated_parts_cents": self.calculated_parts_cents,
            "calculated_subcontracts_cents": self.calculated_subcontracts_cents,
            "calculated_shop_supplies_cents": self.calculated_shop_supplies_cents,
            "calculated_subtotal_cents": self.calculated_subtotal_cents,
            "calculated_discount_cents": self.calculated_discount_cents,
            "calculated_tax_cents": self.calculated_tax_cents,
            "calculated_total_cents": self.calculated_total_cents,
            "totals_computed_at": to_utc_z(self.totals_computed_at) if self.totals_computed_at else None,
            "paid_cents": self.paid_cents,
            "refunded_cents": self.refunded_cents,
            "due_cents": self.due_cents,
            "credit_cents": self.credit_cents,
            "payment_status": self.payment_status,
            "deleted": self.deleted,
            "deleted_at": to_utc_z(self.deleted_at) if self.deleted_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "version_id": self.version_id,
        }


class OrderLineItem(db.Model):
    """
    Billable unit on an order: labor, part, or fixed-price service.

    Quantities and labor hours are stored as integer hundredths (1.5 h -> 150).
    discount_cents/discount_bps and tax_cents/tax_bps are mutually exclusive.
    total_cents is a cache of the pricing engine's output.
    """
    __tablename__ = "order_line_items"
    __table_args__ = (
        db.Index("ix_order_line_items_order_ordinal", "order_id", "ordinal"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(32), nullable=False, default="labor")  # labor, parts, subcontract, shop_supplies
    pricing = db.Column(db.String(32), nullable=False, default="fixed_price")  # fixed_price, labor_rate, parts_cost
    ordinal = db.Column(db.Integer, nullable=False, default=0)

    quantity_hundredths = db.Column(db.Integer, nullable=False, default=100)
    labor_hours_hundredths = db.Column(db.Integer, nullable=False, default=0)
    fixed_price_cents = db.Column(db.Integer, nullable=False, default=0)
    labor_rate_cents = db.Column(db.Integer, nullable=False, default=0)
    parts_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_bps = db.Column(db.Integer, nullable=False, default=0)
    taxable = db.Column(db.Boolean, nullable=False, default=True)

    total_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending, approved, declined
    hidden = db.Column(db.Boolean, nullable=False, default=False)
    deferred = db.Column(db.Boolean, nullable=False, default=False)
    note = db.Column(db.Text, nullable=False, default="")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    order = db.relationship("Order", backref=db.backref("line_items", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "pricing": self.pricing,
            "ordinal": self.ordinal,
            "quantity": str(from_hundredths(self.quantity_hundredths)),
            "labor_hours": str(from_hundredths(self.labor_hours_hundredths)),
            "fixed_price_cents": self.fixed_price_cents,
            "labor_rate_cents": self.labor_rate_cents,
            "parts_cost_cents": self.parts_cost_cents,
            "discount_cents": self.discount_cents,
            "discount_percent": bps_to_percent(self.discount_bps),
            "tax_cents": self.tax_cents,
            "tax_percent": bps_to_percent(self.tax_bps),
            "taxable": self.taxable,
            "total_cents": self.total_cents,
            "status": self.status,
            "hidden": self.hidden,
            "deferred": self.deferred,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
        }
