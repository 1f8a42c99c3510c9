from __future__ import annotations

from sqlalchemy import text

from ..extensions import db
from chariot.time_utils import to_utc_z


# Rows that hold their (gateway, payment_reference) pair
LIVE_REFERENCE_CLAUSE = "status IN ('pending', 'succeeded')"


class OrderTransaction(db.Model):
    """
    Append-only ledger entry against an order.

    KINDS:
    - payment: money collected (increases paid)
    - refund: money returned (decreases paid)
    - authorization: card hold placed with the provider, not yet collected
    - adjustment: credit applied against the order total

    STATUS: pending -> succeeded | failed; succeeded -> voided (refunds only).

    amount_cents is unsigned; direction comes from kind. A settled row's
    amount is never edited: corrections are new rows. The only columns that
    move after insert are status, its timestamps, and payment_reference
    (set once when a pending charge learns its provider id).

    (gateway, payment_reference) is unique among pending and succeeded rows
    so the same external charge can never be recorded twice. A failed row
    keeps its reference but does not hold it: a bounced check re-presented
    under the same number is a new row.
    """
    __tablename__ = "order_transactions"
    __table_args__ = (
        db.Index(
            "uq_order_txns_gateway_reference",
            "gateway",
            "payment_reference",
            unique=True,
            sqlite_where=text(LIVE_REFERENCE_CLAUSE),
            postgresql_where=text(LIVE_REFERENCE_CLAUSE),
        ),
        db.UniqueConstraint("idempotency_key", name="uq_order_txns_idempotency_key"),
        db.Index("ix_order_txns_order_created", "order_id", "created_at"),
        db.Index("ix_order_txns_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    amount_cents = db.Column(db.Integer, nullable=False)

    gateway = db.Column(db.String(32), nullable=False, default="manual")
    payment_method = db.Column(db.String(32), nullable=True)  # card, cash, check, ...
    payment_reference = db.Column(db.String(255), nullable=True)
    idempotency_key = db.Column(db.String(64), nullable=True)
    related_transaction_id = db.Column(db.Integer, db.ForeignKey("order_transactions.id"), nullable=True, index=True)

    override_applied = db.Column(db.Boolean, nullable=False, default=False)
    failure_reason = db.Column(db.String(255), nullable=True)
    note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("transactions", lazy=True))
    related_transaction = db.relationship("OrderTransaction", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "location_id": self.location_id,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "kind": self.kind,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "gateway": self.gateway,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "related_transaction_id": self.related_transaction_id,
            "override_applied": self.override_applied,
            "failure_reason": self.failure_reason,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
            "applied_at": to_utc_z(self.applied_at) if self.applied_at else None,
            "failed_at": to_utc_z(self.failed_at) if self.failed_at else None,
            "voided_at": to_utc_z(self.voided_at) if self.voided_at else None,
            "version_id": self.version_id,
        }


class OrderAuthorization(db.Model):
    """
    Spending ceiling a customer pre-approved for an order.

    Active while revoked_at is null. Payments past the sum of active
    authorizations need an explicit override.
    """
    __tablename__ = "order_authorizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    authorized_cost_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False)  # phone, email, in_person, signature
    note = db.Column(db.Text, nullable=True)

    authorized_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoke_reason = db.Column(db.String(255), nullable=True)

    order = db.relationship("Order", backref=db.backref("authorizations", lazy=True))

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "authorized_cost_cents": self.authorized_cost_cents,
            "method": self.method,
            "note": self.note,
            "authorized_at": to_utc_z(self.authorized_at),
            "revoked_at": to_utc_z(self.revoked_at) if self.revoked_at else None,
            "revoke_reason": self.revoke_reason,
            "is_active": self.is_active,
        }
