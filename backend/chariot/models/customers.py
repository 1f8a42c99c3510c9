from __future__ import annotations

from ..extensions import db
from chariot.time_utils import to_utc_z


class Customer(db.Model):
    """
    Boat owner or business being billed for work orders.

    tax_exempt suppresses line and order tax on every order for this customer.
    gateway_customer_ref is the payment provider's customer id, passed along
    with charges when present.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_company_location", "company_id", "location_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)

    first_name = db.Column(db.String(128), nullable=True)
    last_name = db.Column(db.String(128), nullable=True)
    company_name = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    tax_exempt = db.Column(db.Boolean, nullable=False, default=False)
    gateway_customer_ref = db.Column(db.String(255), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    @property
    def display_name(self) -> str:
        if self.company_name:
            return self.company_name
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "location_id": self.location_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "company_name": self.company_name,
            "email": self.email,
            "phone": self.phone,
            "tax_exempt": self.tax_exempt,
            "gateway_customer_ref": self.gateway_customer_ref,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
