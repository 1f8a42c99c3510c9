# Overview: Line item pricing engine; pure functions, no database access.

"""
Line Item Pricing

A line item's amount is derived, never stored as a source of truth:

    base      fixed_price_cents                       (fixed_price)
              labor_rate_cents x labor_hours          (labor_rate)
              parts_cost_cents x quantity             (parts_cost)
    discount  discount_cents or discount_bps of base, capped at base
    net       base - discount                         (never negative)
    tax       0 when not taxable, else tax_cents or tax_bps of net
    total     net + tax

Quantities and hours arrive as integer hundredths; fractional products are
rounded half-up to the cent. Discount and tax each take a fixed amount or a
percentage, never both.
"""

from __future__ import annotations

from dataclasses import dataclass

from chariot.money import BPS_PER_UNIT, HUNDREDTHS, apply_percent, divide_round_half_up


PRICING_FIXED = "fixed_price"
PRICING_LABOR = "labor_rate"
PRICING_PARTS = "parts_cost"
VALID_PRICING_MODES = (PRICING_FIXED, PRICING_LABOR, PRICING_PARTS)

CATEGORY_LABOR = "labor"
CATEGORY_PARTS = "parts"
CATEGORY_SUBCONTRACT = "subcontract"
CATEGORY_SHOP_SUPPLIES = "shop_supplies"
CATEGORIES = (CATEGORY_LABOR, CATEGORY_PARTS, CATEGORY_SUBCONTRACT, CATEGORY_SHOP_SUPPLIES)

# Category used when a caller does not tag the line
DEFAULT_CATEGORY = {
    PRICING_FIXED: CATEGORY_LABOR,
    PRICING_LABOR: CATEGORY_LABOR,
    PRICING_PARTS: CATEGORY_PARTS,
}

LINE_STATUS_PENDING = "pending"
LINE_STATUS_APPROVED = "approved"
LINE_STATUS_DECLINED = "declined"
VALID_LINE_STATUSES = (LINE_STATUS_PENDING, LINE_STATUS_APPROVED, LINE_STATUS_DECLINED)


class LineItemError(Exception):
    """Raised for line item operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InvalidLineItem(LineItemError):
    """Line item input that can never be priced (rejected before persistence)."""


@dataclass(frozen=True)
class LineInput:
    pricing: str = PRICING_FIXED
    category: str = CATEGORY_LABOR
    quantity_hundredths: int = HUNDREDTHS
    labor_hours_hundredths: int = 0
    fixed_price_cents: int = 0
    labor_rate_cents: int = 0
    parts_cost_cents: int = 0
    discount_cents: int = 0
    discount_bps: int = 0
    tax_cents: int = 0
    tax_bps: int = 0
    taxable: bool = True
    hidden: bool = False
    deferred: bool = False
    status: str = LINE_STATUS_PENDING
    line_id: int | None = None

    @classmethod
    def from_line_item(cls, item, *, taxable: bool | None = None) -> "LineInput":
        """
        Snapshot an OrderLineItem row.

        `taxable` overrides the row flag; callers pass False for tax-exempt
        customers instead of the engine looking the customer up.
        """
        return cls(
            pricing=item.pricing,
            category=item.category,
            quantity_hundredths=item.quantity_hundredths,
            labor_hours_hundredths=item.labor_hours_hundredths,
            fixed_price_cents=item.fixed_price_cents,
            labor_rate_cents=item.labor_rate_cents,
            parts_cost_cents=item.parts_cost_cents,
            discount_cents=item.discount_cents,
            discount_bps=item.discount_bps,
            tax_cents=item.tax_cents,
            tax_bps=item.tax_bps,
            taxable=item.taxable if taxable is None else taxable,
            hidden=item.hidden,
            deferred=item.deferred,
            status=item.status,
            line_id=item.id,
        )

    @property
    def counts_toward_order(self) -> bool:
        return not self.hidden and not self.deferred and self.status != LINE_STATUS_DECLINED


@dataclass(frozen=True)
class LineAmounts:
    base_cents: int
    discount_cents: int
    net_cents: int
    tax_cents: int
    total_cents: int

    def to_dict(self) -> dict:
        return {
            "base_cents": self.base_cents,
            "discount_cents": self.discount_cents,
            "net_cents": self.net_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
        }


def validate_line(item: LineInput) -> None:
    """Raise InvalidLineItem listing every problem with `item`."""
    problems: dict[str, str] = {}

    if item.pricing not in VALID_PRICING_MODES:
        problems["pricing"] = f"must be one of {list(VALID_PRICING_MODES)}"
    if item.category not in CATEGORIES:
        problems["category"] = f"must be one of {list(CATEGORIES)}"
    if item.status not in VALID_LINE_STATUSES:
        problems["status"] = f"must be one of {list(VALID_LINE_STATUSES)}"

    for field in (
        "quantity_hundredths",
        "labor_hours_hundredths",
        "fixed_price_cents",
        "labor_rate_cents",
        "parts_cost_cents",
        "discount_cents",
        "tax_cents",
    ):
        if getattr(item, field) < 0:
            problems[field] = "must not be negative"

    for field in ("discount_bps", "tax_bps"):
        value = getattr(item, field)
        if value < 0 or value > BPS_PER_UNIT:
            problems[field] = "must be between 0 and 100 percent"

    if item.discount_cents and item.discount_bps:
        problems["discount"] = "discount_cents and discount_percent are mutually exclusive"
    if item.tax_cents and item.tax_bps:
        problems["tax"] = "tax_cents and tax_percent are mutually exclusive"

    if problems:
        raise InvalidLineItem("Invalid line item", details=problems)


def base_amount(item: LineInput) -> int:
    if item.pricing == PRICING_FIXED:
        return item.fixed_price_cents
    if item.pricing == PRICING_LABOR:
        return divide_round_half_up(item.labor_rate_cents * item.labor_hours_hundredths, HUNDREDTHS)
    return divide_round_half_up(item.parts_cost_cents * item.quantity_hundredths, HUNDREDTHS)


def price_line(item: LineInput) -> LineAmounts:
    """Compute every amount for a single line item."""
    validate_line(item)

    base = base_amount(item)

    if item.discount_cents:
        discount = item.discount_cents
    else:
        discount = apply_percent(base, item.discount_bps)
    discount = min(discount, base)
    net = base - discount

    if not item.taxable:
        tax = 0
    elif item.tax_cents:
        tax = item.tax_cents
    else:
        tax = apply_percent(net, item.tax_bps)

    return LineAmounts(
        base_cents=base,
        discount_cents=discount,
        net_cents=net,
        tax_cents=tax,
        total_cents=net + tax,
    )


def compute_line_total(item: LineInput) -> int:
    return price_line(item).total_cents
