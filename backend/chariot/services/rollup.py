# Overview: Order rollup aggregator; turns line items into order-level totals.

"""
Order Rollup

recompute_order_totals() is a pure, single-pass aggregation:

1. Lines that are hidden, deferred or declined are priced for display but
   contribute nothing. The rest are summed per category (net of line
   discount, before tax and before order discount).
2. subtotal = sum of included line nets.
3. order discount = discount_bps of subtotal, capped at subtotal.
4. order tax = tax_bps of (subtotal - order discount).
5. total = discounted subtotal + order tax + line taxes.

Line tax and order tax are additive; order tax is never computed on top of
line tax. The order discount is also spread back over the categories with
money.allocate() so per-category net figures add up to the discounted
subtotal to the cent.

refresh_order_totals() is the only writer of the calculated_* cache
columns. Callers run it after every line item or order mutation, inside
the same DB transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Sequence

from ..extensions import db
from ..models import Order, OrderLineItem, Customer
from chariot.money import allocate, apply_percent
from chariot.time_utils import utcnow
from .pricing import CATEGORIES, LineAmounts, LineInput, price_line


@dataclass(frozen=True)
class OrderPricing:
    discount_bps: int = 0
    tax_bps: int = 0
    tax_exempt: bool = False

    @classmethod
    def from_order(cls, order: Order, *, tax_exempt: bool = False) -> "OrderPricing":
        return cls(
            discount_bps=order.discount_bps or 0,
            tax_bps=order.tax_bps or 0,
            tax_exempt=tax_exempt,
        )


@dataclass(frozen=True)
class LineResult:
    line_id: int | None
    category: str
    included: bool
    amounts: LineAmounts


@dataclass(frozen=True)
class OrderTotals:
    category_cents: tuple[tuple[str, int], ...]
    category_discount_cents: tuple[tuple[str, int], ...]
    subtotal_cents: int
    line_discount_cents: int
    discount_cents: int
    discounted_subtotal_cents: int
    line_tax_cents: int
    order_tax_cents: int
    tax_cents: int
    total_cents: int
    lines: tuple[LineResult, ...] = ()

    def category(self, name: str) -> int:
        return dict(self.category_cents)[name]

    @property
    def labor_cents(self) -> int:
        return self.category("labor")

    @property
    def parts_cents(self) -> int:
        return self.category("parts")

    @property
    def subcontract_cents(self) -> int:
        return self.category("subcontract")

    @property
    def shop_supplies_cents(self) -> int:
        return self.category("shop_supplies")

    def to_dict(self) -> dict:
        return {
            "labor_cents": self.labor_cents,
            "parts_cents": self.parts_cents,
            "subcontract_cents": self.subcontract_cents,
            "shop_supplies_cents": self.shop_supplies_cents,
            "category_discount_cents": dict(self.category_discount_cents),
            "subtotal_cents": self.subtotal_cents,
            "line_discount_cents": self.line_discount_cents,
            "discount_cents": self.discount_cents,
            "discounted_subtotal_cents": self.discounted_subtotal_cents,
            "line_tax_cents": self.line_tax_cents,
            "order_tax_cents": self.order_tax_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
        }


def recompute_order_totals(order: OrderPricing, line_items: Sequence[LineInput]) -> OrderTotals:
    """Aggregate `line_items` into order totals. Pure and deterministic."""
    category_nets = {name: 0 for name in CATEGORIES}
    line_discount = 0
    line_tax = 0
    results = []

    for item in line_items:
        if order.tax_exempt and item.taxable:
            item = replace(item, taxable=False)
        amounts = price_line(item)
        included = item.counts_toward_order
        results.append(LineResult(
            line_id=item.line_id,
            category=item.category,
            included=included,
            amounts=amounts,
        ))
        if not included:
            continue
        category_nets[item.category] += amounts.net_cents
        line_discount += amounts.discount_cents
        line_tax += amounts.tax_cents

    subtotal = sum(category_nets.values())

    order_discount = min(apply_percent(subtotal, order.discount_bps), subtotal)
    discounted_subtotal = subtotal - order_discount

    order_tax = 0 if order.tax_exempt else apply_percent(discounted_subtotal, order.tax_bps)

    shares = allocate(order_discount, [category_nets[name] for name in CATEGORIES])

    return OrderTotals(
        category_cents=tuple((name, category_nets[name]) for name in CATEGORIES),
        category_discount_cents=tuple(zip(CATEGORIES, shares)),
        subtotal_cents=subtotal,
        line_discount_cents=line_discount,
        discount_cents=order_discount,
        discounted_subtotal_cents=discounted_subtotal,
        line_tax_cents=line_tax,
        order_tax_cents=order_tax,
        tax_cents=line_tax + order_tax,
        total_cents=discounted_subtotal + order_tax + line_tax,
        lines=tuple(results),
    )


# =============================================================================
# PERSISTENCE
# =============================================================================

def get_order_lines(order_id: int) -> list[OrderLineItem]:
    """Line items in display order."""
    return (
        db.session.query(OrderLineItem)
        .filter_by(order_id=order_id)
        .order_by(OrderLineItem.ordinal, OrderLineItem.id)
        .all()
    )


def totals_for_order(order: Order) -> OrderTotals:
    """Compute totals for a persisted order without writing anything."""
    customer = db.session.query(Customer).filter_by(id=order.customer_id).first()
    tax_exempt = bool(customer and customer.tax_exempt)
    lines = get_order_lines(order.id)
    return recompute_order_totals(
        OrderPricing.from_order(order, tax_exempt=tax_exempt),
        [LineInput.from_line_item(line) for line in lines],
    )


def refresh_order_totals(order: Order) -> OrderTotals:
    """
    Recompute and write the order's rollup cache in one pass.

    Must run inside the caller's order-scoped transaction; does not commit.
    """
    totals = totals_for_order(order)

    by_id = {result.line_id: result for result in totals.lines}
    for line in get_order_lines(order.id):
        result = by_id.get(line.id)
        if result is not None and line.total_cents != result.amounts.total_cents:
            line.total_cents = result.amounts.total_cents

    order.calculated_labor_cents = totals.labor_cents
    order.calculated_parts_cents = totals.parts_cents
    order.calculated_subcontracts_cents = totals.subcontract_cents
    order.calculated_shop_supplies_cents = totals.shop_supplies_cents
    order.calculated_subtotal_cents = totals.subtotal_cents
    order.calculated_discount_cents = totals.discount_cents
    order.calculated_tax_cents = totals.tax_cents
    order.calculated_total_cents = totals.total_cents
    order.totals_computed_at = utcnow()
    db.session.flush()
    return totals
