# Overview: Service-layer operations for work orders and their line items.

"""
Work Order Service

WHY: Every change to an order or its lines moves money figures. This module
is the one write path for orders so that the rollup and ledger caches are
always recomputed in the same DB transaction as the change.

DESIGN PRINCIPLES:
- Patch commands: OrderPatch / LineItemPatch carry only the fields a caller
  means to change; from_payload() rejects anything else.
- Validate before persistence: a line that can never be priced raises
  InvalidLineItem before the order is locked.
- Order-scoped serialization: lock_order + run_with_retry around every write.
- Tombstones: orders are marked deleted, never removed, so the ledger keeps
  its parent row.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Customer, Order, OrderLineItem, OrderTransaction
from chariot.money import MoneyError, hundredths, percent_to_bps
from chariot.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_order, run_with_retry
from .ledger_service import (
    TXN_SUCCEEDED,
    active_authorizations,
    authorized_total,
    compute_balance,
    get_transactions,
    refresh_order_balance,
)
from .numbering_service import next_document_number
from .pricing import (
    DEFAULT_CATEGORY,
    PRICING_FIXED,
    LineInput,
    LineItemError,
    price_line,
    validate_line,
)
from .rollup import get_order_lines, refresh_order_totals, totals_for_order


class OrderError(Exception):
    """Raised for order operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class OrderNotFound(OrderError):
    pass


# =============================================================================
# CONSTANTS
# =============================================================================

ORDER_STATUS_OPEN = "open"
ORDER_STATUS_IN_PROGRESS = "in_progress"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_INVOICED = "invoiced"
VALID_ORDER_STATUSES = (
    ORDER_STATUS_OPEN,
    ORDER_STATUS_IN_PROGRESS,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_INVOICED,
)

VALID_PRIORITIES = ("low", "normal", "high", "urgent")

ORDER_NUMBER_PREFIX = "O"
ORDER_DOCUMENT_TYPE = "order"


# =============================================================================
# PAYLOAD PARSING
# =============================================================================

def _as_int(data: dict, key: str, problems: dict) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or isinstance(value, float):
        problems[key] = "must be an integer"
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
    problems[key] = "must be an integer"
    return None


def _as_bool(data: dict, key: str, problems: dict) -> bool | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        problems[key] = "must be true or false"
        return None
    return value


def _as_str(data: dict, key: str, problems: dict, max_len: int | None = None) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        problems[key] = "must be a string"
        return None
    if max_len and len(value) > max_len:
        problems[key] = f"must be at most {max_len} characters"
        return None
    return value


def _as_bps(data: dict, key: str, problems: dict) -> int | None:
    if data.get(key) is None:
        return None
    try:
        return percent_to_bps(data[key], key)
    except MoneyError as e:
        problems[key] = str(e)
        return None


def _as_hundredths(data: dict, key: str, problems: dict) -> int | None:
    if data.get(key) is None:
        return None
    try:
        return hundredths(data[key], key)
    except MoneyError as e:
        problems[key] = str(e)
        return None


def _reject_unknown(data: dict, allowed: set[str]) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise OrderError("Unknown fields", details={"fields": unknown})


def _changes(obj) -> dict:
    return {k: v for k, v in asdict(obj).items() if v is not None}


# =============================================================================
# PATCH COMMANDS
# =============================================================================

@dataclass(frozen=True)
class OrderPatch:
    status: str | None = None
    priority: str | None = None
    note: str | None = None
    discount_bps: int | None = None
    tax_bps: int | None = None
    deferred: bool | None = None
    deferred_reason: str | None = None

    _PAYLOAD_KEYS = {
        "status", "priority", "note", "discount_percent", "tax_percent",
        "deferred", "deferred_reason",
    }

    @classmethod
    def from_payload(cls, data: dict) -> "OrderPatch":
        _reject_unknown(data, cls._PAYLOAD_KEYS)
        problems: dict[str, str] = {}
        patch = cls(
            status=_as_str(data, "status", problems),
            priority=_as_str(data, "priority", problems),
            note=_as_str(data, "note", problems),
            discount_bps=_as_bps(data, "discount_percent", problems),
            tax_bps=_as_bps(data, "tax_percent", problems),
            deferred=_as_bool(data, "deferred", problems),
            deferred_reason=_as_str(data, "deferred_reason", problems, max_len=100),
        )
        if problems:
            raise OrderError("Invalid order update", details=problems)
        return patch

    def validate(self) -> None:
        problems = {}
        if self.status is not None and self.status not in VALID_ORDER_STATUSES:
            problems["status"] = f"must be one of {list(VALID_ORDER_STATUSES)}"
        if self.priority is not None and self.priority not in VALID_PRIORITIES:
            problems["priority"] = f"must be one of {list(VALID_PRIORITIES)}"
        for key in ("discount_bps", "tax_bps"):
            value = getattr(self, key)
            if value is not None and not 0 <= value <= 10_000:
                problems[key] = "must be between 0 and 100 percent"
        if problems:
            raise OrderError("Invalid order update", details=problems)


_LINE_INT_KEYS = (
    "fixed_price_cents", "labor_rate_cents", "parts_cost_cents",
    "discount_cents", "tax_cents", "ordinal",
)
_LINE_BOOL_KEYS = ("taxable", "hidden", "deferred")
_LINE_STR_KEYS = ("pricing", "category", "status", "description", "note")
_LINE_PAYLOAD_KEYS = {
    "name", "quantity", "labor_hours", "discount_percent", "tax_percent",
    *_LINE_INT_KEYS, *_LINE_BOOL_KEYS, *_LINE_STR_KEYS,
}


def _parse_line_payload(data: dict) -> dict:
    if not isinstance(data, dict):
        raise OrderError("Line item payload must be an object")
    _reject_unknown(data, _LINE_PAYLOAD_KEYS)
    problems: dict[str, str] = {}
    parsed = {
        "name": _as_str(data, "name", problems, max_len=255),
        "quantity_hundredths": _as_hundredths(data, "quantity", problems),
        "labor_hours_hundredths": _as_hundredths(data, "labor_hours", problems),
        "discount_bps": _as_bps(data, "discount_percent", problems),
        "tax_bps": _as_bps(data, "tax_percent", problems),
    }
    for key in _LINE_INT_KEYS:
        parsed[key] = _as_int(data, key, problems)
    for key in _LINE_BOOL_KEYS:
        parsed[key] = _as_bool(data, key, problems)
    for key in _LINE_STR_KEYS:
        parsed[key] = _as_str(data, key, problems)
    if problems:
        raise LineItemError("Invalid line item", details=problems)
    return parsed


@dataclass(frozen=True)
class LineItemDraft:
    name: str
    pricing: str = PRICING_FIXED
    category: str | None = None
    quantity_hundredths: int = 100
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
    status: str = "pending"
    description: str | None = None
    note: str = ""
    ordinal: int | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "LineItemDraft":
        parsed = {k: v for k, v in _parse_line_payload(data).items() if v is not None}
        if not parsed.get("name"):
            raise LineItemError("Invalid line item", details={"name": "required"})
        return cls(**parsed)

    def to_line_input(self) -> LineInput:
        return LineInput(
            pricing=self.pricing,
            category=self.category or DEFAULT_CATEGORY.get(self.pricing, "labor"),
            quantity_hundredths=self.quantity_hundredths,
            labor_hours_hundredths=self.labor_hours_hundredths,
            fixed_price_cents=self.fixed_price_cents,
            labor_rate_cents=self.labor_rate_cents,
            parts_cost_cents=self.parts_cost_cents,
            discount_cents=self.discount_cents,
            discount_bps=self.discount_bps,
            tax_cents=self.tax_cents,
            tax_bps=self.tax_bps,
            taxable=self.taxable,
            hidden=self.hidden,
            deferred=self.deferred,
            status=self.status,
        )


@dataclass(frozen=True)
class LineItemPatch:
    name: str | None = None
    pricing: str | None = None
    category: str | None = None
    quantity_hundredths: int | None = None
    labor_hours_hundredths: int | None = None
    fixed_price_cents: int | None = None
    labor_rate_cents: int | None = None
    parts_cost_cents: int | None = None
    discount_cents: int | None = None
    discount_bps: int | None = None
    tax_cents: int | None = None
    tax_bps: int | None = None
    taxable: bool | None = None
    hidden: bool | None = None
    deferred: bool | None = None
    status: str | None = None
    description: str | None = None
    note: str | None = None
    ordinal: int | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "LineItemPatch":
        return cls(**_parse_line_payload(data))

    def apply_to(self, current: LineInput) -> LineInput:
        """Merged pricing input; the row itself is untouched."""
        pricing_keys = {f.name for f in fields(LineInput)}
        changes = {k: v for k, v in _changes(self).items() if k in pricing_keys}
        # Switching between amount and percent forms replaces the other one
        if "discount_cents" in changes and "discount_bps" not in changes:
            changes["discount_bps"] = 0
        if "discount_bps" in changes and "discount_cents" not in changes:
            changes["discount_cents"] = 0
        if "tax_cents" in changes and "tax_bps" not in changes:
            changes["tax_bps"] = 0
        if "tax_bps" in changes and "tax_cents" not in changes:
            changes["tax_cents"] = 0
        return replace(current, **changes)


# =============================================================================
# HELPERS
# =============================================================================

def _get_order(order_id: int) -> Order:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if not order:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def _get_line(line_id: int) -> OrderLineItem:
    line = db.session.query(OrderLineItem).filter_by(id=line_id).first()
    if not line:
        raise OrderNotFound(f"Line item {line_id} not found")
    return line


def _lock_live_order(order_id: int) -> Order:
    order = lock_order(order_id)
    if not order:
        raise OrderNotFound(f"Order {order_id} not found")
    if order.deleted:
        raise OrderError("Order has been deleted", details={"order_id": order_id})
    return order


def _recompute(order: Order) -> None:
    """Full rollup then ledger refresh, inside the caller's transaction."""
    totals = refresh_order_totals(order)
    refresh_order_balance(order, totals.total_cents)


def _audit(order: Order, event_type: str, entity_type: str, entity_id: int, payload: str | None = None) -> None:
    append_audit_event(
        company_id=order.company_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        order_id=order.id,
        payload=payload,
    )


def _serialized(op):
    try:
        return run_with_retry(op)
    except (OrderError, LineItemError):
        db.session.rollback()
        raise


def _has_settled_money(order_id: int) -> bool:
    return (
        db.session.query(OrderTransaction.id)
        .filter_by(order_id=order_id, status=TXN_SUCCEEDED)
        .first()
        is not None
    )


# =============================================================================
# ORDERS
# =============================================================================

def create_order(
    *,
    company_id: int,
    location_id: int,
    customer_id: int,
    note: str = "",
    priority: str = "normal",
    discount_bps: int = 0,
    tax_bps: int = 0,
) -> Order:
    """Create an open work order with the next order number for its location."""
    customer = db.session.query(Customer).filter_by(id=customer_id).first()
    if not customer:
        raise OrderNotFound(f"Customer {customer_id} not found")
    if customer.company_id != company_id:
        raise OrderError("Customer belongs to a different company", details={"customer_id": customer_id})

    OrderPatch(priority=priority, discount_bps=discount_bps, tax_bps=tax_bps).validate()

    def _op():
        now = utcnow()
        order = Order(
            company_id=company_id,
            location_id=location_id,
            customer_id=customer_id,
            order_number=next_document_number(
                location_id=location_id,
                document_type=ORDER_DOCUMENT_TYPE,
                prefix=ORDER_NUMBER_PREFIX,
            ),
            status=ORDER_STATUS_OPEN,
            priority=priority,
            note=note or "",
            discount_bps=discount_bps,
            tax_bps=tax_bps,
            created_at=now,
            updated_at=now,
        )
        db.session.add(order)
        db.session.flush()

        _recompute(order)
        _audit(order, "order.created", "order", order.id, payload=f"order_number={order.order_number}")
        db.session.commit()
        return order

    return _serialized(_op)


def update_order(order_id: int, patch: OrderPatch) -> Order:
    """Apply an OrderPatch and recompute totals in the same transaction."""
    patch.validate()
    changes = _changes(patch)
    if not changes:
        return _get_order(order_id)

    def _op():
        order = _lock_live_order(order_id)
        now = utcnow()

        for key, value in changes.items():
            setattr(order, key, value)

        if patch.status == ORDER_STATUS_COMPLETED and order.completed_at is None:
            order.completed_at = now
        if patch.deferred is True and order.deferred_at is None:
            order.deferred_at = now
        if patch.deferred is False:
            order.deferred_at = None
            order.deferred_reason = None

        _recompute(order)
        _audit(order, "order.updated", "order", order.id, payload=",".join(sorted(changes)))
        db.session.commit()
        return order

    return _serialized(_op)


def delete_order(order_id: int) -> Order:
    """Tombstone an order. Its ledger stays intact and readable."""
    def _op():
        order = lock_order(order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        if order.deleted:
            db.session.rollback()
            return order

        order.deleted = True
        order.deleted_at = utcnow()
        _audit(order, "order.deleted", "order", order.id)
        db.session.commit()
        return order

    return _serialized(_op)


# =============================================================================
# LINE ITEMS
# =============================================================================

def add_line_item(order_id: int, draft: LineItemDraft) -> OrderLineItem:
    """
    Add a line item to an order.

    Raises:
        InvalidLineItem: The line can never be priced (nothing persisted)
        OrderError: Order missing or deleted
    """
    line_input = draft.to_line_input()
    validate_line(line_input)

    def _op():
        order = _lock_live_order(order_id)

        ordinal = draft.ordinal
        if ordinal is None:
            current_max = (
                db.session.query(func.max(OrderLineItem.ordinal))
                .filter_by(order_id=order.id)
                .scalar()
            )
            ordinal = 0 if current_max is None else current_max + 1

        now = utcnow()
        line = OrderLineItem(
            order_id=order.id,
            name=draft.name,
            description=draft.description,
            category=line_input.category,
            pricing=line_input.pricing,
            ordinal=ordinal,
            quantity_hundredths=line_input.quantity_hundredths,
            labor_hours_hundredths=line_input.labor_hours_hundredths,
            fixed_price_cents=line_input.fixed_price_cents,
            labor_rate_cents=line_input.labor_rate_cents,
            parts_cost_cents=line_input.parts_cost_cents,
            discount_cents=line_input.discount_cents,
            discount_bps=line_input.discount_bps,
            tax_cents=line_input.tax_cents,
            tax_bps=line_input.tax_bps,
            taxable=line_input.taxable,
            status=line_input.status,
            hidden=line_input.hidden,
            deferred=line_input.deferred,
            note=draft.note or "",
            total_cents=price_line(line_input).total_cents,
            created_at=now,
            updated_at=now,
        )
        db.session.add(line)
        db.session.flush()

        _recompute(order)
        _audit(order, "line_item.added", "order_line_item", line.id, payload=f"total_cents={line.total_cents}")
        db.session.commit()
        return line

    return _serialized(_op)


def update_line_item(line_id: int, patch: LineItemPatch) -> OrderLineItem:
    """
    Apply a LineItemPatch to a line and recompute the order.

    The merged line is validated before anything is written.
    """
    changes = _changes(patch)
    if not changes:
        return _get_line(line_id)

    def _op():
        line = _get_line(line_id)
        order = _lock_live_order(line.order_id)
        db.session.refresh(line)

        merged = patch.apply_to(LineInput.from_line_item(line))
        validate_line(merged)

        for key in (
            "pricing", "category", "quantity_hundredths", "labor_hours_hundredths",
            "fixed_price_cents", "labor_rate_cents", "parts_cost_cents",
            "discount_cents", "discount_bps", "tax_cents", "tax_bps",
            "taxable", "hidden", "deferred", "status",
        ):
            setattr(line, key, getattr(merged, key))
        for key in ("name", "description", "note", "ordinal"):
            if key in changes:
                setattr(line, key, changes[key])
        line.updated_at = utcnow()

        _recompute(order)
        _audit(order, "line_item.updated", "order_line_item", line.id, payload=",".join(sorted(changes)))
        db.session.commit()
        return line

    return _serialized(_op)


def remove_line_item(line_id: int) -> str:
    """
    Remove a line from its order.

    Once money has settled against the order the line is hidden instead of
    deleted, so the figures a payment was taken against stay reproducible.

    Returns:
        "deleted" or "hidden"
    """
    def _op():
        line = _get_line(line_id)
        order = _lock_live_order(line.order_id)

        if _has_settled_money(order.id):
            line.hidden = True
            line.updated_at = utcnow()
            action = "hidden"
        else:
            db.session.delete(line)
            action = "deleted"
        db.session.flush()

        _recompute(order)
        _audit(order, f"line_item.{action}", "order_line_item", line_id)
        db.session.commit()
        return action

    return _serialized(_op)


# =============================================================================
# READS
# =============================================================================

def get_order_detail(order_id: int) -> dict:
    """Order with priced lines, totals, balance, authorizations and transactions."""
    order = _get_order(order_id)
    totals = totals_for_order(order)
    transactions = get_transactions(order.id)
    bal = compute_balance(totals.total_cents, transactions, authorized_total(order.id))

    amounts_by_line = {result.line_id: result for result in totals.lines}
    lines = []
    for line in get_order_lines(order.id):
        row = line.to_dict()
        result = amounts_by_line.get(line.id)
        if result is not None:
            row["amounts"] = result.amounts.to_dict()
            row["included"] = result.included
        lines.append(row)

    if order.calculated_total_cents != totals.total_cents:
        current_app.logger.warning(
            "Order %s cached total %s differs from computed %s",
            order.id, order.calculated_total_cents, totals.total_cents,
        )

    return {
        "order": order.to_dict(),
        "line_items": lines,
        "totals": totals.to_dict(),
        "balance": bal.to_dict(),
        "authorizations": [a.to_dict() for a in active_authorizations(order.id)],
        "transactions": [t.to_dict() for t in transactions],
    }


def list_orders(
    *,
    location_id: int | None = None,
    customer_id: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    include_deleted: bool = False,
    page: int = 1,
    per_page: int | None = None,
) -> dict:
    """
    Paginated order listing, newest first.

    Returns:
        {"orders": [...], "page": n, "per_page": n, "total": n}
    """
    default_size = current_app.config.get("DEFAULT_PAGE_SIZE", 50)
    max_size = current_app.config.get("MAX_PAGE_SIZE", 200)
    per_page = min(max(per_page or default_size, 1), max_size)
    page = max(page or 1, 1)

    query = db.session.query(Order)
    if not include_deleted:
        query = query.filter(Order.deleted.is_(False))
    if location_id is not None:
        query = query.filter(Order.location_id == location_id)
    if customer_id is not None:
        query = query.filter(Order.customer_id == customer_id)
    if status:
        query = query.filter(Order.status == status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)

    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "orders": [o.to_dict() for o in orders],
        "page": page,
        "per_page": per_page,
        "total": total,
    }
