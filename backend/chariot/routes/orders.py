# Overview: Flask API routes for work orders, line items and the order ledger.

"""
Work Order API Routes

DESIGN:
- Orders and line items are changed through patch payloads; only the keys
  sent are changed, unknown keys are rejected
- Every write returns the recomputed order so clients never show stale totals
- Ledger entries are appended, never edited; outcomes come back as data
  (recorded, settled, duplicate_reference, over_authorization)
"""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..models import OrderAuthorization
from ..services import ledger_service, order_service
from ..services.ledger_service import (
    OUTCOME_DUPLICATE_REFERENCE,
    OUTCOME_OVER_AUTHORIZATION,
    InvalidTransition,
    LedgerError,
    LedgerNotFound,
    TransactionRequest,
)
from ..services.order_service import (
    LineItemDraft,
    LineItemPatch,
    OrderError,
    OrderNotFound,
    OrderPatch,
)
from ..services.pricing import LineItemError


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")
line_items_bp = Blueprint("line_items", __name__, url_prefix="/api/line-items")


def _server_error(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDERS
# =============================================================================

@orders_bp.post("/")
def create_order_route():
    """
    Create a work order.

    Request body:
    {
        "company_id": 1,
        "location_id": 1,
        "customer_id": 12,
        "note": "Winterize twin outboards",     (optional)
        "priority": "normal",                    (optional)
        "discount_percent": "10",                (optional)
        "tax_percent": "8.25"                    (optional)
    }
    """
    try:
        data = request.get_json() or {}
        company_id = data.get("company_id")
        location_id = data.get("location_id")
        customer_id = data.get("customer_id")

        if not all([company_id, location_id, customer_id]):
            return jsonify({"error": "company_id, location_id and customer_id required"}), 400

        patch = OrderPatch.from_payload({
            k: v for k, v in data.items() if k in ("note", "priority", "discount_percent", "tax_percent")
        })
        order = order_service.create_order(
            company_id=company_id,
            location_id=location_id,
            customer_id=customer_id,
            note=patch.note or "",
            priority=patch.priority or "normal",
            discount_bps=patch.discount_bps or 0,
            tax_bps=patch.tax_bps or 0,
        )
        return jsonify({"order": order.to_dict()}), 201

    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except OrderError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to create order")


@orders_bp.get("/")
def list_orders_route():
    """
    List orders, newest first.

    Query params: location_id, customer_id, status, payment_status,
    include_deleted (true/false), page, per_page
    """
    try:
        result = order_service.list_orders(
            location_id=request.args.get("location_id", type=int),
            customer_id=request.args.get("customer_id", type=int),
            status=request.args.get("status"),
            payment_status=request.args.get("payment_status"),
            include_deleted=request.args.get("include_deleted", "false").lower() == "true",
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", type=int),
        )
        return jsonify(result), 200
    except Exception:
        return _server_error("Failed to list orders")


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    """Order with priced lines, totals, balance and ledger."""
    try:
        return jsonify(order_service.get_order_detail(order_id)), 200
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        return _server_error("Failed to load order")


@orders_bp.patch("/<int:order_id>")
def update_order_route(order_id: int):
    try:
        patch = OrderPatch.from_payload(request.get_json() or {})
        order = order_service.update_order(order_id, patch)
        return jsonify({"order": order.to_dict()}), 200

    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except OrderError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to update order")


@orders_bp.delete("/<int:order_id>")
def delete_order_route(order_id: int):
    """Tombstone an order; its ledger stays readable."""
    try:
        order = order_service.delete_order(order_id)
        return jsonify({"order": order.to_dict()}), 200
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        return _server_error("Failed to delete order")


# =============================================================================
# LINE ITEMS
# =============================================================================

@orders_bp.post("/<int:order_id>/line-items")
def add_line_item_route(order_id: int):
    """
    Add a line item.

    Request body (fixed price):
        {"name": "Haul out", "pricing": "fixed_price", "fixed_price_cents": 45000}
    Labor:
        {"name": "Impeller", "pricing": "labor_rate", "labor_rate_cents": 12500, "labor_hours": "1.5"}
    Parts:
        {"name": "Zinc anode", "pricing": "parts_cost", "parts_cost_cents": 1899, "quantity": 4,
         "tax_percent": "8"}
    """
    try:
        draft = LineItemDraft.from_payload(request.get_json() or {})
        line = order_service.add_line_item(order_id, draft)
        return jsonify({"line_item": line.to_dict(), "order": line.order.to_dict()}), 201

    except (OrderNotFound, LedgerNotFound) as e:
        return jsonify({"error": str(e)}), 404
    except (OrderError, LineItemError) as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to add line item")


@line_items_bp.patch("/<int:line_id>")
def update_line_item_route(line_id: int):
    try:
        patch = LineItemPatch.from_payload(request.get_json() or {})
        line = order_service.update_line_item(line_id, patch)
        return jsonify({"line_item": line.to_dict(), "order": line.order.to_dict()}), 200

    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except (OrderError, LineItemError) as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to update line item")


@line_items_bp.delete("/<int:line_id>")
def remove_line_item_route(line_id: int):
    """Delete a line, or hide it once money has settled on the order."""
    try:
        action = order_service.remove_line_item(line_id)
        return jsonify({"line_item_id": line_id, "action": action}), 200
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except OrderError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to remove line item")


# =============================================================================
# LEDGER
# =============================================================================

@orders_bp.get("/<int:order_id>/balance")
def get_balance_route(order_id: int):
    try:
        bal = ledger_service.balance(order_id)
        return jsonify({"order_id": order_id, "balance": bal.to_dict()}), 200
    except LedgerNotFound as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        return _server_error("Failed to compute balance")


@orders_bp.get("/<int:order_id>/transactions")
def list_transactions_route(order_id: int):
    """
    Ledger entries for an order, oldest first.

    Query params:
    - include_failed: Include failed entries (default: true)
    """
    try:
        include_failed = request.args.get("include_failed", "true").lower() == "true"
        txns = ledger_service.get_transactions(order_id, include_failed=include_failed)
        return jsonify({"order_id": order_id, "transactions": [t.to_dict() for t in txns]}), 200
    except Exception:
        return _server_error("Failed to list transactions")


@orders_bp.post("/<int:order_id>/transactions")
def record_transaction_route(order_id: int):
    """
    Append a ledger entry (cash, check, manual card, adjustment).

    Request body:
    {
        "kind": "payment",
        "amount_cents": 10000,
        "status": "succeeded",             (optional)
        "gateway": "manual",               (optional)
        "payment_method": "check",         (optional)
        "payment_reference": "CHK-1042",   (optional, idempotency)
        "related_transaction_id": 5,       (refunds, optional)
        "note": "...",                     (optional)
        "override": false                  (optional)
    }

    Returns:
        201: recorded / settled
        200: duplicate_reference (existing entry returned, nothing written)
        409: over_authorization (nothing written; resend with override)
    """
    try:
        data = request.get_json() or {}
        kind = data.get("kind")
        amount_cents = data.get("amount_cents")

        if not kind or amount_cents is None:
            return jsonify({"error": "kind and amount_cents required"}), 400

        req = TransactionRequest(
            kind=kind,
            amount_cents=amount_cents,
            status=data.get("status") or ledger_service.TXN_SUCCEEDED,
            gateway=data.get("gateway") or ledger_service.GATEWAY_MANUAL,
            payment_method=data.get("payment_method"),
            payment_reference=data.get("payment_reference"),
            related_transaction_id=data.get("related_transaction_id"),
            failure_reason=data.get("failure_reason"),
            note=data.get("note"),
        )
        result = ledger_service.record_transaction(order_id, req, override=bool(data.get("override")))

        if result.outcome == OUTCOME_OVER_AUTHORIZATION:
            return jsonify({"error": "Payment exceeds authorized amount", **result.to_dict()}), 409
        if result.outcome == OUTCOME_DUPLICATE_REFERENCE:
            return jsonify(result.to_dict()), 200
        return jsonify(result.to_dict()), 201

    except LedgerNotFound as e:
        return jsonify({"error": str(e)}), 404
    except LedgerError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to record transaction")


@orders_bp.post("/<int:order_id>/transactions/<int:transaction_id>/void")
def void_transaction_route(order_id: int, transaction_id: int):
    """Void a succeeded refund. Body: {"reason": "..."}"""
    try:
        data = request.get_json() or {}
        reason = data.get("reason")
        if not reason:
            return jsonify({"error": "reason required"}), 400

        txn = ledger_service.get_transaction(transaction_id)
        if txn.order_id != order_id:
            return jsonify({"error": "Transaction not found on this order"}), 404

        txn = ledger_service.void_transaction(transaction_id, reason)
        return jsonify({
            "transaction": txn.to_dict(),
            "balance": ledger_service.balance(order_id).to_dict(),
        }), 200

    except LedgerNotFound as e:
        return jsonify({"error": str(e)}), 404
    except InvalidTransition as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except LedgerError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to void transaction")


# =============================================================================
# AUTHORIZATIONS
# =============================================================================

@orders_bp.post("/<int:order_id>/authorizations")
def add_authorization_route(order_id: int):
    """
    Record a customer-approved spending ceiling.

    Request body:
    {
        "authorized_cost_cents": 20000,
        "method": "phone",
        "note": "Owner approved by phone"   (optional)
    }
    """
    try:
        data = request.get_json() or {}
        amount = data.get("authorized_cost_cents")
        method = data.get("method")

        if amount is None or not method:
            return jsonify({"error": "authorized_cost_cents and method required"}), 400

        auth = ledger_service.add_authorization(order_id, amount, method, note=data.get("note"))
        return jsonify({
            "authorization": auth.to_dict(),
            "balance": ledger_service.balance(order_id).to_dict(),
        }), 201

    except LedgerNotFound as e:
        return jsonify({"error": str(e)}), 404
    except LedgerError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to add authorization")


@orders_bp.post("/<int:order_id>/authorizations/<int:authorization_id>/revoke")
def revoke_authorization_route(order_id: int, authorization_id: int):
    try:
        data = request.get_json(silent=True) or {}
        auth = db.session.get(OrderAuthorization, authorization_id)
        if not auth or auth.order_id != order_id:
            return jsonify({"error": "Authorization not found on this order"}), 404

        auth = ledger_service.revoke_authorization(authorization_id, reason=data.get("reason"))
        return jsonify({"authorization": auth.to_dict()}), 200

    except LedgerNotFound as e:
        return jsonify({"error": str(e)}), 404
    except LedgerError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to revoke authorization")
