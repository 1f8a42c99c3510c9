# Overview: Flask API routes for gateway payments; parses input and returns JSON responses.

"""
Payment Gateway API Routes

DESIGN:
- charge: server-initiated charge against the customer's stored method
- create-intent: open an intent the client confirms itself (returns client_secret)
- confirm: record an intent the client confirmed with the provider; the
  provider's status is checked, the client's claim is not trusted
- refund: full or partial refund of a succeeded payment
- GET /<intent_id>: provider status of an intent

Gateway outcomes are data, not errors:
    succeeded / duplicate_reference -> 200
    pending (provider did not answer) -> 202
    failed (declined) -> 402
    over_authorization -> 409
"""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..services import payment_service
from ..services.gateway import GatewayError, GatewayRejected
from ..services.ledger_service import LedgerError, LedgerNotFound, OUTCOME_OVER_AUTHORIZATION
from ..services.payment_service import (
    OUTCOME_FAILED,
    OUTCOME_PENDING,
    PaymentError,
)


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _status_code(result) -> int:
    if result.outcome == OUTCOME_OVER_AUTHORIZATION:
        return 409
    if result.outcome == OUTCOME_PENDING:
        return 202
    if result.outcome == OUTCOME_FAILED:
        return 402
    return 200


def _server_error(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/charge")
def charge_route():
    """
    Charge an order through the configured gateway.

    Request body:
    {
        "order_id": 1,
        "amount_cents": 14300,          (optional, defaults to balance due)
        "idempotency_key": "...",       (optional, reuse to retry safely)
        "override": false               (optional)
    }
    """
    try:
        data = request.get_json() or {}
        order_id = data.get("order_id")
        if not order_id:
            return jsonify({"error": "order_id required"}), 400

        result = payment_service.charge_order(
            order_id,
            data.get("amount_cents"),
            payment_method=data.get("payment_method") or "card",
            idempotency_key=data.get("idempotency_key"),
            override=bool(data.get("override")),
        )
        return jsonify(result.to_dict()), _status_code(result)

    except LedgerNotFound as e:
        return jsonify({"error": str(e)}), 404
    except (PaymentError, LedgerError) as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to charge order")


@payments_bp.post("/create-intent")
def create_intent_route():
    """
    Open an intent for the client to confirm with the provider.

    Request body:
    {
        "order_id": 1,
        "amount_cents": 14300,          (optional, defaults to balance due)
        "idempotency_key": "...",       (optional)
        "override": false               (optional)
    }

    Returns client_secret and intent_id; report the intent back through
    /confirm once the client has confirmed it.
    """
    try:
        data = request.get_json() or {}
        order_id = data.get("order_id")
        if not order_id:
            return jsonify({"error": "order_id required"}), 400

        result = payment_service.create_intent(
            order_id,
            data.get("amount_cents"),
            idempotency_key=data.get("idempotency_key"),
            override=bool(data.get("override")),
        )
        return jsonify(result.to_dict()), _status_code(result)

    except LedgerNotFound as e:
        return jsonify({"error": str(e)}), 404
    except PaymentError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except GatewayRejected as e:
        return jsonify({"error": str(e), "details": e.details}), 402
    except GatewayError as e:
        current_app.logger.warning("Could not open intent: %s", e)
        return jsonify({"error": "Payment provider unavailable, retry later", "details": e.details}), 503
    except Exception:
        return _server_error("Failed to create payment intent")


@payments_bp.get("/<intent_id>")
def intent_status_route(intent_id):
    """Provider status of an intent and the ledger row recorded for it."""
    try:
        return jsonify(payment_service.intent_status(intent_id)), 200

    except PaymentError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except GatewayError as e:
        current_app.logger.warning("Could not read intent %s: %s", intent_id, e)
        return jsonify({"error": "Payment provider unavailable, retry later", "details": e.details}), 503
    except Exception:
        return _server_error("Failed to read payment intent")


@payments_bp.post("/confirm")
def confirm_route():
    """
    Record a client-confirmed payment intent.

    Request body:
    {
        "order_id": 1,
        "intent_id": "pi_...",
        "amount_cents": 14300,   (optional, used only if the provider is unreachable)
        "override": false        (optional)
    }
    """
    try:
        data = request.get_json() or {}
        order_id = data.get("order_id")
        intent_id = data.get("intent_id")
        if not all([order_id, intent_id]):
            return jsonify({"error": "order_id and intent_id required"}), 400

        result = payment_service.confirm_payment(
            order_id,
            intent_id,
            amount_cents=data.get("amount_cents"),
            override=bool(data.get("override")),
        )
        return jsonify(result.to_dict()), _status_code(result)

    except LedgerNotFound as e:
        return jsonify({"error": str(e)}), 404
    except (PaymentError, LedgerError) as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except GatewayError as e:
        current_app.logger.warning("Could not confirm intent: %s", e)
        return jsonify({"error": "Payment provider unavailable, retry later", "details": e.details}), 503
    except Exception:
        return _server_error("Failed to confirm payment")


@payments_bp.post("/refund")
def refund_route():
    """
    Refund a succeeded payment.

    Request body:
    {
        "transaction_id": 7,
        "amount_cents": 3000,                  (optional, defaults to the unrefunded rest)
        "reason": "requested_by_customer"      (optional)
    }
    """
    try:
        data = request.get_json() or {}
        transaction_id = data.get("transaction_id")
        if not transaction_id:
            return jsonify({"error": "transaction_id required"}), 400

        result = payment_service.refund_payment(
            transaction_id,
            data.get("amount_cents"),
            data.get("reason"),
            idempotency_key=data.get("idempotency_key"),
        )
        return jsonify(result.to_dict()), _status_code(result)

    except LedgerNotFound as e:
        return jsonify({"error": str(e)}), 404
    except (PaymentError, LedgerError) as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        return _server_error("Failed to refund payment")
