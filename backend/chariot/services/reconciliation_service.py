# Overview: Background pass that resolves pending gateway transactions from the provider.

"""
Pending Reconciliation

A transaction stays pending when the gateway call timed out or the provider
had not finished. Nothing else ever guesses its outcome; this pass asks the
provider and settles the row with what it says.

- Row knows its provider id: poll get_status / get_refund.
- Row never learned its id: replay the original call with the same
  idempotency key (the provider returns the first attempt's result instead
  of charging again). Only inside IDEMPOTENCY_WINDOW_SECONDS; older rows are
  reported as needing manual review.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import Customer, Order, OrderTransaction
from chariot.time_utils import seconds_ago, utcnow
from .gateway import GatewayError, GatewayRejected, PaymentGateway, get_gateway
from .ledger_service import (
    KIND_PAYMENT,
    KIND_REFUND,
    TXN_FAILED,
    LedgerError,
    find_stale_pending,
    settle_transaction,
)
from .payment_service import apply_charge_status, apply_refund_status


# Stripe keeps idempotency keys for 24 hours
IDEMPOTENCY_WINDOW_SECONDS = 24 * 60 * 60


@dataclass
class ReconcileReport:
    examined: int = 0
    succeeded: int = 0
    failed: int = 0
    still_pending: int = 0
    needs_review: list[int] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def resolved(self) -> int:
        return self.succeeded + self.failed

    def count(self, status: str) -> None:
        if status == "succeeded":
            self.succeeded += 1
        elif status == "failed":
            self.failed += 1
        else:
            self.still_pending += 1

    def to_dict(self) -> dict:
        return {
            "examined": self.examined,
            "resolved": self.resolved,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "still_pending": self.still_pending,
            "needs_review": list(self.needs_review),
            "errors": list(self.errors),
        }


def _within_key_window(txn: OrderTransaction) -> bool:
    return txn.created_at > utcnow() - timedelta(seconds=IDEMPOTENCY_WINDOW_SECONDS)


def _resolve_payment(gateway: PaymentGateway, txn: OrderTransaction) -> str | None:
    if txn.payment_reference:
        result = gateway.get_status(txn.payment_reference)
    elif txn.idempotency_key and _within_key_window(txn):
        order = db.session.query(Order).filter_by(id=txn.order_id).first()
        customer = db.session.query(Customer).filter_by(id=txn.customer_id).first()
        result = gateway.create_charge(
            txn.amount_cents,
            customer.gateway_customer_ref if customer else None,
            metadata={"order_id": order.id, "order_number": order.order_number, "transaction_id": txn.id},
            idempotency_key=txn.idempotency_key,
        )
    else:
        return None
    return apply_charge_status(txn, result.status, result.intent_id, result.amount_cents).status


def _resolve_refund(gateway: PaymentGateway, txn: OrderTransaction) -> str | None:
    if txn.payment_reference:
        result = gateway.get_refund(txn.payment_reference)
    elif txn.idempotency_key and _within_key_window(txn) and txn.related_transaction_id:
        original = db.session.query(OrderTransaction).filter_by(id=txn.related_transaction_id).first()
        if not original or not original.payment_reference:
            return None
        result = gateway.create_refund(
            original.payment_reference,
            txn.note,
            txn.amount_cents,
            idempotency_key=txn.idempotency_key,
        )
    else:
        return None
    return apply_refund_status(txn, result.status, result.refund_id).status


def reconcile_pending(
    gateway: PaymentGateway | None = None,
    older_than_seconds: int | None = None,
    limit: int | None = None,
) -> ReconcileReport:
    """
    Resolve pending transactions older than `older_than_seconds`.

    Each row is handled on its own; a provider outage on one row leaves it
    pending and moves on to the next.
    """
    gateway = gateway or get_gateway()
    if older_than_seconds is None:
        older_than_seconds = current_app.config.get("RECONCILE_PENDING_AFTER_SECONDS", 300)
    if limit is None:
        limit = current_app.config.get("RECONCILE_BATCH_SIZE", 100)

    report = ReconcileReport()
    rows = find_stale_pending(seconds_ago(older_than_seconds), limit=limit, gateway=gateway.name)

    for txn in rows:
        report.examined += 1
        try:
            if txn.kind == KIND_PAYMENT:
                status = _resolve_payment(gateway, txn)
            elif txn.kind == KIND_REFUND:
                status = _resolve_refund(gateway, txn)
            else:
                status = None
        except GatewayRejected as exc:
            settle_transaction(txn.id, TXN_FAILED, failure_reason=str(exc))
            current_app.logger.info("Reconcile: transaction %s rejected by provider: %s", txn.id, exc)
            report.count("failed")
            continue
        except GatewayError as exc:
            current_app.logger.warning("Reconcile: provider unavailable for transaction %s: %s", txn.id, exc)
            report.still_pending += 1
            report.errors.append({"transaction_id": txn.id, "error": str(exc)})
            continue
        except LedgerError as exc:
            db.session.rollback()
            current_app.logger.warning("Reconcile: could not settle transaction %s: %s", txn.id, exc)
            report.errors.append({"transaction_id": txn.id, "error": str(exc), "details": exc.details})
            continue

        if status is None:
            report.needs_review.append(txn.id)
            current_app.logger.warning("Reconcile: transaction %s cannot be resolved automatically", txn.id)
            continue

        report.count(status)
        if status != "pending":
            current_app.logger.info("Reconcile: transaction %s resolved as %s", txn.id, status)

    return report
