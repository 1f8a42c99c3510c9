# Overview: Ledger reconciliation engine; append-only transactions and balances per order.

"""
Order Ledger

WHY: The order total comes from the rollup; money comes from the ledger.
This module keeps the two reconciled without ever editing history.

DESIGN PRINCIPLES:
- Append-only: corrections are new rows (a refund), never edits to a
  settled amount.
- Idempotent: (gateway, payment_reference) identifies an external effect.
  Recording it twice returns the existing row (duplicate_reference).
- Bounded: payments may not push exposure (net collected + pending + new)
  past the sum of active authorizations, or past the order total when the
  order has none, unless the caller passes override=True.
- Never guesses: a pending row only settles from an authoritative status
  (a gateway answer or a caller-confirmed record).
- Serialized: every write runs under the order lock and refreshes the
  order's ledger cache in the same DB transaction.

STATE MACHINE:
    pending   -> succeeded | failed
    succeeded -> voided          (refunds only)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, OrderTransaction, OrderAuthorization
from chariot.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_order, run_with_retry
from .rollup import totals_for_order


class LedgerError(Exception):
    """Raised for ledger operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class LedgerNotFound(LedgerError):
    """Order, transaction or authorization does not exist."""


class InvalidTransition(LedgerError):
    """Requested status change is not allowed by the transaction state machine."""


# =============================================================================
# CONSTANTS
# =============================================================================

KIND_PAYMENT = "payment"
KIND_REFUND = "refund"
KIND_AUTHORIZATION = "authorization"
KIND_ADJUSTMENT = "adjustment"
VALID_KINDS = (KIND_PAYMENT, KIND_REFUND, KIND_AUTHORIZATION, KIND_ADJUSTMENT)

TXN_PENDING = "pending"
TXN_SUCCEEDED = "succeeded"
TXN_FAILED = "failed"
TXN_VOIDED = "voided"
LIVE_STATUSES = (TXN_PENDING, TXN_SUCCEEDED)

ALLOWED_TRANSITIONS = {
    TXN_PENDING: {TXN_SUCCEEDED, TXN_FAILED},
    TXN_SUCCEEDED: {TXN_VOIDED},
    TXN_FAILED: set(),
    TXN_VOIDED: set(),
}
VOIDABLE_KINDS = (KIND_REFUND,)

GATEWAY_MANUAL = "manual"

OUTCOME_RECORDED = "recorded"
OUTCOME_SETTLED = "settled"
OUTCOME_DUPLICATE_REFERENCE = "duplicate_reference"
OUTCOME_OVER_AUTHORIZATION = "over_authorization"

PAYMENT_STATUS_UNPAID = "unpaid"
PAYMENT_STATUS_PARTIAL = "partial"
PAYMENT_STATUS_PAID = "paid"
PAYMENT_STATUS_OVERPAID = "overpaid"


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass(frozen=True)
class Balance:
    total_cents: int
    paid_cents: int
    refunded_cents: int
    adjustment_cents: int
    due_cents: int
    credit_cents: int
    held_cents: int
    pending_cents: int
    authorized_cents: int | None = None
    authorized_remaining_cents: int | None = None

    @property
    def net_paid_cents(self) -> int:
        return self.paid_cents - self.refunded_cents

    @property
    def payment_status(self) -> str:
        collected = self.net_paid_cents + self.adjustment_cents
        if collected == 0:
            return PAYMENT_STATUS_UNPAID
        if collected < self.total_cents:
            return PAYMENT_STATUS_PARTIAL
        if collected == self.total_cents:
            return PAYMENT_STATUS_PAID
        return PAYMENT_STATUS_OVERPAID

    def to_dict(self) -> dict:
        return {
            "total_cents": self.total_cents,
            "paid_cents": self.paid_cents,
            "refunded_cents": self.refunded_cents,
            "adjustment_cents": self.adjustment_cents,
            "due_cents": self.due_cents,
            "credit_cents": self.credit_cents,
            "held_cents": self.held_cents,
            "pending_cents": self.pending_cents,
            "authorized_cents": self.authorized_cents,
            "authorized_remaining_cents": self.authorized_remaining_cents,
            "payment_status": self.payment_status,
        }


@dataclass(frozen=True)
class TransactionRequest:
    kind: str
    amount_cents: int
    status: str = TXN_SUCCEEDED
    gateway: str = GATEWAY_MANUAL
    payment_method: str | None = None
    payment_reference: str | None = None
    idempotency_key: str | None = None
    related_transaction_id: int | None = None
    failure_reason: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class RecordResult:
    outcome: str
    transaction: OrderTransaction | None
    balance: Balance
    limit_cents: int | None = None
    attempted_cents: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (OUTCOME_RECORDED, OUTCOME_SETTLED, OUTCOME_DUPLICATE_REFERENCE)

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "transaction": self.transaction.to_dict() if self.transaction is not None else None,
            "balance": self.balance.to_dict(),
            "limit_cents": self.limit_cents,
            "attempted_cents": self.attempted_cents,
        }


# =============================================================================
# PURE BALANCE MATH
# =============================================================================

def compute_balance(
    total_cents: int,
    transactions: Iterable,
    authorized_cents: int | None = None,
) -> Balance:
    """
    Derive balances from ledger rows (anything with kind/status/amount_cents).

    due    = max(0, total - paid + refunded - adjustments)
    credit = max(0, paid - refunded + adjustments - total)

    Exactly one of due/credit can be non-zero; overpayment never shows up
    as a negative due.
    """
    paid = refunded = adjustments = held = pending = 0
    for txn in transactions:
        if txn.status == TXN_PENDING:
            if txn.kind == KIND_PAYMENT:
                pending += txn.amount_cents
            continue
        if txn.status != TXN_SUCCEEDED:
            continue
        if txn.kind == KIND_PAYMENT:
            paid += txn.amount_cents
        elif txn.kind == KIND_REFUND:
            refunded += txn.amount_cents
        elif txn.kind == KIND_ADJUSTMENT:
            adjustments += txn.amount_cents
        elif txn.kind == KIND_AUTHORIZATION:
            held += txn.amount_cents

    collected = paid - refunded + adjustments
    remaining = None
    if authorized_cents is not None:
        remaining = max(0, authorized_cents - (paid - refunded))

    return Balance(
        total_cents=total_cents,
        paid_cents=paid,
        refunded_cents=refunded,
        adjustment_cents=adjustments,
        due_cents=max(0, total_cents - collected),
        credit_cents=max(0, collected - total_cents),
        held_cents=held,
        pending_cents=pending,
        authorized_cents=authorized_cents,
        authorized_remaining_cents=remaining,
    )


def payment_limit(total_cents: int, authorized_cents: int | None) -> int:
    """Ceiling for payment exposure: active authorizations, else the order total."""
    if authorized_cents is not None:
        return authorized_cents
    return total_cents


def check_transition(txn: OrderTransaction, new_status: str) -> None:
    if new_status not in ALLOWED_TRANSITIONS.get(txn.status, set()):
        raise InvalidTransition(
            f"Cannot move {txn.kind} transaction from {txn.status} to {new_status}",
            details={"transaction_id": txn.id, "status": txn.status, "requested": new_status},
        )
    if new_status == TXN_VOIDED and txn.kind not in VOIDABLE_KINDS:
        raise InvalidTransition(
            f"Only refunds can be voided; correct a {txn.kind} with a refund",
            details={"transaction_id": txn.id, "kind": txn.kind},
        )


# =============================================================================
# QUERIES
# =============================================================================

def get_transactions(order_id: int, include_failed: bool = True) -> list[OrderTransaction]:
    query = db.session.query(OrderTransaction).filter_by(order_id=order_id)
    if not include_failed:
        query = query.filter(OrderTransaction.status.in_([TXN_PENDING, TXN_SUCCEEDED]))
    return query.order_by(OrderTransaction.created_at, OrderTransaction.id).all()


def get_transaction(transaction_id: int) -> OrderTransaction:
    txn = db.session.query(OrderTransaction).filter_by(id=transaction_id).first()
    if not txn:
        raise LedgerNotFound(f"Transaction {transaction_id} not found")
    return txn


def find_by_reference(gateway: str, payment_reference: str) -> OrderTransaction | None:
    """The live (pending or succeeded) row holding a reference, else the latest dead one."""
    query = db.session.query(OrderTransaction).filter_by(gateway=gateway, payment_reference=payment_reference)
    live = query.filter(OrderTransaction.status.in_(LIVE_STATUSES)).first()
    if live is not None:
        return live
    return query.order_by(OrderTransaction.id.desc()).first()


def find_by_idempotency_key(idempotency_key: str) -> OrderTransaction | None:
    return db.session.query(OrderTransaction).filter_by(idempotency_key=idempotency_key).first()


def active_authorizations(order_id: int) -> list[OrderAuthorization]:
    return (
        db.session.query(OrderAuthorization)
        .filter(OrderAuthorization.order_id == order_id, OrderAuthorization.revoked_at.is_(None))
        .order_by(OrderAuthorization.authorized_at, OrderAuthorization.id)
        .all()
    )


def authorized_total(order_id: int) -> int | None:
    """Sum of active authorizations, or None when the order has none."""
    auths = active_authorizations(order_id)
    if not auths:
        return None
    return sum(a.authorized_cost_cents for a in auths)


def balance(order_id: int) -> Balance:
    """Current balance for an order, computed from the ledger (not the cache)."""
    order = db.session.query(Order).filter_by(id=order_id).first()
    if not order:
        raise LedgerNotFound(f"Order {order_id} not found")
    return _compute_order_balance(order)


def find_stale_pending(
    older_than: datetime,
    limit: int = 100,
    gateway: str | None = None,
) -> list[OrderTransaction]:
    """Pending rows created before `older_than`, oldest first."""
    query = db.session.query(OrderTransaction).filter(
        OrderTransaction.status == TXN_PENDING,
        OrderTransaction.created_at <= older_than,
    )
    if gateway is not None:
        query = query.filter(OrderTransaction.gateway == gateway)
    return (
        query
        .order_by(OrderTransaction.created_at, OrderTransaction.id)
        .limit(limit)
        .all()
    )


def _serialized(op):
    """run_with_retry that also drops the half-done unit of work on a ledger error."""
    try:
        return run_with_retry(op)
    except LedgerError:
        db.session.rollback()
        raise


def _compute_order_balance(order: Order, total_cents: int | None = None) -> Balance:
    if total_cents is None:
        total_cents = totals_for_order(order).total_cents
    return compute_balance(total_cents, get_transactions(order.id), authorized_total(order.id))


def refresh_order_balance(order: Order, total_cents: int | None = None) -> Balance:
    """
    Recompute and write the order's ledger cache columns.

    Runs inside the caller's order-scoped transaction; does not commit.
    """
    bal = _compute_order_balance(order, total_cents)
    order.paid_cents = bal.paid_cents
    order.refunded_cents = bal.refunded_cents
    order.due_cents = bal.due_cents
    order.credit_cents = bal.credit_cents
    order.payment_status = bal.payment_status
    db.session.flush()
    return bal


# =============================================================================
# RECORDING
# =============================================================================

def _validate_request(req: TransactionRequest) -> None:
    problems = {}
    if req.kind not in VALID_KINDS:
        problems["kind"] = f"must be one of {list(VALID_KINDS)}"
    if req.status not in (TXN_PENDING, TXN_SUCCEEDED, TXN_FAILED):
        problems["status"] = "new transactions must be pending, succeeded or failed"
    if isinstance(req.amount_cents, bool) or not isinstance(req.amount_cents, int):
        problems["amount_cents"] = "must be an integer number of cents"
    elif req.amount_cents <= 0:
        problems["amount_cents"] = "must be positive"
    if not req.gateway:
        problems["gateway"] = "required"
    if req.related_transaction_id is not None and req.kind != KIND_REFUND:
        problems["related_transaction_id"] = "only refunds reference another transaction"
    if problems:
        raise LedgerError("Invalid transaction", details=problems)


def _existing_for(req: TransactionRequest) -> OrderTransaction | None:
    if req.payment_reference:
        existing = find_by_reference(req.gateway, req.payment_reference)
        # A failed or voided row does not hold its reference against a new live one
        if existing is not None and (existing.status in LIVE_STATUSES or req.status not in LIVE_STATUSES):
            return existing
    if req.idempotency_key:
        return find_by_idempotency_key(req.idempotency_key)
    return None


def _mark_status(txn: OrderTransaction, status: str, *, failure_reason: str | None = None) -> None:
    check_transition(txn, status)
    now = utcnow()
    txn.status = status
    if status == TXN_SUCCEEDED:
        txn.applied_at = now
    elif status == TXN_FAILED:
        txn.failed_at = now
        txn.failure_reason = (failure_reason or txn.failure_reason or "")[:255] or None
    elif status == TXN_VOIDED:
        txn.voided_at = now


def _check_refund_bounds(order: Order, req: TransactionRequest, current: Balance) -> None:
    pending_refunds = sum(
        t.amount_cents for t in get_transactions(order.id)
        if t.kind == KIND_REFUND and t.status == TXN_PENDING
    )
    refundable = current.net_paid_cents - pending_refunds
    if req.amount_cents > refundable:
        raise LedgerError(
            "Refund amount exceeds amount collected",
            details={"refundable_cents": max(0, refundable), "requested_cents": req.amount_cents},
        )

    if req.related_transaction_id is None:
        return

    original = db.session.query(OrderTransaction).filter_by(id=req.related_transaction_id).first()
    if not original or original.order_id != order.id:
        raise LedgerNotFound(f"Transaction {req.related_transaction_id} not found on order {order.id}")
    if original.kind != KIND_PAYMENT or original.status != TXN_SUCCEEDED:
        raise LedgerError("Refunds must reference a succeeded payment")

    already = sum(
        t.amount_cents
        for t in db.session.query(OrderTransaction).filter_by(
            related_transaction_id=original.id, kind=KIND_REFUND
        ).all()
        if t.status in (TXN_PENDING, TXN_SUCCEEDED)
    )
    if already + req.amount_cents > original.amount_cents:
        raise LedgerError(
            "Refund exceeds the original payment",
            details={
                "payment_cents": original.amount_cents,
                "already_refunded_cents": already,
                "requested_cents": req.amount_cents,
            },
        )


def _audit_transaction(order: Order, txn: OrderTransaction, event_type: str, note: str | None = None) -> None:
    append_audit_event(
        company_id=order.company_id,
        event_type=event_type,
        entity_type="order_transaction",
        entity_id=txn.id,
        order_id=order.id,
        transaction_id=txn.id,
        note=note,
        payload=(
            f"kind={txn.kind},status={txn.status},amount_cents={txn.amount_cents},"
            f"gateway={txn.gateway},reference={txn.payment_reference or ''}"
        ),
    )


def record_transaction(order_id: int, request: TransactionRequest, *, override: bool = False) -> RecordResult:
    """
    Append a transaction to an order's ledger.

    Outcomes:
        recorded            new row stored
        settled             a pending row with the same reference/key was
                            moved to the requested terminal status
        duplicate_reference the reference is already recorded; nothing
                            changed, the existing row is returned
        over_authorization  the payment would exceed the authorized ceiling;
                            nothing stored, caller may retry with override

    Raises:
        LedgerError for malformed requests, refunds beyond what was
        collected, or a reference that belongs to a different order.
    """
    _validate_request(request)

    def _op() -> RecordResult:
        existing = _existing_for(request)
        if existing is not None:
            return _resolve_existing(order_id, existing, request)

        order = lock_order(order_id)
        if not order:
            raise LedgerNotFound(f"Order {order_id} not found")
        if order.deleted and request.kind in (KIND_PAYMENT, KIND_AUTHORIZATION):
            raise LedgerError("Cannot take payments on a deleted order")

        total_cents = totals_for_order(order).total_cents
        authorized = authorized_total(order.id)
        current = compute_balance(total_cents, get_transactions(order.id), authorized)

        exceeded = False
        limit = None
        attempted = None
        if request.kind == KIND_PAYMENT and request.status in (TXN_PENDING, TXN_SUCCEEDED):
            limit = payment_limit(total_cents, authorized)
            attempted = current.net_paid_cents + current.pending_cents + request.amount_cents
            exceeded = attempted > limit
            if exceeded and not override:
                db.session.rollback()
                return RecordResult(
                    outcome=OUTCOME_OVER_AUTHORIZATION,
                    transaction=None,
                    balance=current,
                    limit_cents=limit,
                    attempted_cents=attempted,
                )
        elif request.kind == KIND_REFUND and request.status in (TXN_PENDING, TXN_SUCCEEDED):
            _check_refund_bounds(order, request, current)

        now = utcnow()
        txn = OrderTransaction(
            company_id=order.company_id,
            location_id=order.location_id,
            order_id=order.id,
            customer_id=order.customer_id,
            kind=request.kind,
            status=request.status,
            amount_cents=request.amount_cents,
            gateway=request.gateway,
            payment_method=request.payment_method,
            payment_reference=request.payment_reference,
            idempotency_key=request.idempotency_key,
            related_transaction_id=request.related_transaction_id,
            override_applied=exceeded,
            failure_reason=request.failure_reason if request.status == TXN_FAILED else None,
            note=request.note,
            created_at=now,
            applied_at=now if request.status == TXN_SUCCEEDED else None,
            failed_at=now if request.status == TXN_FAILED else None,
        )
        db.session.add(txn)
        db.session.flush()

        _audit_transaction(order, txn, "transaction.recorded", note="override" if exceeded else None)
        bal = refresh_order_balance(order, total_cents)

        db.session.commit()
        return RecordResult(
            outcome=OUTCOME_RECORDED,
            transaction=txn,
            balance=bal,
            limit_cents=limit,
            attempted_cents=attempted,
        )

    try:
        return _serialized(_op)
    except IntegrityError:
        # Lost a race on the reference/key unique constraint; the replay
        # finds the winner's row and reports it.
        db.session.rollback()
        return _serialized(_op)


def _resolve_existing(order_id: int, existing: OrderTransaction, request: TransactionRequest) -> RecordResult:
    if existing.order_id != order_id:
        raise LedgerError(
            "Payment reference already recorded on a different order",
            details={"transaction_id": existing.id, "order_id": existing.order_id},
        )

    settling = existing.status == TXN_PENDING and request.status in (TXN_SUCCEEDED, TXN_FAILED)
    if not settling:
        return RecordResult(
            outcome=OUTCOME_DUPLICATE_REFERENCE,
            transaction=existing,
            balance=balance(order_id),
        )

    if existing.kind != request.kind or existing.amount_cents != request.amount_cents:
        raise LedgerError(
            "Settlement does not match the pending transaction",
            details={
                "transaction_id": existing.id,
                "pending_kind": existing.kind,
                "pending_amount_cents": existing.amount_cents,
                "requested_kind": request.kind,
                "requested_amount_cents": request.amount_cents,
            },
        )

    txn, bal = _settle_locked(
        existing.id,
        request.status,
        payment_reference=request.payment_reference,
        failure_reason=request.failure_reason,
    )
    db.session.commit()
    return RecordResult(outcome=OUTCOME_SETTLED, transaction=txn, balance=bal)


# =============================================================================
# STATUS CHANGES
# =============================================================================

def _settle_locked(
    transaction_id: int,
    status: str,
    *,
    payment_reference: str | None = None,
    failure_reason: str | None = None,
) -> tuple[OrderTransaction, Balance]:
    txn = get_transaction(transaction_id)
    order = lock_order(txn.order_id)
    db.session.refresh(txn)

    if payment_reference and txn.payment_reference and txn.payment_reference != payment_reference:
        raise LedgerError(
            "Transaction already carries a different payment reference",
            details={"transaction_id": txn.id},
        )
    if payment_reference and not txn.payment_reference:
        txn.payment_reference = payment_reference

    if txn.status != status:
        _mark_status(txn, status, failure_reason=failure_reason)
        event = {
            TXN_SUCCEEDED: "transaction.succeeded",
            TXN_FAILED: "transaction.failed",
            TXN_VOIDED: "transaction.voided",
        }[status]
        _audit_transaction(order, txn, event, note=failure_reason)

    bal = refresh_order_balance(order)
    return txn, bal


def settle_transaction(
    transaction_id: int,
    status: str,
    *,
    payment_reference: str | None = None,
    failure_reason: str | None = None,
) -> OrderTransaction:
    """
    Resolve a pending transaction to succeeded or failed.

    Calling it again with the status the row already has is a no-op.
    """
    if status not in (TXN_SUCCEEDED, TXN_FAILED):
        raise InvalidTransition(f"Cannot settle a transaction to {status}")

    def _op():
        txn, _ = _settle_locked(
            transaction_id,
            status,
            payment_reference=payment_reference,
            failure_reason=failure_reason,
        )
        db.session.commit()
        return txn

    return _serialized(_op)


def attach_reference(transaction_id: int, payment_reference: str) -> OrderTransaction:
    """Record the provider id learned for a still-pending transaction (set once)."""
    def _op():
        txn = get_transaction(transaction_id)
        lock_order(txn.order_id)
        db.session.refresh(txn)
        if txn.payment_reference == payment_reference:
            db.session.rollback()
            return txn
        if txn.payment_reference:
            raise LedgerError(
                "Transaction already carries a different payment reference",
                details={"transaction_id": txn.id},
            )
        txn.payment_reference = payment_reference
        db.session.commit()
        return txn

    return _serialized(_op)


def void_transaction(transaction_id: int, reason: str) -> OrderTransaction:
    """
    Void a succeeded refund (e.g. recorded against the wrong order).

    Payments cannot be voided; they are corrected with a refund.
    """
    def _op():
        txn = get_transaction(transaction_id)
        order = lock_order(txn.order_id)
        db.session.refresh(txn)
        _mark_status(txn, TXN_VOIDED)
        _audit_transaction(order, txn, "transaction.voided", note=reason)
        refresh_order_balance(order)
        db.session.commit()
        return txn

    return _serialized(_op)


# =============================================================================
# AUTHORIZATIONS
# =============================================================================

def add_authorization(
    order_id: int,
    authorized_cost_cents: int,
    method: str,
    note: str | None = None,
) -> OrderAuthorization:
    """Record a customer-approved spending ceiling for an order."""
    if isinstance(authorized_cost_cents, bool) or not isinstance(authorized_cost_cents, int):
        raise LedgerError("authorized_cost_cents must be an integer number of cents")
    if authorized_cost_cents < 0:
        raise LedgerError("authorized_cost_cents must not be negative")
    if not method:
        raise LedgerError("method is required")

    def _op():
        order = lock_order(order_id)
        if not order:
            raise LedgerNotFound(f"Order {order_id} not found")
        if order.deleted:
            raise LedgerError("Cannot authorize a deleted order")

        auth = OrderAuthorization(
            order_id=order.id,
            customer_id=order.customer_id,
            authorized_cost_cents=authorized_cost_cents,
            method=method,
            note=note,
            authorized_at=utcnow(),
        )
        db.session.add(auth)
        db.session.flush()

        append_audit_event(
            company_id=order.company_id,
            event_type="authorization.added",
            entity_type="order_authorization",
            entity_id=auth.id,
            order_id=order.id,
            payload=f"authorized_cost_cents={authorized_cost_cents},method={method}",
        )
        db.session.commit()
        return auth

    return _serialized(_op)


def revoke_authorization(authorization_id: int, reason: str | None = None) -> OrderAuthorization:
    def _op():
        auth = db.session.query(OrderAuthorization).filter_by(id=authorization_id).first()
        if not auth:
            raise LedgerNotFound(f"Authorization {authorization_id} not found")
        order = lock_order(auth.order_id)
        if auth.revoked_at is not None:
            db.session.rollback()
            return auth

        auth.revoked_at = utcnow()
        auth.revoke_reason = reason
        append_audit_event(
            company_id=order.company_id,
            event_type="authorization.revoked",
            entity_type="order_authorization",
            entity_id=auth.id,
            order_id=order.id,
            note=reason,
        )
        db.session.commit()
        return auth

    return _serialized(_op)
