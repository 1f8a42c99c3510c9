# Overview: Payment flows that drive the gateway and feed its answers into the ledger.

"""
Payment Flows

WHY: The ledger never talks to a provider. These flows do, and they keep
the three steps of a card charge apart so a slow or lost provider call can
never hold the order lock or lose money:

    1. persist a pending transaction (under the order lock, committed)
    2. call the gateway with an idempotency key (no lock held)
    3. persist the gateway's answer (under the order lock)

A timeout leaves the row pending; the reconciliation pass resolves it later
from the provider's own status.

Client-side card entry goes create_intent -> (client confirms with the
provider) -> confirm_payment; only the last step touches the ledger.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from ..models import Customer, Order, OrderTransaction
from .gateway import (
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    GatewayError,
    GatewayRejected,
    PaymentGateway,
    get_gateway,
)
from .ledger_service import (
    GATEWAY_MANUAL,
    KIND_PAYMENT,
    KIND_REFUND,
    OUTCOME_DUPLICATE_REFERENCE,
    OUTCOME_OVER_AUTHORIZATION,
    TXN_FAILED,
    TXN_PENDING,
    TXN_SUCCEEDED,
    Balance,
    LedgerNotFound,
    RecordResult,
    TransactionRequest,
    attach_reference,
    balance,
    find_by_reference,
    get_transaction,
    payment_limit,
    record_transaction,
    settle_transaction,
)


class PaymentError(Exception):
    """Raised for payment operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


# =============================================================================
# OUTCOMES
# =============================================================================

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_PENDING = "pending"
OUTCOME_FAILED = "failed"
OUTCOME_CREATED = "created"


@dataclass(frozen=True)
class PaymentResult:
    outcome: str
    transaction: OrderTransaction | None
    balance: Balance
    message: str | None = None
    limit_cents: int | None = None
    attempted_cents: int | None = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "transaction": self.transaction.to_dict() if self.transaction is not None else None,
            "balance": self.balance.to_dict(),
            "message": self.message,
            "limit_cents": self.limit_cents,
            "attempted_cents": self.attempted_cents,
        }


@dataclass(frozen=True)
class IntentResult:
    outcome: str
    balance: Balance
    intent_id: str | None = None
    client_secret: str | None = None
    status: str | None = None
    amount_cents: int | None = None
    customer_ref: str | None = None
    limit_cents: int | None = None
    attempted_cents: int | None = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "intent_id": self.intent_id,
            "client_secret": self.client_secret,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "customer_ref": self.customer_ref,
            "balance": self.balance.to_dict(),
            "limit_cents": self.limit_cents,
            "attempted_cents": self.attempted_cents,
        }


def _from_record(result: RecordResult) -> PaymentResult:
    if result.outcome in (OUTCOME_OVER_AUTHORIZATION, OUTCOME_DUPLICATE_REFERENCE):
        outcome = result.outcome
    else:
        outcome = result.transaction.status
    return PaymentResult(
        outcome=outcome,
        transaction=result.transaction,
        balance=result.balance,
        limit_cents=result.limit_cents,
        attempted_cents=result.attempted_cents,
    )


def _result_for(txn: OrderTransaction, message: str | None = None) -> PaymentResult:
    return PaymentResult(outcome=txn.status, transaction=txn, balance=balance(txn.order_id), message=message)


def new_idempotency_key() -> str:
    return uuid.uuid4().hex


def _charge_metadata(order: Order, txn: OrderTransaction) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "transaction_id": txn.id,
    }


def _customer_ref(order: Order) -> str | None:
    customer = db.session.query(Customer).filter_by(id=order.customer_id).first()
    return customer.gateway_customer_ref if customer else None


# =============================================================================
# APPLYING GATEWAY ANSWERS
# =============================================================================

def apply_charge_status(txn: OrderTransaction, status: str, intent_id: str | None, amount_cents: int | None = None) -> OrderTransaction:
    """
    Move a pending payment row to whatever the provider reported.

    Used by charge_order, confirm_payment and the reconciliation pass.

    A client-confirmed row (no idempotency key) carries the amount the client
    claimed. When the provider collected a different amount, that row is
    failed and the provider's figure is recorded as a new row.
    """
    mismatch = amount_cents is not None and amount_cents != txn.amount_cents
    if mismatch and status == STATUS_SUCCEEDED and not txn.idempotency_key:
        return _replace_with_provider_amount(txn, intent_id, amount_cents)
    if mismatch:
        current_app.logger.warning(
            "Gateway amount %s differs from ledger amount %s for transaction %s",
            amount_cents, txn.amount_cents, txn.id,
        )
    if status == STATUS_SUCCEEDED:
        return settle_transaction(txn.id, TXN_SUCCEEDED, payment_reference=intent_id)
    if status == STATUS_FAILED:
        return settle_transaction(txn.id, TXN_FAILED, payment_reference=intent_id, failure_reason="Declined by provider")
    if intent_id:
        return attach_reference(txn.id, intent_id)
    return txn


def _replace_with_provider_amount(txn: OrderTransaction, intent_id: str | None, amount_cents: int) -> OrderTransaction:
    current_app.logger.warning(
        "Provider collected %s cents for transaction %s recorded at %s; replacing it",
        amount_cents, txn.id, txn.amount_cents,
    )
    reference = intent_id or txn.payment_reference
    settle_transaction(
        txn.id,
        TXN_FAILED,
        payment_reference=reference,
        failure_reason=f"Provider collected {amount_cents} cents, not {txn.amount_cents}",
    )
    # Already collected at the provider, so recorded past any ceiling
    recorded = record_transaction(
        txn.order_id,
        TransactionRequest(
            kind=KIND_PAYMENT,
            amount_cents=amount_cents,
            status=TXN_SUCCEEDED,
            gateway=txn.gateway,
            payment_method=txn.payment_method,
            payment_reference=reference,
            note=f"Replaces transaction {txn.id}",
        ),
        override=True,
    )
    return recorded.transaction


def apply_refund_status(txn: OrderTransaction, status: str, refund_id: str | None) -> OrderTransaction:
    if status == STATUS_SUCCEEDED:
        return settle_transaction(txn.id, TXN_SUCCEEDED, payment_reference=refund_id)
    if status == STATUS_FAILED:
        return settle_transaction(txn.id, TXN_FAILED, payment_reference=refund_id, failure_reason="Refund failed at provider")
    if refund_id:
        return attach_reference(txn.id, refund_id)
    return txn


# =============================================================================
# CHARGE
# =============================================================================

def charge_order(
    order_id: int,
    amount_cents: int | None = None,
    *,
    gateway: PaymentGateway | None = None,
    payment_method: str = "card",
    idempotency_key: str | None = None,
    override: bool = False,
) -> PaymentResult:
    """
    Charge the customer's stored payment method through the gateway.

    Args:
        order_id: Order being paid
        amount_cents: Amount to charge (defaults to the balance due)
        gateway: Adapter to use (defaults to the app's configured gateway)
        idempotency_key: Caller key; repeating a call with the same key
            never charges twice
        override: Allow the payment past the authorized ceiling

    Returns:
        PaymentResult with outcome succeeded, pending, failed,
        over_authorization or duplicate_reference.

    Raises:
        PaymentError: Nothing due, bad amount
        LedgerError: Order missing or deleted
    """
    gateway = gateway or get_gateway()
    order = db.session.query(Order).filter_by(id=order_id).first()
    if not order:
        raise LedgerNotFound(f"Order {order_id} not found")

    if amount_cents is None:
        amount_cents = balance(order_id).due_cents
        if amount_cents <= 0:
            raise PaymentError("Nothing due on this order", details={"order_id": order_id})

    key = idempotency_key or new_idempotency_key()

    recorded = record_transaction(
        order_id,
        TransactionRequest(
            kind=KIND_PAYMENT,
            amount_cents=amount_cents,
            status=TXN_PENDING,
            gateway=gateway.name,
            payment_method=payment_method,
            idempotency_key=key,
        ),
        override=override,
    )
    if recorded.outcome == OUTCOME_OVER_AUTHORIZATION:
        return _from_record(recorded)

    txn = recorded.transaction
    if txn.status != TXN_PENDING:
        # Same key already ran to completion
        return _from_record(recorded)

    try:
        result = gateway.create_charge(
            amount_cents,
            _customer_ref(order),
            metadata=_charge_metadata(order, txn),
            idempotency_key=key,
        )
    except GatewayRejected as exc:
        current_app.logger.info("Charge rejected for order %s: %s", order_id, exc)
        txn = settle_transaction(txn.id, TXN_FAILED, failure_reason=str(exc))
        return _result_for(txn, message=str(exc))
    except GatewayError as exc:
        current_app.logger.warning(
            "Charge outcome unknown for order %s (transaction %s left pending): %s",
            order_id, txn.id, exc,
        )
        return _result_for(txn, message="Payment provider did not answer; the charge will be reconciled")

    txn = apply_charge_status(txn, result.status, result.intent_id, result.amount_cents)
    current_app.logger.info(
        "Charge %s for order %s: %s (%s cents)", result.intent_id, order_id, txn.status, amount_cents,
    )
    return _result_for(txn)


# =============================================================================
# INTENTS (client-side card entry)
# =============================================================================

def _ensure_customer_ref(order: Order, gateway: PaymentGateway) -> str | None:
    """Provider customer for the order's customer, created and stored on first use."""
    customer = db.session.query(Customer).filter_by(id=order.customer_id).first()
    if customer is None:
        return None
    if customer.gateway_customer_ref:
        return customer.gateway_customer_ref

    ref = gateway.create_customer(
        customer.display_name or None,
        customer.email,
        metadata={"customer_id": customer.id, "company_id": customer.company_id},
    )
    customer.gateway_customer_ref = ref
    db.session.commit()
    current_app.logger.info("Created %s customer %s for customer %s", gateway.name, ref, customer.id)
    return ref


def create_intent(
    order_id: int,
    amount_cents: int | None = None,
    *,
    gateway: PaymentGateway | None = None,
    idempotency_key: str | None = None,
    override: bool = False,
) -> IntentResult:
    """
    Open a provider intent that the client confirms with its client_secret.

    Nothing is written to the ledger here. The payment is recorded when the
    client reports the intent back through confirm_payment, which checks the
    provider's status. The amount is still held to the authorized ceiling so
    the client is never handed an intent the ledger would refuse.

    Returns:
        IntentResult with outcome created or over_authorization.

    Raises:
        PaymentError: Nothing due, bad amount, deleted order
        LedgerNotFound: Order missing
        GatewayError: Provider unreachable or refused
    """
    gateway = gateway or get_gateway()
    order = db.session.query(Order).filter_by(id=order_id).first()
    if not order:
        raise LedgerNotFound(f"Order {order_id} not found")
    if order.deleted:
        raise PaymentError("Cannot take payments on a deleted order", details={"order_id": order_id})

    current = balance(order_id)
    if amount_cents is None:
        amount_cents = current.due_cents
        if amount_cents <= 0:
            raise PaymentError("Nothing due on this order", details={"order_id": order_id})
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise PaymentError("amount_cents must be a positive integer", details={"amount_cents": amount_cents})

    limit = payment_limit(current.total_cents, current.authorized_cents)
    attempted = current.net_paid_cents + current.pending_cents + amount_cents
    if attempted > limit and not override:
        return IntentResult(
            outcome=OUTCOME_OVER_AUTHORIZATION,
            balance=current,
            limit_cents=limit,
            attempted_cents=attempted,
        )

    customer_ref = _ensure_customer_ref(order, gateway)
    result = gateway.create_intent(
        amount_cents,
        customer_ref,
        metadata={
            "order_id": order.id,
            "order_number": order.order_number,
            "customer_id": order.customer_id,
        },
        idempotency_key=idempotency_key,
    )
    current_app.logger.info("Intent %s opened for order %s (%s cents)", result.intent_id, order_id, amount_cents)
    return IntentResult(
        outcome=OUTCOME_CREATED,
        balance=current,
        intent_id=result.intent_id,
        client_secret=result.client_secret,
        status=result.status,
        amount_cents=result.amount_cents,
        customer_ref=customer_ref,
        limit_cents=limit,
        attempted_cents=attempted,
    )


def intent_status(intent_id: str, *, gateway: PaymentGateway | None = None) -> dict:
    """Provider status of an intent, with the ledger row recorded for it (if any)."""
    gateway = gateway or get_gateway()
    try:
        result = gateway.get_status(intent_id)
    except GatewayRejected as exc:
        raise PaymentError("Payment intent not recognized by provider", details={"intent_id": intent_id}) from exc
    txn = find_by_reference(gateway.name, intent_id)
    return {
        "intent_id": result.intent_id,
        "status": result.status,
        "raw_status": result.raw_status,
        "amount_cents": result.amount_cents,
        "transaction": txn.to_dict() if txn is not None else None,
    }


# =============================================================================
# CONFIRM (client-side confirmation of an intent)
# =============================================================================

def confirm_payment(
    order_id: int,
    intent_id: str,
    *,
    gateway: PaymentGateway | None = None,
    amount_cents: int | None = None,
    payment_method: str = "card",
    override: bool = False,
) -> PaymentResult:
    """
    Record a payment the client confirmed directly with the provider.

    The provider's status is authoritative; the client's claim is not.
    Confirming the same intent twice returns duplicate_reference.

    If the provider cannot be reached and the caller supplied amount_cents,
    the payment is recorded as pending under the intent id and left for the
    reconciliation pass; without an amount the GatewayError propagates.
    A later confirm settles that row; if the provider collected a different
    amount, the row is failed and the provider amount recorded instead.
    """
    gateway = gateway or get_gateway()
    if not intent_id:
        raise PaymentError("intent_id is required")

    try:
        result = gateway.get_status(intent_id)
    except GatewayRejected as exc:
        raise PaymentError("Payment intent not recognized by provider", details={"intent_id": intent_id}) from exc
    except GatewayError:
        if amount_cents is None:
            raise
        current_app.logger.warning(
            "Could not verify intent %s for order %s; recording as pending", intent_id, order_id,
        )
        status, amount = TXN_PENDING, amount_cents
    else:
        existing = find_by_reference(gateway.name, intent_id)
        if (
            existing is not None
            and existing.status == TXN_PENDING
            and existing.kind == KIND_PAYMENT
            and existing.order_id == order_id
        ):
            # Recorded earlier while unverified; settle it from the provider's answer
            txn = apply_charge_status(existing, result.status, intent_id, result.amount_cents)
            return _result_for(txn)
        status, amount = result.status, result.amount_cents

    recorded = record_transaction(
        order_id,
        TransactionRequest(
            kind=KIND_PAYMENT,
            amount_cents=amount,
            status={STATUS_SUCCEEDED: TXN_SUCCEEDED, STATUS_FAILED: TXN_FAILED}.get(status, TXN_PENDING),
            gateway=gateway.name,
            payment_method=payment_method,
            payment_reference=intent_id,
            failure_reason="Declined by provider" if status == STATUS_FAILED else None,
        ),
        override=override,
    )
    return _from_record(recorded)


# =============================================================================
# REFUND
# =============================================================================

def refund_payment(
    transaction_id: int,
    amount_cents: int | None = None,
    reason: str | None = None,
    *,
    gateway: PaymentGateway | None = None,
    idempotency_key: str | None = None,
) -> PaymentResult:
    """
    Refund all or part of a succeeded payment.

    Manual payments (cash, check) are refunded in the ledger only. Gateway
    payments follow the same pending -> provider -> settle path as charges.

    Raises:
        PaymentError: Not a succeeded payment, gateway mismatch, nothing left
        LedgerError: Refund beyond what was collected
    """
    original = get_transaction(transaction_id)
    if original.kind != KIND_PAYMENT or original.status != TXN_SUCCEEDED:
        raise PaymentError("Only succeeded payments can be refunded", details={"transaction_id": transaction_id})

    if amount_cents is None:
        already = sum(
            t.amount_cents
            for t in db.session.query(OrderTransaction).filter_by(
                related_transaction_id=original.id, kind=KIND_REFUND
            ).all()
            if t.status in (TXN_PENDING, TXN_SUCCEEDED)
        )
        amount_cents = original.amount_cents - already
        if amount_cents <= 0:
            raise PaymentError("Payment already fully refunded", details={"transaction_id": transaction_id})

    if original.gateway == GATEWAY_MANUAL or not original.payment_reference:
        recorded = record_transaction(
            original.order_id,
            TransactionRequest(
                kind=KIND_REFUND,
                amount_cents=amount_cents,
                status=TXN_SUCCEEDED,
                gateway=original.gateway,
                payment_method=original.payment_method,
                related_transaction_id=original.id,
                idempotency_key=idempotency_key,
                note=reason,
            ),
        )
        return _from_record(recorded)

    gateway = gateway or get_gateway()
    if gateway.name != original.gateway:
        raise PaymentError(
            "Payment was taken through a different gateway",
            details={"transaction_gateway": original.gateway, "gateway": gateway.name},
        )

    key = idempotency_key or new_idempotency_key()
    recorded = record_transaction(
        original.order_id,
        TransactionRequest(
            kind=KIND_REFUND,
            amount_cents=amount_cents,
            status=TXN_PENDING,
            gateway=gateway.name,
            payment_method=original.payment_method,
            related_transaction_id=original.id,
            idempotency_key=key,
            note=reason,
        ),
    )
    txn = recorded.transaction
    if txn.status != TXN_PENDING:
        return _from_record(recorded)

    try:
        result = gateway.create_refund(original.payment_reference, reason, amount_cents, idempotency_key=key)
    except GatewayRejected as exc:
        current_app.logger.info("Refund rejected for transaction %s: %s", transaction_id, exc)
        txn = settle_transaction(txn.id, TXN_FAILED, failure_reason=str(exc))
        return _result_for(txn, message=str(exc))
    except GatewayError as exc:
        current_app.logger.warning("Refund outcome unknown for transaction %s: %s", transaction_id, exc)
        return _result_for(txn, message="Payment provider did not answer; the refund will be reconciled")

    txn = apply_refund_status(txn, result.status, result.refund_id)
    current_app.logger.info("Refund %s for payment %s: %s", result.refund_id, transaction_id, txn.status)
    return _result_for(txn)

