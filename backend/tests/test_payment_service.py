import pytest

from chariot.models import Customer, OrderTransaction
from chariot.services import ledger_service
from chariot.services.gateway import STATUS_FAILED, STATUS_PENDING, STATUS_SUCCEEDED, GatewayRejected, GatewayTimeout
from chariot.services.ledger_service import (
    KIND_PAYMENT,
    KIND_REFUND,
    LedgerError,
    TransactionRequest,
    record_transaction,
)
from chariot.services.payment_service import (
    PaymentError,
    charge_order,
    confirm_payment,
    create_intent,
    intent_status,
    refund_payment,
)


# =============================================================================
# CHARGE
# =============================================================================

def test_charge_defaults_to_balance_due(db_session, order_14300, gateway):
    result = charge_order(order_14300.id, gateway=gateway)

    assert result.outcome == "succeeded"
    assert result.transaction.amount_cents == 14300
    assert result.transaction.payment_reference == "pi_1"
    assert result.balance.due_cents == 0
    assert gateway.calls[0][:2] == ("create_charge", 14300)


def test_charge_uses_app_gateway_when_none_given(db_session, order_20000, gateway):
    result = charge_order(order_20000.id, 5000)
    assert result.outcome == "succeeded"
    assert result.transaction.gateway == "fake"
    assert gateway.count("create_charge") == 1


def test_same_idempotency_key_never_charges_twice(db_session, order_14300, gateway):
    first = charge_order(order_14300.id, 5000, gateway=gateway, idempotency_key="k-1")
    second = charge_order(order_14300.id, 5000, gateway=gateway, idempotency_key="k-1")

    assert first.outcome == "succeeded"
    assert second.outcome == "duplicate_reference"
    assert second.transaction.id == first.transaction.id
    assert gateway.count("create_charge") == 1
    assert ledger_service.balance(order_14300.id).paid_cents == 5000


def test_timeout_leaves_payment_pending(db_session, order_14300, gateway):
    gateway.errors.append(GatewayTimeout("read timed out"))
    result = charge_order(order_14300.id, 5000, gateway=gateway)

    assert result.outcome == "pending"
    assert result.message
    assert result.balance.pending_cents == 5000
    assert result.balance.paid_cents == 0
    assert result.transaction.idempotency_key


def test_retry_after_timeout_replays_the_same_charge(db_session, order_14300, gateway):
    gateway.drop_responses = 1
    first = charge_order(order_14300.id, 5000, gateway=gateway, idempotency_key="k-2")
    assert first.outcome == "pending"

    second = charge_order(order_14300.id, 5000, gateway=gateway, idempotency_key="k-2")
    assert second.outcome == "succeeded"
    assert second.transaction.id == first.transaction.id
    assert len(gateway.intents) == 1
    assert ledger_service.balance(order_14300.id).paid_cents == 5000


def test_declined_charge_is_recorded_as_failed(db_session, order_14300, gateway):
    gateway.errors.append(GatewayRejected("Your card was declined."))
    result = charge_order(order_14300.id, 5000, gateway=gateway)

    assert result.outcome == "failed"
    assert result.transaction.failure_reason == "Your card was declined."
    assert result.balance.due_cents == 14300


def test_provider_failed_status_marks_failed(db_session, order_14300, gateway):
    gateway.charge_status = STATUS_FAILED
    result = charge_order(order_14300.id, 5000, gateway=gateway)
    assert result.outcome == "failed"
    assert result.transaction.payment_reference == "pi_1"


def test_processing_charge_keeps_reference(db_session, order_14300, gateway):
    gateway.charge_status = STATUS_PENDING
    result = charge_order(order_14300.id, 5000, gateway=gateway)

    assert result.outcome == "pending"
    assert result.transaction.payment_reference == "pi_1"


def test_charge_past_authorization_never_reaches_gateway(db_session, order_14300, gateway):
    ledger_service.add_authorization(order_14300.id, 5000, "phone")
    result = charge_order(order_14300.id, gateway=gateway)

    assert result.outcome == "over_authorization"
    assert result.limit_cents == 5000
    assert gateway.calls == []
    assert db_session.query(OrderTransaction).count() == 0


def test_nothing_due_raises(db_session, order_20000, gateway):
    charge_order(order_20000.id, gateway=gateway)
    with pytest.raises(PaymentError):
        charge_order(order_20000.id, gateway=gateway)


# =============================================================================
# CONFIRM
# =============================================================================

def test_confirm_records_provider_amount(db_session, order_14300, gateway):
    gateway.add_intent("pi_client", 6000)
    result = confirm_payment(order_14300.id, "pi_client", gateway=gateway, amount_cents=9999)

    assert result.outcome == "succeeded"
    assert result.transaction.amount_cents == 6000
    assert result.balance.due_cents == 8300


def test_confirming_twice_is_a_duplicate(db_session, order_14300, gateway):
    gateway.add_intent("pi_client", 6000)
    confirm_payment(order_14300.id, "pi_client", gateway=gateway)
    again = confirm_payment(order_14300.id, "pi_client", gateway=gateway)

    assert again.outcome == "duplicate_reference"
    assert ledger_service.balance(order_14300.id).paid_cents == 6000


def test_confirm_settles_earlier_pending_record(db_session, order_14300, gateway):
    gateway.add_intent("pi_slow", 6000, status=STATUS_PENDING)
    first = confirm_payment(order_14300.id, "pi_slow", gateway=gateway)
    assert first.outcome == "pending"

    gateway.settle_intent("pi_slow", "succeeded")
    second = confirm_payment(order_14300.id, "pi_slow", gateway=gateway)
    assert second.outcome == "succeeded"
    assert second.transaction.id == first.transaction.id
    assert second.balance.paid_cents == 6000


def test_confirm_unknown_intent(db_session, order_14300, gateway):
    with pytest.raises(PaymentError):
        confirm_payment(order_14300.id, "pi_missing", gateway=gateway)


def test_confirm_when_provider_is_down(db_session, order_14300, gateway):
    gateway.errors.append(GatewayTimeout("connection reset"))
    with pytest.raises(GatewayTimeout):
        confirm_payment(order_14300.id, "pi_client", gateway=gateway)

    gateway.errors.append(GatewayTimeout("connection reset"))
    result = confirm_payment(order_14300.id, "pi_client", gateway=gateway, amount_cents=6000)
    assert result.outcome == "pending"
    assert result.transaction.payment_reference == "pi_client"


def test_reconfirming_replaces_an_unverified_amount(db_session, order_14300, gateway):
    gateway.add_intent("pi_client", 6000)
    gateway.errors.append(GatewayTimeout("connection reset"))
    first = confirm_payment(order_14300.id, "pi_client", gateway=gateway, amount_cents=9000)
    first_id = first.transaction.id
    assert first.outcome == "pending"

    second = confirm_payment(order_14300.id, "pi_client", gateway=gateway)

    assert second.outcome == "succeeded"
    assert second.transaction.id != first_id
    assert second.transaction.amount_cents == 6000
    assert second.balance.paid_cents == 6000
    assert second.balance.pending_cents == 0
    assert db_session.get(OrderTransaction, first_id).status == "failed"


# =============================================================================
# INTENTS
# =============================================================================

def test_create_intent_hands_back_client_secret(db_session, order_14300, gateway):
    result = create_intent(order_14300.id, gateway=gateway)

    assert result.outcome == "created"
    assert result.amount_cents == 14300
    assert result.client_secret == f"{result.intent_id}_secret_test"
    assert result.customer_ref == "cus_test_1"
    assert gateway.count("create_customer") == 0
    assert db_session.query(OrderTransaction).count() == 0


def test_create_intent_creates_provider_customer_once(db_session, make_order, exempt_customer, gateway):
    order = make_order(lines=[{"name": "Haul out", "fixed_price_cents": 30000}], customer_id=exempt_customer.id)

    first = create_intent(order.id, 10000, gateway=gateway)
    second = create_intent(order.id, 5000, gateway=gateway)

    assert first.customer_ref == second.customer_ref
    assert gateway.count("create_customer") == 1
    assert gateway.calls[0] == ("create_customer", "Harbor Patrol", None)
    assert db_session.get(Customer, exempt_customer.id).gateway_customer_ref == first.customer_ref


def test_intent_past_authorization_is_not_opened(db_session, order_14300, gateway):
    ledger_service.add_authorization(order_14300.id, 5000, "phone")
    result = create_intent(order_14300.id, gateway=gateway)

    assert result.outcome == "over_authorization"
    assert result.limit_cents == 5000
    assert result.intent_id is None
    assert gateway.calls == []


def test_intent_rejects_bad_amount(db_session, order_14300, gateway):
    with pytest.raises(PaymentError):
        create_intent(order_14300.id, -5, gateway=gateway)


def test_intent_then_confirm_records_the_payment(db_session, order_14300, gateway):
    intent = create_intent(order_14300.id, 4300, gateway=gateway)
    gateway.settle_intent(intent.intent_id, STATUS_SUCCEEDED)

    result = confirm_payment(order_14300.id, intent.intent_id, gateway=gateway)
    assert result.outcome == "succeeded"
    assert result.balance.due_cents == 10000

    status = intent_status(intent.intent_id, gateway=gateway)
    assert status["status"] == "succeeded"
    assert status["amount_cents"] == 4300
    assert status["transaction"]["id"] == result.transaction.id


def test_intent_status_for_unknown_intent(db_session, gateway):
    with pytest.raises(PaymentError):
        intent_status("pi_nope", gateway=gateway)


# =============================================================================
# REFUND
# =============================================================================

def test_manual_payment_refunds_in_ledger_only(db_session, order_14300, gateway):
    payment = record_transaction(
        order_14300.id,
        TransactionRequest(kind=KIND_PAYMENT, amount_cents=10000, payment_method="cash"),
    ).transaction

    result = refund_payment(payment.id, 3000, "overcharged", gateway=gateway)
    assert result.outcome == "succeeded"
    assert result.transaction.kind == KIND_REFUND
    assert result.balance.due_cents == 7300
    assert gateway.calls == []


def test_gateway_refund_defaults_to_remaining_amount(db_session, order_14300, gateway):
    payment = charge_order(order_14300.id, 10000, gateway=gateway).transaction
    refund_payment(payment.id, 4000, gateway=gateway)

    result = refund_payment(payment.id, gateway=gateway)
    assert result.outcome == "succeeded"
    assert result.transaction.amount_cents == 6000
    assert result.transaction.related_transaction_id == payment.id
    assert gateway.count("create_refund") == 2

    with pytest.raises(PaymentError):
        refund_payment(payment.id, gateway=gateway)


def test_rejected_refund_is_failed_and_frees_the_amount(db_session, order_14300, gateway):
    payment = charge_order(order_14300.id, 10000, gateway=gateway).transaction
    gateway.errors.append(GatewayRejected("charge already refunded"))

    result = refund_payment(payment.id, 4000, gateway=gateway)
    assert result.outcome == "failed"
    assert result.balance.refunded_cents == 0


def test_refund_beyond_payment_is_rejected(db_session, order_14300, gateway):
    payment = charge_order(order_14300.id, 10000, gateway=gateway).transaction
    with pytest.raises(LedgerError):
        refund_payment(payment.id, 12000, gateway=gateway)
    assert gateway.count("create_refund") == 0


def test_refund_requires_matching_gateway(db_session, order_14300, gateway):
    payment = record_transaction(
        order_14300.id,
        TransactionRequest(kind=KIND_PAYMENT, amount_cents=5000, gateway="square", payment_reference="sq_1"),
    ).transaction
    with pytest.raises(PaymentError):
        refund_payment(payment.id, gateway=gateway)


def test_only_succeeded_payments_can_be_refunded(db_session, order_14300, gateway):
    gateway.errors.append(GatewayTimeout("slow"))
    pending = charge_order(order_14300.id, 5000, gateway=gateway).transaction
    with pytest.raises(PaymentError):
        refund_payment(pending.id, gateway=gateway)
