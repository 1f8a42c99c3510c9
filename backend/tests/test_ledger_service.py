from types import SimpleNamespace

import pytest

from chariot.models import OrderTransaction
from chariot.services import ledger_service, order_service
from chariot.services.audit_service import list_order_events
from chariot.services.ledger_service import (
    KIND_ADJUSTMENT,
    KIND_PAYMENT,
    KIND_REFUND,
    OUTCOME_DUPLICATE_REFERENCE,
    OUTCOME_OVER_AUTHORIZATION,
    OUTCOME_RECORDED,
    OUTCOME_SETTLED,
    TXN_FAILED,
    TXN_PENDING,
    TXN_SUCCEEDED,
    InvalidTransition,
    LedgerError,
    TransactionRequest,
    compute_balance,
    record_transaction,
)


def _pay(order_id, amount, **kwargs):
    return record_transaction(order_id, TransactionRequest(kind=KIND_PAYMENT, amount_cents=amount, **kwargs))


def _txn_count(db_session, order_id):
    return db_session.query(OrderTransaction).filter_by(order_id=order_id).count()


# =============================================================================
# PURE BALANCE MATH
# =============================================================================

def _row(kind, amount, status=TXN_SUCCEEDED):
    return SimpleNamespace(kind=kind, amount_cents=amount, status=status)


def test_compute_balance_due_and_credit_are_exclusive():
    bal = compute_balance(10000, [_row(KIND_PAYMENT, 4000)])
    assert (bal.due_cents, bal.credit_cents) == (6000, 0)

    bal = compute_balance(10000, [_row(KIND_PAYMENT, 12500)])
    assert (bal.due_cents, bal.credit_cents) == (0, 2500)
    assert bal.payment_status == "overpaid"


def test_compute_balance_ignores_failed_and_voided_rows():
    rows = [
        _row(KIND_PAYMENT, 5000),
        _row(KIND_PAYMENT, 9999, TXN_FAILED),
        _row(KIND_REFUND, 1000, "voided"),
        _row(KIND_PAYMENT, 700, TXN_PENDING),
    ]
    bal = compute_balance(10000, rows)
    assert bal.paid_cents == 5000
    assert bal.refunded_cents == 0
    assert bal.pending_cents == 700
    assert bal.due_cents == 5000


def test_adjustments_are_credits_against_total():
    bal = compute_balance(10000, [_row(KIND_PAYMENT, 6000), _row(KIND_ADJUSTMENT, 1500)])
    assert bal.due_cents == 2500
    assert bal.payment_status == "partial"


def test_authorized_remaining_tracks_net_paid():
    bal = compute_balance(30000, [_row(KIND_PAYMENT, 15000), _row(KIND_REFUND, 5000)], authorized_cents=20000)
    assert bal.authorized_remaining_cents == 10000


# =============================================================================
# RECORDING
# =============================================================================

def test_duplicate_reference_records_one_row(db_session, order_14300):
    first = _pay(order_14300.id, 5000, payment_reference="CHK-1042", payment_method="check")
    second = _pay(order_14300.id, 5000, payment_reference="CHK-1042", payment_method="check")

    assert first.outcome == OUTCOME_RECORDED
    assert second.outcome == OUTCOME_DUPLICATE_REFERENCE
    assert second.transaction.id == first.transaction.id
    assert _txn_count(db_session, order_14300.id) == 1
    assert ledger_service.balance(order_14300.id).paid_cents == 5000


def test_reference_on_another_order_is_rejected(db_session, order_14300, order_20000):
    _pay(order_14300.id, 5000, payment_reference="CHK-7")
    with pytest.raises(LedgerError):
        _pay(order_20000.id, 5000, payment_reference="CHK-7")
    assert _txn_count(db_session, order_20000.id) == 0


def test_bounced_check_can_be_represented_under_same_number(db_session, order_14300):
    bounced = _pay(
        order_14300.id, 5000,
        status=TXN_FAILED, payment_method="check", payment_reference="CHK-1", failure_reason="NSF",
    )
    again = _pay(order_14300.id, 5000, payment_method="check", payment_reference="CHK-1")

    assert again.outcome == OUTCOME_RECORDED
    assert again.transaction.id != bounced.transaction.id
    assert ledger_service.balance(order_14300.id).paid_cents == 5000

    third = _pay(order_14300.id, 5000, payment_method="check", payment_reference="CHK-1")
    assert third.outcome == OUTCOME_DUPLICATE_REFERENCE
    assert third.transaction.id == again.transaction.id


def test_repeated_failure_is_a_duplicate(db_session, order_14300):
    first = _pay(order_14300.id, 5000, status=TXN_FAILED, payment_reference="CHK-2")
    second = _pay(order_14300.id, 5000, status=TXN_FAILED, payment_reference="CHK-2")

    assert second.outcome == OUTCOME_DUPLICATE_REFERENCE
    assert second.transaction.id == first.transaction.id
    assert _txn_count(db_session, order_14300.id) == 1


def test_payment_beyond_authorization_needs_override(db_session, order_20000):
    ledger_service.add_authorization(order_20000.id, 20000, "phone")

    blocked = _pay(order_20000.id, 25000)
    assert blocked.outcome == OUTCOME_OVER_AUTHORIZATION
    assert blocked.transaction is None
    assert blocked.limit_cents == 20000
    assert blocked.attempted_cents == 25000
    assert _txn_count(db_session, order_20000.id) == 0

    allowed = record_transaction(
        order_20000.id,
        TransactionRequest(kind=KIND_PAYMENT, amount_cents=25000),
        override=True,
    )
    assert allowed.outcome == OUTCOME_RECORDED
    assert allowed.transaction.override_applied is True
    assert allowed.balance.paid_cents == 25000


def test_without_authorization_the_order_total_is_the_ceiling(db_session, order_14300):
    assert _pay(order_14300.id, 14301).outcome == OUTCOME_OVER_AUTHORIZATION
    assert _pay(order_14300.id, 14300).outcome == OUTCOME_RECORDED


def test_pending_payments_count_toward_exposure(db_session, order_20000):
    _pay(order_20000.id, 15000, status=TXN_PENDING, gateway="fake", payment_reference="pi_1")
    result = _pay(order_20000.id, 10000)
    assert result.outcome == OUTCOME_OVER_AUTHORIZATION
    assert result.attempted_cents == 25000


def test_overpayment_surfaces_as_credit(db_session, order_14300):
    result = record_transaction(
        order_14300.id,
        TransactionRequest(kind=KIND_PAYMENT, amount_cents=20000),
        override=True,
    )
    bal = result.balance
    assert bal.due_cents == 0
    assert bal.credit_cents == 5700

    db_session.refresh(order_14300)
    assert order_14300.credit_cents == 5700
    assert order_14300.due_cents == 0
    assert order_14300.payment_status == "overpaid"


def test_partial_refund_reduces_net_paid(db_session, order_14300):
    payment = _pay(order_14300.id, 10000).transaction
    refund = record_transaction(
        order_14300.id,
        TransactionRequest(kind=KIND_REFUND, amount_cents=3000, related_transaction_id=payment.id),
    )

    bal = refund.balance
    assert bal.paid_cents == 10000
    assert bal.refunded_cents == 3000
    assert bal.due_cents == 14300 - 7000


def test_refund_cannot_exceed_collected(db_session, order_14300):
    _pay(order_14300.id, 5000)
    with pytest.raises(LedgerError):
        record_transaction(order_14300.id, TransactionRequest(kind=KIND_REFUND, amount_cents=6000))
    assert db_session.query(OrderTransaction).filter_by(kind=KIND_REFUND).count() == 0


def test_refund_cannot_exceed_its_payment(db_session, order_14300):
    first = _pay(order_14300.id, 4000).transaction
    _pay(order_14300.id, 6000)
    record_transaction(
        order_14300.id,
        TransactionRequest(kind=KIND_REFUND, amount_cents=3000, related_transaction_id=first.id),
    )
    with pytest.raises(LedgerError):
        record_transaction(
            order_14300.id,
            TransactionRequest(kind=KIND_REFUND, amount_cents=1500, related_transaction_id=first.id),
        )


def test_invalid_requests_are_rejected(db_session, order_14300):
    for req in (
        TransactionRequest(kind="tip", amount_cents=100),
        TransactionRequest(kind=KIND_PAYMENT, amount_cents=0),
        TransactionRequest(kind=KIND_PAYMENT, amount_cents=12.5),
        TransactionRequest(kind=KIND_PAYMENT, amount_cents=100, status="voided"),
    ):
        with pytest.raises(LedgerError):
            record_transaction(order_14300.id, req)


def test_deleted_order_rejects_payments_but_allows_refunds(db_session, order_14300):
    payment = _pay(order_14300.id, 5000).transaction
    order_service.delete_order(order_14300.id)

    with pytest.raises(LedgerError):
        _pay(order_14300.id, 1000)

    refund = record_transaction(
        order_14300.id,
        TransactionRequest(kind=KIND_REFUND, amount_cents=5000, related_transaction_id=payment.id),
    )
    assert refund.outcome == OUTCOME_RECORDED


# =============================================================================
# STATE MACHINE
# =============================================================================

def test_pending_row_is_settled_by_matching_reference(db_session, order_14300):
    pending = _pay(order_14300.id, 5000, status=TXN_PENDING, gateway="fake", payment_reference="pi_9")
    assert pending.balance.pending_cents == 5000
    assert pending.balance.paid_cents == 0

    settled = _pay(order_14300.id, 5000, gateway="fake", payment_reference="pi_9")
    assert settled.outcome == OUTCOME_SETTLED
    assert settled.transaction.id == pending.transaction.id
    assert settled.balance.paid_cents == 5000
    assert settled.balance.pending_cents == 0
    assert _txn_count(db_session, order_14300.id) == 1


def test_settlement_amount_must_match_pending_row(db_session, order_14300):
    _pay(order_14300.id, 5000, status=TXN_PENDING, gateway="fake", payment_reference="pi_10")
    with pytest.raises(LedgerError):
        _pay(order_14300.id, 6000, gateway="fake", payment_reference="pi_10")


def test_settle_transaction_is_idempotent(db_session, order_14300):
    txn = _pay(order_14300.id, 5000, status=TXN_PENDING, gateway="fake").transaction

    ledger_service.settle_transaction(txn.id, TXN_SUCCEEDED, payment_reference="pi_11")
    again = ledger_service.settle_transaction(txn.id, TXN_SUCCEEDED)
    assert again.status == TXN_SUCCEEDED
    assert again.payment_reference == "pi_11"

    with pytest.raises(InvalidTransition):
        ledger_service.settle_transaction(txn.id, TXN_FAILED)


def test_void_only_applies_to_refunds(db_session, order_14300):
    payment = _pay(order_14300.id, 10000).transaction
    refund = record_transaction(order_14300.id, TransactionRequest(kind=KIND_REFUND, amount_cents=3000)).transaction

    with pytest.raises(InvalidTransition):
        ledger_service.void_transaction(payment.id, "wrong order")

    ledger_service.void_transaction(refund.id, "entered twice")
    bal = ledger_service.balance(order_14300.id)
    assert bal.refunded_cents == 0
    assert bal.paid_cents == 10000

    with pytest.raises(InvalidTransition):
        ledger_service.void_transaction(refund.id, "again")


# =============================================================================
# AUTHORIZATIONS & AUDIT
# =============================================================================

def test_revoking_authorization_restores_total_as_ceiling(db_session, order_20000):
    auth = ledger_service.add_authorization(order_20000.id, 5000, "email")
    assert _pay(order_20000.id, 10000).outcome == OUTCOME_OVER_AUTHORIZATION

    ledger_service.revoke_authorization(auth.id, "customer approved full estimate")
    assert _pay(order_20000.id, 10000).outcome == OUTCOME_RECORDED


def test_authorizations_are_summed(db_session, order_20000):
    ledger_service.add_authorization(order_20000.id, 5000, "phone")
    ledger_service.add_authorization(order_20000.id, 7000, "email")

    bal = ledger_service.balance(order_20000.id)
    assert bal.authorized_cents == 12000
    assert _pay(order_20000.id, 12001).outcome == OUTCOME_OVER_AUTHORIZATION


def test_ledger_writes_audit_events(db_session, order_14300):
    txn = _pay(order_14300.id, 5000).transaction
    events = [e for e in list_order_events(order_14300.id) if e.transaction_id == txn.id]
    assert [e.event_type for e in events] == ["transaction.recorded"]


def test_audit_module_documents_its_invariants():
    from chariot.services import audit_service
    assert audit_service.__doc__ and "Append-only" in audit_service.__doc__
