# Overview: Payment gateway adapter boundary and its Stripe implementation.

"""
Payment Gateway Adapter

The ledger only ever consumes {status, amount, reference} from a provider.
PaymentGateway is the capability every provider adapter satisfies:

    create_charge(amount_cents, customer_ref, metadata, idempotency_key) -> ChargeResult
    create_intent(amount_cents, customer_ref, metadata, idempotency_key) -> ChargeResult
    create_customer(name, email, metadata) -> customer_ref
    get_status(intent_id) -> ChargeResult
    create_refund(intent_id, reason, amount_cents=None) -> RefundResult
    get_refund(refund_id) -> RefundResult

create_charge confirms immediately against the customer's saved payment
method. create_intent leaves confirmation to the client, which then reports
the intent id back through confirm.

Provider statuses are normalized to pending / succeeded / failed.

Errors:
- GatewayTimeout: transient (network, timeout, rate limit). The outcome of
  the call is unknown; the caller leaves its transaction pending.
- GatewayRejected: terminal (card declined, invalid request). The caller
  marks its transaction failed.
- GatewayError: anything else from the provider; treated as transient.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import stripe
from flask import current_app


STATUS_PENDING = "pending"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"


class GatewayError(Exception):
    """Provider call failed; outcome unknown."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class GatewayTimeout(GatewayError):
    """Provider did not answer in time; safe to retry with the same idempotency key."""


class GatewayRejected(GatewayError):
    """Provider refused the operation; retrying will not help."""


@dataclass(frozen=True)
class ChargeResult:
    intent_id: str
    status: str
    amount_cents: int
    raw_status: str | None = None
    client_secret: str | None = None


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    amount_cents: int
    raw_status: str | None = None


class PaymentGateway:
    """Capability interface for payment providers."""

    name = "gateway"

    def create_charge(
        self,
        amount_cents: int,
        customer_ref: str | None,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        raise NotImplementedError

    def create_intent(
        self,
        amount_cents: int,
        customer_ref: str | None,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        """Open an intent for the client to confirm; result carries client_secret."""
        raise NotImplementedError

    def create_customer(self, name: str | None, email: str | None = None, metadata: dict | None = None) -> str:
        raise NotImplementedError

    def get_status(self, intent_id: str) -> ChargeResult:
        raise NotImplementedError

    def create_refund(
        self,
        intent_id: str,
        reason: str | None = None,
        amount_cents: int | None = None,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        raise NotImplementedError

    def get_refund(self, refund_id: str) -> RefundResult:
        raise NotImplementedError


# =============================================================================
# STRIPE
# =============================================================================

# PaymentIntent statuses
_STRIPE_INTENT_STATUS = {
    "succeeded": STATUS_SUCCEEDED,
    "canceled": STATUS_FAILED,
    "requires_payment_method": STATUS_PENDING,
    "requires_confirmation": STATUS_PENDING,
    "requires_action": STATUS_PENDING,
    "requires_capture": STATUS_PENDING,
    "processing": STATUS_PENDING,
}

# Refund statuses
_STRIPE_REFUND_STATUS = {
    "succeeded": STATUS_SUCCEEDED,
    "pending": STATUS_PENDING,
    "requires_action": STATUS_PENDING,
    "failed": STATUS_FAILED,
    "canceled": STATUS_FAILED,
}

# Stripe's accepted refund reasons; anything else goes to metadata
_STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def _translate_stripe_error(exc: Exception) -> GatewayError:
    details = {
        "provider": "stripe",
        "code": getattr(exc, "code", None),
        "http_status": getattr(exc, "http_status", None),
    }
    message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return GatewayTimeout(message, details)
    if isinstance(exc, (stripe.CardError, stripe.InvalidRequestError)):
        return GatewayRejected(message, details)
    return GatewayError(message, details)


@dataclass
class StripeGateway(PaymentGateway):
    """
    PaymentGateway backed by Stripe PaymentIntents.

    Every request carries an explicit timeout; network retries are disabled
    here because retry policy belongs to the reconciliation pass, which
    replays charges by idempotency key.
    """
    api_key: str
    currency: str = "usd"
    timeout_seconds: float = 10.0
    description_prefix: str = "Work order"
    name: str = field(default="stripe", init=False)

    def __post_init__(self):
        self._client = stripe.StripeClient(
            self.api_key,
            http_client=stripe.RequestsClient(timeout=self.timeout_seconds),
            max_network_retries=0,
        )

    def create_charge(self, amount_cents, customer_ref, metadata=None, idempotency_key=None) -> ChargeResult:
        # Server-side charge: confirmed off-session against the saved method
        if not customer_ref:
            raise GatewayRejected("Customer has no stored payment method", {"provider": "stripe"})
        params = self._intent_params(amount_cents, customer_ref, metadata)
        params.update(
            payment_method=self._default_payment_method(customer_ref),
            confirm=True,
            off_session=True,
        )
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            intent = self._client.payment_intents.create(params=params, options=options)
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc) from exc
        return self._charge_result(intent)

    def create_intent(self, amount_cents, customer_ref, metadata=None, idempotency_key=None) -> ChargeResult:
        params = self._intent_params(amount_cents, customer_ref, metadata)
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            intent = self._client.payment_intents.create(params=params, options=options)
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc) from exc
        return self._charge_result(intent)

    def create_customer(self, name, email=None, metadata=None) -> str:
        params = {"metadata": {k: str(v) for k, v in (metadata or {}).items()}}
        if name:
            params["name"] = name
        if email:
            params["email"] = email
        try:
            customer = self._client.customers.create(params=params)
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc) from exc
        return customer.id

    def _intent_params(self, amount_cents, customer_ref, metadata) -> dict:
        metadata = {k: str(v) for k, v in (metadata or {}).items()}
        params = {
            "amount": amount_cents,
            "currency": self.currency,
            "metadata": metadata,
            "description": f"{self.description_prefix} {metadata.get('order_number') or metadata.get('order_id', '')}".strip(),
        }
        if customer_ref:
            params["customer"] = customer_ref
        return params

    def _default_payment_method(self, customer_ref) -> str:
        try:
            customer = self._client.customers.retrieve(customer_ref)
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc) from exc
        settings = getattr(customer, "invoice_settings", None)
        method = getattr(settings, "default_payment_method", None) if settings else None
        if not method:
            raise GatewayRejected(
                "Customer has no default payment method",
                {"provider": "stripe", "customer": customer_ref},
            )
        # Expanded objects carry the id; unexpanded ones are the id
        return method if isinstance(method, str) else method.id

    def get_status(self, intent_id) -> ChargeResult:
        try:
            intent = self._client.payment_intents.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc) from exc
        return self._charge_result(intent)

    def create_refund(self, intent_id, reason=None, amount_cents=None, idempotency_key=None) -> RefundResult:
        params = {"payment_intent": intent_id}
        if amount_cents is not None:
            params["amount"] = amount_cents
        if reason in _STRIPE_REFUND_REASONS:
            params["reason"] = reason
        elif reason:
            params["metadata"] = {"reason": reason[:500]}
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            refund = self._client.refunds.create(params=params, options=options)
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc) from exc
        return self._refund_result(refund)

    def get_refund(self, refund_id) -> RefundResult:
        try:
            refund = self._client.refunds.retrieve(refund_id)
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc) from exc
        return self._refund_result(refund)

    @staticmethod
    def _refund_result(refund) -> RefundResult:
        return RefundResult(
            refund_id=refund.id,
            status=_STRIPE_REFUND_STATUS.get(refund.status, STATUS_PENDING),
            amount_cents=refund.amount,
            raw_status=refund.status,
        )

    @staticmethod
    def _charge_result(intent) -> ChargeResult:
        status = _STRIPE_INTENT_STATUS.get(intent.status, STATUS_PENDING)
        if status == STATUS_SUCCEEDED:
            amount = intent.amount_received or intent.amount
        else:
            amount = intent.amount
        return ChargeResult(
            intent_id=intent.id,
            status=status,
            amount_cents=amount,
            raw_status=intent.status,
            client_secret=getattr(intent, "client_secret", None),
        )


# =============================================================================
# RESOLUTION
# =============================================================================

_EXTENSION_KEY = "payment_gateway"


def build_gateway(config) -> PaymentGateway:
    kind = config.get("PAYMENT_GATEWAY", "stripe")
    if kind == "stripe":
        return StripeGateway(
            api_key=config.get("STRIPE_SECRET_KEY", ""),
            currency=config.get("PAYMENT_CURRENCY", "usd"),
            timeout_seconds=config.get("GATEWAY_TIMEOUT_SECONDS", 10.0),
        )
    raise GatewayError(f"Unknown payment gateway: {kind}")


def get_gateway() -> PaymentGateway:
    """Configured gateway for the current app (built once, cached on the app)."""
    gateway = current_app.extensions.get(_EXTENSION_KEY)
    if gateway is None:
        gateway = build_gateway(current_app.config)
        current_app.extensions[_EXTENSION_KEY] = gateway
    return gateway


def set_gateway(app, gateway: PaymentGateway) -> None:
    """Install a specific gateway on `app` (alternate providers, tests)."""
    app.extensions[_EXTENSION_KEY] = gateway
