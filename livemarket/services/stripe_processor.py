import logging
from decimal import Decimal

import stripe

from livemarket.errors import PaymentProcessorError
from livemarket.services.money import from_minor_units, to_minor_units
from livemarket.services.payment_processor import PaymentProcessor, ProcessorHold

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _processor_error(exc: Exception, operation: str) -> PaymentProcessorError:
    code = getattr(exc, "code", None) or type(exc).__name__
    retryable = isinstance(exc, _RETRYABLE_ERRORS)
    message = getattr(exc, "user_message", None) or str(exc) or f"Stripe {operation} failed"
    return PaymentProcessorError(message, operation=operation, code=code, retryable=retryable)


class StripePaymentProcessor(PaymentProcessor):
    """Escrow holds as manual-capture PaymentIntents, payouts as Connect transfers."""

    name = "stripe"

    def __init__(self, api_key: str, timeout_seconds: int, client: stripe.StripeClient | None = None):
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        # One client per processor; the module-level stripe globals stay untouched.
        self.client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.new_default_http_client(timeout=timeout_seconds),
            max_network_retries=0,
        )

    def authorize(self, amount: Decimal, currency: str, metadata: dict[str, str]) -> ProcessorHold:
        try:
            intent = self.client.payment_intents.create(
                params={
                    "amount": to_minor_units(amount),
                    "currency": currency,
                    "capture_method": "manual",
                    "automatic_payment_methods": {"enabled": True},
                    "metadata": {**metadata, "type": "escrow"},
                }
            )
        except stripe.StripeError as exc:
            raise _processor_error(exc, "authorize") from exc
        return ProcessorHold(hold_ref=intent.id, client_secret=intent.client_secret)

    def capture(self, hold_ref: str) -> Decimal:
        try:
            intent = self.client.payment_intents.capture(
                hold_ref, options={"idempotency_key": f"capture-{hold_ref}"}
            )
        except stripe.StripeError as exc:
            raise _processor_error(exc, "capture") from exc
        if intent.status != "succeeded":
            raise PaymentProcessorError(
                f"Payment capture failed: {intent.status}",
                operation="capture",
                code=intent.status,
            )
        return from_minor_units(intent.amount_received)

    def cancel_authorization(self, hold_ref: str) -> None:
        try:
            self.client.payment_intents.cancel(hold_ref)
        except stripe.StripeError as exc:
            raise _processor_error(exc, "cancel_authorization") from exc

    def transfer(
        self,
        destination_account: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        try:
            transfer = self.client.transfers.create(
                params={
                    "amount": to_minor_units(amount),
                    "currency": currency,
                    "destination": destination_account,
                    "metadata": metadata,
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            raise _processor_error(exc, "transfer") from exc
        return transfer.id

    def refund(
        self,
        hold_ref: str,
        amount: Decimal,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        try:
            refund = self.client.refunds.create(
                params={
                    "payment_intent": hold_ref,
                    "amount": to_minor_units(amount),
                    "metadata": metadata,
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            raise _processor_error(exc, "refund") from exc
        return refund.id
