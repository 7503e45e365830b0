"""Payment gateway adapter (Stripe)."""

import json
from typing import Any

import stripe

from .config import Settings
from .errors import (
    AmountOutOfRangeError,
    GatewayRejectedError,
    GatewayUnavailableError,
    InvalidPaymentMethodError,
    InvalidWebhookEventError,
)
from .log import get_logger
from .models import PaymentIntent, PaymentMethod, WebhookEvent, from_minor_units

# Seconds a signed webhook stays acceptable after the gateway signed it
WEBHOOK_TOLERANCE = 300


def configure_stripe(settings: Settings) -> None:
    """
    Apply HTTP settings to the Stripe SDK.

    Called once by the bootstrap; the SDK keeps its HTTP client module-wide.
    """
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.gateway_timeout)
    stripe.max_network_retries = settings.gateway_retries


def _to_intent(obj: Any) -> PaymentIntent:
    return PaymentIntent(
        id=obj.id,
        amount=obj.amount,
        currency=obj.currency,
        status=obj.status,
        client_secret=getattr(obj, "client_secret", None),
    )


class PaymentGateway:
    """
    Thin client for the payment processor.

    Translates SDK exceptions into GatewayUnavailableError (transient: network,
    timeout, rate limit, 5xx) or GatewayRejectedError (everything else the
    gateway refuses).
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        currency: str,
        minimum_amount: int,
        maximum_amount: int,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.minimum_amount = minimum_amount
        self.maximum_amount = maximum_amount
        self._log = get_logger("gateway")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentGateway":
        return cls(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            currency=settings.currency,
            minimum_amount=settings.minimum_amount,
            maximum_amount=settings.maximum_amount,
        )

    def _translate(self, operation: str, exc: stripe.StripeError) -> Exception:
        transient = isinstance(
            exc, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)
        ) or (exc.http_status is not None and exc.http_status >= 500)
        detail = exc.user_message or str(exc) or type(exc).__name__
        if transient:
            self._log.warning("gateway_unavailable", operation=operation, error=detail)
            return GatewayUnavailableError(operation, detail)
        self._log.warning("gateway_rejected", operation=operation, error=detail)
        return GatewayRejectedError(operation, detail)

    def create_intent(
        self,
        amount: int,
        currency: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        """
        Create a payment intent for ``amount`` minor units.

        Raises:
            AmountOutOfRangeError: If amount is outside the configured limits
                (checked before any network call).
            GatewayUnavailableError: On transient gateway failures.
            GatewayRejectedError: If the gateway refuses the request.
        """
        currency = currency or self.currency
        if not self.minimum_amount <= amount <= self.maximum_amount:
            raise AmountOutOfRangeError(amount, self.minimum_amount, self.maximum_amount, currency)

        params: dict[str, Any] = {"amount": amount, "currency": currency, "api_key": self.api_key}
        if metadata:
            params["metadata"] = metadata
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            obj = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            raise self._translate("create_intent", e) from e

        intent = _to_intent(obj)
        self._log.info("intent_created", intent_id=intent.id, amount=amount, currency=currency)
        return intent

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        """
        Fetch the gateway's current view of an intent.

        Raises:
            GatewayUnavailableError: On transient gateway failures.
            GatewayRejectedError: If the intent can't be retrieved.
        """
        try:
            obj = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise self._translate("retrieve_intent", e) from e
        return _to_intent(obj)

    def confirm(self, intent_id: str, method: PaymentMethod | str) -> dict[str, Any]:
        """
        Report the settlement state of a card-like payment.

        Returns:
            Dict with the gateway ``status`` and ``amount`` in major units.

        Raises:
            InvalidPaymentMethodError: If the method settles out-of-band.
        """
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise InvalidPaymentMethodError(str(method), "unknown method")
        if not method.uses_gateway:
            raise InvalidPaymentMethodError(method.value, "settles outside the card gateway")

        intent = self.retrieve_intent(intent_id)
        return {"status": intent.status, "amount": from_minor_units(intent.amount)}

    def cancel_intent(self, intent_id: str) -> bool:
        """
        Cancel an intent that will never be paid. Best-effort.

        Returns:
            True if the gateway accepted the cancellation.
        """
        try:
            stripe.PaymentIntent.cancel(intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            self._log.warning("intent_cancel_failed", intent_id=intent_id, error=str(e))
            return False
        self._log.info("intent_cancelled", intent_id=intent_id)
        return True

    def construct_event(self, payload: bytes | str, signature: str | None) -> WebhookEvent:
        """
        Verify a webhook signature and parse the event.

        Raises:
            InvalidWebhookEventError: If the signature is missing or wrong, or
                the payload isn't a well-formed event.
        """
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                raise InvalidWebhookEventError("payload is not UTF-8")
        if not signature:
            raise InvalidWebhookEventError("missing signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, WEBHOOK_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            self._log.warning("webhook_signature_invalid", error=str(e))
            raise InvalidWebhookEventError("signature verification failed") from e

        try:
            data = json.loads(payload)
        except ValueError as e:
            raise InvalidWebhookEventError("payload is not valid JSON") from e

        if not isinstance(data, dict):
            raise InvalidWebhookEventError("payload is not an object")
        if not isinstance(data.get("id"), str) or not isinstance(data.get("type"), str):
            raise InvalidWebhookEventError("event id or type missing")
        obj = data.get("data", {}).get("object") if isinstance(data.get("data"), dict) else None
        if not isinstance(obj, dict):
            raise InvalidWebhookEventError("event data.object missing")
        created = data.get("created")
        if created is not None and not isinstance(created, int):
            raise InvalidWebhookEventError("event created is not an integer timestamp")

        return WebhookEvent.from_dict(data)
