from __future__ import annotations

import logging
from typing import Any

import stripe

from ...core.errors import AlreadyCancelled, AlreadyCaptured, GatewayError, GatewayTimeout
from .gateway import Authorization, BasePaymentGateway

logger = logging.getLogger(__name__)

UNEXPECTED_STATE = "payment_intent_unexpected_state"


class StripeGateway(BasePaymentGateway):
    """Manual-capture PaymentIntents with a destination transfer to the coach."""

    def __init__(self, settings) -> None:
        super().__init__(settings)
        stripe.api_key = settings.payment_api_key
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.gateway_timeout_seconds)
        # retries belong to the caller, who resubmits with the same idempotency key
        stripe.max_network_retries = 0

    def create_authorization(
        self,
        amount_cents: int,
        currency: str,
        destination_account_id: str | None,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> Authorization:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "capture_method": "manual",
            "automatic_payment_methods": {"enabled": True},
            "metadata": {key: str(value) for key, value in metadata.items()},
        }
        if destination_account_id:
            params["transfer_data"] = {"destination": destination_account_id}
        try:
            intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except stripe.APIConnectionError as exc:
            raise GatewayTimeout(detail=str(exc)) from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe rejected authorization", extra={"idempotency_key": idempotency_key})
            raise GatewayError(detail=str(exc)) from exc
        return Authorization(
            gateway_ref=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
        )

    def capture(self, gateway_ref: str, idempotency_key: str | None = None) -> str:
        try:
            intent = stripe.PaymentIntent.capture(gateway_ref, idempotency_key=idempotency_key)
        except stripe.APIConnectionError as exc:
            raise GatewayTimeout(detail=str(exc)) from exc
        except stripe.InvalidRequestError as exc:
            self._raise_for_state(gateway_ref, exc)
        except stripe.StripeError as exc:
            raise GatewayError(detail=str(exc)) from exc
        return intent.status

    def cancel_authorization(self, gateway_ref: str, idempotency_key: str | None = None) -> str:
        try:
            intent = stripe.PaymentIntent.cancel(gateway_ref, idempotency_key=idempotency_key)
        except stripe.APIConnectionError as exc:
            raise GatewayTimeout(detail=str(exc)) from exc
        except stripe.InvalidRequestError as exc:
            status = self._raise_for_state(gateway_ref, exc, tolerate_cancelled=True)
            return status
        except stripe.StripeError as exc:
            raise GatewayError(detail=str(exc)) from exc
        return intent.status

    def refund(
        self,
        gateway_ref: str,
        amount_cents: int | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        params: dict[str, Any] = {"payment_intent": gateway_ref, "reverse_transfer": True}
        if amount_cents is not None:
            params["amount"] = amount_cents
        try:
            refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
        except stripe.APIConnectionError as exc:
            raise GatewayTimeout(detail=str(exc)) from exc
        except stripe.StripeError as exc:
            raise GatewayError(detail=str(exc)) from exc
        return refund.id

    def _raise_for_state(
        self,
        gateway_ref: str,
        exc: stripe.InvalidRequestError,
        tolerate_cancelled: bool = False,
    ) -> str:
        if getattr(exc, "code", None) != UNEXPECTED_STATE:
            raise GatewayError(detail=str(exc)) from exc
        try:
            status = stripe.PaymentIntent.retrieve(gateway_ref).status
        except stripe.StripeError as lookup_exc:
            raise GatewayError(detail=str(lookup_exc)) from exc
        if status == "succeeded":
            raise AlreadyCaptured(detail=gateway_ref) from exc
        if status == "canceled":
            if tolerate_cancelled:
                return status
            raise AlreadyCancelled(detail=gateway_ref) from exc
        raise GatewayError(detail=str(exc)) from exc
