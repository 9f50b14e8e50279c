"""StripeGateway — Payment Gateway Adapter over Stripe PaymentIntents.

Authorization is a manually-captured PaymentIntent created as a destination
charge: the seller's connected account and the platform fee are declared up
front (transfer_data + application_fee_amount), so capture needs no further
business logic and the split happens at the processor.

Every mutating call passes an idempotency key "<transaction_id>:<operation>".
Stripe errors are classified, never raised:
  - connection / rate-limit / 5xx API errors → FAILED_RETRYABLE
  - card / invalid-request / permission / auth errors → FAILED_TERMINAL
"""

import logging
from typing import Any

import stripe

from config.settings import settings
from src.mp_common.enums import GatewayOutcome
from src.mp_escrow.domain.gateway import (
    CAPTURED_STATUS,
    AuthorizationRequest,
    GatewayResult,
    idempotency_key,
)

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS: tuple[type[stripe.StripeError], ...] = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)

_UNEXPECTED_STATE = "payment_intent_unexpected_state"


def _failure(operation: str, ref: str, exc: stripe.StripeError) -> GatewayResult:
    outcome = (
        GatewayOutcome.FAILED_RETRYABLE
        if isinstance(exc, _RETRYABLE_ERRORS)
        else GatewayOutcome.FAILED_TERMINAL
    )
    message = exc.user_message or str(exc) or exc.__class__.__name__
    logger.warning(
        "Stripe %s failed for %s: %s (%s, code=%s)",
        operation,
        ref,
        message,
        outcome.value,
        exc.code,
    )
    return GatewayResult(
        outcome=outcome,
        reference_id=ref,
        error=message,
        details={"code": exc.code or "", "type": exc.__class__.__name__},
    )


def _from_intent(intent: Any) -> GatewayResult:
    return GatewayResult(
        outcome=GatewayOutcome.SUCCEEDED,
        reference_id=intent.id,
        status=intent.status,
        client_secret=getattr(intent, "client_secret", None),
    )


class StripeGateway:
    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY

    async def authorize(self, request: AuthorizationRequest) -> GatewayResult:
        params: dict[str, Any] = {
            "amount": request.amount,
            "currency": request.currency,
            "capture_method": "manual",
            "application_fee_amount": request.platform_fee,
            "transfer_data": {"destination": request.payee_ref},
            "metadata": request.metadata,
        }
        if request.payer_contact:
            params["receipt_email"] = request.payer_contact
        try:
            intent = await stripe.PaymentIntent.create_async(
                api_key=self._api_key,
                idempotency_key=idempotency_key(request.transaction_id, "authorize"),
                **params,
            )
        except stripe.StripeError as exc:
            return _failure("authorize", request.transaction_id, exc)
        logger.info(
            "Authorized %d %s for transaction %s: intent=%s",
            request.amount,
            request.currency,
            request.transaction_id,
            intent.id,
        )
        return _from_intent(intent)

    async def capture(self, transaction_id: str, intent_id: str) -> GatewayResult:
        try:
            intent = await stripe.PaymentIntent.capture_async(
                intent_id,
                api_key=self._api_key,
                idempotency_key=idempotency_key(transaction_id, "capture"),
            )
        except stripe.InvalidRequestError as exc:
            # Captured by an earlier attempt whose response was lost
            if exc.code == _UNEXPECTED_STATE:
                live = await self.retrieve_status(intent_id)
                if live.succeeded and live.status == CAPTURED_STATUS:
                    logger.info("Intent %s already captured; treating as success", intent_id)
                    return live
            return _failure("capture", intent_id, exc)
        except stripe.StripeError as exc:
            return _failure("capture", intent_id, exc)

        if intent.status != CAPTURED_STATUS:
            logger.warning("Capture of %s ended in status %s", intent_id, intent.status)
            return GatewayResult(
                outcome=GatewayOutcome.FAILED_TERMINAL,
                reference_id=intent_id,
                status=intent.status,
                error=f"capture ended in status {intent.status}",
            )
        return _from_intent(intent)

    async def cancel_authorization(self, transaction_id: str, intent_id: str) -> GatewayResult:
        try:
            intent = await stripe.PaymentIntent.cancel_async(
                intent_id,
                api_key=self._api_key,
                idempotency_key=idempotency_key(transaction_id, "cancel"),
            )
        except stripe.StripeError as exc:
            return _failure("cancel", intent_id, exc)
        return _from_intent(intent)

    async def refund(self, transaction_id: str, intent_id: str) -> GatewayResult:
        try:
            refund = await stripe.Refund.create_async(
                api_key=self._api_key,
                idempotency_key=idempotency_key(transaction_id, "refund"),
                payment_intent=intent_id,
                reverse_transfer=True,
                refund_application_fee=True,
            )
        except stripe.StripeError as exc:
            return _failure("refund", intent_id, exc)
        return GatewayResult(
            outcome=GatewayOutcome.SUCCEEDED,
            reference_id=refund.id,
            status=refund.status,
        )

    async def retrieve_status(self, intent_id: str) -> GatewayResult:
        try:
            intent = await stripe.PaymentIntent.retrieve_async(intent_id, api_key=self._api_key)
        except stripe.StripeError as exc:
            return _failure("retrieve", intent_id, exc)
        return _from_intent(intent)

    async def get_transfer_id(self, intent_id: str) -> GatewayResult:
        """Read the transfer created for the seller when the charge was captured."""
        try:
            intent = await stripe.PaymentIntent.retrieve_async(
                intent_id, api_key=self._api_key, expand=["latest_charge"]
            )
        except stripe.StripeError as exc:
            return _failure("retrieve_transfer", intent_id, exc)
        charge = intent.latest_charge
        transfer = getattr(charge, "transfer", None) if charge is not None else None
        transfer_id = transfer if isinstance(transfer, str) else getattr(transfer, "id", None)
        return GatewayResult(
            outcome=GatewayOutcome.SUCCEEDED,
            reference_id=intent.id,
            status=intent.status,
            transfer_id=transfer_id,
        )
