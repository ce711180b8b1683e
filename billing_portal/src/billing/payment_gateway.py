import asyncio
from typing import Any, Dict, Optional
import stripe
import structlog
from pydantic import BaseModel

from .exceptions import ExternalProcessorError, WebhookSignatureError
from ..core.config.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class ProcessorCharge(BaseModel):
    id: str
    status: str
    amount: int  # Minor units
    currency: str
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = {}


class ProcessorEvent(BaseModel):
    id: str
    type: str
    object_id: Optional[str] = None
    object_status: Optional[str] = None
    metadata: Dict[str, str] = {}


def _plain(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    return {key: obj[key] for key in obj.keys()}


def _charge_from_intent(intent: Any) -> ProcessorCharge:
    return ProcessorCharge(
        id=intent["id"],
        status=intent["status"],
        amount=int(intent["amount"]),
        currency=intent["currency"],
        client_secret=_plain(intent).get("client_secret"),
        metadata={k: str(v) for k, v in _plain(_plain(intent).get("metadata")).items()},
    )


class StripePaymentGateway:
    """
    Async facade over the synchronous Stripe SDK. SDK calls run in a worker
    thread and their results come back as plain pydantic models.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        if not self.settings.STRIPE_SECRET_KEY:
            logger.warn("STRIPE_SECRET_KEY is not set; processor calls will fail.")

    async def create_charge_intent(
        self, amount_cents: int, currency: str, metadata: Dict[str, str]
    ) -> ProcessorCharge:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self.settings.STRIPE_SECRET_KEY,
            )
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent creation failed", amount_cents=amount_cents,
                         error=str(e), exc_info=True)
            raise ExternalProcessorError("Payment processor is unavailable. Please try again.") from e
        logger.info("Stripe PaymentIntent created", payment_intent_id=intent["id"], amount_cents=amount_cents)
        return _charge_from_intent(intent)

    async def retrieve_charge(self, payment_intent_id: str) -> ProcessorCharge:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve,
                payment_intent_id,
                api_key=self.settings.STRIPE_SECRET_KEY,
            )
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent retrieval failed", payment_intent_id=payment_intent_id,
                         error=str(e), exc_info=True)
            raise ExternalProcessorError("Could not verify payment with the processor.") from e
        return _charge_from_intent(intent)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        """
        Verifies the webhook signature and parses the event.

        Raises:
            WebhookSignatureError: missing or invalid signature, or unparsable payload.
        """
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header.")
        if not self.settings.STRIPE_WEBHOOK_SECRET:
            logger.error("STRIPE_WEBHOOK_SECRET is not set; rejecting webhook.")
            raise WebhookSignatureError("Webhook verification is not configured.")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.settings.STRIPE_WEBHOOK_SECRET)
        except stripe.SignatureVerificationError as e:
            logger.warn("Webhook signature verification failed", error=str(e))
            raise WebhookSignatureError("Invalid webhook signature.") from e
        except ValueError as e:
            logger.warn("Webhook payload could not be parsed", error=str(e))
            raise WebhookSignatureError("Invalid webhook payload.") from e

        data_object = _plain(_plain(event["data"]).get("object"))
        return ProcessorEvent(
            id=event["id"],
            type=event["type"],
            object_id=data_object.get("id"),
            object_status=data_object.get("status"),
            metadata={k: str(v) for k, v in _plain(data_object.get("metadata")).items()},
        )
