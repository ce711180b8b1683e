"""
Payment lifecycle for self-pay balances.

    create_payment_intent  -> server-priced Stripe PaymentIntent
    confirm_payment        -> re-verify with Stripe, then atomically mark the
                              services paid, insert the Payment row and the
                              audit entry
    handle_notification    -> signed Stripe webhook; corrects Payment.status only

A confirmation that reaches Stripe but fails to persist leaves the charge
applied on Stripe's side. It is reported as retryable and re-confirming the
same intent, or the webhook, finishes the job.
"""

from decimal import Decimal
from typing import List, Optional, Sequence
import structlog
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .billing_repository import BillingRepository
from .discount_calculator import from_minor_units
from .exceptions import (
    BillingError, ValidationError, UnauthorizedError, ExternalProcessorError, PersistenceError,
    WebhookSignatureError,
)
from .payment_gateway import StripePaymentGateway, ProcessorCharge, ProcessorEvent
from .selection_validator import SelectionValidator, normalize_service_ids
from ..core.cache.cache_manager import CacheManager
from ..core.config.settings import Settings, get_settings
from ..core.monitoring.app_metrics import MetricsCollector
from ..core.monitoring.audit_logger import AuditLogger

logger = structlog.get_logger(__name__)

# Webhook event type -> (new status, statuses it must not overwrite)
WEBHOOK_STATUS_TRANSITIONS = {
    "payment_intent.succeeded": ("succeeded", ()),
    "payment_intent.payment_failed": ("failed", ("succeeded",)),
    "payment_intent.canceled": ("canceled", ("succeeded",)),
}


class IntentResult(BaseModel):
    client_secret: Optional[str]
    payment_intent_id: str
    amount: Decimal
    amount_cents: int
    service_ids: List[str]


class ConfirmationResult(BaseModel):
    success: bool
    services_updated: int
    payment_intent_id: str
    already_applied: bool = False
    duplicate_charge: bool = False


class NotificationResult(BaseModel):
    received: bool = True
    event_id: str
    event_type: str
    outcome: str  # applied, no_change, no_payment, duplicate, ignored


class PaymentReconciler:
    def __init__(
        self,
        db_session: AsyncSession,
        gateway: StripePaymentGateway,
        metrics_collector: MetricsCollector,
        audit_logger: AuditLogger,
        cache_manager: Optional[CacheManager] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db_session
        self.gateway = gateway
        self.metrics_collector = metrics_collector
        self.audit_logger = audit_logger
        self.cache_manager = cache_manager
        self.settings = settings or get_settings()
        self.repository = BillingRepository(db_session, metrics_collector)
        self.validator = SelectionValidator(self.repository, tolerance_cents=self.settings.AMOUNT_TOLERANCE_CENTS)

    async def _end_read_transaction(self):
        # Reads autobegin a transaction; it has to be closed before begin().
        if self.db.in_transaction():
            await self.db.commit()

    async def create_payment_intent(
        self,
        patient_id: str,
        service_ids: Sequence[str],
        claimed_total_cents: object,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IntentResult:
        selection = await self.validator.verify_claimed_total(patient_id, service_ids, claimed_total_cents)
        resolved_ids = selection.service_ids

        charge = await self.gateway.create_charge_intent(
            amount_cents=selection.expected_total_cents,
            currency=self.settings.PAYMENT_CURRENCY,
            metadata={
                "patientId": patient_id,
                "serviceIds": ",".join(resolved_ids),
                "serviceCount": str(len(resolved_ids)),
            },
        )
        await self._end_read_transaction()

        await self.audit_logger.log_action(
            "payment_intent_created",
            patient_id=patient_id,
            resource="PaymentIntent",
            resource_id=charge.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={
                "amount": str(selection.expected_total),
                "service_ids": resolved_ids,
                "service_count": len(resolved_ids),
            },
        )
        self.metrics_collector.record_payment_intent("created")
        logger.info("Payment intent created", patient_id=patient_id, payment_intent_id=charge.id,
                    amount_cents=selection.expected_total_cents, service_count=len(resolved_ids))

        return IntentResult(
            client_secret=charge.client_secret,
            payment_intent_id=charge.id,
            amount=selection.expected_total,
            amount_cents=selection.expected_total_cents,
            service_ids=resolved_ids,
        )

    async def confirm_payment(
        self,
        patient_id: str,
        payment_intent_id: str,
        service_ids: Sequence[str],
        claimed_total_cents: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ConfirmationResult:
        if not isinstance(payment_intent_id, str) or not payment_intent_id.strip():
            raise ValidationError("A payment intent id is required.")
        requested_ids = normalize_service_ids(service_ids)
        log = logger.bind(patient_id=patient_id, payment_intent_id=payment_intent_id)

        charge = await self.gateway.retrieve_charge(payment_intent_id)
        if charge.status != "succeeded":
            log.warn("Confirmation for payment intent that has not succeeded", status=charge.status)
            raise ExternalProcessorError("Payment has not completed.", status_code=400)

        if charge.metadata.get("patientId") != patient_id:
            log.warn("Potential integrity violation: payment intent belongs to another patient",
                     intent_patient_id=charge.metadata.get("patientId"))
            raise UnauthorizedError("Payment intent does not belong to this patient.")

        try:
            return await self._apply_verified_charge(
                patient_id, payment_intent_id, charge, requested_ids, claimed_total_cents, ip_address, user_agent,
            )
        except BillingError:
            raise
        except Exception as e:
            # The charge has succeeded; from here on a failure is reported as pending.
            log.error("Unexpected error recording a succeeded charge", error=str(e), exc_info=True)
            self.metrics_collector.record_payment_confirmation("persistence_error")
            raise PersistenceError("Payment received; recording it is pending reconciliation.") from e

    async def _apply_verified_charge(
        self,
        patient_id: str,
        payment_intent_id: str,
        charge: ProcessorCharge,
        requested_ids: List[str],
        claimed_total_cents: Optional[int],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> ConfirmationResult:
        log = logger.bind(patient_id=patient_id, payment_intent_id=payment_intent_id)

        existing = await self.repository.get_payment_by_intent_id(payment_intent_id)
        if existing is not None:
            log.info("Payment already applied, returning previous result")
            self.metrics_collector.record_payment_confirmation("already_applied")
            return ConfirmationResult(success=True, services_updated=len(existing.service_ids or []),
                                      payment_intent_id=payment_intent_id, already_applied=True,
                                      duplicate_charge=not existing.service_ids)

        intent_ids = {sid for sid in charge.metadata.get("serviceIds", "").split(",") if sid}
        scoped_ids = [sid for sid in requested_ids if sid in intent_ids]
        if not scoped_ids:
            log.warn("Potential integrity violation: requested services are not covered by the payment intent",
                     requested_service_ids=requested_ids)
            raise ValidationError("No valid services to update.")
        if len(scoped_ids) < len(requested_ids):
            log.warn("Dropping services not covered by the payment intent",
                     dropped_service_ids=[sid for sid in requested_ids if sid not in intent_ids])

        amount = from_minor_units(charge.amount)
        selection = await self.validator.resolve_selection(patient_id, scoped_ids, allow_nothing_unpaid=True)
        if not selection.services:
            # Another intent already paid for these; the charge still has to be recorded.
            return await self._apply_payment(
                patient_id, payment_intent_id, selection.already_paid_ids, amount, charge.currency,
                ip_address=ip_address, user_agent=user_agent, service_names=[],
            )
        if claimed_total_cents is not None:
            self.validator.check_claimed_total(selection, claimed_total_cents)

        if charge.amount != selection.expected_total_cents:
            log.warn("Charged amount differs from current total of unpaid services",
                     charged_cents=charge.amount, expected_cents=selection.expected_total_cents)

        return await self._apply_payment(
            patient_id, payment_intent_id, selection.service_ids, amount, charge.currency,
            ip_address=ip_address, user_agent=user_agent,
            service_names=[s.service_name for s in selection.services],
        )

    async def _apply_payment(
        self,
        patient_id: str,
        payment_intent_id: str,
        service_ids: List[str],
        amount: Decimal,
        currency: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        service_names: List[str],
    ) -> ConfirmationResult:
        log = logger.bind(patient_id=patient_id, payment_intent_id=payment_intent_id)
        await self._end_read_transaction()

        updated_ids: List[str] = []
        try:
            async with self.db.begin():
                updated_ids = await self.repository.mark_services_paid(patient_id, service_ids)
                # Every succeeded charge gets a Payment row, even one that paid for nothing new.
                await self.repository.insert_payment_record(
                    patient_id=patient_id,
                    payment_intent_id=payment_intent_id,
                    amount=amount,
                    currency=currency,
                    status="succeeded",
                    service_ids=updated_ids,
                )
                if updated_ids:
                    action = "payment_completed"
                    details = {
                        "description": f"Successfully paid for {len(updated_ids)} services",
                        "amount": str(amount),
                        "service_ids": updated_ids,
                        "service_names": service_names,
                    }
                else:
                    action = "payment_duplicate_charge"
                    details = {
                        "description": "Charge succeeded for services already paid; refund review required",
                        "amount": str(amount),
                        "currency": currency,
                        "service_ids": list(service_ids),
                    }
                self.audit_logger.add_to_session(
                    self.db,
                    action,
                    patient_id=patient_id,
                    resource="Payment",
                    resource_id=payment_intent_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details=details,
                )
        except IntegrityError:
            # A concurrent confirmation inserted the Payment row first.
            existing = await self.repository.get_payment_by_intent_id(payment_intent_id)
            if existing is None:
                log.error("Integrity error applying payment with no existing payment row",
                          service_ids=service_ids, amount=str(amount), exc_info=True)
                self.metrics_collector.record_payment_confirmation("persistence_error")
                raise PersistenceError("Payment received; recording it is pending reconciliation.")
            log.info("Payment applied concurrently by another request")
            self.metrics_collector.record_payment_confirmation("already_applied")
            return ConfirmationResult(success=True, services_updated=len(existing.service_ids or []),
                                      payment_intent_id=payment_intent_id, already_applied=True,
                                      duplicate_charge=not existing.service_ids)
        except SQLAlchemyError as e:
            log.error("Failed to apply succeeded payment; rolled back, awaiting reconciliation",
                      service_ids=service_ids, amount=str(amount), error=str(e), exc_info=True)
            self.metrics_collector.record_payment_confirmation("persistence_error")
            raise PersistenceError("Payment received; recording it is pending reconciliation.") from e

        if not updated_ids:
            log.error("Duplicate charge: services were already paid by another payment; refund required",
                      amount=str(amount), currency=currency, service_ids=service_ids)
            self.metrics_collector.record_payment_confirmation("duplicate_charge", amount=float(amount))
            return ConfirmationResult(success=True, services_updated=0, payment_intent_id=payment_intent_id,
                                      already_applied=True, duplicate_charge=True)

        log.info("Payment applied", services_updated=len(updated_ids), amount=str(amount))
        self.metrics_collector.record_payment_confirmation("applied", amount=float(amount),
                                                           services_updated=len(updated_ids))
        return ConfirmationResult(success=True, services_updated=len(updated_ids),
                                  payment_intent_id=payment_intent_id)

    async def handle_notification(self, payload: bytes, signature: Optional[str]) -> NotificationResult:
        """
        Applies a signed Stripe event to the matching Payment row.

        Raises:
            WebhookSignatureError: the event could not be verified.
            PersistenceError: the status update failed; Stripe will redeliver.
        """
        try:
            event = self.gateway.construct_event(payload, signature)
        except WebhookSignatureError:
            self.metrics_collector.record_webhook_event("unverified", "rejected")
            raise

        transition = WEBHOOK_STATUS_TRANSITIONS.get(event.type)
        if transition is None or not event.object_id:
            logger.info("Unhandled webhook event type", event_id=event.id, event_type=event.type)
            self.metrics_collector.record_webhook_event(event.type, "ignored")
            return NotificationResult(event_id=event.id, event_type=event.type, outcome="ignored")

        cache_key = f"webhook_event:{event.id}"
        if self.cache_manager is not None:
            if await self.cache_manager.get(cache_key) is not None:
                self.metrics_collector.record_cache_operation("webhook_event", "get", "hit")
                self.metrics_collector.record_webhook_event(event.type, "duplicate")
                logger.info("Duplicate webhook event skipped", event_id=event.id, event_type=event.type)
                return NotificationResult(event_id=event.id, event_type=event.type, outcome="duplicate")
            self.metrics_collector.record_cache_operation("webhook_event", "get", "miss")

        outcome = await self._apply_status_transition(event, *transition)

        if self.cache_manager is not None:
            stored = await self.cache_manager.set(cache_key, outcome, ttl=self.settings.WEBHOOK_EVENT_CACHE_TTL)
            self.metrics_collector.record_cache_operation("webhook_event", "set", "success" if stored else "error")

        self.metrics_collector.record_webhook_event(event.type, outcome)
        return NotificationResult(event_id=event.id, event_type=event.type, outcome=outcome)

    async def _apply_status_transition(self, event: ProcessorEvent, status: str, protected: tuple) -> str:
        payment_intent_id = event.object_id
        await self._end_read_transaction()
        try:
            async with self.db.begin():
                payment = await self.repository.get_payment_by_intent_id(payment_intent_id)
                rows = 0
                if payment is not None:
                    rows = await self.repository.update_payment_status_by_intent_id(
                        payment_intent_id, status, exclude_statuses=protected
                    )
                self.audit_logger.add_to_session(
                    self.db,
                    "payment_webhook_received",
                    patient_id=payment.patient_id if payment is not None else None,
                    resource="Payment",
                    resource_id=payment_intent_id,
                    details={
                        "event_id": event.id,
                        "event_type": event.type,
                        "intent_status": event.object_status,
                        "metadata_patient_id": event.metadata.get("patientId"),
                        "status_changed": bool(rows),
                    },
                )
        except SQLAlchemyError as e:
            logger.error("Failed to apply webhook status update", event_id=event.id,
                         payment_intent_id=payment_intent_id, status=status, error=str(e), exc_info=True)
            raise PersistenceError("Could not record payment status update.") from e

        if payment is None:
            logger.info("Webhook for payment intent with no payment record", event_id=event.id,
                        payment_intent_id=payment_intent_id, event_type=event.type)
            return "no_payment"
        if rows:
            logger.info("Payment status updated from webhook", payment_intent_id=payment_intent_id, status=status)
            return "applied"
        logger.info("Webhook left payment status unchanged", payment_intent_id=payment_intent_id,
                    current_status=payment.status, event_type=event.type)
        return "no_change"
