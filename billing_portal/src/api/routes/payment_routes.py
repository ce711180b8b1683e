from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ..models.payment_models import (
    CreateIntentRequest, CreateIntentResponse, ProcessPaymentRequest, ProcessPaymentResponse, WebhookAck,
)
from ..dependencies import (
    get_audit_logger, get_metrics_collector, get_payment_gateway, get_current_patient_id, get_client_ip,
)
from ...billing.exceptions import BillingError, PersistenceError, WebhookSignatureError
from ...billing.payment_gateway import StripePaymentGateway
from ...billing.payment_reconciler import PaymentReconciler
from ...core.cache.cache_manager import CacheManager, get_cache_manager
from ...core.database.db_session import get_db_session
from ...core.monitoring.app_metrics import MetricsCollector
from ...core.monitoring.audit_logger import AuditLogger

logger = structlog.get_logger(__name__)
router = APIRouter()


def _billing_http_exception(exc: BillingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@router.post("/create-intent", response_model=CreateIntentResponse)
async def create_payment_intent(
    request: Request,
    body: CreateIntentRequest,
    patient_id: str = Depends(get_current_patient_id),
    db: AsyncSession = Depends(get_db_session),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
    metrics_collector: MetricsCollector = Depends(get_metrics_collector),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    logger.info("Received payment intent request", patient_id=patient_id, service_count=len(body.service_ids))
    reconciler = PaymentReconciler(db, gateway, metrics_collector, audit_logger)
    try:
        result = await reconciler.create_payment_intent(
            patient_id, body.service_ids, body.amount,
            ip_address=get_client_ip(request), user_agent=request.headers.get("user-agent"),
        )
    except BillingError as e:
        metrics_collector.record_payment_intent(e.code)
        raise _billing_http_exception(e)
    except Exception as e:
        logger.error("Unexpected error creating payment intent", patient_id=patient_id, error=str(e), exc_info=True)
        metrics_collector.record_payment_intent("error")
        raise HTTPException(status_code=500, detail="Failed to create payment intent.")
    return CreateIntentResponse(**result.model_dump())


@router.post("/process", response_model=ProcessPaymentResponse)
async def process_payment(
    request: Request,
    response: Response,
    body: ProcessPaymentRequest,
    patient_id: str = Depends(get_current_patient_id),
    db: AsyncSession = Depends(get_db_session),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
    metrics_collector: MetricsCollector = Depends(get_metrics_collector),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    logger.info("Received payment confirmation", patient_id=patient_id, payment_intent_id=body.payment_intent_id)
    reconciler = PaymentReconciler(db, gateway, metrics_collector, audit_logger)
    try:
        result = await reconciler.confirm_payment(
            patient_id, body.payment_intent_id, body.service_ids, claimed_total_cents=body.amount,
            ip_address=get_client_ip(request), user_agent=request.headers.get("user-agent"),
        )
    except PersistenceError:
        # The charge went through; never report it to the patient as a failure.
        response.status_code = 202
        return ProcessPaymentResponse(
            success=True,
            message="Payment received. Your account will be updated shortly.",
            services_updated=0,
            payment_intent_id=body.payment_intent_id,
            reconciliation_pending=True,
            retryable=True,
        )
    except BillingError as e:
        metrics_collector.record_payment_confirmation(e.code)
        raise _billing_http_exception(e)
    except Exception as e:
        logger.error("Unexpected error processing payment", patient_id=patient_id,
                     payment_intent_id=body.payment_intent_id, error=str(e), exc_info=True)
        metrics_collector.record_payment_confirmation("error")
        raise HTTPException(status_code=500, detail="Failed to process payment.")

    if result.duplicate_charge:
        message = "Payment received, but these services were already paid. Our billing team will review a refund."
    elif result.already_applied:
        message = "Payment already processed."
    else:
        message = "Payment processed successfully."
    return ProcessPaymentResponse(
        success=result.success,
        message=message,
        services_updated=result.services_updated,
        payment_intent_id=result.payment_intent_id,
        already_applied=result.already_applied,
        duplicate_charge=result.duplicate_charge,
    )


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
    metrics_collector: MetricsCollector = Depends(get_metrics_collector),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    cache_manager: CacheManager = Depends(get_cache_manager),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    reconciler = PaymentReconciler(db, gateway, metrics_collector, audit_logger, cache_manager=cache_manager)
    try:
        result = await reconciler.handle_notification(payload, signature)
    except WebhookSignatureError as e:
        raise _billing_http_exception(e)
    except BillingError as e:
        # Non-2xx makes Stripe redeliver.
        raise HTTPException(status_code=500, detail=e.to_detail())
    except Exception as e:
        logger.error("Unexpected webhook handler error", error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook handler failed.")
    return WebhookAck(**result.model_dump())
