from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, File, Form
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ..models.patient_models import (
    PatientProfile, ServiceItem, InsuranceCardView, DashboardSummary, DashboardResponse, InsuranceUpdateResponse,
)
from ..dependencies import (
    get_audit_logger, get_metrics_collector, get_encryption_service, get_file_storage,
    get_current_patient_id, get_client_ip,
)
from ...billing.billing_repository import BillingRepository
from ...core.database.db_session import get_db_session
from ...core.database.models.patient_db import PatientModel, InsuranceCardModel, InsuranceUpdateModel
from ...core.monitoring.app_metrics import MetricsCollector
from ...core.monitoring.audit_logger import AuditLogger
from ...core.security.encryption_service import EncryptionService
from ...core.storage.file_storage import FileStorage, generate_insurance_card_key, get_file_extension

logger = structlog.get_logger(__name__)
router = APIRouter()

UPDATE_TYPES = ("photo_upload", "manual_entry", "both")


def _card_view(card: InsuranceCardModel, encryption_service: EncryptionService) -> InsuranceCardView:
    return InsuranceCardView(
        id=card.id,
        insurance_company=card.insurance_company,
        policy_number=encryption_service.decrypt(card.policy_number, "policy_number"),
        group_number=card.group_number,
        member_name=card.member_name,
        member_id=encryption_service.decrypt(card.member_id, "member_id"),
        front_image_url=card.front_image_url,
        back_image_url=card.back_image_url,
        is_active=card.is_active,
        created_at=card.created_at,
    )


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    request: Request,
    patient_id: str = Depends(get_current_patient_id),
    db: AsyncSession = Depends(get_db_session),
    metrics_collector: MetricsCollector = Depends(get_metrics_collector),
    encryption_service: EncryptionService = Depends(get_encryption_service),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    patient = await db.get(PatientModel, patient_id)
    if patient is None:
        logger.warn("Dashboard requested for unknown patient", patient_id=patient_id)
        raise HTTPException(status_code=404, detail="Patient not found")

    services = [ServiceItem.model_validate(s)
                for s in await BillingRepository(db, metrics_collector).get_services_for_patient(patient_id)]

    with metrics_collector.time_db_query("fetch_active_insurance_card"):
        card_result = await db.execute(
            select(InsuranceCardModel)
            .where(InsuranceCardModel.patient_id == patient_id, InsuranceCardModel.is_active.is_(True))
            .order_by(InsuranceCardModel.created_at.desc())
            .limit(1)
        )
    card = card_result.scalars().first()

    unpaid = [s for s in services if not s.is_paid]
    summary = DashboardSummary(
        services_total=len(services),
        services_paid=len(services) - len(unpaid),
        services_unpaid=len(unpaid),
        has_insurance=card is not None,
        has_active_insurance=bool(card is not None and card.is_active),
        total_original_amount=sum((s.original_amount for s in services), Decimal("0.00")),
        total_discounted_amount=sum((s.discounted_amount for s in services), Decimal("0.00")),
        unpaid_discounted_amount=sum((s.discounted_amount for s in unpaid), Decimal("0.00")),
    )

    response = DashboardResponse(
        patient=PatientProfile(
            id=patient.id,
            email=patient.email,
            first_name=patient.first_name,
            last_name=patient.last_name,
            phone=patient.phone,
            date_of_birth=encryption_service.decrypt(patient.date_of_birth, "date_of_birth"),
        ),
        services=services,
        insurance_card=_card_view(card, encryption_service) if card is not None else None,
        summary=summary,
    )

    if db.in_transaction():
        await db.commit()
    await audit_logger.log_action(
        "view_dashboard",
        patient_id=patient_id,
        resource="Dashboard",
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details={
            "services_count": summary.services_total,
            "has_insurance": summary.has_insurance,
            "unpaid_services": summary.services_unpaid,
        },
    )
    return response


@router.post("/insurance", response_model=InsuranceUpdateResponse)
async def update_insurance(
    request: Request,
    insurance_company: Optional[str] = Form(None),
    policy_number: Optional[str] = Form(None),
    group_number: Optional[str] = Form(None),
    member_name: Optional[str] = Form(None),
    member_id: Optional[str] = Form(None),
    update_type: Optional[str] = Form(None),
    front_image: Optional[UploadFile] = File(None),
    back_image: Optional[UploadFile] = File(None),
    patient_id: str = Depends(get_current_patient_id),
    db: AsyncSession = Depends(get_db_session),
    encryption_service: EncryptionService = Depends(get_encryption_service),
    file_storage: FileStorage = Depends(get_file_storage),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    has_manual_data = any([insurance_company, policy_number, member_name, member_id])
    uploads = {side: f for side, f in (("front", front_image), ("back", back_image)) if f is not None and f.filename}
    if not has_manual_data and not uploads:
        raise HTTPException(status_code=400, detail="Please provide either insurance details or upload card images")

    if update_type not in UPDATE_TYPES:
        if has_manual_data and uploads:
            update_type = "both"
        else:
            update_type = "photo_upload" if uploads else "manual_entry"

    image_urls = {}
    try:
        for side, upload in uploads.items():
            key = generate_insurance_card_key(patient_id, side, get_file_extension(upload.filename))
            stored = await file_storage.save(await upload.read(), key, upload.content_type)
            image_urls[side] = stored.url
    except Exception as e:
        logger.error("Insurance card image upload failed", patient_id=patient_id, error=str(e), exc_info=True)
        raise HTTPException(status_code=502, detail="Could not store insurance card images.")

    card = InsuranceCardModel(
        patient_id=patient_id,
        front_image_url=image_urls.get("front"),
        back_image_url=image_urls.get("back"),
        insurance_company=insurance_company or None,
        policy_number=encryption_service.encrypt(policy_number, "policy_number"),
        group_number=group_number or None,
        member_name=member_name or None,
        member_id=encryption_service.encrypt(member_id, "member_id"),
        is_active=True,
    )
    try:
        if db.in_transaction():
            await db.commit()
        async with db.begin():
            await db.execute(
                update(InsuranceCardModel)
                .where(InsuranceCardModel.patient_id == patient_id, InsuranceCardModel.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            db.add(card)
            await db.flush()
            await db.refresh(card)
            db.add(InsuranceUpdateModel(
                patient_id=patient_id,
                insurance_card_id=card.id,
                update_type=update_type,
                notes="Updated via patient portal. "
                      + ("Includes uploaded images." if uploads else "Manual entry only."),
            ))
            audit_logger.add_to_session(
                db,
                "insurance_update",
                patient_id=patient_id,
                resource="InsuranceCard",
                resource_id=card.id,
                ip_address=get_client_ip(request),
                user_agent=request.headers.get("user-agent"),
                details={
                    "update_type": update_type,
                    "has_files": bool(uploads),
                    "has_manual_data": has_manual_data,
                    "insurance_company": insurance_company or "Not provided",
                },
            )
    except Exception as e:
        logger.error("Failed to save insurance update", patient_id=patient_id, error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to save insurance information.")

    logger.info("Insurance information updated", patient_id=patient_id, insurance_card_id=card.id,
                update_type=update_type)
    return InsuranceUpdateResponse(insurance_card=_card_view(card, encryption_service))
