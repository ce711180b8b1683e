from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ..models.auth_models import (
    MagicLinkRequest, MagicLinkRequestResponse, MagicLinkVerifyRequest, LoginRequest, TokenResponse,
    SetupPasswordRequest, SetupPasswordResponse,
)
from ..dependencies import (
    get_audit_logger, get_metrics_collector, get_auth_service, get_current_session, get_client_ip,
)
from ...auth.magic_link_service import MagicLinkService
from ...core.config.settings import get_settings
from ...core.database.db_session import get_db_session
from ...core.database.models.patient_db import PatientModel
from ...core.monitoring.app_metrics import MetricsCollector
from ...core.monitoring.audit_logger import AuditLogger
from ...core.security.auth_service import AuthService, SessionTokenPayload

logger = structlog.get_logger(__name__)
router = APIRouter()


def _issue_token(auth_service: AuthService, patient: PatientModel, auth_method: str) -> TokenResponse:
    needs_password_setup = patient.password_hash is None
    token = auth_service.create_access_token(SessionTokenPayload(
        sub=patient.id,
        email=patient.email,
        auth_method=auth_method,
        needs_password_setup=needs_password_setup,
    ))
    return TokenResponse(
        access_token=token,
        expires_in=auth_service.access_token_ttl_seconds,
        patient_id=patient.id,
        needs_password_setup=needs_password_setup,
    )


@router.post("/magic-link/request", status_code=202, response_model=MagicLinkRequestResponse)
async def request_magic_link(
    request: Request,
    body: MagicLinkRequest,
    db: AsyncSession = Depends(get_db_session),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    service = MagicLinkService(db)
    patient = await service.get_patient_by_email(body.email)
    if patient is None:
        logger.info("Magic link requested for unknown email")
        return MagicLinkRequestResponse()

    issued = await service.generate_magic_link(patient)
    await service.send_magic_link_email(patient, issued)
    await audit_logger.log_action(
        "magic_link_requested",
        patient_id=patient.id,
        resource="MagicLink",
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details={"expires_at": issued.expires_at.isoformat()},
    )
    return MagicLinkRequestResponse()


@router.post("/magic-link/verify", response_model=TokenResponse)
async def verify_magic_link(
    request: Request,
    body: MagicLinkVerifyRequest,
    db: AsyncSession = Depends(get_db_session),
    auth_service: AuthService = Depends(get_auth_service),
    metrics_collector: MetricsCollector = Depends(get_metrics_collector),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    patient = await MagicLinkService(db).consume_magic_link(body.token)
    if patient is None:
        metrics_collector.record_login_attempt("magic_link", "rejected")
        raise HTTPException(status_code=401, detail="Invalid or expired sign-in link")

    metrics_collector.record_login_attempt("magic_link", "success")
    await audit_logger.log_action(
        "magic_link_login",
        patient_id=patient.id,
        resource="Session",
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _issue_token(auth_service, patient, "magic_link")


@router.post("/login", response_model=TokenResponse)
async def login(
    request: Request,
    body: LoginRequest,
    db: AsyncSession = Depends(get_db_session),
    auth_service: AuthService = Depends(get_auth_service),
    metrics_collector: MetricsCollector = Depends(get_metrics_collector),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    patient = await MagicLinkService(db).get_patient_by_email(body.email)
    if patient is None or not auth_service.verify_password(body.password, patient.password_hash):
        metrics_collector.record_login_attempt("password", "rejected")
        await audit_logger.log_action(
            "password_login",
            patient_id=patient.id if patient is not None else None,
            resource="Session",
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            success=False,
            failure_reason="Invalid credentials",
        )
        raise HTTPException(status_code=401, detail="Invalid email or password")

    metrics_collector.record_login_attempt("password", "success")
    await audit_logger.log_action(
        "password_login",
        patient_id=patient.id,
        resource="Session",
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _issue_token(auth_service, patient, "password")


@router.post("/setup-password", response_model=SetupPasswordResponse)
async def setup_password(
    request: Request,
    body: SetupPasswordRequest,
    session: SessionTokenPayload = Depends(get_current_session),
    db: AsyncSession = Depends(get_db_session),
    auth_service: AuthService = Depends(get_auth_service),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    min_length = get_settings().PASSWORD_MIN_LENGTH
    if len(body.password) < min_length:
        raise HTTPException(status_code=400, detail=f"Password must be at least {min_length} characters")

    patient = await db.get(PatientModel, session.sub)
    if patient is None:
        raise HTTPException(status_code=404, detail="Patient not found")

    patient.password_hash = auth_service.hash_password(body.password)
    await db.commit()

    await audit_logger.log_action(
        "password_setup",
        patient_id=patient.id,
        resource="Patient",
        resource_id=patient.id,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details={"description": "Password successfully set up"},
    )
    logger.info("Patient password set", patient_id=patient.id)
    return SetupPasswordResponse()
