from typing import Callable, Optional
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from billing_portal.src.core.monitoring.audit_logger import AuditLogger
from billing_portal.src.core.database.db_session import AsyncSessionLocal
from billing_portal.src.core.monitoring.app_metrics import MetricsCollector
from billing_portal.src.core.security.encryption_service import EncryptionService
from billing_portal.src.core.security.auth_service import AuthService, SessionTokenPayload
from billing_portal.src.core.storage.file_storage import FileStorage
from billing_portal.src.billing.payment_gateway import StripePaymentGateway
from billing_portal.src.core.config.settings import get_settings

logger = structlog.get_logger(__name__)

_audit_logger_instance: Optional[AuditLogger] = None
_metrics_collector_instance: Optional[MetricsCollector] = None
_encryption_service_instance: Optional[EncryptionService] = None
_auth_service_instance: Optional[AuthService] = None
_payment_gateway_instance: Optional[StripePaymentGateway] = None
_file_storage_instance: Optional[FileStorage] = None

bearer_scheme = HTTPBearer(auto_error=False)

def get_async_session_factory() -> Callable[[], AsyncSession]:
    """Returns the raw session factory callable."""
    return AsyncSessionLocal

def get_audit_logger() -> AuditLogger:
    global _audit_logger_instance
    if _audit_logger_instance is None:
        _audit_logger_instance = AuditLogger(db_session_factory=get_async_session_factory())
        logger.info("Default AuditLogger instance created.")
    return _audit_logger_instance

def get_metrics_collector() -> MetricsCollector:
    global _metrics_collector_instance
    if _metrics_collector_instance is None:
        _metrics_collector_instance = MetricsCollector()
        logger.info("Default MetricsCollector instance created.")
    return _metrics_collector_instance

def get_encryption_service() -> EncryptionService:
    global _encryption_service_instance
    if _encryption_service_instance is None:
        app_settings = get_settings()
        if not app_settings.APP_ENCRYPTION_KEY:
            logger.error("APP_ENCRYPTION_KEY is not set. EncryptionService cannot be initialized.")
            raise ValueError("APP_ENCRYPTION_KEY must be set for EncryptionService.")
        _encryption_service_instance = EncryptionService(encryption_key=app_settings.APP_ENCRYPTION_KEY)
        logger.info("Default EncryptionService instance created.")
    return _encryption_service_instance

def get_auth_service() -> AuthService:
    global _auth_service_instance
    if _auth_service_instance is None:
        _auth_service_instance = AuthService()
        logger.info("Default AuthService instance created.")
    return _auth_service_instance

def get_payment_gateway() -> StripePaymentGateway:
    global _payment_gateway_instance
    if _payment_gateway_instance is None:
        _payment_gateway_instance = StripePaymentGateway()
        logger.info("Default StripePaymentGateway instance created.")
    return _payment_gateway_instance

def get_file_storage() -> FileStorage:
    global _file_storage_instance
    if _file_storage_instance is None:
        _file_storage_instance = FileStorage()
    return _file_storage_instance

async def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> SessionTokenPayload:
    """Resolves the bearer token to a session. Anything missing or invalid is a 401."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated",
                            headers={"WWW-Authenticate": "Bearer"})
    session = auth_service.decode_access_token(credentials.credentials)
    if session is None:
        logger.info("Rejected invalid or expired access token")
        raise HTTPException(status_code=401, detail="Invalid or expired session",
                            headers={"WWW-Authenticate": "Bearer"})
    return session

async def get_current_patient_id(session: SessionTokenPayload = Depends(get_current_session)) -> str:
    return session.sub

def get_client_ip(request: Request) -> Optional[str]:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else None)
