import structlog
from typing import Optional, Dict, Any, Callable
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models.audit_log_db import PatientActionModel

logger = structlog.get_logger(__name__)

class AuditLogger:
    def __init__(self, db_session_factory: Callable[[], AsyncSession]):
        """
        Args:
            db_session_factory: A callable returning an AsyncSession usable as an
                async context manager (e.g. AsyncSessionLocal).
        """
        self.db_session_factory = db_session_factory
        logger.info("AuditLogger initialized.")

    @staticmethod
    def build_entry(
        action: str,
        patient_id: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> PatientActionModel:
        return PatientActionModel(
            patient_id=patient_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            failure_reason=failure_reason if not success else None,
            details=details,
        )

    def add_to_session(self, session: AsyncSession, action: str, **fields: Any) -> PatientActionModel:
        """
        Adds an entry to a caller-owned session so it commits or rolls back with
        the caller's other writes.
        """
        entry = self.build_entry(action, **fields)
        session.add(entry)
        return entry

    async def log_action(
        self,
        action: str,
        patient_id: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Stores an entry in its own transaction. A failure to store is logged and
        reported through the return value, never raised.
        """
        entry = self.build_entry(
            action,
            patient_id=patient_id,
            resource=resource,
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            failure_reason=failure_reason,
            details=details,
        )

        try:
            async with self.db_session_factory() as session:
                async with session.begin():
                    session.add(entry)
            logger.debug("Audit entry stored.", action=action, resource=resource, patient_id=patient_id)
            return True
        except Exception as e:
            logger.error("Failed to store audit entry.",
                         action=action, resource=resource, patient_id=patient_id,
                         error=str(e), exc_info=True)
            return False
