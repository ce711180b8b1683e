from sqlalchemy import Column, Integer, String, TIMESTAMP, Boolean, Text, ForeignKey
from sqlalchemy.sql import func
from ..db_session import Base, JSONVariant

class PatientActionModel(Base):
    """Audit trail of patient-facing actions (logins, dashboard views, payments)."""
    __tablename__ = "patient_actions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)

    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=True, index=True) # Nullable for system events
    action = Column(String(100), nullable=False, index=True) # e.g., magic_link_login, payment_completed
    resource = Column(String(100), nullable=True, index=True) # e.g., Payment, InsuranceCard
    resource_id = Column(String(255), nullable=True, index=True)

    ip_address = Column(String(100), nullable=True)
    user_agent = Column(Text, nullable=True)

    success = Column(Boolean, nullable=False, default=True)
    failure_reason = Column(Text, nullable=True)

    details = Column(JSONVariant, nullable=True)

    def __repr__(self):
        return f"<PatientActionModel(id={self.id}, action='{self.action}', patient='{self.patient_id}', success={self.success})>"
