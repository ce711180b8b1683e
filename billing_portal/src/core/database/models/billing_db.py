from sqlalchemy import Column, String, Text, TIMESTAMP, Boolean, Numeric, ForeignKey, CheckConstraint, func
from sqlalchemy.orm import relationship
from ..db_session import Base, generate_id, JSONVariant

PAYMENT_STATUSES = ("pending", "succeeded", "failed", "canceled")

class ServiceModel(Base):
    __tablename__ = "services"

    id = Column(String(32), primary_key=True, default=generate_id)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=False, index=True)
    service_code = Column(String(50), nullable=False, index=True) # Discount category, e.g. 'office_visit'
    service_name = Column(String(255), nullable=False)
    service_date = Column(TIMESTAMP(timezone=True), nullable=False, index=True)

    original_amount = Column(Numeric(10, 2), nullable=False)
    discounted_amount = Column(Numeric(10, 2), nullable=False)

    insurance_denial_reason = Column(Text, nullable=True)
    insurance_company_phone = Column(String(50), nullable=True)

    # Flips false -> true only through the payment reconciler.
    is_paid = Column(Boolean, default=False, nullable=False, index=True)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    patient = relationship("PatientModel", back_populates="services", lazy="raise")

    __table_args__ = (
        CheckConstraint("discounted_amount <= original_amount", name="ck_services_discount_not_above_original"),
        CheckConstraint("discounted_amount >= 0", name="ck_services_discount_non_negative"),
    )

    def __repr__(self):
        return f"<ServiceModel(id='{self.id}', code='{self.service_code}', is_paid={self.is_paid})>"


class PaymentModel(Base):
    __tablename__ = "payments"

    id = Column(String(32), primary_key=True, default=generate_id)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=False, index=True)
    # Join key for the webhook path; the unique constraint also guards concurrent confirmations.
    stripe_payment_intent_id = Column(String(255), unique=True, index=True, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(10), default="usd", nullable=False)
    status = Column(String(20), nullable=False, index=True)
    service_ids = Column(JSONVariant, nullable=False, default=list)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{s}'" for s in PAYMENT_STATUSES) + ")",
            name="ck_payments_status",
        ),
    )

    def __repr__(self):
        return f"<PaymentModel(id='{self.id}', intent='{self.stripe_payment_intent_id}', status='{self.status}')>"
