from sqlalchemy import Column, String, Text, TIMESTAMP, Boolean, ForeignKey, func
from sqlalchemy.orm import relationship
from ..db_session import Base, generate_id

class PatientModel(Base):
    __tablename__ = "patients"

    id = Column(String(32), primary_key=True, default=generate_id)
    email = Column(String(320), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)
    date_of_birth = Column(String(255), nullable=True) # Encrypted at rest
    password_hash = Column(String(255), nullable=True) # NULL until the patient sets a password

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    services = relationship("ServiceModel", back_populates="patient", lazy="raise")

    def __repr__(self):
        return f"<PatientModel(id='{self.id}', email='{self.email}')>"


class MagicLinkModel(Base):
    __tablename__ = "magic_links"

    id = Column(String(32), primary_key=True, default=generate_id)
    token = Column(String(64), unique=True, index=True, nullable=False)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=False, index=True)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<MagicLinkModel(id='{self.id}', patient_id='{self.patient_id}', used={self.used})>"


class InsuranceCardModel(Base):
    __tablename__ = "insurance_cards"

    id = Column(String(32), primary_key=True, default=generate_id)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=False, index=True)
    front_image_url = Column(Text, nullable=True)
    back_image_url = Column(Text, nullable=True)
    insurance_company = Column(String(200), nullable=True)
    policy_number = Column(String(255), nullable=True) # Encrypted at rest
    group_number = Column(String(100), nullable=True)
    member_name = Column(String(200), nullable=True)
    member_id = Column(String(255), nullable=True) # Encrypted at rest
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class InsuranceUpdateModel(Base):
    __tablename__ = "insurance_updates"

    id = Column(String(32), primary_key=True, default=generate_id)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=False, index=True)
    insurance_card_id = Column(String(32), ForeignKey("insurance_cards.id"), nullable=True)
    update_type = Column(String(50), nullable=False) # 'photo_upload', 'manual_entry', 'both'
    notes = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
