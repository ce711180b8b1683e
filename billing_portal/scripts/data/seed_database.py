import asyncio
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, List, Optional
import sys

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

# Run from the project root: `python billing_portal/scripts/data/seed_database.py`
sys.path.append(str(Path(__file__).resolve().parents[3]))

from billing_portal.src.billing.discount_calculator import calculate_discounted_amount
from billing_portal.src.core.config.settings import get_settings
from billing_portal.src.core.database.db_session import AsyncSessionLocal, Base, engine
from billing_portal.src.core.database.models import (
    PatientModel, ServiceModel, PaymentModel, MagicLinkModel, InsuranceCardModel, InsuranceUpdateModel,
    PatientActionModel,
)
from billing_portal.src.core.security.encryption_service import EncryptionService

logger = structlog.get_logger(__name__)

SAMPLE_PATIENTS = [
    {"email": "john.doe@example.com", "first_name": "John", "last_name": "Doe",
     "phone": "(555) 123-4567", "date_of_birth": "1985-03-15"},
    {"email": "jane.smith@example.com", "first_name": "Jane", "last_name": "Smith",
     "phone": "(555) 987-6543", "date_of_birth": "1990-07-22"},
    {"email": "mike.johnson@example.com", "first_name": "Mike", "last_name": "Johnson",
     "phone": "(555) 456-7890", "date_of_birth": "1978-11-08"},
]

# (patient email, code, name, date, original amount, denial reason, insurer phone)
SAMPLE_SERVICES = [
    ("john.doe@example.com", "office_visit", "Annual Physical Examination", "2024-01-15", "250.00",
     "Prior authorization required but not obtained", "1-800-555-BLUE"),
    ("john.doe@example.com", "lab_work", "Complete Blood Count (CBC)", "2024-01-15", "85.00",
     "Not medically necessary per insurance guidelines", "1-800-555-BLUE"),
    ("jane.smith@example.com", "imaging", "Chest X-Ray", "2024-02-03", "180.00",
     "Deductible not met - patient responsibility", "1-800-555-AETNA"),
    ("jane.smith@example.com", "consultation", "Specialist Consultation - Cardiology", "2024-02-10", "350.00",
     "Referral expired - new referral required", "1-800-555-AETNA"),
    ("mike.johnson@example.com", "procedure", "Minor Surgical Procedure", "2024-01-28", "750.00",
     "Procedure code not covered under current plan", "1-800-555-UNITED"),
]

SAMPLE_INSURANCE = {
    "john.doe@example.com": ("Blue Cross Blue Shield", "BC123456789", "GRP001", "John Doe", "JD123456"),
    "jane.smith@example.com": ("Aetna", "AET987654321", "GRP002", "Jane Smith", "JS987654"),
    "mike.johnson@example.com": ("United Healthcare", "UHC456789123", "GRP003", "Mike Johnson", "MJ456789"),
}


async def seed_database(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    encryption_service: Optional[EncryptionService] = None,
) -> Dict[str, str]:
    """
    Replaces all portal data with the sample patients. Returns a mapping of
    patient email to a fresh magic-link sign-in URL.
    """
    settings = get_settings()
    encryption_service = encryption_service or EncryptionService()
    expires_at = datetime.now(timezone.utc) + timedelta(hours=settings.MAGIC_LINK_EXPIRE_HOURS)
    sign_in_urls: Dict[str, str] = {}

    async with session_factory() as session:
        async with session.begin():
            # Children first
            for model in (PatientActionModel, InsuranceUpdateModel, InsuranceCardModel, PaymentModel,
                          MagicLinkModel, ServiceModel, PatientModel):
                await session.execute(delete(model))
            logger.info("Existing portal data cleared.")

            patients: Dict[str, PatientModel] = {}
            for data in SAMPLE_PATIENTS:
                patient = PatientModel(
                    email=data["email"],
                    first_name=data["first_name"],
                    last_name=data["last_name"],
                    phone=data["phone"],
                    date_of_birth=encryption_service.encrypt(data["date_of_birth"], "date_of_birth"),
                )
                session.add(patient)
                patients[data["email"]] = patient
            await session.flush()

            services: List[ServiceModel] = []
            for email, code, name, service_date, amount, denial_reason, insurer_phone in SAMPLE_SERVICES:
                original_amount = Decimal(amount)
                services.append(ServiceModel(
                    patient_id=patients[email].id,
                    service_code=code,
                    service_name=name,
                    service_date=datetime.fromisoformat(service_date).replace(tzinfo=timezone.utc),
                    original_amount=original_amount,
                    discounted_amount=calculate_discounted_amount(original_amount, code),
                    insurance_denial_reason=denial_reason,
                    insurance_company_phone=insurer_phone,
                    is_paid=False,
                ))
            session.add_all(services)

            for email, (company, policy, group, member_name, member_id) in SAMPLE_INSURANCE.items():
                session.add(InsuranceCardModel(
                    patient_id=patients[email].id,
                    insurance_company=company,
                    policy_number=encryption_service.encrypt(policy, "policy_number"),
                    group_number=group,
                    member_name=member_name,
                    member_id=encryption_service.encrypt(member_id, "member_id"),
                    is_active=True,
                ))

            for email, patient in patients.items():
                token = secrets.token_urlsafe(32)
                session.add(MagicLinkModel(token=token, patient_id=patient.id, expires_at=expires_at, used=False))
                sign_in_urls[email] = f"{settings.APP_BASE_URL.rstrip('/')}/auth/magic?token={token}"

    logger.info("Database seeded.", patients=len(SAMPLE_PATIENTS), services=len(SAMPLE_SERVICES))
    return sign_in_urls


async def main(create_tables: bool = False):
    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created from model metadata.")

    sign_in_urls = await seed_database()
    print(f"Magic links (valid for {get_settings().MAGIC_LINK_EXPIRE_HOURS} hours):")
    for email, url in sign_in_urls.items():
        print(f"  {email}: {url}")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main(create_tables="--create-tables" in sys.argv))
