import html
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config.settings import Settings, get_settings
from ..core.database.models.patient_db import PatientModel, MagicLinkModel

logger = structlog.get_logger(__name__)


class IssuedMagicLink(BaseModel):
    token: str
    url: str
    expires_at: datetime


class MagicLinkEmail(BaseModel):
    subject: str
    text: str
    html: str


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def build_magic_link_email(patient: PatientModel, magic_link_url: str, expires_at: datetime) -> MagicLinkEmail:
    if patient.first_name and patient.last_name:
        patient_name = f"{patient.first_name} {patient.last_name}"
    else:
        patient_name = patient.email
    expiration = _as_utc(expires_at).strftime("%B %d, %Y at %I:%M %p UTC")
    subject = "Update Your Insurance Information or Pay for Services"

    text = (
        f"Dear {patient_name},\n\n"
        "We need your help to resolve a billing issue with your recent medical services. "
        "Your insurance company has not processed payment for one or more services.\n\n"
        "Please visit the following link to either update your insurance information "
        "or pay for services at a discounted rate:\n\n"
        f"{magic_link_url}\n\n"
        f"This link will expire on {expiration} and can only be used once.\n\n"
        "If you have any questions, please contact our billing department.\n\n"
        "---\n"
        "This is an automated message. Please do not reply to this email.\n"
    )

    safe_name = html.escape(patient_name)
    safe_url = html.escape(magic_link_url, quote=True)
    html_body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(subject)}</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <h1>Insurance Update Required</h1>
  <p>Dear {safe_name},</p>
  <p>We need your help to resolve a billing issue with your recent medical services.
     Your insurance company has not processed payment for one or more services, and we need you to either:</p>
  <ul>
    <li><strong>Update your insurance information</strong> if it has changed</li>
    <li><strong>Pay for the services yourself</strong> at a significantly discounted rate</li>
  </ul>
  <p><a href="{safe_url}">Access Your Account</a></p>
  <p><strong>Important:</strong> This link will expire on {expiration} and can only be used once.
     If you need a new link, please contact our billing department.</p>
  <p style="font-size: 12px; color: #666;">This is an automated message. Please do not reply to this email.<br>
     If you cannot click the link above, copy and paste this URL into your browser:<br>{safe_url}</p>
</body>
</html>
"""
    return MagicLinkEmail(subject=subject, text=text, html=html_body)


class MagicLinkService:
    """Issues and consumes one-time sign-in links."""

    def __init__(self, db_session: AsyncSession, settings: Optional[Settings] = None):
        self.db = db_session
        self.settings = settings or get_settings()

    async def get_patient_by_email(self, email: str) -> Optional[PatientModel]:
        stmt = select(PatientModel).where(PatientModel.email == email.strip().lower())
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_patient_by_id(self, patient_id: str) -> Optional[PatientModel]:
        return await self.db.get(PatientModel, patient_id)

    async def generate_magic_link(self, patient: PatientModel) -> IssuedMagicLink:
        """Stores a new token for `patient` and commits it."""
        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(hours=self.settings.MAGIC_LINK_EXPIRE_HOURS)
        self.db.add(MagicLinkModel(token=token, patient_id=patient.id, expires_at=expires_at, used=False))
        await self.db.commit()

        url = f"{self.settings.APP_BASE_URL.rstrip('/')}/auth/magic?token={token}"
        logger.info("Magic link issued", patient_id=patient.id, expires_at=expires_at.isoformat())
        return IssuedMagicLink(token=token, url=url, expires_at=expires_at)

    async def send_magic_link_email(self, patient: PatientModel, issued: IssuedMagicLink) -> bool:
        # TODO: deliver through an email provider; the message is only logged for now.
        email = build_magic_link_email(patient, issued.url, issued.expires_at)
        logger.info("Magic link email generated", to=patient.email, subject=email.subject,
                    magic_link_url=issued.url, expires_at=issued.expires_at.isoformat())
        return True

    async def consume_magic_link(self, token: str) -> Optional[PatientModel]:
        """
        Marks the token used and returns its patient. Returns None for unknown,
        expired or already-used tokens. Two concurrent requests with the same
        token cannot both succeed.
        """
        if not token:
            return None
        result = await self.db.execute(select(MagicLinkModel).where(MagicLinkModel.token == token))
        link = result.scalars().first()
        if link is None:
            logger.warn("Magic link not found")
            return None
        if link.used:
            logger.warn("Magic link already used", magic_link_id=link.id, patient_id=link.patient_id)
            return None
        now = datetime.now(timezone.utc)
        if _as_utc(link.expires_at) <= now:
            logger.warn("Magic link expired", magic_link_id=link.id, patient_id=link.patient_id)
            return None

        claimed = await self.db.execute(
            update(MagicLinkModel)
            .where(MagicLinkModel.id == link.id, MagicLinkModel.used.is_(False))
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if not claimed.rowcount:
            await self.db.rollback()
            logger.warn("Magic link consumed concurrently", magic_link_id=link.id)
            return None
        await self.db.commit()

        patient = await self.get_patient_by_id(link.patient_id)
        logger.info("Magic link consumed", patient_id=link.patient_id)
        return patient
