from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence
import structlog
from pydantic import BaseModel, ConfigDict

from .billing_repository import BillingRepository
from .discount_calculator import to_minor_units
from .exceptions import ValidationError, AmountMismatchError
from ..core.config.settings import get_settings

logger = structlog.get_logger(__name__)


class ServiceRecord(BaseModel):
    """Detached snapshot of a services row."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    patient_id: str
    service_code: str
    service_name: str
    service_date: datetime
    original_amount: Decimal
    discounted_amount: Decimal
    is_paid: bool
    insurance_denial_reason: Optional[str] = None
    insurance_company_phone: Optional[str] = None


class ResolvedSelection(BaseModel):
    services: List[ServiceRecord]  # Owned and unpaid, in request order
    already_paid_ids: List[str] = []
    expected_total: Decimal
    expected_total_cents: int

    @property
    def service_ids(self) -> List[str]:
        return [s.id for s in self.services]


def normalize_service_ids(service_ids: object) -> List[str]:
    """Validates a client-supplied id list and removes duplicates, keeping order."""
    if not isinstance(service_ids, (list, tuple)) or not service_ids:
        raise ValidationError("At least one service must be selected.")
    seen = set()
    normalized: List[str] = []
    for service_id in service_ids:
        if not isinstance(service_id, str) or not service_id.strip():
            raise ValidationError("Service ids must be non-empty strings.")
        service_id = service_id.strip()
        if service_id not in seen:
            seen.add(service_id)
            normalized.append(service_id)
    return normalized


class SelectionValidator:
    """
    Turns a client's requested service ids into the authoritative set of
    payable services and total, using only what the database says the patient
    owns.
    """

    def __init__(self, repository: BillingRepository, tolerance_cents: Optional[int] = None):
        self.repository = repository
        self.tolerance_cents = (
            tolerance_cents if tolerance_cents is not None else get_settings().AMOUNT_TOLERANCE_CENTS
        )

    async def resolve_selection(
        self,
        patient_id: str,
        service_ids: Sequence[str],
        allow_nothing_unpaid: bool = False,
    ) -> ResolvedSelection:
        """
        Raises:
            ValidationError: the id list is empty or malformed, none of the ids
                belong to the patient, or (unless `allow_nothing_unpaid`) every
                owned id is already paid.
        """
        requested = normalize_service_ids(service_ids)
        owned = {
            s.id: ServiceRecord.model_validate(s)
            for s in await self.repository.get_services_for_patient(patient_id)
        }

        foreign_ids = [sid for sid in requested if sid not in owned]
        if foreign_ids:
            logger.warn("Potential integrity violation: selection references services not owned by patient",
                        patient_id=patient_id, foreign_service_ids=foreign_ids)

        selected = [owned[sid] for sid in requested if sid in owned]
        if not selected:
            raise ValidationError("No valid services found for this patient.")

        unpaid = [s for s in selected if not s.is_paid]
        already_paid_ids = [s.id for s in selected if s.is_paid]
        if not unpaid and not allow_nothing_unpaid:
            raise ValidationError("No unpaid services found in the selection.")

        expected_total = sum((s.discounted_amount for s in unpaid), Decimal("0.00"))
        return ResolvedSelection(
            services=unpaid,
            already_paid_ids=already_paid_ids,
            expected_total=expected_total,
            expected_total_cents=to_minor_units(expected_total),
        )

    def check_claimed_total(self, selection: ResolvedSelection, claimed_total_cents: object) -> None:
        """Raises AmountMismatchError unless the claim is within tolerance of the server total."""
        if isinstance(claimed_total_cents, bool) or not isinstance(claimed_total_cents, int):
            raise ValidationError("Claimed total must be an integer amount in cents.")
        if claimed_total_cents < 0:
            raise ValidationError("Claimed total cannot be negative.")

        difference = abs(claimed_total_cents - selection.expected_total_cents)
        if difference > self.tolerance_cents:
            logger.warn("Claimed total does not match server total",
                        expected_cents=selection.expected_total_cents,
                        claimed_cents=claimed_total_cents,
                        service_ids=selection.service_ids)
            raise AmountMismatchError(
                "Amount mismatch between the selected services and the requested total.",
                expected_cents=selection.expected_total_cents,
                claimed_cents=claimed_total_cents,
            )

    async def verify_claimed_total(
        self, patient_id: str, service_ids: Sequence[str], claimed_total_cents: object
    ) -> ResolvedSelection:
        selection = await self.resolve_selection(patient_id, service_ids)
        self.check_claimed_total(selection, claimed_total_cents)
        return selection
