from decimal import Decimal
from typing import List, Optional, Sequence
import structlog
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database.models.billing_db import ServiceModel, PaymentModel
from ..core.monitoring.app_metrics import MetricsCollector

logger = structlog.get_logger(__name__)

class BillingRepository:
    """
    Queries and writes for services and payments. Methods never commit; the
    caller owns the transaction boundary.
    """

    def __init__(self, db_session: AsyncSession, metrics_collector: MetricsCollector):
        self.db = db_session
        self.metrics_collector = metrics_collector

    async def get_services_for_patient(self, patient_id: str) -> List[ServiceModel]:
        with self.metrics_collector.time_db_query("fetch_services_for_patient"):
            stmt = (
                select(ServiceModel)
                .where(ServiceModel.patient_id == patient_id)
                .order_by(ServiceModel.service_date.desc())
            )
            result = await self.db.execute(stmt)
            return list(result.scalars().all())

    async def mark_services_paid(self, patient_id: str, service_ids: Sequence[str]) -> List[str]:
        """
        Flips unpaid services owned by `patient_id` to paid and returns the ids
        that actually changed. Rows already paid, or owned by someone else, are
        left alone and not returned.
        """
        if not service_ids:
            return []
        with self.metrics_collector.time_db_query("mark_services_paid"):
            stmt = (
                update(ServiceModel)
                .where(
                    ServiceModel.id.in_(list(service_ids)),
                    ServiceModel.patient_id == patient_id,
                    ServiceModel.is_paid.is_(False),
                )
                .values(is_paid=True, updated_at=func.now())
                .returning(ServiceModel.id)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            updated_ids = [row[0] for row in result.all()]
        logger.debug("Services marked paid", patient_id=patient_id,
                     requested=len(service_ids), updated=len(updated_ids))
        return updated_ids

    async def insert_payment_record(
        self,
        patient_id: str,
        payment_intent_id: str,
        amount: Decimal,
        currency: str,
        status: str,
        service_ids: List[str],
    ) -> PaymentModel:
        payment = PaymentModel(
            patient_id=patient_id,
            stripe_payment_intent_id=payment_intent_id,
            amount=amount,
            currency=currency,
            status=status,
            service_ids=list(service_ids),
        )
        with self.metrics_collector.time_db_query("insert_payment_record"):
            self.db.add(payment)
            # Flush so a duplicate intent id raises here, inside the caller's transaction.
            await self.db.flush()
        return payment

    async def get_payment_by_intent_id(self, payment_intent_id: str) -> Optional[PaymentModel]:
        with self.metrics_collector.time_db_query("fetch_payment_by_intent_id"):
            stmt = select(PaymentModel).where(PaymentModel.stripe_payment_intent_id == payment_intent_id)
            result = await self.db.execute(stmt)
            return result.scalars().first()

    async def update_payment_status_by_intent_id(
        self,
        payment_intent_id: str,
        status: str,
        exclude_statuses: Sequence[str] = (),
    ) -> int:
        """
        Sets the status of the payment for `payment_intent_id` unless it already
        has `status` or one of `exclude_statuses`. Returns the affected row count.
        """
        skip = {status, *exclude_statuses}
        with self.metrics_collector.time_db_query("update_payment_status"):
            stmt = (
                update(PaymentModel)
                .where(
                    PaymentModel.stripe_payment_intent_id == payment_intent_id,
                    PaymentModel.status.not_in(list(skip)),
                )
                .values(status=status, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
        return result.rowcount or 0
