# Importing this package registers every table on Base.metadata,
# which the migrations and the test fixtures rely on.

from .patient_db import PatientModel, MagicLinkModel, InsuranceCardModel, InsuranceUpdateModel
from .billing_db import ServiceModel, PaymentModel, PAYMENT_STATUSES
from .audit_log_db import PatientActionModel

__all__ = [
    "PatientModel",
    "MagicLinkModel",
    "InsuranceCardModel",
    "InsuranceUpdateModel",
    "ServiceModel",
    "PaymentModel",
    "PAYMENT_STATUSES",
    "PatientActionModel",
]
