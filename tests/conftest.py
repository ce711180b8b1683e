import json
import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Dict, Generator, Optional

# Settings are read once at import time, so the environment has to be in place
# before anything from billing_portal is imported.
_TEST_DIR = tempfile.mkdtemp(prefix="billing_portal_tests_")
os.environ["DATABASE_URL"] = os.getenv(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
)
os.environ["LOCAL_UPLOAD_DIR"] = os.path.join(_TEST_DIR, "uploads")
os.environ["APP_ENCRYPTION_KEY"] = "AAECAwQFBgcICQoLDA0ODxAREhMUFRYXGBkaGxwdHh8="
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["BCRYPT_ROUNDS"] = "4"
for _var in ("S3_BUCKET", "S3_ACCESS_KEY", "S3_SECRET_KEY"):
    os.environ.pop(_var, None)

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from billing_portal.src.billing.discount_calculator import calculate_discounted_amount
from billing_portal.src.billing.exceptions import ExternalProcessorError, WebhookSignatureError
from billing_portal.src.billing.payment_gateway import ProcessorCharge, ProcessorEvent
from billing_portal.src.core.database.db_session import Base, engine, AsyncSessionLocal
from billing_portal.src.core.database.models import PatientModel, ServiceModel
from billing_portal.src.core.monitoring.app_metrics import MetricsCollector
from billing_portal.src.core.monitoring.audit_logger import AuditLogger

VALID_TEST_SIGNATURE = "t=0,v1=test-signature"


class FakePaymentGateway:
    """In-memory stand-in for StripePaymentGateway."""

    def __init__(self):
        self.charges: Dict[str, ProcessorCharge] = {}
        self.create_calls = []
        self.unreachable = False

    async def create_charge_intent(self, amount_cents: int, currency: str, metadata: Dict[str, str]) -> ProcessorCharge:
        if self.unreachable:
            raise ExternalProcessorError("Payment processor is unavailable. Please try again.")
        self.create_calls.append({"amount_cents": amount_cents, "currency": currency, "metadata": dict(metadata)})
        intent_id = f"pi_test_{len(self.charges) + 1}"
        charge = ProcessorCharge(
            id=intent_id,
            status="requires_payment_method",
            amount=amount_cents,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            metadata=dict(metadata),
        )
        self.charges[intent_id] = charge
        return charge

    def add_charge(self, intent_id: str, patient_id: str, service_ids, amount_cents: int,
                   status: str = "succeeded") -> ProcessorCharge:
        charge = ProcessorCharge(
            id=intent_id,
            status=status,
            amount=amount_cents,
            currency="usd",
            metadata={"patientId": patient_id, "serviceIds": ",".join(service_ids),
                      "serviceCount": str(len(service_ids))},
        )
        self.charges[intent_id] = charge
        return charge

    def mark_succeeded(self, intent_id: str):
        self.charges[intent_id] = self.charges[intent_id].model_copy(update={"status": "succeeded"})

    async def retrieve_charge(self, payment_intent_id: str) -> ProcessorCharge:
        if self.unreachable or payment_intent_id not in self.charges:
            raise ExternalProcessorError("Could not verify payment with the processor.")
        return self.charges[payment_intent_id]

    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        if signature != VALID_TEST_SIGNATURE:
            raise WebhookSignatureError("Invalid webhook signature.")
        event = json.loads(payload)
        data_object = event["data"]["object"]
        return ProcessorEvent(
            id=event["id"],
            type=event["type"],
            object_id=data_object.get("id"),
            object_status=data_object.get("status"),
            metadata=data_object.get("metadata") or {},
        )


class InMemoryCache:
    def __init__(self):
        self.store: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def set(self, key: str, value: str, ttl: int = 3600) -> bool:
        self.store[key] = str(value)
        return True

    async def close(self):
        pass


def stripe_event(event_id: str, event_type: str, intent_id: str, status: str = "succeeded",
                 patient_id: str = "") -> bytes:
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": intent_id, "status": status, "metadata": {"patientId": patient_id}}},
    }).encode()


@pytest.fixture()
async def setup_test_database() -> AsyncGenerator[None, None]:
    """Creates all tables before a test and drops them afterwards."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture()
async def db_session(setup_test_database) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture()
def metrics_collector() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture()
def audit_logger() -> AuditLogger:
    return AuditLogger(db_session_factory=AsyncSessionLocal)


@pytest.fixture()
def fake_gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture()
def memory_cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture()
def make_patient(db_session: AsyncSession):
    async def _make(email: str = "patient@example.com", **fields) -> PatientModel:
        patient = PatientModel(email=email, first_name=fields.pop("first_name", "Pat"),
                               last_name=fields.pop("last_name", "Ient"), **fields)
        db_session.add(patient)
        await db_session.commit()
        return patient
    return _make


@pytest.fixture()
def make_service(db_session: AsyncSession):
    async def _make(patient_id: str, service_code: str = "office_visit", original_amount: str = "100.00",
                    is_paid: bool = False) -> ServiceModel:
        original = Decimal(original_amount)
        service = ServiceModel(
            patient_id=patient_id,
            service_code=service_code,
            service_name=service_code.replace("_", " ").title(),
            service_date=datetime(2024, 1, 15, tzinfo=timezone.utc),
            original_amount=original,
            discounted_amount=calculate_discounted_amount(original, service_code),
            is_paid=is_paid,
        )
        db_session.add(service)
        await db_session.commit()
        return service
    return _make


@pytest.fixture()
def client(setup_test_database, fake_gateway, memory_cache) -> Generator:
    """
    TestClient against the app with Stripe and memcached replaced. The app
    keeps its own sessions on the test database.
    """
    from fastapi.testclient import TestClient
    from billing_portal.src.main import app
    from billing_portal.src.api.dependencies import get_payment_gateway
    from billing_portal.src.core.cache.cache_manager import get_cache_manager

    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_cache_manager] = lambda: memory_cache

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers():
    from billing_portal.src.core.security.auth_service import AuthService, SessionTokenPayload

    def _headers(patient: PatientModel) -> Dict[str, str]:
        token = AuthService().create_access_token(SessionTokenPayload(
            sub=patient.id, email=patient.email, auth_method="magic_link",
        ))
        return {"Authorization": f"Bearer {token}"}
    return _headers
