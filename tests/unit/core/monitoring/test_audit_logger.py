import pytest
from unittest.mock import AsyncMock, MagicMock
from typing import Any, Callable, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing_portal.src.core.monitoring.audit_logger import AuditLogger
from billing_portal.src.core.database.models.audit_log_db import PatientActionModel


@pytest.fixture
def mock_db_session_factory() -> Tuple[MagicMock, AsyncMock]:  # Returns factory_mock, session_mock
    mock_session = AsyncMock(spec=AsyncSession)
    # AuditLogger uses session.begin() as an async context manager
    mock_session_begin_cm = AsyncMock()
    mock_session_begin_cm.__aenter__.return_value = mock_session
    mock_session_begin_cm.__aexit__.return_value = None
    mock_session.begin = MagicMock(return_value=mock_session_begin_cm)
    mock_session.add = MagicMock()

    # The factory returns an async context manager yielding the session.
    async_cm_factory_yields = AsyncMock()
    async_cm_factory_yields.__aenter__.return_value = mock_session
    async_cm_factory_yields.__aexit__.return_value = None

    mock_session_factory_instance = MagicMock(spec=Callable[[], Any])
    mock_session_factory_instance.return_value = async_cm_factory_yields

    return mock_session_factory_instance, mock_session


@pytest.fixture
def audit_logger(mock_db_session_factory: Tuple[MagicMock, AsyncMock]) -> AuditLogger:
    factory_mock, _ = mock_db_session_factory
    return AuditLogger(db_session_factory=factory_mock)


@pytest.mark.asyncio
async def test_log_action_success(audit_logger: AuditLogger, mock_db_session_factory: Tuple[MagicMock, AsyncMock]):
    factory_mock, mock_session = mock_db_session_factory

    stored = await audit_logger.log_action(
        action="view_dashboard",
        patient_id="patient-1",
        resource="Dashboard",
        ip_address="127.0.0.1",
        user_agent="TestAgent/1.0",
        details={"service_count": 2},
    )

    assert stored is True
    factory_mock.assert_called_once()
    mock_session.add.assert_called_once()
    entry = mock_session.add.call_args[0][0]
    assert isinstance(entry, PatientActionModel)
    assert entry.action == "view_dashboard"
    assert entry.patient_id == "patient-1"
    assert entry.resource == "Dashboard"
    assert entry.ip_address == "127.0.0.1"
    assert entry.success is True
    assert entry.details == {"service_count": 2}


@pytest.mark.asyncio
async def test_log_action_failure_entry_keeps_reason(audit_logger: AuditLogger,
                                                     mock_db_session_factory: Tuple[MagicMock, AsyncMock]):
    _, mock_session = mock_db_session_factory

    await audit_logger.log_action(action="password_login", success=False, failure_reason="Invalid credentials")

    entry = mock_session.add.call_args[0][0]
    assert entry.success is False
    assert entry.failure_reason == "Invalid credentials"
    assert entry.patient_id is None


@pytest.mark.asyncio
async def test_log_action_db_error_is_reported_not_raised(audit_logger: AuditLogger,
                                                          mock_db_session_factory: Tuple[MagicMock, AsyncMock]):
    _, mock_session = mock_db_session_factory
    mock_session.add.side_effect = Exception("Simulated DB error")

    assert await audit_logger.log_action(action="view_dashboard", patient_id="patient-1") is False


def test_build_entry_drops_failure_reason_on_success():
    entry = AuditLogger.build_entry("magic_link_login", success=True, failure_reason="ignored")
    assert entry.failure_reason is None


def test_add_to_session_uses_callers_session(audit_logger: AuditLogger,
                                             mock_db_session_factory: Tuple[MagicMock, AsyncMock]):
    factory_mock, _ = mock_db_session_factory
    caller_session = MagicMock()

    entry = audit_logger.add_to_session(caller_session, "payment_completed", patient_id="patient-1",
                                        resource="Payment", resource_id="pi_1")

    caller_session.add.assert_called_once_with(entry)
    assert entry.resource_id == "pi_1"
    factory_mock.assert_not_called()
