import os
import pytest
from sqlalchemy import select

from billing_portal.src.core.config.settings import get_settings
from billing_portal.src.core.database.models import InsuranceCardModel, InsuranceUpdateModel, PatientActionModel
from billing_portal.src.core.security.auth_service import AuthService, SessionTokenPayload
from billing_portal.src.core.security.encryption_service import EncryptionService

DASHBOARD_URL = "/api/v1/patient/dashboard"
INSURANCE_URL = "/api/v1/patient/insurance"


@pytest.fixture
def encryption_service() -> EncryptionService:
    return EncryptionService()


@pytest.mark.asyncio
async def test_dashboard(client, make_patient, make_service, auth_headers, db_session, encryption_service):
    patient = await make_patient("john.doe@example.com",
                                 date_of_birth=encryption_service.encrypt("1985-03-15", "date_of_birth"))
    await make_service(patient.id, "office_visit", "250.00")
    await make_service(patient.id, "lab_work", "85.00", is_paid=True)
    db_session.add(InsuranceCardModel(
        patient_id=patient.id, insurance_company="Blue Cross Blue Shield",
        policy_number=encryption_service.encrypt("BC123456789", "policy_number"),
        member_id=encryption_service.encrypt("JD123456", "member_id"), is_active=True,
    ))
    await db_session.commit()

    response = client.get(DASHBOARD_URL, headers=auth_headers(patient))

    assert response.status_code == 200
    body = response.json()
    assert body["patient"]["date_of_birth"] == "1985-03-15"
    assert len(body["services"]) == 2
    assert body["insurance_card"]["policy_number"] == "BC123456789"
    assert body["insurance_card"]["member_id"] == "JD123456"
    summary = body["summary"]
    assert summary["services_total"] == 2
    assert summary["services_paid"] == 1
    assert summary["services_unpaid"] == 1
    assert summary["has_active_insurance"] is True
    assert float(summary["total_original_amount"]) == 335.0
    assert float(summary["total_discounted_amount"]) == 205.0
    assert float(summary["unpaid_discounted_amount"]) == 162.5

    viewed = (await db_session.execute(
        select(PatientActionModel.action).where(PatientActionModel.patient_id == patient.id)
    )).scalars().all()
    assert viewed == ["view_dashboard"]


@pytest.mark.asyncio
async def test_dashboard_only_shows_own_services(client, make_patient, make_service, auth_headers):
    patient = await make_patient("a@example.com")
    other = await make_patient("b@example.com")
    own = await make_service(patient.id, "imaging", "180.00")
    await make_service(other.id, "procedure", "750.00")

    body = client.get(DASHBOARD_URL, headers=auth_headers(patient)).json()

    assert [s["id"] for s in body["services"]] == [own.id]
    assert body["insurance_card"] is None


def test_dashboard_requires_session(client):
    assert client.get(DASHBOARD_URL).status_code == 401


def test_dashboard_for_unknown_patient(client):
    token = AuthService().create_access_token(SessionTokenPayload(
        sub="missing-patient", email="ghost@example.com", auth_method="magic_link",
    ))
    response = client.get(DASHBOARD_URL, headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_manual_insurance_update_replaces_active_card(client, make_patient, auth_headers, db_session,
                                                            encryption_service):
    patient = await make_patient()
    db_session.add(InsuranceCardModel(patient_id=patient.id, insurance_company="Old Insurer", is_active=True))
    await db_session.commit()

    response = client.post(INSURANCE_URL, headers=auth_headers(patient), data={
        "insurance_company": "Aetna", "policy_number": "AET987654321", "group_number": "GRP002",
        "member_name": "Jane Smith", "member_id": "JS987654",
    })

    assert response.status_code == 200
    card = response.json()["insurance_card"]
    assert card["insurance_company"] == "Aetna"
    assert card["member_id"] == "JS987654"
    assert card["is_active"] is True

    rows = (await db_session.execute(
        select(InsuranceCardModel.insurance_company, InsuranceCardModel.is_active, InsuranceCardModel.member_id)
        .where(InsuranceCardModel.patient_id == patient.id)
    )).all()
    active = [row for row in rows if row.is_active]
    assert len(rows) == 2
    assert [row.insurance_company for row in active] == ["Aetna"]
    assert active[0].member_id != "JS987654"
    assert encryption_service.decrypt(active[0].member_id, "member_id") == "JS987654"

    update_type = (await db_session.execute(
        select(InsuranceUpdateModel.update_type).where(InsuranceUpdateModel.patient_id == patient.id)
    )).scalar_one()
    assert update_type == "manual_entry"


@pytest.mark.asyncio
async def test_insurance_card_image_upload(client, make_patient, auth_headers):
    patient = await make_patient()

    response = client.post(
        INSURANCE_URL,
        headers=auth_headers(patient),
        data={"insurance_company": "United Healthcare"},
        files={"front_image": ("front.png", b"\x89PNG front", "image/png"),
               "back_image": ("back.jpg", b"back bytes", "image/jpeg")},
    )

    assert response.status_code == 200
    card = response.json()["insurance_card"]
    prefix = f"/uploads/insurance-cards_{patient.id}_"
    assert card["front_image_url"].startswith(prefix + "front-")
    assert card["front_image_url"].endswith(".png")
    assert card["back_image_url"].startswith(prefix + "back-")

    served = client.get(card["front_image_url"])
    assert served.status_code == 200
    assert served.content == b"\x89PNG front"
    dashboard = client.get(DASHBOARD_URL, headers=auth_headers(patient)).json()
    assert client.get(dashboard["insurance_card"]["back_image_url"]).content == b"back bytes"

    stored_name = card["front_image_url"].rsplit("/", 1)[-1]
    with open(os.path.join(get_settings().LOCAL_UPLOAD_DIR, stored_name), "rb") as f:
        assert f.read() == b"\x89PNG front"


@pytest.mark.asyncio
async def test_insurance_update_requires_some_data(client, make_patient, auth_headers):
    patient = await make_patient()
    response = client.post(INSURANCE_URL, headers=auth_headers(patient), data={"group_number": "GRP001"})
    assert response.status_code == 400
