from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

class PatientProfile(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None  # Decrypted for the owner only

class ServiceItem(BaseModel):
    id: str
    service_code: str
    service_name: str
    service_date: datetime
    original_amount: Decimal
    discounted_amount: Decimal
    is_paid: bool
    insurance_denial_reason: Optional[str] = None
    insurance_company_phone: Optional[str] = None

    model_config = {"from_attributes": True}

class InsuranceCardView(BaseModel):
    id: str
    insurance_company: Optional[str] = None
    policy_number: Optional[str] = None
    group_number: Optional[str] = None
    member_name: Optional[str] = None
    member_id: Optional[str] = None
    front_image_url: Optional[str] = None
    back_image_url: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

class DashboardSummary(BaseModel):
    services_total: int
    services_paid: int
    services_unpaid: int
    has_insurance: bool
    has_active_insurance: bool
    total_original_amount: Decimal
    total_discounted_amount: Decimal
    unpaid_discounted_amount: Decimal

class DashboardResponse(BaseModel):
    patient: PatientProfile
    services: List[ServiceItem]
    insurance_card: Optional[InsuranceCardView] = None
    summary: DashboardSummary

class InsuranceUpdateResponse(BaseModel):
    success: bool = True
    message: str = "Insurance information updated successfully"
    insurance_card: InsuranceCardView
