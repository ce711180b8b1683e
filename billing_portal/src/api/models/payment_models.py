from pydantic import BaseModel, Field, StrictInt
from decimal import Decimal
from typing import List, Optional

class CreateIntentRequest(BaseModel):
    service_ids: List[str]
    amount: StrictInt = Field(..., description="Client-computed total in cents. Checked against the server total.")

class CreateIntentResponse(BaseModel):
    client_secret: Optional[str] = None
    payment_intent_id: str
    amount: Decimal  # Dollars, server-computed
    amount_cents: int
    service_ids: List[str]

class ProcessPaymentRequest(BaseModel):
    payment_intent_id: str
    service_ids: List[str]
    amount: Optional[StrictInt] = Field(None, description="Optional client total in cents.")

class ProcessPaymentResponse(BaseModel):
    success: bool
    message: str
    services_updated: int
    payment_intent_id: str
    already_applied: bool = False
    duplicate_charge: bool = False
    reconciliation_pending: bool = False
    retryable: bool = False

class WebhookAck(BaseModel):
    received: bool = True
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: Optional[str] = None
