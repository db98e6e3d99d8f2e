from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PlacementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pitch_id: int
    user_id: int
    opportunity_id: int
    publication_id: int
    article_title: Optional[str] = None
    article_url: Optional[str] = None
    amount: Decimal
    status: str
    billing_attempts: int
    payment_intent_id: Optional[str] = None
    invoice_id: Optional[str] = None
    payment_id: Optional[str] = None
    charged_at: Optional[datetime] = None
    error_message: Optional[str] = None
    notification_sent: bool
    notified_at: Optional[datetime] = None


class BillRequest(BaseModel):
    article_url: Optional[str] = Field(default=None, max_length=1000)


class BillingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    placement: PlacementResponse
    payment_source: str
    notification_sent: bool
    notification_error: Optional[str] = None
