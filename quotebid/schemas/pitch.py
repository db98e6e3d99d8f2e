from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from quotebid.schemas.placement import BillingResponse, PlacementResponse


class PitchCreate(BaseModel):
    opportunity_id: int
    content: Optional[str] = None
    audio_url: Optional[str] = Field(default=None, max_length=500)
    bid_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    payment_intent_id: Optional[str] = None
    is_draft: bool = False

    @model_validator(mode="after")
    def require_body(self):
        if not self.is_draft and not (self.content or self.audio_url):
            raise ValueError("a submitted pitch needs content or an audio recording")
        return self


class DraftUpdate(BaseModel):
    content: Optional[str] = None
    audio_url: Optional[str] = Field(default=None, max_length=500)
    bid_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=10, decimal_places=2)


class PitchStatusUpdate(BaseModel):
    status: str = Field(min_length=1, max_length=50)
    article_title: Optional[str] = Field(default=None, max_length=500)
    article_url: Optional[str] = Field(default=None, max_length=1000)


class PitchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    opportunity_id: int
    user_id: int
    content: Optional[str] = None
    audio_url: Optional[str] = None
    status: str
    is_draft: bool
    bid_amount: Optional[Decimal] = None
    successful_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PitchStatusResponse(BaseModel):
    pitch: PitchResponse
    placement: Optional[PlacementResponse] = None
    billing: Optional[BillingResponse] = None
    billing_error: Optional[str] = None
