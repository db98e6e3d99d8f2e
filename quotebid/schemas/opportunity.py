from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from quotebid.core.clock import to_naive_utc


class OpportunityCreate(BaseModel):
    publication_id: int
    title: str = Field(min_length=1, max_length=300)
    description: Optional[str] = None
    request_type: Optional[str] = None
    industry: Optional[str] = None
    minimum_bid: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    current_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    deadline: Optional[datetime] = None
    email_delay_minutes: Optional[int] = Field(default=None, ge=0)

    @field_validator("deadline")
    def normalize_deadline(cls, v):
        return to_naive_utc(v)


class OpportunityUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    request_type: Optional[str] = None
    industry: Optional[str] = None
    minimum_bid: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    current_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    deadline: Optional[datetime] = None

    @field_validator("deadline")
    def normalize_deadline(cls, v):
        return to_naive_utc(v)


class OpportunityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    publication_id: Optional[int] = None
    title: str
    description: Optional[str] = None
    request_type: Optional[str] = None
    industry: Optional[str] = None
    status: str
    minimum_bid: Decimal
    current_price: Optional[Decimal] = None
    deadline: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    last_price: Optional[Decimal] = None
    email_scheduled_at: Optional[datetime] = None
    email_sent_at: Optional[datetime] = None
    email_send_attempted: bool
    email_attempted_at: Optional[datetime] = None
    created_at: datetime


class SavedOpportunityResponse(BaseModel):
    opportunity_id: int
    saved: bool
    reminder_due_at: Optional[datetime] = None
