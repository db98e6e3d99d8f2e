# quotebid/schemas/__init__.py
"""
Pydantic schemas for request/response validation and serialization.
"""

from quotebid.schemas.opportunity import (
    OpportunityCreate,
    OpportunityResponse,
    OpportunityUpdate,
    SavedOpportunityResponse,
)
from quotebid.schemas.pitch import (
    DraftUpdate,
    PitchCreate,
    PitchResponse,
    PitchStatusResponse,
    PitchStatusUpdate,
)
from quotebid.schemas.placement import BillingResponse, BillRequest, PlacementResponse

__all__ = [
    "BillingResponse",
    "BillRequest",
    "DraftUpdate",
    "OpportunityCreate",
    "OpportunityResponse",
    "OpportunityUpdate",
    "PitchCreate",
    "PitchResponse",
    "PitchStatusResponse",
    "PitchStatusUpdate",
    "PlacementResponse",
    "SavedOpportunityResponse",
]
