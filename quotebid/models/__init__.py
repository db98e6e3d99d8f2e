# quotebid/models/__init__.py
"""
ORM models. Importing this package registers every table on ``Base.metadata``.
"""

from quotebid.models.bid import Bid
from quotebid.models.opportunity import Opportunity, OpportunityStatus
from quotebid.models.pitch import Pitch, PitchStatus
from quotebid.models.placement import Placement, PlacementStatus
from quotebid.models.publication import Publication
from quotebid.models.reminder import ReminderKind, ReminderOutcome, ScheduledReminder
from quotebid.models.saved_opportunity import SavedOpportunity
from quotebid.models.user import User

__all__ = [
    "Bid",
    "Opportunity",
    "OpportunityStatus",
    "Pitch",
    "PitchStatus",
    "Placement",
    "PlacementStatus",
    "Publication",
    "ReminderKind",
    "ReminderOutcome",
    "ScheduledReminder",
    "SavedOpportunity",
    "User",
]
