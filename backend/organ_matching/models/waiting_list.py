from __future__ import annotations

from datetime import datetime
from enum import IntEnum

from pydantic import BaseModel, Field

from .organ import OrganType


class PriorityTier(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3
    EMERGENCY = 4

    @classmethod
    def from_name(cls, name: str) -> "PriorityTier":
        return cls[name.strip().upper()]


class WaitingListEntry(BaseModel):
    recipient_id: str
    organ_type: OrganType
    region: str
    urgency_level: int
    priority: PriorityTier
    added_at: datetime
    updated_at: datetime
    active: bool = True
    # insertion order, last tie-break
    sequence: int = 0


class WaitingListEntryCreate(BaseModel):
    recipient_id: str
    organ_type: OrganType
    region: str
    urgency_level: int
    priority: str = Field(default="Medium")


class WaitingListEntryUpdate(BaseModel):
    urgency_level: int | None = None
    priority: str | None = None
