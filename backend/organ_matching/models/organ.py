from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class OrganType(str, Enum):
    HEART = "Heart"
    LIVER = "Liver"
    KIDNEYS = "Kidneys"


class OrganStatus(str, Enum):
    AVAILABLE = "Available"
    MATCHED = "Matched"
    TRANSPLANTED = "Transplanted"
    EXPIRED = "Expired"
    REJECTED = "Rejected"


class OrganRecord(BaseModel):
    """Organ as held by the external organ registry. Read-only to the matching core."""

    id: str
    organ_type: OrganType
    blood_type: str
    status: OrganStatus = OrganStatus.AVAILABLE
    donor_id: str
    is_emergency: bool = False
    urgency_level: int = Field(default=1, ge=1, le=10)
    quality_validated: bool = False
    assigned_recipient: str | None = None
    assigned_hospital: str | None = None


class RecipientFacts(BaseModel):
    id: str
    blood_type: str
    region: str
    registered: bool = True
