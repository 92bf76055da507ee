from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ProposalStatus(str, Enum):
    PENDING = "Pending"
    MATCHED = "Matched"
    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"
    EXPIRED = "Expired"


OUTSTANDING_STATUSES = frozenset({ProposalStatus.MATCHED, ProposalStatus.CONFIRMED})


class MatchScore(BaseModel):
    blood_compatibility: float = 0
    urgency: float = 0
    waiting_time: float = 0
    geographic: float = 0
    medical: float = 0
    total: float = 0
    is_compatible: bool = False

    model_config = {"frozen": True}


class MatchProposal(BaseModel):
    organ_id: str
    recipient_id: str
    hospital_id: str | None = None
    score: MatchScore
    status: ProposalStatus = ProposalStatus.MATCHED
    proposed_at: datetime
    expires_at: datetime
    notes: str = ""
    emergency: bool = False
    # position in the organ's proposal history
    attempt: int = 0

    @property
    def outstanding(self) -> bool:
        return self.status in OUTSTANDING_STATUSES


class AllocationRequest(BaseModel):
    recipient_id: str
    hospital_id: str | None = None
    notes: str = ""


class AllocateNextRequest(BaseModel):
    hospital_id: str | None = None


class EmergencyRequest(BaseModel):
    max_distance_km: float = Field(default=500.0, ge=0)
    hospital_id: str | None = None


class ProposalTransitionRequest(BaseModel):
    reason: str = ""


class ScoringWeightUpdate(BaseModel):
    value: float
