"""Multi-criteria scoring of an (organ, recipient) pair.

Pure and side-effect free: every fact the score depends on, including the
quality-service outcome, is passed in by the caller.
"""

from __future__ import annotations

from typing import Dict

from ..collaborators.base import LookupResult, LookupStatus
from ..models.match import MatchScore
from ..models.organ import OrganRecord, RecipientFacts
from ..models.waiting_list import PriorityTier
from .blood import blood_compatibility_score
from .weights import (
    BLOOD_COMPATIBILITY,
    GEOGRAPHIC,
    MEDICAL,
    MINIMUM_SCORE,
    URGENCY,
    WAITING_TIME,
    ScoringWeights,
)

URGENCY_BY_TIER: Dict[PriorityTier, int] = {
    PriorityTier.EMERGENCY: 25,
    PriorityTier.CRITICAL: 20,
    PriorityTier.HIGH: 15,
    PriorityTier.MEDIUM: 10,
    PriorityTier.LOW: 5,
}

# Tier-derived placeholder; elapsed waiting time is not modelled yet.
WAITING_TIME_BY_TIER: Dict[PriorityTier, int] = {
    PriorityTier.EMERGENCY: 20,
    PriorityTier.CRITICAL: 15,
}
WAITING_TIME_DEFAULT = 10

GEOGRAPHIC_PLACEHOLDER = 10

MEDICAL_VALIDATED = 10
MEDICAL_REJECTED = 0
MEDICAL_UNKNOWN = 5


def medical_score(quality: LookupResult[bool] | None) -> int:
    if quality is None or quality.status is not LookupStatus.OK:
        return MEDICAL_UNKNOWN
    return MEDICAL_VALIDATED if quality.value else MEDICAL_REJECTED


def is_compatible_at(blood_compatibility: float, total: float, minimum_score: float) -> bool:
    return blood_compatibility > 0 and total >= minimum_score


def score_match(
    organ: OrganRecord,
    recipient: RecipientFacts,
    priority: PriorityTier,
    quality: LookupResult[bool] | None,
    weights: ScoringWeights,
    geographic: float | None = None,
) -> MatchScore:
    """Score ``organ`` for ``recipient`` at the recipient's current ``priority``.

    ``quality`` is the quality-service predicate for the pair; anything but an
    OK result scores the neutral middle value. ``geographic`` may carry a
    distance-based score from a richer geographic model, otherwise the
    constant placeholder applies. Each component is capped by its category
    weight and the total is always the exact sum of the five components.
    """
    current = weights.snapshot()

    def capped(name: str, value: float) -> float:
        return min(value, current.get(name, value))

    blood = capped(BLOOD_COMPATIBILITY, blood_compatibility_score(organ.blood_type, recipient.blood_type))
    urgency = capped(URGENCY, URGENCY_BY_TIER[priority])
    waiting = capped(WAITING_TIME, WAITING_TIME_BY_TIER.get(priority, WAITING_TIME_DEFAULT))
    if geographic is None:
        geographic = GEOGRAPHIC_PLACEHOLDER
    geo = capped(GEOGRAPHIC, max(0.0, min(15.0, geographic)))
    medical = capped(MEDICAL, medical_score(quality))

    total = blood + urgency + waiting + geo + medical
    return MatchScore(
        blood_compatibility=blood,
        urgency=urgency,
        waiting_time=waiting,
        geographic=geo,
        medical=medical,
        total=total,
        is_compatible=is_compatible_at(blood, total, current.get(MINIMUM_SCORE, 0.0)),
    )
