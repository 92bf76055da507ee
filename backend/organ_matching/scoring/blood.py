"""Canonical blood-type compatibility matrix shared by scoring and eligibility checks."""

from __future__ import annotations

from typing import Dict, FrozenSet

UNIVERSAL_DONOR = "O-"
UNIVERSAL_RECIPIENT = "AB+"

BLOOD_TYPES = ("O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+")

# donor -> recipients it may give to
COMPATIBILITY_MAP: Dict[str, FrozenSet[str]] = {
    "O-": frozenset({"O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+"}),
    "O+": frozenset({"O+", "A+", "B+", "AB+"}),
    "A-": frozenset({"A-", "A+", "AB-", "AB+"}),
    "A+": frozenset({"A+", "AB+"}),
    "B-": frozenset({"B-", "B+", "AB-", "AB+"}),
    "B+": frozenset({"B+", "AB+"}),
    "AB-": frozenset({"AB-", "AB+"}),
    "AB+": frozenset({"AB+"}),
}

EXACT_MATCH_SCORE = 30
UNIVERSAL_SCORE = 25
PARTIAL_MATCH_SCORE = 20


def normalize_blood_type(value: str | None) -> str:
    if not value:
        return ""
    return value.strip().upper()


def is_blood_compatible(donor_blood: str | None, recipient_blood: str | None) -> bool:
    return blood_compatibility_score(donor_blood, recipient_blood) > 0


def blood_compatibility_score(donor_blood: str | None, recipient_blood: str | None) -> int:
    """Score a donor/recipient blood pairing.

    Exact match scores 30, a universal donor or universal recipient scores 25,
    any other pairing the matrix allows scores 20, everything else 0.
    Unrecognised blood types never raise; they simply score 0.
    """
    donor = normalize_blood_type(donor_blood)
    recipient = normalize_blood_type(recipient_blood)
    if donor not in COMPATIBILITY_MAP or recipient not in COMPATIBILITY_MAP:
        return 0
    if donor == recipient:
        return EXACT_MATCH_SCORE
    if donor == UNIVERSAL_DONOR:
        return UNIVERSAL_SCORE
    if recipient == UNIVERSAL_RECIPIENT:
        return UNIVERSAL_SCORE
    if recipient in COMPATIBILITY_MAP[donor]:
        return PARTIAL_MATCH_SCORE
    return 0
