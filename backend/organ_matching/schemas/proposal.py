from __future__ import annotations

from typing import Any, Dict

from ..models.match import MatchProposal, MatchScore


def score_document(score: MatchScore) -> Dict[str, Any]:
    return {
        "blood_compatibility": score.blood_compatibility,
        "urgency": score.urgency,
        "waiting_time": score.waiting_time,
        "geographic": score.geographic,
        "medical": score.medical,
        "total": score.total,
        "is_compatible": score.is_compatible,
    }


def proposal_document(proposal: MatchProposal) -> Dict[str, Any]:
    return {
        "organ_id": proposal.organ_id,
        "recipient_id": proposal.recipient_id,
        "hospital_id": proposal.hospital_id,
        "score": score_document(proposal.score),
        "status": proposal.status.value,
        "proposed_at": proposal.proposed_at.isoformat(),
        "expires_at": proposal.expires_at.isoformat(),
        "notes": proposal.notes,
        "emergency": proposal.emergency,
    }
