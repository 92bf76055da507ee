from __future__ import annotations

from typing import Annotated, Any, Dict

from fastapi import APIRouter, Depends, status

from ..engine.allocation import AllocationEngine
from ..engine.emergency import EmergencyMatcher
from ..models.match import (
    AllocateNextRequest,
    AllocationRequest,
    EmergencyRequest,
    ProposalTransitionRequest,
)
from ..models.user import Principal
from ..routers.auth import get_current_user, require_roles
from ..schemas.proposal import proposal_document

router = APIRouter(tags=["allocation"])
CoordinatorUser = Annotated[Principal, Depends(require_roles("coordinator"))]


def get_engine() -> AllocationEngine:
    return router.engine


def get_emergency() -> EmergencyMatcher:
    return router.emergency


@router.get("/organs/{organ_id}/candidates")
async def compatible_recipients(
    organ_id: str,
    engine: AllocationEngine = Depends(get_engine),
    _: Principal = Depends(get_current_user),
) -> Dict[str, Any]:
    recipients = await engine.find_compatible_recipients(organ_id)
    return {"organ_id": organ_id, "recipients": recipients}


@router.post("/organs/{organ_id}/allocate", status_code=status.HTTP_201_CREATED)
async def allocate(
    user: CoordinatorUser,
    organ_id: str,
    payload: AllocationRequest,
    engine: AllocationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    proposal = await engine.allocate(
        organ_id, payload.recipient_id, payload.hospital_id, payload.notes, actor=user.id
    )
    return proposal_document(proposal)


@router.post("/organs/{organ_id}/allocate-next")
async def allocate_next(
    user: CoordinatorUser,
    organ_id: str,
    payload: AllocateNextRequest,
    engine: AllocationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    proposal = await engine.allocate_next(organ_id, payload.hospital_id, actor=user.id)
    if proposal is None:
        return {"organ_id": organ_id, "status": "no_match"}
    return proposal_document(proposal)


@router.post("/organs/{organ_id}/emergency")
async def trigger_emergency(
    user: CoordinatorUser,
    organ_id: str,
    payload: EmergencyRequest,
    matcher: EmergencyMatcher = Depends(get_emergency),
) -> Dict[str, Any]:
    recipient_id = await matcher.trigger_emergency_match(
        organ_id, payload.max_distance_km, payload.hospital_id, actor=user.id
    )
    return {"organ_id": organ_id, "recipient_id": recipient_id, "matched": recipient_id is not None}


@router.get("/organs/{organ_id}/proposals")
async def proposal_history(
    organ_id: str,
    engine: AllocationEngine = Depends(get_engine),
    _: Principal = Depends(get_current_user),
) -> Dict[str, Any]:
    return {
        "organ_id": organ_id,
        "proposals": [proposal_document(p) for p in engine.proposals(organ_id)],
    }


@router.post("/organs/{organ_id}/proposal/confirm")
async def confirm_proposal(
    user: CoordinatorUser,
    organ_id: str,
    engine: AllocationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return proposal_document(await engine.confirm_proposal(organ_id, actor=user.id))


@router.post("/organs/{organ_id}/proposal/reject")
async def reject_proposal(
    user: CoordinatorUser,
    organ_id: str,
    payload: ProposalTransitionRequest,
    engine: AllocationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return proposal_document(await engine.reject_proposal(organ_id, payload.reason, actor=user.id))


@router.post("/organs/{organ_id}/proposal/transplanted")
async def mark_transplanted(
    user: CoordinatorUser,
    organ_id: str,
    engine: AllocationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return proposal_document(await engine.mark_transplanted(organ_id, actor=user.id))


@router.get("/recipients/{recipient_id}/allocations")
async def recipient_allocations(
    recipient_id: str,
    engine: AllocationEngine = Depends(get_engine),
    _: Principal = Depends(get_current_user),
) -> Dict[str, Any]:
    return {"recipient_id": recipient_id, "organs": engine.allocations_for(recipient_id)}


def init_router(engine: AllocationEngine, emergency: EmergencyMatcher) -> None:
    router.engine = engine
    router.emergency = emergency
