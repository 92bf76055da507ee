from __future__ import annotations

from typing import Annotated, Any, Dict, List

from fastapi import APIRouter, Depends, status

from ..engine.waiting_list import WaitingListManager
from ..models.organ import OrganType
from ..models.user import Principal
from ..models.waiting_list import WaitingListEntry, WaitingListEntryCreate, WaitingListEntryUpdate
from ..routers.auth import get_current_user, require_roles
from ..schemas.waiting_list import entry_document

router = APIRouter(prefix="/waiting-lists", tags=["waiting-lists"])
CoordinatorUser = Annotated[Principal, Depends(require_roles("coordinator"))]


def get_manager() -> WaitingListManager:
    return router.manager


def _listing(organ_type: OrganType, region: str, entries: List[WaitingListEntry]) -> Dict[str, Any]:
    return {
        "organ_type": organ_type.value,
        "region": region,
        "entries": [entry_document(entry) for entry in entries],
    }


@router.post("/", status_code=status.HTTP_201_CREATED)
async def add_entry(
    user: CoordinatorUser,
    payload: WaitingListEntryCreate,
    manager: WaitingListManager = Depends(get_manager),
) -> Dict[str, Any]:
    entry = await manager.add_entry(
        payload.recipient_id,
        payload.organ_type,
        payload.region,
        payload.urgency_level,
        payload.priority,
        actor=user.id,
    )
    return entry_document(entry)


@router.patch("/{organ_type}/{recipient_id}")
async def update_entry(
    user: CoordinatorUser,
    organ_type: OrganType,
    recipient_id: str,
    payload: WaitingListEntryUpdate,
    manager: WaitingListManager = Depends(get_manager),
) -> Dict[str, Any]:
    entry = await manager.update_entry(
        recipient_id,
        organ_type,
        urgency_level=payload.urgency_level,
        priority=payload.priority,
        actor=user.id,
    )
    return entry_document(entry)


@router.delete("/{organ_type}/{recipient_id}")
async def deactivate_entry(
    user: CoordinatorUser,
    organ_type: OrganType,
    recipient_id: str,
    manager: WaitingListManager = Depends(get_manager),
) -> Dict[str, Any]:
    entry = await manager.deactivate_entry(recipient_id, organ_type, actor=user.id)
    return entry_document(entry)


@router.get("/{organ_type}/{region}")
async def list_active(
    organ_type: OrganType,
    region: str,
    manager: WaitingListManager = Depends(get_manager),
    _: Principal = Depends(get_current_user),
) -> Dict[str, Any]:
    return _listing(organ_type, region, manager.list_active(organ_type, region))


@router.get("/{organ_type}/{region}/prioritized")
async def prioritize(
    organ_type: OrganType,
    region: str,
    manager: WaitingListManager = Depends(get_manager),
    _: Principal = Depends(get_current_user),
) -> Dict[str, Any]:
    return _listing(organ_type, region, manager.prioritize(organ_type, region))


def init_router(manager: WaitingListManager) -> None:
    router.manager = manager
