from __future__ import annotations

from typing import Annotated, Any, Dict

from fastapi import APIRouter, Depends
from pymongo.errors import PyMongoError

from ..engine.allocation import AllocationEngine
from ..models.match import ScoringWeightUpdate
from ..models.user import Principal
from ..routers.auth import require_roles
from ..schemas.proposal import proposal_document
from ..utils.logging import log_db_error

router = APIRouter(prefix="/admin", tags=["admin"])
AdminUser = Annotated[Principal, Depends(require_roles("admin"))]


def get_engine() -> AllocationEngine:
    return router.engine


@router.get("/weights")
async def scoring_weights(_: AdminUser, engine: AllocationEngine = Depends(get_engine)) -> Dict[str, float]:
    return engine.weights.snapshot()


@router.put("/weights/{name}")
async def set_scoring_weight(
    user: AdminUser,
    name: str,
    payload: ScoringWeightUpdate,
    engine: AllocationEngine = Depends(get_engine),
) -> Dict[str, float]:
    return await engine.set_scoring_weight(name, payload.value, actor=user.id)


@router.post("/proposals/expire")
async def expire_overdue(_: AdminUser, engine: AllocationEngine = Depends(get_engine)) -> Dict[str, Any]:
    expired = await engine.expire_overdue()
    return {"expired": [proposal_document(p) for p in expired]}


@router.get("/audit")
async def audit_history(
    _: AdminUser, limit: int = 20, engine: AllocationEngine = Depends(get_engine)
) -> Dict[str, Any]:
    if engine.audit_log is None:
        return {"history": []}
    try:
        entries = await engine.audit_log.history(limit)
    except PyMongoError as exc:
        log_db_error("audit_history", exc)
        return {"history": [], "detail": "audit log unavailable"}
    return {"history": entries}


def init_router(engine: AllocationEngine) -> None:
    router.engine = engine
