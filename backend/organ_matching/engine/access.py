from __future__ import annotations

from loguru import logger

from ..collaborators.interfaces import Authorizer
from ..errors import Unauthorized

COORDINATOR = "coordinator"
ADMIN = "admin"


async def require_role(authorizer: Authorizer | None, actor: str | None, role: str) -> None:
    # no authorizer configured: the in-process caller is trusted
    if authorizer is None:
        return
    if not await authorizer.has_role(actor, role):
        logger.warning("Rejected mutation by {}: missing role {}", actor, role)
        raise Unauthorized(actor, role)
