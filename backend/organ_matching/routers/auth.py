from __future__ import annotations

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import ValidationError

from ..database import settings
from ..errors import Unauthorized
from ..models.user import Principal, TokenPayload, UserRole
from ..utils.security import decode_token

# tokens are issued by the external identity service
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


async def get_current_user(token: str | None = Security(oauth2_scheme)) -> Principal:
    if not token:
        if settings.auto_authorize_demo:
            return Principal(id=settings.demo_user_id, role=settings.demo_user_role)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authorization token")

    try:
        payload = TokenPayload(**decode_token(token))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    return Principal(id=payload.sub, role=payload.role)


def require_roles(*roles: UserRole):
    def dependency(user: Principal = Depends(get_current_user)) -> Principal:
        # admins may do anything a coordinator can
        if roles and user.role not in roles and user.role != "admin":
            raise Unauthorized(user.id, " or ".join(roles))
        return user

    return dependency
