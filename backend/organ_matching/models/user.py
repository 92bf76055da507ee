from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


UserRole = Literal["coordinator", "surgeon", "admin"]


class Principal(BaseModel):
    id: str
    role: UserRole


class TokenPayload(BaseModel):
    sub: str
    role: UserRole
    exp: int
