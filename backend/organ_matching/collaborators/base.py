"""Result type and timeout guard shared by all external collaborator calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Generic, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class LookupStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class LookupResult(Generic[T]):
    status: LookupStatus
    value: Optional[T] = None
    detail: str = ""

    @classmethod
    def ok(cls, value: T) -> "LookupResult[T]":
        return cls(LookupStatus.OK, value)

    @classmethod
    def not_found(cls, detail: str = "") -> "LookupResult[T]":
        return cls(LookupStatus.NOT_FOUND, None, detail)

    @classmethod
    def unavailable(cls, detail: str = "") -> "LookupResult[T]":
        return cls(LookupStatus.UNAVAILABLE, None, detail)

    @property
    def is_ok(self) -> bool:
        return self.status is LookupStatus.OK

    @property
    def is_unavailable(self) -> bool:
        return self.status is LookupStatus.UNAVAILABLE


async def guarded_lookup(
    call: Awaitable[LookupResult[T]], timeout: float, context: str
) -> LookupResult[T]:
    """Await a collaborator lookup with a bounded timeout.

    Timeouts and collaborator exceptions become UNAVAILABLE results so callers
    can branch on them instead of catching faults.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("{} timed out after {}s", context, timeout)
        return LookupResult.unavailable(f"{context} timed out")
    except Exception as exc:
        logger.warning("{} failed: {}", context, exc)
        return LookupResult.unavailable(f"{context} failed: {exc}")
