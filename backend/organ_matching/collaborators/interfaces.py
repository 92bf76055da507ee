from __future__ import annotations

from typing import Protocol

from ..models.organ import OrganRecord, OrganStatus, RecipientFacts
from .base import LookupResult


class OrganRegistry(Protocol):
    async def get_organ(self, organ_id: str) -> LookupResult[OrganRecord]: ...

    async def exists(self, organ_id: str) -> bool: ...

    async def set_status(
        self,
        organ_id: str,
        status: OrganStatus,
        recipient_id: str | None = None,
        hospital_id: str | None = None,
    ) -> None: ...

    async def mark_emergency(self, organ_id: str) -> None: ...

    async def get_donor_region(self, donor_id: str) -> LookupResult[str]: ...


class RecipientRegistry(Protocol):
    async def get_recipient(self, recipient_id: str) -> LookupResult[RecipientFacts]: ...


class QualityService(Protocol):
    async def is_validated(self, organ_id: str) -> LookupResult[bool]: ...

    async def is_compatible(self, organ_id: str, recipient_id: str) -> LookupResult[bool]: ...


class RegionDistance(Protocol):
    async def distance_km(self, from_region: str, to_region: str) -> LookupResult[float]: ...


class Authorizer(Protocol):
    async def has_role(self, actor: str | None, role: str) -> bool: ...
