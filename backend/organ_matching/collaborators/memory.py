"""In-process collaborator implementations for local runs and tests."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Set, Tuple

from loguru import logger

from ..errors import OrganNotAvailable
from ..models.organ import OrganRecord, OrganStatus, RecipientFacts
from .base import LookupResult


class InMemoryOrganRegistry:
    def __init__(
        self,
        organs: Iterable[OrganRecord] = (),
        donor_regions: Mapping[str, str] | None = None,
    ) -> None:
        self.organs: Dict[str, OrganRecord] = {organ.id: organ for organ in organs}
        self.donor_regions: Dict[str, str] = dict(donor_regions or {})

    def add(self, organ: OrganRecord, region: str | None = None) -> None:
        self.organs[organ.id] = organ
        if region is not None:
            self.donor_regions[organ.donor_id] = region

    async def get_organ(self, organ_id: str) -> LookupResult[OrganRecord]:
        organ = self.organs.get(organ_id)
        if organ is None:
            return LookupResult.not_found(f"organ {organ_id}")
        return LookupResult.ok(organ.model_copy())

    async def exists(self, organ_id: str) -> bool:
        return organ_id in self.organs

    async def set_status(
        self,
        organ_id: str,
        status: OrganStatus,
        recipient_id: str | None = None,
        hospital_id: str | None = None,
    ) -> None:
        organ = self.organs.get(organ_id)
        if organ is None:
            raise KeyError(organ_id)
        if status is OrganStatus.MATCHED and organ.status is not OrganStatus.AVAILABLE:
            raise OrganNotAvailable(organ_id, organ.status.value)
        self.organs[organ_id] = organ.model_copy(
            update={
                "status": status,
                "assigned_recipient": recipient_id,
                "assigned_hospital": hospital_id,
            }
        )
        logger.debug("Organ {} status -> {}", organ_id, status.value)

    async def mark_emergency(self, organ_id: str) -> None:
        organ = self.organs.get(organ_id)
        if organ is None:
            raise KeyError(organ_id)
        self.organs[organ_id] = organ.model_copy(update={"is_emergency": True})

    async def get_donor_region(self, donor_id: str) -> LookupResult[str]:
        region = self.donor_regions.get(donor_id)
        if region is None:
            return LookupResult.not_found(f"donor {donor_id}")
        return LookupResult.ok(region)


class InMemoryRecipientRegistry:
    def __init__(self, recipients: Iterable[RecipientFacts] = ()) -> None:
        self.recipients: Dict[str, RecipientFacts] = {r.id: r for r in recipients}

    def add(self, recipient: RecipientFacts) -> None:
        self.recipients[recipient.id] = recipient

    async def get_recipient(self, recipient_id: str) -> LookupResult[RecipientFacts]:
        recipient = self.recipients.get(recipient_id)
        if recipient is None:
            return LookupResult.not_found(f"recipient {recipient_id}")
        return LookupResult.ok(recipient)


class InMemoryQualityService:
    def __init__(
        self,
        validated: Iterable[str] = (),
        compatibility: Mapping[Tuple[str, str], bool] | None = None,
    ) -> None:
        self.validated: Set[str] = set(validated)
        self.compatibility: Dict[Tuple[str, str], bool] = dict(compatibility or {})

    async def is_validated(self, organ_id: str) -> LookupResult[bool]:
        return LookupResult.ok(organ_id in self.validated)

    async def is_compatible(self, organ_id: str, recipient_id: str) -> LookupResult[bool]:
        key = (organ_id, recipient_id)
        if key not in self.compatibility:
            return LookupResult.not_found(f"no quality check for {organ_id}/{recipient_id}")
        return LookupResult.ok(self.compatibility[key])


class StaticRegionDistance:
    def __init__(self, distances: Mapping[Tuple[str, str], float] | None = None) -> None:
        self.distances: Dict[frozenset, float] = {
            frozenset(pair): km for pair, km in (distances or {}).items()
        }

    async def distance_km(self, from_region: str, to_region: str) -> LookupResult[float]:
        if from_region == to_region:
            return LookupResult.ok(0.0)
        km = self.distances.get(frozenset((from_region, to_region)))
        if km is None:
            return LookupResult.unavailable(f"no distance for {from_region}/{to_region}")
        return LookupResult.ok(km)


class StaticAuthorizer:
    def __init__(self, roles: Mapping[str, Iterable[str]] | None = None) -> None:
        self.roles: Dict[str, Set[str]] = {actor: set(r) for actor, r in (roles or {}).items()}

    async def has_role(self, actor: str | None, role: str) -> bool:
        if actor is None:
            return False
        return role in self.roles.get(actor, set())
