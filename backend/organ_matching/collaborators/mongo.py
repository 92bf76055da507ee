"""MongoDB-backed collaborators reading the registries' own collections."""

from __future__ import annotations

from typing import Any, Dict

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from ..errors import OrganNotAvailable
from ..models.organ import OrganRecord, OrganStatus, RecipientFacts
from ..utils.logging import log_db_error
from .base import LookupResult


def organ_from_document(document: Dict[str, Any]) -> OrganRecord:
    return OrganRecord(
        id=str(document["_id"]),
        organ_type=document["organ_type"],
        blood_type=document.get("blood_type", ""),
        status=document.get("status", OrganStatus.AVAILABLE.value),
        donor_id=str(document.get("donor_id", "")),
        is_emergency=bool(document.get("is_emergency", False)),
        urgency_level=document.get("urgency_level") or 1,
        quality_validated=bool(document.get("quality_validated", False)),
        assigned_recipient=document.get("assigned_recipient"),
        assigned_hospital=document.get("assigned_hospital"),
    )


def _region_of(document: Dict[str, Any]) -> str | None:
    if document.get("region"):
        return document["region"]
    location = document.get("location") or {}
    return location.get("city")


class MongoOrganRegistry:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.organs: AsyncIOMotorCollection = db.get_collection("organs")
        self.donors: AsyncIOMotorCollection = db.get_collection("donors")

    async def get_organ(self, organ_id: str) -> LookupResult[OrganRecord]:
        try:
            document = await self.organs.find_one({"_id": organ_id})
        except PyMongoError as exc:
            log_db_error("get_organ", exc)
            return LookupResult.unavailable(str(exc))
        if not document:
            return LookupResult.not_found(f"organ {organ_id}")
        try:
            return LookupResult.ok(organ_from_document(document))
        except (KeyError, ValidationError) as exc:
            log_db_error("get_organ", exc)
            return LookupResult.unavailable(f"malformed organ document {organ_id}")

    async def exists(self, organ_id: str) -> bool:
        return await self.organs.count_documents({"_id": organ_id}, limit=1) > 0

    async def set_status(
        self,
        organ_id: str,
        status: OrganStatus,
        recipient_id: str | None = None,
        hospital_id: str | None = None,
    ) -> None:
        query: Dict[str, Any] = {"_id": organ_id}
        if status is OrganStatus.MATCHED:
            # only an Available organ can be matched, whoever else writes the registry
            query["status"] = OrganStatus.AVAILABLE.value
        result = await self.organs.update_one(
            query,
            {
                "$set": {
                    "status": status.value,
                    "assigned_recipient": recipient_id,
                    "assigned_hospital": hospital_id,
                }
            },
        )
        if result.matched_count == 0:
            current = await self.organs.find_one({"_id": organ_id}, {"status": 1})
            if not current:
                raise KeyError(organ_id)
            raise OrganNotAvailable(organ_id, current.get("status", "unknown"))

    async def mark_emergency(self, organ_id: str) -> None:
        result = await self.organs.update_one({"_id": organ_id}, {"$set": {"is_emergency": True}})
        if result.matched_count == 0:
            raise KeyError(organ_id)

    async def get_donor_region(self, donor_id: str) -> LookupResult[str]:
        try:
            donor = await self.donors.find_one({"_id": donor_id})
        except PyMongoError as exc:
            log_db_error("get_donor_region", exc)
            return LookupResult.unavailable(str(exc))
        region = _region_of(donor) if donor else None
        if not region:
            return LookupResult.not_found(f"donor {donor_id}")
        return LookupResult.ok(region)


class MongoRecipientRegistry:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.recipients: AsyncIOMotorCollection = db.get_collection("recipients")

    async def get_recipient(self, recipient_id: str) -> LookupResult[RecipientFacts]:
        try:
            document = await self.recipients.find_one({"_id": recipient_id})
        except PyMongoError as exc:
            log_db_error("get_recipient", exc)
            return LookupResult.unavailable(str(exc))
        if not document:
            return LookupResult.not_found(f"recipient {recipient_id}")
        return LookupResult.ok(
            RecipientFacts(
                id=str(document["_id"]),
                blood_type=document.get("blood_type", ""),
                region=_region_of(document) or "",
                registered=bool(document.get("registered", True)),
            )
        )


class MongoQualityService:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.organs: AsyncIOMotorCollection = db.get_collection("organs")
        self.checks: AsyncIOMotorCollection = db.get_collection("organ_quality")

    async def is_validated(self, organ_id: str) -> LookupResult[bool]:
        try:
            document = await self.organs.find_one({"_id": organ_id}, {"quality_validated": 1})
        except PyMongoError as exc:
            log_db_error("is_validated", exc)
            return LookupResult.unavailable(str(exc))
        if not document:
            return LookupResult.not_found(f"organ {organ_id}")
        return LookupResult.ok(bool(document.get("quality_validated", False)))

    async def is_compatible(self, organ_id: str, recipient_id: str) -> LookupResult[bool]:
        try:
            check = await self.checks.find_one({"organ_id": organ_id, "recipient_id": recipient_id})
        except PyMongoError as exc:
            log_db_error("is_compatible", exc)
            return LookupResult.unavailable(str(exc))
        if not check:
            return LookupResult.not_found(f"no quality check for {organ_id}/{recipient_id}")
        return LookupResult.ok(bool(check.get("compatible", False)))


class MongoRegionDistance:
    """Road distances between regions, one ``{from, to, km}`` document per pair in either direction."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.distances: AsyncIOMotorCollection = db.get_collection("region_distances")

    async def distance_km(self, from_region: str, to_region: str) -> LookupResult[float]:
        if from_region == to_region:
            return LookupResult.ok(0.0)
        try:
            document = await self.distances.find_one({"from": from_region, "to": to_region})
            if not document:
                document = await self.distances.find_one({"from": to_region, "to": from_region})
        except PyMongoError as exc:
            log_db_error("distance_km", exc)
            return LookupResult.unavailable(str(exc))
        if not document or document.get("km") is None:
            return LookupResult.unavailable(f"no distance for {from_region}/{to_region}")
        return LookupResult.ok(float(document["km"]))
