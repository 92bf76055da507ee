from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from motor.motor_asyncio import AsyncIOMotorCollection
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from ..models.waiting_list import WaitingListEntry
from ..utils.logging import log_db_error


def as_utc(value: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes unless the client is tz-aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def stored_entry(entry: WaitingListEntry) -> Dict[str, Any]:
    return {
        "recipient_id": entry.recipient_id,
        "organ_type": entry.organ_type.value,
        "region": entry.region,
        "urgency_level": entry.urgency_level,
        "priority": int(entry.priority),
        "added_at": entry.added_at,
        "updated_at": entry.updated_at,
        "active": entry.active,
        "sequence": entry.sequence,
    }


def entry_from_document(document: Dict[str, Any]) -> WaitingListEntry:
    fields = {key: value for key, value in document.items() if key != "_id"}
    fields["added_at"] = as_utc(fields["added_at"])
    fields["updated_at"] = as_utc(fields["updated_at"])
    return WaitingListEntry(**fields)


class MongoWaitingListStore:
    """Write-through copy of the waiting lists, one document per entry."""

    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self.collection = collection

    async def save(self, entry: WaitingListEntry) -> None:
        try:
            await self.collection.update_one(
                {
                    "recipient_id": entry.recipient_id,
                    "organ_type": entry.organ_type.value,
                    "sequence": entry.sequence,
                },
                {"$set": stored_entry(entry)},
                upsert=True,
            )
        except PyMongoError as exc:
            log_db_error("save_waiting_list_entry", exc)

    async def load(self) -> List[WaitingListEntry]:
        entries = []
        async for document in self.collection.find({}):
            try:
                entries.append(entry_from_document(document))
            except (KeyError, ValidationError) as exc:
                log_db_error("load_waiting_list_entry", exc)
        return entries
