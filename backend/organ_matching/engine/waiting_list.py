from __future__ import annotations

import itertools
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Callable, Dict, List, Tuple

from loguru import logger

from ..collaborators.interfaces import Authorizer
from ..errors import (
    AlreadyOnWaitingList,
    EmptyWaitingList,
    InvalidPriorityTier,
    InvalidUrgencyLevel,
    NotOnWaitingList,
)
from ..events import WAITING_LIST_UPDATED, EventSink, MatchEvent, default_event_sink, publish
from ..memory.waiting_list_store import MongoWaitingListStore
from ..models.organ import OrganType
from ..models.waiting_list import PriorityTier, WaitingListEntry
from ..schemas.waiting_list import entry_document
from ..utils.clock import utcnow
from .access import COORDINATOR, require_role
from .locks import KeyedLock

Bucket = Tuple[OrganType, str]

MIN_URGENCY = 1
MAX_URGENCY = 10


def priority_key(entry: WaitingListEntry) -> tuple:
    # tier desc, urgency desc, oldest first, then insertion order
    return (-int(entry.priority), -entry.urgency_level, entry.added_at, entry.sequence)


def rank_entries(entries: List[WaitingListEntry]) -> List[WaitingListEntry]:
    return sorted(entries, key=priority_key)


def _coerce_priority(priority: PriorityTier | str) -> PriorityTier:
    if isinstance(priority, PriorityTier):
        return priority
    try:
        return PriorityTier.from_name(priority)
    except KeyError as exc:
        raise InvalidPriorityTier(str(priority)) from exc


def _check_urgency(urgency_level: int) -> int:
    if not isinstance(urgency_level, int) or isinstance(urgency_level, bool):
        raise InvalidUrgencyLevel(urgency_level)
    if urgency_level < MIN_URGENCY or urgency_level > MAX_URGENCY:
        raise InvalidUrgencyLevel(urgency_level)
    return urgency_level


class WaitingListManager:
    """Owns the per-(organ type, region) waiting lists.

    Entries are never physically removed; withdrawal and allocation only
    deactivate them. Mutations are serialised per bucket. With a ``store``
    every change is written through and ``restore`` rebuilds the lists
    after a restart.
    """

    def __init__(
        self,
        event_sink: EventSink = default_event_sink,
        authorizer: Authorizer | None = None,
        clock: Callable[[], datetime] = utcnow,
        store: MongoWaitingListStore | None = None,
    ) -> None:
        self.event_sink = event_sink
        self.authorizer = authorizer
        self.clock = clock
        self.store = store
        self._buckets: Dict[Bucket, List[WaitingListEntry]] = {}
        self._active: Dict[Tuple[str, OrganType], WaitingListEntry] = {}
        self._locks = KeyedLock()
        self._sequence = itertools.count(1)

    async def restore(self) -> int:
        """Reload persisted entries. Returns how many were loaded."""
        if self.store is None:
            return 0
        entries = sorted(await self.store.load(), key=lambda entry: entry.sequence)
        self._buckets.clear()
        self._active.clear()
        for entry in entries:
            self._buckets.setdefault((entry.organ_type, entry.region), []).append(entry)
            if entry.active:
                # a later active entry for the same key wins
                self._active[(entry.recipient_id, entry.organ_type)] = entry
        last = entries[-1].sequence if entries else 0
        self._sequence = itertools.count(last + 1)
        logger.info("Restored {} waiting-list entries ({} active)", len(entries), len(self._active))
        return len(entries)

    def bucket_lock(self, organ_type: OrganType, region: str) -> AbstractAsyncContextManager:
        return self._locks.hold((OrganType(organ_type), region))

    async def add_entry(
        self,
        recipient_id: str,
        organ_type: OrganType,
        region: str,
        urgency_level: int,
        priority: PriorityTier | str = PriorityTier.MEDIUM,
        actor: str | None = None,
        added_at: datetime | None = None,
    ) -> WaitingListEntry:
        await require_role(self.authorizer, actor, COORDINATOR)
        organ_type = OrganType(organ_type)
        _check_urgency(urgency_level)
        tier = _coerce_priority(priority)
        async with self.bucket_lock(organ_type, region):
            if (recipient_id, organ_type) in self._active:
                raise AlreadyOnWaitingList(recipient_id, organ_type.value)
            now = self.clock()
            entry = WaitingListEntry(
                recipient_id=recipient_id,
                organ_type=organ_type,
                region=region,
                urgency_level=urgency_level,
                priority=tier,
                added_at=added_at or now,
                updated_at=now,
                sequence=next(self._sequence),
            )
            self._buckets.setdefault((organ_type, region), []).append(entry)
            self._active[(recipient_id, organ_type)] = entry
        logger.info(
            "Recipient {} added to {} list in {} (tier {}, urgency {})",
            recipient_id,
            organ_type.value,
            region,
            tier.name,
            urgency_level,
        )
        await self._emit("added", entry)
        return entry.model_copy()

    async def update_entry(
        self,
        recipient_id: str,
        organ_type: OrganType,
        urgency_level: int | None = None,
        priority: PriorityTier | str | None = None,
        actor: str | None = None,
    ) -> WaitingListEntry:
        await require_role(self.authorizer, actor, COORDINATOR)
        organ_type = OrganType(organ_type)
        if urgency_level is not None:
            _check_urgency(urgency_level)
        tier = _coerce_priority(priority) if priority is not None else None
        entry = self._require_active(recipient_id, organ_type)
        async with self.bucket_lock(organ_type, entry.region):
            entry = self._require_active(recipient_id, organ_type)
            if urgency_level is not None:
                entry.urgency_level = urgency_level
            if tier is not None:
                entry.priority = tier
            entry.updated_at = self.clock()
        logger.info(
            "Waiting-list entry {}/{} re-ranked (tier {}, urgency {})",
            recipient_id,
            organ_type.value,
            entry.priority.name,
            entry.urgency_level,
        )
        await self._emit("updated", entry)
        return entry.model_copy()

    async def deactivate_entry(
        self, recipient_id: str, organ_type: OrganType, actor: str | None = None
    ) -> WaitingListEntry:
        await require_role(self.authorizer, actor, COORDINATOR)
        organ_type = OrganType(organ_type)
        entry = self._require_active(recipient_id, organ_type)
        async with self.bucket_lock(organ_type, entry.region):
            entry = self.release_held(recipient_id, organ_type)
        logger.info("Recipient {} withdrawn from {} list", recipient_id, organ_type.value)
        await self._emit("deactivated", entry)
        return entry

    def release_held(self, recipient_id: str, organ_type: OrganType) -> WaitingListEntry:
        """Deactivate the active entry. The caller must hold its bucket lock."""
        organ_type = OrganType(organ_type)
        entry = self._require_active(recipient_id, organ_type)
        entry.active = False
        entry.updated_at = self.clock()
        del self._active[(recipient_id, entry.organ_type)]
        return entry.model_copy()

    def restore_held(self, held: WaitingListEntry) -> None:
        """Undo ``release_held`` given the entry as it was before release.

        The caller must hold the entry's bucket lock.
        """
        organ_type = OrganType(held.organ_type)
        key = (held.recipient_id, organ_type)
        if key in self._active:
            return
        for entry in self._buckets.get((organ_type, held.region), []):
            if entry.sequence == held.sequence:
                entry.active = True
                entry.updated_at = held.updated_at
                self._active[key] = entry
                return
        logger.error(
            "Cannot restore waiting-list entry {}/{} #{}", held.recipient_id, organ_type.value, held.sequence
        )

    async def notify_allocated(self, entry: WaitingListEntry) -> None:
        await self._emit("allocated", entry)

    def active_entry(self, recipient_id: str, organ_type: OrganType) -> WaitingListEntry | None:
        entry = self._active.get((recipient_id, OrganType(organ_type)))
        return entry.model_copy() if entry else None

    def list_active(self, organ_type: OrganType, region: str) -> List[WaitingListEntry]:
        """Active entries of one bucket in priority order; empty when the bucket is empty."""
        entries = self._buckets.get((OrganType(organ_type), region), [])
        return [entry.model_copy() for entry in rank_entries([e for e in entries if e.active])]

    def prioritize(self, organ_type: OrganType, region: str) -> List[WaitingListEntry]:
        ranked = self.list_active(organ_type, region)
        if not ranked:
            raise EmptyWaitingList(OrganType(organ_type).value, region)
        return ranked

    def list_active_for_type(self, organ_type: OrganType) -> List[WaitingListEntry]:
        organ_type = OrganType(organ_type)
        active = [entry for (_, kind), entry in self._active.items() if kind == organ_type]
        return [entry.model_copy() for entry in rank_entries(active)]

    def regions(self, organ_type: OrganType) -> List[str]:
        organ_type = OrganType(organ_type)
        return sorted(region for kind, region in self._buckets if kind == organ_type)

    def _require_active(self, recipient_id: str, organ_type: OrganType) -> WaitingListEntry:
        entry = self._active.get((recipient_id, organ_type))
        if entry is None:
            raise NotOnWaitingList(recipient_id, organ_type.value)
        return entry

    async def _emit(self, action: str, entry: WaitingListEntry) -> None:
        if self.store is not None:
            await self.store.save(entry)
        await publish(
            self.event_sink,
            MatchEvent(WAITING_LIST_UPDATED, {"action": action, "entry": entry_document(entry)}),
        )
