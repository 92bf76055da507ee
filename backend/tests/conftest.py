"""Shared fixtures: in-memory collaborators, a controllable clock and a recording event sink.

Region "X" is the home region of the kidney donor; "Y" and "Z" only matter for
emergency matching.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from organ_matching.collaborators.memory import (
    InMemoryOrganRegistry,
    InMemoryQualityService,
    InMemoryRecipientRegistry,
)
from organ_matching.engine.allocation import AllocationEngine
from organ_matching.engine.waiting_list import WaitingListManager
from organ_matching.models.organ import OrganRecord, OrganType, RecipientFacts
from organ_matching.scoring.weights import ScoringWeights

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class RecordingSink:
    def __init__(self) -> None:
        self.events = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.type for event in self.events]

    def of_type(self, kind: str) -> List[Any]:
        return [event for event in self.events if event.type == kind]


class FakeUpdateResult:
    def __init__(self, matched_count: int) -> None:
        self.matched_count = matched_count


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]) -> None:
        self.docs = list(docs)

    def sort(self, key: str, direction: int) -> "FakeCursor":
        self.docs.sort(key=lambda doc: doc.get(key), reverse=direction < 0)
        return self

    def limit(self, count: int) -> "FakeCursor":
        self.docs = self.docs[:count]
        return self

    def __aiter__(self):
        self._iter = iter(self.docs)
        return self

    async def __anext__(self) -> Dict[str, Any]:
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Just enough of a motor collection for equality filters and $set updates."""

    def __init__(self, docs: List[Dict[str, Any]] | None = None, error: Exception | None = None) -> None:
        self.docs = [dict(doc) for doc in (docs or [])]
        self.error = error

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        return all(doc.get(key) == value for key, value in query.items())

    async def find_one(self, query: Dict[str, Any], projection: Dict[str, Any] | None = None):
        if self.error:
            raise self.error
        for doc in self.docs:
            if self._matches(doc, query):
                return dict(doc)
        return None

    async def count_documents(self, query: Dict[str, Any], limit: int = 0) -> int:
        return sum(1 for doc in self.docs if self._matches(doc, query))

    async def update_one(
        self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False
    ) -> FakeUpdateResult:
        if self.error:
            raise self.error
        for doc in self.docs:
            if self._matches(doc, query):
                doc.update(update.get("$set", {}))
                return FakeUpdateResult(1)
        if upsert:
            self.docs.append({**query, **update.get("$set", {})})
        return FakeUpdateResult(0)

    async def insert_one(self, document: Dict[str, Any]) -> None:
        if self.error:
            raise self.error
        self.docs.append(dict(document))

    def find(self, query: Dict[str, Any]) -> FakeCursor:
        return FakeCursor([doc for doc in self.docs if self._matches(doc, query)])


class FakeDatabase:
    def __init__(self, **collections: FakeCollection) -> None:
        self.collections = collections

    def get_collection(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


class SlowOrganRegistry(InMemoryOrganRegistry):
    """Yields to the loop inside set_status so concurrent commits interleave."""

    def __init__(self, *args, delay: float = 0.01, fail_with: Exception | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.delay = delay
        self.fail_with = fail_with
        self.status_calls = []

    async def set_status(self, organ_id, status, recipient_id=None, hospital_id=None) -> None:
        self.status_calls.append((organ_id, status))
        await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        await super().set_status(organ_id, status, recipient_id, hospital_id)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fakes():
    """Expose the fake Mongo pieces to test modules."""
    return {
        "collection": FakeCollection,
        "database": FakeDatabase,
        "slow_registry": SlowOrganRegistry,
    }


@pytest.fixture
def organs() -> InMemoryOrganRegistry:
    return InMemoryOrganRegistry(
        [
            OrganRecord(id="organ-1", organ_type=OrganType.KIDNEYS, blood_type="O-", donor_id="donor-1"),
            OrganRecord(id="organ-2", organ_type=OrganType.HEART, blood_type="B+", donor_id="donor-2"),
        ],
        donor_regions={"donor-1": "X", "donor-2": "X"},
    )


@pytest.fixture
def recipients() -> InMemoryRecipientRegistry:
    return InMemoryRecipientRegistry(
        [
            RecipientFacts(id="r-a", blood_type="A+", region="X"),
            RecipientFacts(id="r-b", blood_type="B+", region="X"),
            RecipientFacts(id="r-o", blood_type="O-", region="X"),
            RecipientFacts(id="r-ab", blood_type="AB+", region="X"),
            RecipientFacts(id="r-y", blood_type="A-", region="Y"),
            RecipientFacts(id="r-z", blood_type="O+", region="Z"),
        ]
    )


@pytest.fixture
def quality() -> InMemoryQualityService:
    return InMemoryQualityService(
        validated={"organ-1"},
        compatibility={("organ-1", "r-a"): True, ("organ-1", "r-b"): True},
    )


@pytest.fixture
def weights() -> ScoringWeights:
    return ScoringWeights()


@pytest.fixture
def waiting_list(sink, clock) -> WaitingListManager:
    return WaitingListManager(event_sink=sink, clock=clock)


@pytest.fixture
def engine(organs, recipients, quality, waiting_list, weights, sink, clock) -> AllocationEngine:
    return AllocationEngine(
        organs=organs,
        recipients=recipients,
        quality=quality,
        waiting_list=waiting_list,
        weights=weights,
        event_sink=sink,
        clock=clock,
        lookup_timeout=0.5,
        mutation_timeout=0.5,
    )
