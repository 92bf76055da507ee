from datetime import timedelta

import pytest

from organ_matching.collaborators.memory import StaticAuthorizer
from organ_matching.engine.waiting_list import WaitingListManager
from organ_matching.errors import (
    AlreadyOnWaitingList,
    EmptyWaitingList,
    InvalidPriorityTier,
    InvalidUrgencyLevel,
    NotOnWaitingList,
    Unauthorized,
)
from organ_matching.events import WAITING_LIST_UPDATED
from organ_matching.models.organ import OrganType
from organ_matching.models.waiting_list import PriorityTier

KIDNEYS = OrganType.KIDNEYS


def ids(entries):
    return [entry.recipient_id for entry in entries]


@pytest.mark.asyncio
class TestAddEntry:
    async def test_add_creates_active_entry(self, waiting_list, clock):
        entry = await waiting_list.add_entry("r-a", KIDNEYS, "X", 7, PriorityTier.HIGH)
        assert entry.active
        assert entry.added_at == clock.now
        assert ids(waiting_list.list_active(KIDNEYS, "X")) == ["r-a"]

    @pytest.mark.parametrize("urgency", [0, 11, -3])
    async def test_urgency_out_of_range_is_rejected(self, waiting_list, urgency):
        with pytest.raises(InvalidUrgencyLevel):
            await waiting_list.add_entry("r-a", KIDNEYS, "X", urgency)
        assert waiting_list.list_active(KIDNEYS, "X") == []

    async def test_urgency_bounds_are_inclusive(self, waiting_list):
        await waiting_list.add_entry("r-a", KIDNEYS, "X", 1)
        await waiting_list.add_entry("r-b", KIDNEYS, "X", 10)
        assert len(waiting_list.list_active(KIDNEYS, "X")) == 2

    async def test_priority_given_by_name(self, waiting_list):
        entry = await waiting_list.add_entry("r-a", KIDNEYS, "X", 5, "critical")
        assert entry.priority is PriorityTier.CRITICAL

    async def test_unknown_priority_is_rejected(self, waiting_list):
        with pytest.raises(InvalidPriorityTier):
            await waiting_list.add_entry("r-a", KIDNEYS, "X", 5, "Urgent")

    async def test_duplicate_active_entry_is_rejected(self, waiting_list):
        await waiting_list.add_entry("r-a", KIDNEYS, "X", 5)
        with pytest.raises(AlreadyOnWaitingList):
            await waiting_list.add_entry("r-a", KIDNEYS, "Y", 6)

    async def test_same_recipient_may_wait_for_another_organ_type(self, waiting_list):
        await waiting_list.add_entry("r-a", KIDNEYS, "X", 5)
        await waiting_list.add_entry("r-a", OrganType.LIVER, "X", 5)
        assert waiting_list.active_entry("r-a", OrganType.LIVER) is not None

    async def test_re_add_after_withdrawal(self, waiting_list):
        await waiting_list.add_entry("r-a", KIDNEYS, "X", 5)
        await waiting_list.deactivate_entry("r-a", KIDNEYS)
        entry = await waiting_list.add_entry("r-a", KIDNEYS, "X", 9)
        assert entry.urgency_level == 9
        assert ids(waiting_list.list_active(KIDNEYS, "X")) == ["r-a"]

    async def test_emits_waiting_list_updated(self, waiting_list, sink):
        await waiting_list.add_entry("r-a", KIDNEYS, "X", 5)
        [event] = sink.of_type(WAITING_LIST_UPDATED)
        assert event.payload["action"] == "added"
        assert event.payload["entry"]["recipient_id"] == "r-a"
        assert event.payload["entry"]["priority"] == "Medium"


@pytest.mark.asyncio
class TestOrdering:
    async def test_higher_urgency_wins_within_tier(self, waiting_list, clock):
        t = clock.now
        await waiting_list.add_entry("A", KIDNEYS, "X", 8, PriorityTier.CRITICAL, added_at=t + timedelta(seconds=100))
        await waiting_list.add_entry("B", KIDNEYS, "X", 9, PriorityTier.CRITICAL, added_at=t + timedelta(seconds=50))
        assert ids(waiting_list.prioritize(KIDNEYS, "X")) == ["B", "A"]

    async def test_tier_outranks_urgency(self, waiting_list):
        await waiting_list.add_entry("low", KIDNEYS, "X", 10, PriorityTier.LOW)
        await waiting_list.add_entry("emergency", KIDNEYS, "X", 1, PriorityTier.EMERGENCY)
        await waiting_list.add_entry("high", KIDNEYS, "X", 4, PriorityTier.HIGH)
        assert ids(waiting_list.prioritize(KIDNEYS, "X")) == ["emergency", "high", "low"]

    async def test_older_entry_wins_ties(self, waiting_list, clock):
        t = clock.now
        await waiting_list.add_entry("newer", KIDNEYS, "X", 6, added_at=t + timedelta(days=2))
        await waiting_list.add_entry("older", KIDNEYS, "X", 6, added_at=t)
        assert ids(waiting_list.prioritize(KIDNEYS, "X")) == ["older", "newer"]

    async def test_insertion_order_breaks_full_ties(self, waiting_list):
        for name in ("first", "second", "third"):
            await waiting_list.add_entry(name, KIDNEYS, "X", 6)
        assert ids(waiting_list.prioritize(KIDNEYS, "X")) == ["first", "second", "third"]

    async def test_prioritize_is_deterministic(self, waiting_list):
        for i, urgency in enumerate([3, 9, 9, 1, 5]):
            await waiting_list.add_entry(f"r{i}", KIDNEYS, "X", urgency)
        first = ids(waiting_list.prioritize(KIDNEYS, "X"))
        second = ids(waiting_list.prioritize(KIDNEYS, "X"))
        assert first == second == ["r1", "r2", "r4", "r0", "r3"]

    async def test_update_re_ranks(self, waiting_list):
        await waiting_list.add_entry("a", KIDNEYS, "X", 5)
        await waiting_list.add_entry("b", KIDNEYS, "X", 4)
        await waiting_list.update_entry("b", KIDNEYS, priority="Emergency")
        assert ids(waiting_list.list_active(KIDNEYS, "X")) == ["b", "a"]

    async def test_buckets_are_separate(self, waiting_list):
        await waiting_list.add_entry("a", KIDNEYS, "X", 5)
        await waiting_list.add_entry("b", KIDNEYS, "Y", 5)
        await waiting_list.add_entry("c", OrganType.HEART, "X", 5)
        assert ids(waiting_list.list_active(KIDNEYS, "X")) == ["a"]
        assert ids(waiting_list.list_active_for_type(KIDNEYS)) == ["a", "b"]
        assert waiting_list.regions(KIDNEYS) == ["X", "Y"]


@pytest.mark.asyncio
class TestEmptyAndWithdrawn:
    async def test_empty_bucket(self, waiting_list):
        assert waiting_list.list_active(KIDNEYS, "X") == []
        with pytest.raises(EmptyWaitingList):
            waiting_list.prioritize(KIDNEYS, "X")

    async def test_only_inactive_entries_counts_as_empty(self, waiting_list):
        await waiting_list.add_entry("a", KIDNEYS, "X", 5)
        await waiting_list.deactivate_entry("a", KIDNEYS)
        with pytest.raises(EmptyWaitingList):
            waiting_list.prioritize(KIDNEYS, "X")

    async def test_deactivate_keeps_history(self, waiting_list, sink):
        await waiting_list.add_entry("a", KIDNEYS, "X", 5)
        entry = await waiting_list.deactivate_entry("a", KIDNEYS)
        assert entry.active is False
        assert waiting_list.active_entry("a", KIDNEYS) is None
        assert sink.of_type(WAITING_LIST_UPDATED)[-1].payload["action"] == "deactivated"

    async def test_update_or_deactivate_unknown_recipient(self, waiting_list):
        with pytest.raises(NotOnWaitingList):
            await waiting_list.update_entry("ghost", KIDNEYS, urgency_level=3)
        with pytest.raises(NotOnWaitingList):
            await waiting_list.deactivate_entry("ghost", KIDNEYS)

    async def test_update_validates_urgency(self, waiting_list):
        await waiting_list.add_entry("a", KIDNEYS, "X", 5)
        with pytest.raises(InvalidUrgencyLevel):
            await waiting_list.update_entry("a", KIDNEYS, urgency_level=12)
        assert waiting_list.active_entry("a", KIDNEYS).urgency_level == 5

    async def test_returned_entries_are_copies(self, waiting_list):
        await waiting_list.add_entry("a", KIDNEYS, "X", 5)
        waiting_list.list_active(KIDNEYS, "X")[0].urgency_level = 1
        assert waiting_list.active_entry("a", KIDNEYS).urgency_level == 5


@pytest.mark.asyncio
async def test_mutations_require_coordinator_role(sink, clock):
    manager = WaitingListManager(
        event_sink=sink,
        authorizer=StaticAuthorizer({"coord": ["coordinator"], "surgeon": ["surgeon"]}),
        clock=clock,
    )
    await manager.add_entry("a", KIDNEYS, "X", 5, actor="coord")
    with pytest.raises(Unauthorized):
        await manager.add_entry("b", KIDNEYS, "X", 5, actor="surgeon")
    with pytest.raises(Unauthorized):
        await manager.deactivate_entry("a", KIDNEYS)
    assert ids(manager.list_active(KIDNEYS, "X")) == ["a"]
