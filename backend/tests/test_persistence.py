from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

from organ_matching.collaborators.mongo import MongoRegionDistance
from organ_matching.engine.waiting_list import WaitingListManager
from organ_matching.main import build_services, create_app
from organ_matching.memory.allocation_memory import AllocationMemory, MongoProposalStore
from organ_matching.memory.waiting_list_store import MongoWaitingListStore
from organ_matching.models.match import ProposalStatus
from organ_matching.models.organ import OrganStatus, OrganType
from organ_matching.models.waiting_list import PriorityTier

KIDNEYS = OrganType.KIDNEYS
# what Mongo hands back without a tz-aware client
NAIVE_T0 = datetime(2024, 3, 1, 8, 0)


@pytest.fixture
def db(fakes):
    return fakes["database"](
        organs=fakes["collection"](
            [
                {
                    "_id": "organ-1",
                    "organ_type": "Kidneys",
                    "blood_type": "O-",
                    "status": "Available",
                    "donor_id": "donor-1",
                }
            ]
        ),
        donors=fakes["collection"]([{"_id": "donor-1", "region": "X"}]),
        recipients=fakes["collection"](
            [
                {"_id": "r-a", "blood_type": "A+", "region": "X"},
                {"_id": "r-b", "blood_type": "B+", "region": "X"},
            ]
        ),
    )


@pytest.fixture
def hub(sink):
    return SimpleNamespace(match_event=sink)


async def organ_status(services, organ_id):
    return (await services.engine.organs.get_organ(organ_id)).value.status


async def test_restart_keeps_waiting_lists_and_proposals(db, hub):
    first = build_services(hub, db)
    await first.waiting_list.add_entry("r-a", KIDNEYS, "X", 8, PriorityTier.CRITICAL)
    await first.waiting_list.add_entry("r-b", KIDNEYS, "X", 6)
    await first.engine.allocate("organ-1", "r-a", hospital_id="h-1")

    second = build_services(hub, db)
    await second.restore()

    assert second.waiting_list.active_entry("r-a", KIDNEYS) is None
    assert [e.recipient_id for e in second.waiting_list.list_active(KIDNEYS, "X")] == ["r-b"]
    [proposal] = second.engine.proposals("organ-1")
    assert (proposal.recipient_id, proposal.status) == ("r-a", ProposalStatus.MATCHED)
    assert proposal.hospital_id == "h-1"
    assert second.engine.allocations_for("r-a") == ["organ-1"]

    # the organ is not stuck in Matched: the restored proposal can still be rejected
    rejected = await second.engine.reject_proposal("organ-1", "crossmatch positive")
    assert rejected.status is ProposalStatus.REJECTED
    assert await organ_status(second, "organ-1") is OrganStatus.AVAILABLE

    following = await second.engine.allocate_next("organ-1")
    assert following.recipient_id == "r-b"
    statuses = [(p.recipient_id, p.status) for p in second.engine.proposals("organ-1")]
    assert statuses == [("r-a", ProposalStatus.REJECTED), ("r-b", ProposalStatus.MATCHED)]

    third = build_services(hub, db)
    await third.restore()
    statuses = [(p.recipient_id, p.status) for p in third.engine.proposals("organ-1")]
    assert statuses == [("r-a", ProposalStatus.REJECTED), ("r-b", ProposalStatus.MATCHED)]
    assert third.waiting_list.list_active(KIDNEYS, "X") == []


async def test_restored_proposal_still_expires(db, hub):
    first = build_services(hub, db)
    await first.waiting_list.add_entry("r-a", KIDNEYS, "X", 8)
    proposal = await first.engine.allocate("organ-1", "r-a")

    second = build_services(hub, db)
    await second.restore()
    [expired] = await second.engine.expire_overdue(now=proposal.expires_at + timedelta(minutes=1))
    assert expired.status is ProposalStatus.EXPIRED
    assert await organ_status(second, "organ-1") is OrganStatus.AVAILABLE


async def test_sequence_continues_after_restore(db, hub):
    first = build_services(hub, db)
    await first.waiting_list.add_entry("r-a", KIDNEYS, "X", 5)
    await first.waiting_list.deactivate_entry("r-a", KIDNEYS)
    relisted = await first.waiting_list.add_entry("r-a", KIDNEYS, "X", 7)

    second = build_services(hub, db)
    await second.restore()
    assert second.waiting_list.active_entry("r-a", KIDNEYS).sequence == relisted.sequence
    entry = await second.waiting_list.add_entry("r-b", KIDNEYS, "X", 5)
    assert entry.sequence == relisted.sequence + 1


async def test_emergency_matcher_gets_the_distance_table(db, hub):
    services = build_services(hub, db)
    assert isinstance(services.emergency.distance, MongoRegionDistance)


def test_app_startup_restores_state(db, hub):
    services = build_services(hub, db)
    db.get_collection("waiting_list").docs.append(
        {
            "recipient_id": "r-b",
            "organ_type": "Kidneys",
            "region": "X",
            "urgency_level": 6,
            "priority": int(PriorityTier.HIGH),
            "added_at": NAIVE_T0,
            "updated_at": NAIVE_T0,
            "active": True,
            "sequence": 4,
        }
    )
    with TestClient(create_app(services, hub)) as client:
        listing = client.get("/waiting-lists/Kidneys/X").json()
    assert [e["recipient_id"] for e in listing["entries"]] == ["r-b"]
    assert services.waiting_list.active_entry("r-b", KIDNEYS).added_at.tzinfo is not None


async def test_store_failures_do_not_block_matching(db, hub, fakes):
    down = fakes["collection"](error=ServerSelectionTimeoutError("no servers"))
    db.collections["waiting_list"] = down
    db.collections["match_proposals"] = down
    services = build_services(hub, db)

    await services.waiting_list.add_entry("r-a", KIDNEYS, "X", 8)
    proposal = await services.engine.allocate("organ-1", "r-a")
    assert proposal.status is ProposalStatus.MATCHED
    assert await organ_status(services, "organ-1") is OrganStatus.MATCHED


async def test_memory_without_store_restores_nothing():
    assert await AllocationMemory().restore() == 0
    assert await WaitingListManager().restore() == 0


async def test_unreadable_documents_are_skipped(fakes):
    proposals = fakes["collection"]([{"organ_id": "organ-1", "attempt": 0}])
    entries = fakes["collection"]([{"recipient_id": "r-a", "organ_type": "Kidneys"}])
    assert await MongoProposalStore(proposals).load() == []
    assert await MongoWaitingListStore(entries).load() == []
