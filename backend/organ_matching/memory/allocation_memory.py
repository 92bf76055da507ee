from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from motor.motor_asyncio import AsyncIOMotorCollection
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from ..models.match import MatchProposal, ProposalStatus
from ..utils.logging import log_db_error
from .waiting_list_store import as_utc


class AllocationMemory:
    """Append-only proposal history per organ and allocation history per recipient.

    With a ``store`` each saved proposal is written through, and ``restore``
    rebuilds both histories after a restart.
    """

    def __init__(self, store: MongoProposalStore | None = None) -> None:
        self.store = store
        self._proposals: Dict[str, List[MatchProposal]] = {}
        self._allocations: Dict[str, List[str]] = {}

    def record(self, proposal: MatchProposal) -> None:
        history = self._proposals.setdefault(proposal.organ_id, [])
        proposal.attempt = len(history)
        history.append(proposal)
        self._allocations.setdefault(proposal.recipient_id, []).append(proposal.organ_id)

    def discard(self, proposal: MatchProposal) -> None:
        """Take back a proposal recorded by a commit that is being rolled back."""
        history = self._proposals.get(proposal.organ_id, [])
        if history and history[-1] is proposal:
            history.pop()
            allocations = self._allocations.get(proposal.recipient_id, [])
            if allocations and allocations[-1] == proposal.organ_id:
                allocations.pop()

    async def save(self, proposal: MatchProposal) -> None:
        if self.store is not None:
            await self.store.save(proposal)

    async def restore(self) -> int:
        if self.store is None:
            return 0
        proposals = sorted(await self.store.load(), key=lambda p: (p.organ_id, p.attempt))
        self._proposals.clear()
        self._allocations.clear()
        for proposal in sorted(proposals, key=lambda p: (p.proposed_at, p.organ_id, p.attempt)):
            self._allocations.setdefault(proposal.recipient_id, []).append(proposal.organ_id)
        for proposal in proposals:
            self._proposals.setdefault(proposal.organ_id, []).append(proposal)
        return len(proposals)

    def latest(self, organ_id: str) -> MatchProposal | None:
        history = self._proposals.get(organ_id)
        return history[-1] if history else None

    def has_outstanding(self, organ_id: str) -> bool:
        latest = self.latest(organ_id)
        return latest is not None and latest.outstanding

    def proposals(self, organ_id: str) -> List[MatchProposal]:
        return [proposal.model_copy() for proposal in self._proposals.get(organ_id, [])]

    def allocations_for(self, recipient_id: str) -> List[str]:
        return list(self._allocations.get(recipient_id, []))

    def overdue(self, now: datetime) -> List[MatchProposal]:
        return [
            history[-1]
            for history in self._proposals.values()
            if history and history[-1].status is ProposalStatus.MATCHED and history[-1].expires_at <= now
        ]


def proposal_from_document(document: Dict[str, Any]) -> MatchProposal:
    fields = {key: value for key, value in document.items() if key != "_id"}
    fields["proposed_at"] = as_utc(fields["proposed_at"])
    fields["expires_at"] = as_utc(fields["expires_at"])
    return MatchProposal(**fields)


class MongoProposalStore:
    """One document per proposal, keyed by organ id and attempt number."""

    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self.collection = collection

    async def save(self, proposal: MatchProposal) -> None:
        document = proposal.model_dump()
        document["status"] = proposal.status.value
        try:
            await self.collection.update_one(
                {"organ_id": proposal.organ_id, "attempt": proposal.attempt},
                {"$set": document},
                upsert=True,
            )
        except PyMongoError as exc:
            log_db_error("save_proposal", exc)

    async def load(self) -> List[MatchProposal]:
        proposals = []
        async for document in self.collection.find({}):
            try:
                proposals.append(proposal_from_document(document))
            except (KeyError, ValidationError) as exc:
                log_db_error("load_proposal", exc)
        return proposals


class MongoAuditLog:
    """Mirrors committed allocation facts into Mongo. Never part of the commit itself."""

    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self.collection = collection

    async def log(self, entry: Dict[str, Any]) -> None:
        document = {
            **entry,
            "timestamp": datetime.now(timezone.utc),
        }
        try:
            await self.collection.insert_one(document)
        except PyMongoError as exc:
            log_db_error("audit_log", exc)

    async def history(self, limit: int = 20) -> List[Dict[str, Any]]:
        cursor = self.collection.find({}).sort("timestamp", -1).limit(limit)
        entries = []
        async for doc in cursor:
            doc["_id"] = str(doc.get("_id"))
            entries.append(doc)
        return entries
