from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..collaborators.base import LookupResult, LookupStatus, guarded_lookup
from ..collaborators.interfaces import Authorizer, OrganRegistry, QualityService, RecipientRegistry
from ..database import Settings
from ..errors import (
    CollaboratorUnavailable,
    InvalidProposalTransition,
    InvalidTokenReference,
    MatchingError,
    OrganNotAvailable,
    ProposalNotFound,
    RecipientNotEligible,
    RecipientNotFound,
)
from ..events import (
    MATCH_PROPOSAL_CREATED,
    ORGAN_ALLOCATED,
    PROPOSAL_STATUS_CHANGED,
    SCORING_PARAMETERS_UPDATED,
    EventSink,
    MatchEvent,
    default_event_sink,
    publish,
)
from ..memory.allocation_memory import AllocationMemory, MongoAuditLog
from ..models.match import MatchProposal, MatchScore, ProposalStatus
from ..models.organ import OrganRecord, OrganStatus, RecipientFacts
from ..models.waiting_list import WaitingListEntry
from ..schemas.proposal import proposal_document
from ..scoring.scorer import score_match
from ..scoring.weights import ScoringWeights
from ..utils.clock import utcnow
from .access import ADMIN, COORDINATOR, require_role
from .locks import KeyedLock
from .waiting_list import WaitingListManager

CONFIRMATION_WINDOW = timedelta(hours=24)


@dataclass
class Candidate:
    entry: WaitingListEntry
    recipient: RecipientFacts
    score: MatchScore

    @property
    def recipient_id(self) -> str:
        return self.entry.recipient_id


class AllocationEngine:
    """Decides which waiting recipient receives an available organ and commits the match.

    Everything touching one organ id runs under that organ's lock. The commit
    path re-reads the organ and recomputes the score inside the lock, so a
    decision is never taken on facts read before another allocation landed.
    """

    def __init__(
        self,
        organs: OrganRegistry,
        recipients: RecipientRegistry,
        quality: QualityService,
        waiting_list: WaitingListManager,
        weights: ScoringWeights,
        memory: AllocationMemory | None = None,
        audit_log: MongoAuditLog | None = None,
        event_sink: EventSink = default_event_sink,
        authorizer: Authorizer | None = None,
        clock: Callable[[], datetime] = utcnow,
        confirmation_window: timedelta = CONFIRMATION_WINDOW,
        lookup_timeout: float = 2.0,
        mutation_timeout: float = 5.0,
    ) -> None:
        self.organs = organs
        self.recipients = recipients
        self.quality = quality
        self.waiting_list = waiting_list
        self.weights = weights
        self.memory = memory or AllocationMemory()
        self.audit_log = audit_log
        self.event_sink = event_sink
        self.authorizer = authorizer
        self.clock = clock
        self.confirmation_window = confirmation_window
        self.lookup_timeout = lookup_timeout
        self.mutation_timeout = mutation_timeout
        self._organ_locks = KeyedLock()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "AllocationEngine":
        kwargs.setdefault("weights", ScoringWeights.from_settings(settings))
        kwargs.setdefault("confirmation_window", timedelta(hours=settings.confirmation_window_hours))
        kwargs.setdefault("lookup_timeout", settings.lookup_timeout_s)
        kwargs.setdefault("mutation_timeout", settings.mutation_timeout_s)
        return cls(**kwargs)

    def organ_lock(self, organ_id: str) -> AbstractAsyncContextManager:
        return self._organ_locks.hold(organ_id)

    # -- queries -----------------------------------------------------------

    async def find_compatible_recipients(self, organ_id: str) -> List[str]:
        """Compatible recipients for the organ's home region, in waiting-list order.

        Read-only; callers may abandon it at any point.
        """
        organ = await self.require_available(organ_id)
        region = await self.donor_region(organ)
        entries = self.waiting_list.list_active(organ.organ_type, region)
        candidates = await self.score_entries(organ, entries)
        compatible = [candidate.recipient_id for candidate in candidates if candidate.score.is_compatible]
        logger.info(
            "Organ {} ({} in {}): {} of {} waiting recipients compatible",
            organ_id,
            organ.organ_type.value,
            region,
            len(compatible),
            len(entries),
        )
        return compatible

    async def score_entries(self, organ: OrganRecord, entries: List[WaitingListEntry]) -> List[Candidate]:
        scored = await asyncio.gather(*(self._score_entry(organ, entry) for entry in entries))
        return [candidate for candidate in scored if candidate is not None]

    async def _score_entry(self, organ: OrganRecord, entry: WaitingListEntry) -> Optional[Candidate]:
        result = await self.lookup(self.recipients.get_recipient(entry.recipient_id), "recipient lookup")
        if not result.is_ok:
            logger.warning(
                "Skipping recipient {} for organ {}: {}", entry.recipient_id, organ.id, result.detail
            )
            return None
        recipient = result.value
        if not recipient.registered:
            logger.info("Skipping unregistered recipient {}", entry.recipient_id)
            return None
        quality = await self.quality_check(organ, entry.recipient_id)
        score = score_match(organ, recipient, entry.priority, quality, self.weights)
        return Candidate(entry=entry, recipient=recipient, score=score)

    def proposals(self, organ_id: str) -> List[MatchProposal]:
        return self.memory.proposals(organ_id)

    def allocations_for(self, recipient_id: str) -> List[str]:
        return self.memory.allocations_for(recipient_id)

    # -- allocation ----------------------------------------------------------

    async def allocate(
        self,
        organ_id: str,
        recipient_id: str,
        hospital_id: str | None = None,
        notes: str = "",
        actor: str | None = None,
    ) -> MatchProposal:
        await require_role(self.authorizer, actor, COORDINATOR)
        # once admitted the commit runs to completion even if the caller goes away
        return await asyncio.shield(self._allocate(organ_id, recipient_id, hospital_id, notes))

    async def _allocate(
        self, organ_id: str, recipient_id: str, hospital_id: str | None, notes: str
    ) -> MatchProposal:
        async with self.organ_lock(organ_id):
            return await self.commit_allocation(organ_id, recipient_id, hospital_id, notes)

    async def allocate_next(
        self, organ_id: str, hospital_id: str | None = None, actor: str | None = None
    ) -> MatchProposal | None:
        """Allocate to the first compatible recipient in waiting-list order, if any."""
        await require_role(self.authorizer, actor, COORDINATOR)
        return await asyncio.shield(self._allocate_next(organ_id, hospital_id))

    async def _allocate_next(self, organ_id: str, hospital_id: str | None) -> MatchProposal | None:
        async with self.organ_lock(organ_id):
            candidates = await self.find_compatible_recipients(organ_id)
            if not candidates:
                logger.info("No compatible recipient for organ {}", organ_id)
                return None
            return await self.commit_allocation(organ_id, candidates[0], hospital_id, "")

    async def commit_allocation(
        self,
        organ_id: str,
        recipient_id: str,
        hospital_id: str | None,
        notes: str,
        emergency: bool = False,
    ) -> MatchProposal:
        """Validate and commit one allocation. The caller must hold the organ lock."""
        organ = await self.require_available(organ_id)
        entry = self.waiting_list.active_entry(recipient_id, organ.organ_type)
        if entry is None:
            raise RecipientNotEligible(recipient_id, f"no active {organ.organ_type.value} waiting-list entry")
        candidate = await self._score_for_commit(organ, entry)
        if not candidate.score.is_compatible:
            reason = (
                "blood type incompatible"
                if candidate.score.blood_compatibility <= 0
                else f"score {candidate.score.total:g} below minimum {self.weights.minimum_score:g}"
            )
            logger.info("Allocation of organ {} to {} refused: {}", organ_id, recipient_id, reason)
            raise RecipientNotEligible(recipient_id, reason)

        now = self.clock()
        proposal = MatchProposal(
            organ_id=organ_id,
            recipient_id=recipient_id,
            hospital_id=hospital_id,
            score=candidate.score,
            status=ProposalStatus.MATCHED,
            proposed_at=now,
            expires_at=now + self.confirmation_window,
            notes=notes,
            emergency=emergency,
        )

        async with self.waiting_list.bucket_lock(organ.organ_type, entry.region):
            held = self.waiting_list.active_entry(recipient_id, organ.organ_type)
            if held is None or held.sequence != entry.sequence:
                raise RecipientNotEligible(recipient_id, "waiting-list entry changed during allocation")
            await self._set_status(organ_id, OrganStatus.MATCHED, recipient_id, hospital_id)
            stale, stale_status = None, None
            try:
                released = self.waiting_list.release_held(recipient_id, organ.organ_type)
                stale = self.memory.latest(organ_id)
                stale_status = stale.status if stale is not None else None
                self._supersede_stale_proposal(organ_id)
                self.memory.record(proposal)
            except Exception:
                self.waiting_list.restore_held(held)
                self.memory.discard(proposal)
                if stale is not None:
                    stale.status = stale_status
                await self._restore_status(organ_id)
                raise

        if stale is not None and stale.status is not stale_status:
            await self.memory.save(stale)
        await self.memory.save(proposal)

        logger.info(
            "Organ {} allocated to {} (score {:g}, expires {})",
            organ_id,
            recipient_id,
            proposal.score.total,
            proposal.expires_at.isoformat(),
        )
        document = proposal_document(proposal)
        await publish(self.event_sink, MatchEvent(MATCH_PROPOSAL_CREATED, document))
        await publish(
            self.event_sink,
            MatchEvent(
                ORGAN_ALLOCATED,
                {"organ_id": organ_id, "recipient_id": recipient_id, "hospital_id": hospital_id},
            ),
        )
        await self.waiting_list.notify_allocated(released)
        await self._audit("allocated", document)
        return proposal.model_copy()

    async def _score_for_commit(self, organ: OrganRecord, entry: WaitingListEntry) -> Candidate:
        result = await self.lookup(self.recipients.get_recipient(entry.recipient_id), "recipient lookup")
        if result.status is LookupStatus.NOT_FOUND:
            raise RecipientNotFound(entry.recipient_id)
        if not result.is_ok:
            raise CollaboratorUnavailable("recipient lookup", result.detail)
        if not result.value.registered:
            raise RecipientNotEligible(entry.recipient_id, "recipient is not registered")
        quality = await self.quality_check(organ, entry.recipient_id)
        score = score_match(organ, result.value, entry.priority, quality, self.weights)
        return Candidate(entry=entry, recipient=result.value, score=score)

    def _supersede_stale_proposal(self, organ_id: str) -> None:
        # the registry put the organ back to Available behind our back
        latest = self.memory.latest(organ_id)
        if latest is not None and latest.outstanding:
            logger.warning(
                "Organ {} is Available but proposal for {} was still {}; marking it Rejected",
                organ_id,
                latest.recipient_id,
                latest.status.value,
            )
            latest.status = ProposalStatus.REJECTED

    # -- proposal lifecycle -------------------------------------------------

    async def confirm_proposal(self, organ_id: str, actor: str | None = None) -> MatchProposal:
        await require_role(self.authorizer, actor, COORDINATOR)
        return await asyncio.shield(self._confirm(organ_id))

    async def _confirm(self, organ_id: str) -> MatchProposal:
        async with self.organ_lock(organ_id):
            proposal = self._latest_in(organ_id, ProposalStatus.CONFIRMED, {ProposalStatus.MATCHED})
            proposal.status = ProposalStatus.CONFIRMED
        await self._status_changed(proposal, "confirmed")
        return proposal.model_copy()

    async def mark_transplanted(self, organ_id: str, actor: str | None = None) -> MatchProposal:
        await require_role(self.authorizer, actor, COORDINATOR)
        return await asyncio.shield(self._transplanted(organ_id))

    async def _transplanted(self, organ_id: str) -> MatchProposal:
        async with self.organ_lock(organ_id):
            proposal = self._latest_in(
                organ_id,
                ProposalStatus.CONFIRMED,
                {ProposalStatus.MATCHED, ProposalStatus.CONFIRMED},
            )
            await self._require_matched(organ_id, ProposalStatus.CONFIRMED)
            await self._set_status(
                organ_id, OrganStatus.TRANSPLANTED, proposal.recipient_id, proposal.hospital_id
            )
            proposal.status = ProposalStatus.CONFIRMED
        await self._status_changed(proposal, "transplanted")
        return proposal.model_copy()

    async def reject_proposal(self, organ_id: str, reason: str = "", actor: str | None = None) -> MatchProposal:
        await require_role(self.authorizer, actor, COORDINATOR)
        return await asyncio.shield(self._reject(organ_id, reason))

    async def _reject(self, organ_id: str, reason: str) -> MatchProposal:
        async with self.organ_lock(organ_id):
            proposal = self._latest_in(
                organ_id,
                ProposalStatus.REJECTED,
                {ProposalStatus.MATCHED, ProposalStatus.CONFIRMED},
            )
            await self._require_matched(organ_id, ProposalStatus.REJECTED)
            await self._set_status(organ_id, OrganStatus.AVAILABLE)
            proposal.status = ProposalStatus.REJECTED
        logger.info("Proposal for organ {} rejected: {}", organ_id, reason or "no reason given")
        await self._status_changed(proposal, "rejected", reason)
        return proposal.model_copy()

    async def expire_overdue(self, now: datetime | None = None) -> List[MatchProposal]:
        """Expire Matched proposals past their confirmation window.

        Meant to be driven by an external sweep; the core keeps no timer.
        """
        now = now or self.clock()
        expired: List[MatchProposal] = []
        for stale in self.memory.overdue(now):
            proposal = await asyncio.shield(self._expire(stale, now))
            if proposal is not None:
                expired.append(proposal)
        return expired

    async def _expire(self, stale: MatchProposal, now: datetime) -> MatchProposal | None:
        async with self.organ_lock(stale.organ_id):
            latest = self.memory.latest(stale.organ_id)
            if latest is not stale or latest.status is not ProposalStatus.MATCHED or latest.expires_at > now:
                return None
            try:
                await self._set_status(stale.organ_id, OrganStatus.AVAILABLE)
            except CollaboratorUnavailable as exc:
                logger.error("Could not expire proposal for organ {}: {}", stale.organ_id, exc)
                return None
            latest.status = ProposalStatus.EXPIRED
        logger.info("Proposal for organ {} to {} expired", stale.organ_id, stale.recipient_id)
        await self._status_changed(latest, "expired")
        return latest.model_copy()

    def _latest_in(self, organ_id: str, target: ProposalStatus, allowed: set) -> MatchProposal:
        proposal = self.memory.latest(organ_id)
        if proposal is None:
            raise ProposalNotFound(organ_id)
        if proposal.status not in allowed:
            raise InvalidProposalTransition(organ_id, proposal.status.value, target.value)
        return proposal

    async def _require_matched(self, organ_id: str, target: ProposalStatus) -> None:
        # a transplanted organ's proposal stays Confirmed; the registry tells them apart
        result = await self.lookup(self.organs.get_organ(organ_id), "organ lookup")
        if result.status is LookupStatus.NOT_FOUND:
            raise InvalidTokenReference(organ_id)
        if not result.is_ok:
            raise CollaboratorUnavailable("organ lookup", result.detail)
        if result.value.status is not OrganStatus.MATCHED:
            raise InvalidProposalTransition(organ_id, result.value.status.value, target.value)

    async def _status_changed(self, proposal: MatchProposal, action: str, reason: str = "") -> None:
        await self.memory.save(proposal)
        document = proposal_document(proposal)
        payload: Dict[str, Any] = {"action": action, "proposal": document}
        if reason:
            payload["reason"] = reason
        await publish(self.event_sink, MatchEvent(PROPOSAL_STATUS_CHANGED, payload))
        await self._audit(action, document)

    # -- administration ------------------------------------------------------

    async def set_scoring_weight(self, name: str, value: float, actor: str | None = None) -> Dict[str, float]:
        await require_role(self.authorizer, actor, ADMIN)
        self.weights.set_weight(name, value)
        snapshot = self.weights.snapshot()
        await publish(
            self.event_sink,
            MatchEvent(SCORING_PARAMETERS_UPDATED, {"name": name, "value": snapshot[name], "weights": snapshot}),
        )
        return snapshot

    async def update_collaborators(
        self,
        organs: OrganRegistry | None = None,
        recipients: RecipientRegistry | None = None,
        quality: QualityService | None = None,
        actor: str | None = None,
    ) -> None:
        await require_role(self.authorizer, actor, ADMIN)
        if organs is not None:
            self.organs = organs
        if recipients is not None:
            self.recipients = recipients
        if quality is not None:
            self.quality = quality
        logger.info(
            "Collaborators updated: organs={} recipients={} quality={}",
            type(self.organs).__name__,
            type(self.recipients).__name__,
            type(self.quality).__name__,
        )

    # -- collaborator access -------------------------------------------------

    async def require_available(self, organ_id: str) -> OrganRecord:
        result = await self.lookup(self.organs.get_organ(organ_id), "organ lookup")
        if result.status is LookupStatus.NOT_FOUND:
            raise InvalidTokenReference(organ_id)
        if not result.is_ok:
            raise CollaboratorUnavailable("organ lookup", result.detail)
        organ = result.value
        if organ.status is not OrganStatus.AVAILABLE:
            raise OrganNotAvailable(organ_id, organ.status.value)
        return organ

    async def donor_region(self, organ: OrganRecord) -> str:
        result = await self.lookup(self.organs.get_donor_region(organ.donor_id), "donor region lookup")
        if not result.is_ok:
            raise CollaboratorUnavailable("donor region lookup", result.detail or organ.donor_id)
        return result.value

    async def mark_emergency(self, organ: OrganRecord) -> None:
        await self._mutate(self.organs.mark_emergency(organ.id), f"mark organ {organ.id} emergency")

    async def lookup(self, call, context: str) -> LookupResult:
        return await guarded_lookup(call, self.lookup_timeout, context)

    async def quality_check(self, organ: OrganRecord, recipient_id: str) -> LookupResult[bool]:
        """Pairwise compatibility, falling back to the organ's own validation.

        Only a missing pairwise check falls back; an unavailable service stays
        unavailable and scores as unknown.
        """
        result = await self.lookup(self.quality.is_compatible(organ.id, recipient_id), "quality check")
        if result.status is not LookupStatus.NOT_FOUND:
            return result
        validated = await self.lookup(self.quality.is_validated(organ.id), "quality validation")
        if validated.is_ok and validated.value:
            return LookupResult.ok(True)
        return result

    async def _set_status(
        self,
        organ_id: str,
        status: OrganStatus,
        recipient_id: str | None = None,
        hospital_id: str | None = None,
    ) -> None:
        try:
            await self._mutate(
                self.organs.set_status(organ_id, status, recipient_id, hospital_id),
                f"set organ {organ_id} status {status.value}",
            )
        except CollaboratorUnavailable:
            # the write may have landed before the failure; put the organ back
            if status is OrganStatus.MATCHED:
                await self._restore_status(organ_id)
            raise

    async def _restore_status(self, organ_id: str) -> None:
        try:
            await self._mutate(
                self.organs.set_status(organ_id, OrganStatus.AVAILABLE, None, None),
                f"restore organ {organ_id} to Available",
            )
        except CollaboratorUnavailable as exc:
            logger.error("Compensation failed, organ {} needs manual review: {}", organ_id, exc)

    async def _mutate(self, call, context: str) -> None:
        try:
            await asyncio.wait_for(call, timeout=self.mutation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("{} timed out after {}s", context, self.mutation_timeout)
            raise CollaboratorUnavailable(context, "timed out") from exc
        except MatchingError:
            # e.g. the registry refused the write because the organ was taken meanwhile
            raise
        except Exception as exc:
            logger.warning("{} failed: {}", context, exc)
            raise CollaboratorUnavailable(context, str(exc)) from exc

    async def _audit(self, action: str, document: Dict[str, Any]) -> None:
        if self.audit_log is not None:
            await self.audit_log.log({"action": action, **document})
