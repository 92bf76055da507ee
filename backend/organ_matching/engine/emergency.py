from __future__ import annotations

import asyncio
from typing import Dict, List

from loguru import logger

from ..collaborators.interfaces import RegionDistance
from ..errors import RecipientNotEligible
from ..events import EMERGENCY_MATCH_TRIGGERED, MatchEvent, publish
from ..models.organ import OrganRecord
from ..models.waiting_list import WaitingListEntry
from .access import COORDINATOR, require_role
from .allocation import AllocationEngine, Candidate


class EmergencyMatcher:
    """Fast path for organs flagged emergency.

    Searches every region for the best-scoring compatible recipient instead of
    the organ's home region only. Eligibility and the commit itself still go
    through ``AllocationEngine``.
    """

    def __init__(self, engine: AllocationEngine, distance: RegionDistance | None = None) -> None:
        self.engine = engine
        self.distance = distance

    async def trigger_emergency_match(
        self,
        organ_id: str,
        max_distance_km: float,
        hospital_id: str | None = None,
        actor: str | None = None,
    ) -> str | None:
        await require_role(self.engine.authorizer, actor, COORDINATOR)
        return await asyncio.shield(self._trigger(organ_id, max_distance_km, hospital_id))

    async def _trigger(self, organ_id: str, max_distance_km: float, hospital_id: str | None) -> str | None:
        engine = self.engine
        async with engine.organ_lock(organ_id):
            organ = await engine.require_available(organ_id)
            await engine.mark_emergency(organ)
            entries = engine.waiting_list.list_active_for_type(organ.organ_type)
            in_range = await self._within_range(organ, entries, max_distance_km)
            candidates = await engine.score_entries(organ, in_range)
            ranked = rank_by_score([c for c in candidates if c.score.is_compatible])
            await publish(
                engine.event_sink,
                MatchEvent(
                    EMERGENCY_MATCH_TRIGGERED,
                    {
                        "organ_id": organ_id,
                        "max_distance_km": max_distance_km,
                        "searched": len(entries),
                        "in_range": len(in_range),
                        "compatible": len(ranked),
                    },
                ),
            )
            for candidate in ranked:
                try:
                    proposal = await engine.commit_allocation(
                        organ_id,
                        candidate.recipient_id,
                        hospital_id,
                        "emergency match",
                        emergency=True,
                    )
                except RecipientNotEligible as exc:
                    logger.warning("Emergency candidate {} dropped at commit: {}", candidate.recipient_id, exc)
                    continue
                logger.info(
                    "Emergency match for organ {}: recipient {} (score {:g})",
                    organ_id,
                    proposal.recipient_id,
                    proposal.score.total,
                )
                return proposal.recipient_id
        logger.info("Emergency match for organ {} found no recipient; organ stays Available", organ_id)
        return None

    async def _within_range(
        self, organ: OrganRecord, entries: List[WaitingListEntry], max_distance_km: float
    ) -> List[WaitingListEntry]:
        if self.distance is None:
            return entries
        donor_region = await self.engine.donor_region(organ)
        distances: Dict[str, float | None] = {}
        for region in {entry.region for entry in entries}:
            result = await self.engine.lookup(
                self.distance.distance_km(donor_region, region), "distance lookup"
            )
            distances[region] = result.value if result.is_ok else None
        kept = []
        for entry in entries:
            km = distances[entry.region]
            if km is None:
                logger.warning(
                    "Distance {} -> {} unknown; keeping recipient {}", donor_region, entry.region, entry.recipient_id
                )
                kept.append(entry)
            elif km <= max_distance_km:
                kept.append(entry)
        return kept


def rank_by_score(candidates: List[Candidate]) -> List[Candidate]:
    # stable: equal totals keep waiting-list priority order
    return sorted(candidates, key=lambda candidate: -candidate.score.total)
