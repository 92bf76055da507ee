from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from loguru import logger

MATCH_PROPOSAL_CREATED = "match_proposal_created"
ORGAN_ALLOCATED = "organ_allocated"
EMERGENCY_MATCH_TRIGGERED = "emergency_match_triggered"
WAITING_LIST_UPDATED = "waiting_list_updated"
SCORING_PARAMETERS_UPDATED = "scoring_parameters_updated"
PROPOSAL_STATUS_CHANGED = "proposal_status_changed"


@dataclass
class MatchEvent:
    type: str
    payload: Dict[str, Any]


EventSink = Callable[[MatchEvent], Awaitable[None]]


async def default_event_sink(event: MatchEvent) -> None:
    logger.debug("Matching event: {}", event)


async def publish(sink: EventSink, event: MatchEvent) -> None:
    """Deliver an emitted fact. Delivery problems never undo the state change behind it."""
    try:
        await sink(event)
    except Exception as exc:
        logger.warning("Event sink failed for {}: {}. Continuing.", event.type, exc)
