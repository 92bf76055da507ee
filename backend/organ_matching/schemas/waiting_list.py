from __future__ import annotations

from typing import Any, Dict

from ..models.waiting_list import WaitingListEntry


def entry_document(entry: WaitingListEntry) -> Dict[str, Any]:
    return {
        "recipient_id": entry.recipient_id,
        "organ_type": entry.organ_type.value,
        "region": entry.region,
        "urgency_level": entry.urgency_level,
        "priority": entry.priority.name.title(),
        "added_at": entry.added_at.isoformat(),
        "updated_at": entry.updated_at.isoformat(),
        "active": entry.active,
    }
