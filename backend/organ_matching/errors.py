from __future__ import annotations


class MatchingError(Exception):
    """Base class for typed failures reported to the caller of the matching core."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidTokenReference(MatchingError):
    status_code = 404

    def __init__(self, organ_id: str) -> None:
        super().__init__(f"Organ {organ_id} is unknown to the registry")
        self.organ_id = organ_id


class OrganNotAvailable(MatchingError):
    status_code = 409

    def __init__(self, organ_id: str, status: str) -> None:
        super().__init__(f"Organ {organ_id} is not available (status {status})")
        self.organ_id = organ_id
        self.status = status


class RecipientNotEligible(MatchingError):
    status_code = 409

    def __init__(self, recipient_id: str, reason: str) -> None:
        super().__init__(f"Recipient {recipient_id} is not eligible: {reason}")
        self.recipient_id = recipient_id
        self.reason = reason


class RecipientNotFound(MatchingError):
    status_code = 404

    def __init__(self, recipient_id: str) -> None:
        super().__init__(f"Recipient {recipient_id} is not registered")
        self.recipient_id = recipient_id


class InvalidUrgencyLevel(MatchingError):
    status_code = 422

    def __init__(self, urgency_level: int) -> None:
        super().__init__(f"Urgency level {urgency_level} is outside 1-10")
        self.urgency_level = urgency_level


class EmptyWaitingList(MatchingError):
    status_code = 404

    def __init__(self, organ_type: str, region: str) -> None:
        super().__init__(f"No active waiting-list entries for {organ_type} in {region}")
        self.organ_type = organ_type
        self.region = region


class AlreadyOnWaitingList(MatchingError):
    status_code = 409

    def __init__(self, recipient_id: str, organ_type: str) -> None:
        super().__init__(f"Recipient {recipient_id} already has an active {organ_type} entry")
        self.recipient_id = recipient_id
        self.organ_type = organ_type


class NotOnWaitingList(MatchingError):
    status_code = 404

    def __init__(self, recipient_id: str, organ_type: str) -> None:
        super().__init__(f"Recipient {recipient_id} has no active {organ_type} entry")
        self.recipient_id = recipient_id
        self.organ_type = organ_type


class ProposalNotFound(MatchingError):
    status_code = 404

    def __init__(self, organ_id: str) -> None:
        super().__init__(f"No match proposal recorded for organ {organ_id}")
        self.organ_id = organ_id


class InvalidProposalTransition(MatchingError):
    status_code = 409

    def __init__(self, organ_id: str, current: str, target: str) -> None:
        super().__init__(f"Proposal for organ {organ_id} cannot move from {current} to {target}")
        self.organ_id = organ_id
        self.current = current
        self.target = target


class InvalidScoringWeight(MatchingError):
    status_code = 422


class Unauthorized(MatchingError):
    status_code = 403

    def __init__(self, actor: str | None, role: str) -> None:
        super().__init__(f"Actor {actor or 'anonymous'} lacks role {role}")
        self.actor = actor
        self.role = role


class CollaboratorUnavailable(MatchingError):
    status_code = 503

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class InvalidPriorityTier(MatchingError):
    status_code = 422

    def __init__(self, priority: str) -> None:
        super().__init__(f"Unknown priority tier {priority!r}")
        self.priority = priority
