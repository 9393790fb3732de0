from enum import Enum


class FollowupStatus(str, Enum):
    SCHEDULED_FOR_ANALYSIS = "scheduled_for_analysis"
    SCHEDULED_FOR_SEND = "scheduled_for_send"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (FollowupStatus.SCHEDULED_FOR_ANALYSIS, FollowupStatus.SCHEDULED_FOR_SEND)
TERMINAL_STATUSES = (FollowupStatus.COMPLETED, FollowupStatus.FAILED)

# Self-transitions on active states are retries rescheduled with backoff.
VALID_TRANSITIONS = {
    FollowupStatus.SCHEDULED_FOR_ANALYSIS: [
        FollowupStatus.SCHEDULED_FOR_ANALYSIS,
        FollowupStatus.SCHEDULED_FOR_SEND,
        FollowupStatus.COMPLETED,
        FollowupStatus.FAILED,
    ],
    FollowupStatus.SCHEDULED_FOR_SEND: [
        FollowupStatus.SCHEDULED_FOR_SEND,
        FollowupStatus.COMPLETED,
        FollowupStatus.FAILED,
    ],
    FollowupStatus.COMPLETED: [],
    FollowupStatus.FAILED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: FollowupStatus, to_state: FollowupStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: FollowupStatus, to_state: FollowupStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: FollowupStatus | str, to_state: FollowupStatus) -> FollowupStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    from_state = FollowupStatus(from_state)
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def approve_for_send(current: FollowupStatus | str) -> FollowupStatus:
    """Positive analysis: message generated, waiting for the send delay."""
    return transition(current, FollowupStatus.SCHEDULED_FOR_SEND)


def complete(current: FollowupStatus | str) -> FollowupStatus:
    """Sent, or analysis decided not to follow up."""
    return transition(current, FollowupStatus.COMPLETED)


def fail(current: FollowupStatus | str) -> FollowupStatus:
    """Retries exhausted."""
    return transition(current, FollowupStatus.FAILED)


def retry(current: FollowupStatus | str) -> FollowupStatus:
    """Stay in the current active state; caller pushes scheduled_for forward."""
    current = FollowupStatus(current)
    return transition(current, current)
