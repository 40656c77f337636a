from enum import Enum


class FollowUpStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CONVERTED = "CONVERTED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset(
    {
        FollowUpStatus.COMPLETED,
        FollowUpStatus.CONVERTED,
        FollowUpStatus.CANCELLED,
        FollowUpStatus.FAILED,
    }
)

RUNNING_STATUSES = frozenset({FollowUpStatus.ACTIVE, FollowUpStatus.PAUSED})

VALID_TRANSITIONS = {
    FollowUpStatus.ACTIVE: [
        FollowUpStatus.PAUSED,
        FollowUpStatus.COMPLETED,
        FollowUpStatus.CONVERTED,
        FollowUpStatus.CANCELLED,
        FollowUpStatus.FAILED,
    ],
    FollowUpStatus.PAUSED: [
        FollowUpStatus.ACTIVE,
        FollowUpStatus.CONVERTED,
        FollowUpStatus.CANCELLED,
        FollowUpStatus.FAILED,
    ],
    FollowUpStatus.COMPLETED: [FollowUpStatus.FAILED],
    FollowUpStatus.CONVERTED: [FollowUpStatus.FAILED],
    FollowUpStatus.CANCELLED: [FollowUpStatus.FAILED],
    FollowUpStatus.FAILED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: FollowUpStatus, to_state: FollowUpStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: FollowUpStatus, to_state: FollowUpStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: FollowUpStatus, to_state: FollowUpStatus) -> FollowUpStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_terminal(state: FollowUpStatus) -> bool:
    return state in TERMINAL_STATUSES


def complete(current_state: FollowUpStatus) -> FollowUpStatus:
    """Rules exhausted."""
    return transition(current_state, FollowUpStatus.COMPLETED)


def convert(current_state: FollowUpStatus) -> FollowUpStatus:
    """Client converted; stop the sequence."""
    return transition(current_state, FollowUpStatus.CONVERTED)


def cancel(current_state: FollowUpStatus) -> FollowUpStatus:
    return transition(current_state, FollowUpStatus.CANCELLED)


def pause(current_state: FollowUpStatus) -> FollowUpStatus:
    return transition(current_state, FollowUpStatus.PAUSED)


def resume(current_state: FollowUpStatus) -> FollowUpStatus:
    return transition(current_state, FollowUpStatus.ACTIVE)


def fail(current_state: FollowUpStatus) -> FollowUpStatus:
    """Unrecoverable error. Allowed from any state except FAILED itself."""
    return transition(current_state, FollowUpStatus.FAILED)
