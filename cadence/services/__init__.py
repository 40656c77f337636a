from cadence.services.result import Result
from cadence.services.state_machine import (
    FollowUpStatus,
    InvalidTransitionError,
    can_transition,
    cancel,
    complete,
    convert,
    fail,
    pause,
    resume,
    transition,
)

__all__ = [
    "Result",
    "FollowUpStatus",
    "InvalidTransitionError",
    "can_transition",
    "cancel",
    "complete",
    "convert",
    "fail",
    "pause",
    "resume",
    "transition",
]
