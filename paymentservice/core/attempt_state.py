"""
Payment attempt state machine.

    initiated ──► paid
        │
        └──────► failed

``initiated`` is the only non-terminal state; nothing ever leaves a
terminal state.
"""
from enum import Enum
from typing import Dict, FrozenSet, Union

from .exceptions import InvalidStateTransition


class AttemptState(str, Enum):
    """Payment attempt states."""

    INITIATED = "initiated"
    PAID = "paid"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not AttemptState.INITIATED


ALLOWED_TRANSITIONS: Dict[AttemptState, FrozenSet[AttemptState]] = {
    AttemptState.INITIATED: frozenset({AttemptState.PAID, AttemptState.FAILED}),
    AttemptState.PAID: frozenset(),
    AttemptState.FAILED: frozenset(),
}

# Order statuses sent to the order service for each terminal state
ORDER_STATUS_FOR_STATE: Dict[AttemptState, str] = {
    AttemptState.PAID: "paid",
    AttemptState.FAILED: "failed",
}


def can_transition(
    current: Union[AttemptState, str], target: Union[AttemptState, str]
) -> bool:
    """Check whether ``current -> target`` is an allowed edge."""
    return AttemptState(target) in ALLOWED_TRANSITIONS[AttemptState(current)]


def ensure_transition(
    current: Union[AttemptState, str], target: Union[AttemptState, str]
) -> AttemptState:
    """
    Validate a transition.

    Returns:
        AttemptState: The target state

    Raises:
        InvalidStateTransition: If the edge is not allowed
    """
    if not can_transition(current, target):
        raise InvalidStateTransition(AttemptState(current).value, AttemptState(target).value)
    return AttemptState(target)


def state_for_result_code(result_code: int) -> AttemptState:
    """Map a gateway ResultCode onto the terminal state it implies."""
    return AttemptState.PAID if result_code == 0 else AttemptState.FAILED
