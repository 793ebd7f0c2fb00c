from enum import Enum


class ConversationStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


OPEN_STATUSES = (ConversationStatus.PENDING.value, ConversationStatus.ACTIVE.value)

VALID_TRANSITIONS = {
    ConversationStatus.PENDING: [ConversationStatus.ACTIVE, ConversationStatus.CLOSED],
    ConversationStatus.ACTIVE: [ConversationStatus.CLOSED],
    ConversationStatus.CLOSED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ConversationStatus, to_state: ConversationStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ConversationStatus, to_state: ConversationStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: ConversationStatus, to_state: ConversationStatus) -> ConversationStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def close(current_state: ConversationStatus) -> ConversationStatus:
    """External closure of an open conversation."""
    return transition(current_state, ConversationStatus.CLOSED)


def is_open(current_state: ConversationStatus) -> bool:
    return current_state.value in OPEN_STATUSES
