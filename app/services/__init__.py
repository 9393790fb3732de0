from app.services.conversation_service import (
    add_message,
    get_conversation,
    get_history,
)
from app.services.state_machine import (
    FollowupStatus,
    InvalidTransitionError,
    approve_for_send,
    can_transition,
    complete,
    fail,
    retry,
    transition,
)
