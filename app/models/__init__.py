from app.models.app_config import AppConfig
from app.models.conversation import Conversation
from app.models.followup import FollowupHistory, FollowupQueueItem, FollowupSettings
from app.models.message_tracking import MessageTracking

__all__ = [
    "AppConfig",
    "Conversation",
    "FollowupSettings",
    "FollowupQueueItem",
    "FollowupHistory",
    "MessageTracking",
]
