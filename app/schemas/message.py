from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class MessageKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    DOCUMENT = "document"


class InboundMessage(BaseModel):
    """One inbound chat message, payload already resolved by the transport layer."""

    message_id: str
    conversation_key: str
    kind: MessageKind = MessageKind.TEXT
    text: Optional[str] = None
    media: Optional[bytes] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    contact_name: Optional[str] = None
    from_me: bool = False
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    # Set for messages that are already stored in the conversation history.
    is_replay: bool = False
