import base64
import binascii
from datetime import datetime, timezone
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from app.schemas.message import InboundMessage, MessageKind


class WebhookMessage(BaseModel):
    messageId: str = Field(validation_alias=AliasChoices("messageId", "message_id", "id"))
    remoteJid: str = Field(validation_alias=AliasChoices("remoteJid", "remote_jid", "from"))
    messageType: MessageKind = MessageKind.TEXT
    message: Optional[str] = None
    mediaBase64: Optional[str] = None
    fileName: Optional[str] = None
    mimeType: Optional[str] = None
    pushName: Optional[str] = None
    fromMe: bool = False
    timestamp: Optional[int] = None

    @field_validator("remoteJid")
    @classmethod
    def _strip_jid(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("remoteJid is empty")
        return value

    def to_inbound(self) -> InboundMessage:
        media = None
        if self.mediaBase64:
            try:
                media = base64.b64decode(self.mediaBase64, validate=True)
            except (binascii.Error, ValueError):
                media = None
        received_at = (
            datetime.fromtimestamp(self.timestamp, tz=timezone.utc)
            if self.timestamp
            else datetime.now(timezone.utc)
        )
        return InboundMessage(
            message_id=self.messageId,
            conversation_key=self.remoteJid,
            kind=self.messageType,
            text=self.message,
            media=media,
            filename=self.fileName,
            mime_type=self.mimeType,
            contact_name=self.pushName,
            from_me=self.fromMe,
            received_at=received_at,
        )


class WebhookResponse(BaseModel):
    success: bool
    message: str
    message_id: Optional[str] = None


class ConnectionEvent(BaseModel):
    state: str
    instanceId: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("instanceId", "instance_id", "instance"),
    )
