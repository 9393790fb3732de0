import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid

from app.database import Base
from app.models.types import utcnow


class MessageTracking(Base):
    __tablename__ = "message_tracking"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id = Column(Text, nullable=False, unique=True)
    conversation_key = Column(Text, nullable=False, index=True)
    content = Column(Text)
    message_type = Column(Text, nullable=False, default="text")
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    needs_response = Column(Boolean, nullable=False, default=True)
    ai_response_sent = Column(Boolean, nullable=False, default=False)
    manual_response_sent = Column(Boolean, nullable=False, default=False)
    responded_at = Column(DateTime(timezone=True))
