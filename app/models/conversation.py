import uuid

from sqlalchemy import Column, DateTime, Text, Uuid

from app.database import Base
from app.models.types import JSONType, utcnow


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_key = Column(Text, nullable=False, unique=True, index=True)
    contact_name = Column(Text)
    # [{"role", "content", "timestamp", "message_type", "message_id"}], oldest first
    messages = Column(JSONType, nullable=False, default=list)
    last_activity = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
