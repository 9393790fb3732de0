import uuid

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Text, Uuid, text

from app.database import Base
from app.models.types import JSONType, utcnow

ACTIVE_STATUS_CLAUSE = "status IN ('scheduled_for_analysis', 'scheduled_for_send')"


class FollowupSettings(Base):
    __tablename__ = "followup_settings"

    id = Column(Integer, primary_key=True, default=1)
    enabled = Column(Boolean, nullable=False, default=False)
    generate_prompt = Column(Text, nullable=False)
    no_generate_prompt = Column(Text, nullable=False)
    inactivity_hours = Column(Integer, nullable=False, default=24)
    delay_hours = Column(Integer, nullable=False, default=2)
    max_followups_per_conversation = Column(Integer, nullable=False, default=2)
    followup_interval_hours = Column(Integer, nullable=False, default=168)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class FollowupQueueItem(Base):
    __tablename__ = "followup_queue"
    __table_args__ = (
        # One non-terminal item per conversation key.
        Index(
            "uq_followup_queue_active_key",
            "conversation_key",
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_CLAUSE),
            postgresql_where=text(ACTIVE_STATUS_CLAUSE),
        ),
        Index("ix_followup_queue_status_due", "status", "scheduled_for"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_key = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False, default="scheduled_for_analysis")
    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    message = Column(Text)
    conversation_context = Column(JSONType)
    analysis_result = Column(Text)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class FollowupHistory(Base):
    """Append-only event log: sends, recovery attempts, finalization and stop markers."""

    __tablename__ = "followup_history"
    __table_args__ = (Index("ix_followup_history_key_type_sent", "conversation_key", "followup_type", "sent_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_key = Column(Text, nullable=False)
    followup_type = Column(Text, nullable=False)
    message = Column(Text)
    queue_item_id = Column(Uuid)
    details = Column(JSONType)
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
