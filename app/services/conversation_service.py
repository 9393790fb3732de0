from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Conversation

logger = get_logger("conversation_service")

MAX_MESSAGES = settings.conversation_max_messages
MEMORY_TTL = timedelta(minutes=settings.conversation_ttl_minutes)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


def _ensure_timezone(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _now(now: Optional[datetime]) -> datetime:
    return _ensure_timezone(now) if now else datetime.now(timezone.utc)


def is_expired(conversation: Conversation, now: Optional[datetime] = None, ttl: timedelta = MEMORY_TTL) -> bool:
    if not conversation.last_activity:
        return True
    return _now(now) - _ensure_timezone(conversation.last_activity) > ttl


def find_conversation(db: Session, conversation_key: str) -> Optional[Conversation]:
    """Stored row regardless of the memory TTL."""
    return db.query(Conversation).filter(Conversation.conversation_key == conversation_key).first()


def get_conversation(
    db: Session,
    conversation_key: str,
    *,
    now: Optional[datetime] = None,
    ttl: timedelta = MEMORY_TTL,
) -> Optional[Conversation]:
    """Conversation memory, or None when absent or past the memory TTL."""
    conversation = find_conversation(db, conversation_key)
    if conversation is None or is_expired(conversation, now, ttl):
        return None
    return conversation


def get_history(
    db: Session,
    conversation_key: str,
    *,
    now: Optional[datetime] = None,
    include_expired: bool = False,
) -> List[dict]:
    """Ordered turns for a key.

    ``include_expired`` reads the stored transcript regardless of the memory
    TTL; the follow-up and recovery sweeps look back further than the
    model's short-term memory.
    """
    if include_expired:
        conversation = find_conversation(db, conversation_key)
    else:
        conversation = get_conversation(db, conversation_key, now=now)
    if conversation is None:
        return []
    return list(conversation.messages or [])


def add_message(
    db: Session,
    conversation_key: str,
    role: str,
    content: str,
    *,
    message_type: Optional[str] = None,
    message_id: Optional[str] = None,
    contact_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Conversation:
    """Append one turn, starting fresh memory if the previous one expired."""
    now = _now(now)
    conversation = find_conversation(db, conversation_key)

    if conversation is None:
        conversation = Conversation(conversation_key=conversation_key, messages=[], last_activity=now, created_at=now)
        db.add(conversation)
        messages = []
    elif is_expired(conversation, now):
        logger.debug(f"Conversation memory expired, starting fresh: key={conversation_key}")
        messages = []
    else:
        messages = list(conversation.messages or [])

    entry = {"role": role, "content": content, "timestamp": now.isoformat()}
    if message_type:
        entry["message_type"] = message_type
    if message_id:
        entry["message_id"] = message_id
    messages.append(entry)

    # New list object so the JSON column is flagged dirty.
    conversation.messages = messages[-MAX_MESSAGES:]
    conversation.last_activity = now
    if contact_name:
        conversation.contact_name = contact_name
    db.flush()
    return conversation


def stored_message_ids(history: List[dict]) -> set:
    return {turn["message_id"] for turn in history if turn.get("message_id")}


def last_turn(history: List[dict], role: Optional[str] = None) -> Optional[dict]:
    for turn in reversed(history):
        if role is None or turn.get("role") == role:
            return turn
    return None


def turn_timestamp(turn: dict) -> Optional[datetime]:
    raw = turn.get("timestamp")
    if not raw:
        return None
    try:
        return _ensure_timezone(datetime.fromisoformat(raw))
    except ValueError:
        return None


def list_recent_conversations(db: Session, since: datetime) -> List[Conversation]:
    """Conversations with activity after ``since``, newest first."""
    return (
        db.query(Conversation)
        .filter(Conversation.last_activity >= since)
        .order_by(Conversation.last_activity.desc())
        .all()
    )


def clear_expired_conversations(db: Session, *, retention_hours: int = settings.conversation_retention_hours, now: Optional[datetime] = None) -> int:
    """Delete rows idle past the retention horizon. Returns the number removed."""
    cutoff = _now(now) - timedelta(hours=retention_hours)
    removed = db.query(Conversation).filter(Conversation.last_activity < cutoff).delete(synchronize_session=False)
    db.flush()
    if removed:
        logger.info(f"Compacted {removed} stale conversations")
    return removed
