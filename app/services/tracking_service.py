from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import MessageTracking
from app.schemas.message import InboundMessage

logger = get_logger("tracking_service")


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def track_incoming(db: Session, message: InboundMessage) -> bool:
    """Record an inbound message. Returns False for an already tracked message id."""
    exists = db.query(MessageTracking.id).filter(MessageTracking.message_id == message.message_id).first()
    if exists:
        return False

    record = MessageTracking(
        message_id=message.message_id,
        conversation_key=message.conversation_key,
        content=(message.text or "")[:1000] or None,
        message_type=message.kind.value,
        received_at=message.received_at,
        needs_response=not message.from_me,
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError:
        # Concurrent delivery of the same id; the session holds nothing else yet.
        db.rollback()
        return False
    return True


def mark_response_sent(db: Session, message_ids: Iterable[str], *, manual: bool = False, now: Optional[datetime] = None) -> int:
    ids = [message_id for message_id in message_ids if message_id]
    if not ids:
        return 0
    values = {"needs_response": False, "responded_at": _now(now)}
    values["manual_response_sent" if manual else "ai_response_sent"] = True
    updated = (
        db.query(MessageTracking)
        .filter(MessageTracking.message_id.in_(ids))
        .update(values, synchronize_session=False)
    )
    db.flush()
    return updated


def mark_conversation_responded(
    db: Session,
    conversation_key: str,
    *,
    manual: bool = False,
    since: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> int:
    """Close every open message for a key, optionally only those received after ``since``."""
    query = db.query(MessageTracking).filter(
        MessageTracking.conversation_key == conversation_key,
        MessageTracking.needs_response.is_(True),
    )
    if since is not None:
        query = query.filter(MessageTracking.received_at >= since)
    values = {"needs_response": False, "responded_at": _now(now)}
    values["manual_response_sent" if manual else "ai_response_sent"] = True
    updated = query.update(values, synchronize_session=False)
    db.flush()
    if updated and manual:
        logger.info(f"Manual reply detected: key={conversation_key}, closed={updated}")
    return updated


def mark_handled_without_reply(db: Session, message_ids: Iterable[str]) -> int:
    """Messages deliberately left unanswered (finalized conversation, suppressed loop)."""
    ids = [message_id for message_id in message_ids if message_id]
    if not ids:
        return 0
    updated = (
        db.query(MessageTracking)
        .filter(MessageTracking.message_id.in_(ids))
        .update({"needs_response": False}, synchronize_session=False)
    )
    db.flush()
    return updated


def get_unresponded(
    db: Session,
    *,
    older_than_minutes: int,
    max_age_hours: int = 24,
    now: Optional[datetime] = None,
) -> "OrderedDict[str, List[MessageTracking]]":
    """Open messages grouped by key, oldest conversation first."""
    now = _now(now)
    rows = (
        db.query(MessageTracking)
        .filter(
            MessageTracking.needs_response.is_(True),
            MessageTracking.received_at <= now - timedelta(minutes=older_than_minutes),
            MessageTracking.received_at >= now - timedelta(hours=max_age_hours),
        )
        .order_by(MessageTracking.received_at.asc())
        .all()
    )
    grouped: "OrderedDict[str, List[MessageTracking]]" = OrderedDict()
    for row in rows:
        grouped.setdefault(row.conversation_key, []).append(row)
    return grouped


def is_batch_answered(db: Session, message_ids: Iterable[str]) -> bool:
    """True when every id is tracked and none of them still needs a response."""
    ids = {message_id for message_id in message_ids if message_id}
    if not ids:
        return False
    rows = (
        db.query(MessageTracking.needs_response)
        .filter(MessageTracking.message_id.in_(ids))
        .all()
    )
    return len(rows) == len(ids) and not any(row.needs_response for row in rows)


def cleanup_tracking(db: Session, *, days: int = 7, now: Optional[datetime] = None) -> int:
    cutoff = _now(now) - timedelta(days=days)
    removed = db.query(MessageTracking).filter(MessageTracking.received_at < cutoff).delete(synchronize_session=False)
    db.flush()
    return removed


def get_tracking_stats(db: Session) -> dict:
    total = db.query(func.count(MessageTracking.id)).scalar() or 0
    pending = db.query(func.count(MessageTracking.id)).filter(MessageTracking.needs_response.is_(True)).scalar() or 0
    ai = db.query(func.count(MessageTracking.id)).filter(MessageTracking.ai_response_sent.is_(True)).scalar() or 0
    manual = db.query(func.count(MessageTracking.id)).filter(MessageTracking.manual_response_sent.is_(True)).scalar() or 0
    return {"total": total, "pending": pending, "ai_responses": ai, "manual_responses": manual}
