"""Append-only follow-up history: the source of truth for rate limits and suppression."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import FollowupHistory

logger = get_logger("history_service")


class FollowupType(str, Enum):
    AUTOMATIC = "automatic"
    RECOVERY_ATTEMPT = "recovery_attempt"
    CONVERSATION_FINALIZED = "conversation_finalized"
    FINALIZATION_DETECTED = "finalization_detected"
    FINALIZATION_RESET = "finalization_reset"
    STOP_MARKER = "stop_marker"
    STOP_RESET = "stop_reset"


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _values(types: Iterable[FollowupType]) -> list[str]:
    return [t.value for t in types]


def record_event(
    db: Session,
    conversation_key: str,
    followup_type: FollowupType,
    *,
    message: Optional[str] = None,
    queue_item_id=None,
    details: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> FollowupHistory:
    record = FollowupHistory(
        conversation_key=conversation_key,
        followup_type=followup_type.value,
        message=message,
        queue_item_id=queue_item_id,
        details=details,
        sent_at=_now(now),
    )
    db.add(record)
    db.flush()
    logger.debug(f"History event: key={conversation_key}, type={followup_type.value}")
    return record


def latest_event(
    db: Session,
    conversation_key: str,
    types: Iterable[FollowupType],
    *,
    since: Optional[datetime] = None,
) -> Optional[FollowupHistory]:
    query = db.query(FollowupHistory).filter(
        FollowupHistory.conversation_key == conversation_key,
        FollowupHistory.followup_type.in_(_values(types)),
    )
    if since is not None:
        query = query.filter(FollowupHistory.sent_at >= since)
    return query.order_by(FollowupHistory.sent_at.desc()).first()


def count_events(db: Session, conversation_key: str, types: Iterable[FollowupType], *, since: datetime) -> int:
    return (
        db.query(func.count(FollowupHistory.id))
        .filter(
            FollowupHistory.conversation_key == conversation_key,
            FollowupHistory.followup_type.in_(_values(types)),
            FollowupHistory.sent_at >= since,
        )
        .scalar()
        or 0
    )


def is_finalized(db: Session, conversation_key: str, *, within_hours: int = 24, now: Optional[datetime] = None) -> bool:
    """A finalization inside the window that no later reset has cleared."""
    since = _now(now) - timedelta(hours=within_hours)
    latest = latest_event(
        db,
        conversation_key,
        (FollowupType.CONVERSATION_FINALIZED, FollowupType.FINALIZATION_RESET),
        since=since,
    )
    return latest is not None and latest.followup_type == FollowupType.CONVERSATION_FINALIZED.value


def is_stopped(db: Session, conversation_key: str) -> bool:
    """Stop markers hold until a stop_reset is appended."""
    latest = latest_event(db, conversation_key, (FollowupType.STOP_MARKER, FollowupType.STOP_RESET))
    return latest is not None and latest.followup_type == FollowupType.STOP_MARKER.value


def has_recent_send(db: Session, conversation_key: str, *, within_hours: int, now: Optional[datetime] = None) -> bool:
    since = _now(now) - timedelta(hours=within_hours)
    return count_events(db, conversation_key, (FollowupType.AUTOMATIC, FollowupType.RECOVERY_ATTEMPT), since=since) > 0


def count_followups_sent(db: Session, conversation_key: str, *, window_hours: int, now: Optional[datetime] = None) -> int:
    since = _now(now) - timedelta(hours=window_hours)
    return count_events(db, conversation_key, (FollowupType.AUTOMATIC,), since=since)


def cleanup_history(db: Session, *, days: int = 90, now: Optional[datetime] = None) -> int:
    cutoff = _now(now) - timedelta(days=days)
    removed = db.query(FollowupHistory).filter(FollowupHistory.sent_at < cutoff).delete(synchronize_session=False)
    db.flush()
    return removed


def history_stats(db: Session, *, days: int = 30, now: Optional[datetime] = None) -> dict[str, int]:
    since = _now(now) - timedelta(days=days)
    rows = (
        db.query(FollowupHistory.followup_type, func.count(FollowupHistory.id))
        .filter(FollowupHistory.sent_at >= since)
        .group_by(FollowupHistory.followup_type)
        .all()
    )
    return {followup_type: count for followup_type, count in rows}
