from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Conversation, FollowupHistory, FollowupQueueItem
from app.services.state_machine import ACTIVE_STATUSES, FollowupStatus
from app.services.tracking_service import get_tracking_stats

logger = get_logger("health_service")


def _active_filter():
    return FollowupQueueItem.status.in_([s.value for s in ACTIVE_STATUSES])


def check_and_heal_followups(db: Session, *, max_attempts: int = settings.followup_max_attempts) -> dict:
    """Check follow-up queue invariants and repair violations."""
    healed = []
    now = datetime.now(timezone.utc)

    # Invariant 1: one active item per key. Keep the oldest.
    duplicated_keys = (
        db.query(FollowupQueueItem.conversation_key)
        .filter(_active_filter())
        .group_by(FollowupQueueItem.conversation_key)
        .having(func.count(FollowupQueueItem.id) > 1)
        .all()
    )
    for (key,) in duplicated_keys:
        items = (
            db.query(FollowupQueueItem)
            .filter(FollowupQueueItem.conversation_key == key, _active_filter())
            .order_by(FollowupQueueItem.created_at.asc())
            .all()
        )
        for item in items[1:]:
            item.status = FollowupStatus.COMPLETED.value
            item.analysis_result = "healed:duplicate_active_item"
            item.updated_at = now
            healed.append({"item_id": str(item.id), "conversation_key": key, "issue": "duplicate_active_item", "action": "completed"})
            logger.warning(f"Healed duplicate follow-up item {item.id} for {key}")

    # Invariant 2: send items carry a generated message.
    empty_sends = (
        db.query(FollowupQueueItem)
        .filter(
            FollowupQueueItem.status == FollowupStatus.SCHEDULED_FOR_SEND.value,
            (FollowupQueueItem.message == None) | (FollowupQueueItem.message == ""),  # noqa: E711
        )
        .all()
    )
    for item in empty_sends:
        item.status = FollowupStatus.FAILED.value
        item.last_error = "scheduled_for_send without message"
        item.updated_at = now
        healed.append({"item_id": str(item.id), "conversation_key": item.conversation_key, "issue": "send_without_message", "action": "failed"})
        logger.warning(f"Healed follow-up item {item.id}: send without message")

    # Invariant 3: active items stay under the attempt limit.
    exhausted = (
        db.query(FollowupQueueItem)
        .filter(_active_filter(), FollowupQueueItem.attempts >= max_attempts)
        .all()
    )
    for item in exhausted:
        item.status = FollowupStatus.FAILED.value
        item.updated_at = now
        healed.append({"item_id": str(item.id), "conversation_key": item.conversation_key, "issue": "attempts_exhausted", "action": "failed"})
        logger.warning(f"Healed follow-up item {item.id}: {item.attempts} attempts")

    db.commit()

    return {
        "healed_count": len(healed),
        "details": healed,
        "checked_at": now.isoformat(),
    }


def get_system_health(db: Session) -> dict:
    """Store counts for the health endpoint."""
    conversations = db.query(Conversation).count()
    queue = dict(
        db.query(FollowupQueueItem.status, func.count(FollowupQueueItem.id)).group_by(FollowupQueueItem.status).all()
    )
    history_records = db.query(FollowupHistory).count()

    return {
        "conversations": conversations,
        "followup_queue": queue,
        "followup_history": history_records,
        "tracking": get_tracking_stats(db),
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
