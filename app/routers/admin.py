"""Admin endpoints for follow-up settings, runtime configuration and health."""

import os
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import FollowupQueueItem
from app.runtime import Runtime, get_runtime
from app.schemas.followup import FollowupQueueView, FollowupSettingsUpdate, FollowupStats
from app.services import followup_service
from app.services.config_service import DEFAULTS
from app.services.health_service import check_and_heal_followups, get_system_health

router = APIRouter(prefix="/admin", tags=["admin"])


class ConfigUpdate(BaseModel):
    value: str


def _require_admin_token(provided: Optional[str]) -> None:
    expected = os.environ.get("ADMIN_TOKEN")
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


# === FOLLOW-UP ENDPOINTS ===


@router.get("/followups/settings")
async def get_followup_settings(
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    settings = followup_service.get_settings(db)
    db.commit()
    return {
        "enabled": settings.enabled,
        "generate_prompt": settings.generate_prompt,
        "no_generate_prompt": settings.no_generate_prompt,
        "inactivity_hours": settings.inactivity_hours,
        "delay_hours": settings.delay_hours,
        "max_followups_per_conversation": settings.max_followups_per_conversation,
        "followup_interval_hours": settings.followup_interval_hours,
    }


@router.put("/followups/settings")
async def update_followup_settings(
    data: FollowupSettingsUpdate,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    followup_service.update_settings(db, data)
    db.commit()
    return {"success": True, "updated": data.model_dump(exclude_none=True)}


@router.get("/followups/queue", response_model=List[FollowupQueueView])
async def list_followup_queue(
    status: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    query = db.query(FollowupQueueItem)
    if status:
        query = query.filter(FollowupQueueItem.status == status)
    return query.order_by(FollowupQueueItem.scheduled_for.desc()).limit(min(limit, 500)).all()


@router.get("/followups/stats", response_model=FollowupStats)
async def followup_stats(
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    return followup_service.get_stats(db)


@router.post("/followups/process")
async def process_followups(
    runtime: Runtime = Depends(get_runtime),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Run one follow-up sweep now."""
    _require_admin_token(x_admin_token)
    return await runtime.scheduler.process_queue()


# === RUNTIME CONFIG ENDPOINTS ===


@router.get("/config")
async def get_config(
    runtime: Runtime = Depends(get_runtime),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    return {key: runtime.config.get_str(key) for key in DEFAULTS}


@router.put("/config/{key}")
async def update_config(
    key: str,
    data: ConfigUpdate,
    runtime: Runtime = Depends(get_runtime),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    if key not in DEFAULTS:
        raise HTTPException(status_code=404, detail=f"Unknown config key: {key}")
    runtime.config.set_value(key, data.value)
    return {"success": True, "key": key, "value": runtime.config.get_str(key)}


# === HEALTH ENDPOINTS ===


@router.post("/heal")
async def heal_system(
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Check and heal follow-up queue invariant violations."""
    _require_admin_token(x_admin_token)
    return check_and_heal_followups(db)


@router.get("/health")
async def system_health(db: Session = Depends(get_db)):
    return get_system_health(db)
