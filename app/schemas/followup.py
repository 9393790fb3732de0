from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class FollowupSettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    generate_prompt: Optional[str] = Field(default=None, min_length=1)
    no_generate_prompt: Optional[str] = Field(default=None, min_length=1)
    inactivity_hours: Optional[int] = Field(default=None, ge=1)
    delay_hours: Optional[int] = Field(default=None, ge=0)
    max_followups_per_conversation: Optional[int] = Field(default=None, ge=0)
    followup_interval_hours: Optional[int] = Field(default=None, ge=1)


class FollowupQueueView(BaseModel):
    id: UUID
    conversation_key: str
    status: str
    scheduled_for: datetime
    attempts: int
    message: Optional[str] = None
    analysis_result: Optional[str] = None

    model_config = {"from_attributes": True}


class FollowupStats(BaseModel):
    queue: dict[str, int]
    history: dict[str, int]
    enabled: bool
