from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from cadence.models.enums import ChannelType


class FollowUpResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: str
    sequence_kind: str
    current_sequence_step_order: int
    next_sequence_message_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CancelFollowUpRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AbandonedCartRequest(BaseModel):
    workspace_id: UUID
    phone_number: str = Field(min_length=5)
    name: Optional[str] = None
    channel: ChannelType = ChannelType.WHATSAPP_CLOUD
    cart: dict[str, Any] = Field(default_factory=dict)


class AbandonedCartResponse(BaseModel):
    success: bool
    message: str
    conversation_id: Optional[UUID] = None
    follow_up_id: Optional[UUID] = None
