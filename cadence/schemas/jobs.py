from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class ProcessMessageJob(BaseModel):
    """Payload of a message-processing job."""

    model_config = ConfigDict(populate_by_name=True)

    conversation_id: UUID = Field(validation_alias=AliasChoices("conversationId", "conversation_id"), serialization_alias="conversationId")
    client_id: UUID = Field(validation_alias=AliasChoices("clientId", "client_id"), serialization_alias="clientId")
    new_message_id: UUID = Field(validation_alias=AliasChoices("newMessageId", "new_message_id"), serialization_alias="newMessageId")
    workspace_id: UUID = Field(validation_alias=AliasChoices("workspaceId", "workspace_id"), serialization_alias="workspaceId")
    received_at: datetime = Field(validation_alias=AliasChoices("receivedAt", "received_at"), serialization_alias="receivedAt")

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SequenceStepJob(BaseModel):
    """Payload of a sequence-steps job; exactly one of follow_up_id / conversation_id is set."""

    model_config = ConfigDict(populate_by_name=True)

    follow_up_id: Optional[UUID] = Field(
        default=None, validation_alias=AliasChoices("followUpId", "follow_up_id"), serialization_alias="followUpId"
    )
    conversation_id: Optional[UUID] = Field(
        default=None,
        validation_alias=AliasChoices("conversationId", "conversation_id"),
        serialization_alias="conversationId",
    )
    rule_id: UUID = Field(validation_alias=AliasChoices("ruleId", "rule_id"), serialization_alias="ruleId")
    workspace_id: UUID = Field(validation_alias=AliasChoices("workspaceId", "workspace_id"), serialization_alias="workspaceId")

    @model_validator(mode="after")
    def _check_key(self):
        if (self.follow_up_id is None) == (self.conversation_id is None):
            raise ValueError("exactly one of followUpId or conversationId is required")
        return self

    @property
    def is_abandoned_cart(self) -> bool:
        return self.conversation_id is not None

    @property
    def job_id(self) -> str:
        if self.is_abandoned_cart:
            return f"acart_{self.conversation_id}_rule_{self.rule_id}"
        return f"seq_{self.follow_up_id}_step_{self.rule_id}"

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
