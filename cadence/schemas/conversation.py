from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationMetadata(BaseModel):
    """Stage context stored on a conversation. Unknown keys are kept as-is."""

    model_config = ConfigDict(extra="allow")

    current_stage: Optional[str] = Field(default=None)
    collected_data: dict[str, str] = Field(default_factory=dict)
    stage_history: list[str] = Field(default_factory=list)

    def enter_stage(self, stage_name: str) -> None:
        if self.current_stage != stage_name:
            self.current_stage = stage_name
            self.stage_history.append(stage_name)

    def collect(self, fields: dict) -> None:
        for key, value in (fields or {}).items():
            if value is None or value == "":
                continue
            self.collected_data[str(key)] = str(value)
