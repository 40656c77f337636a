import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship

from cadence.database import Base


class AIStage(Base):
    __tablename__ = "ai_stages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    name = Column(Text, nullable=False)
    condition = Column(Text, nullable=False)
    final_response_instruction = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    data_to_collect = Column(JSONB, nullable=False, default=list)  # list of field names

    workspace = relationship("Workspace", back_populates="ai_stages")
    actions = relationship("AIStageAction", back_populates="stage", order_by="AIStageAction.order")


class AIStageAction(Base):
    __tablename__ = "ai_stage_actions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage_id = Column(UUID(as_uuid=True), ForeignKey("ai_stages.id"), nullable=False)
    type = Column(Text, nullable=False)  # API_CALL, SEND_MESSAGE
    config = Column(JSONB, nullable=False, default=dict)
    is_enabled = Column(Boolean, nullable=False, default=True)
    order = Column(Integer, nullable=False, default=0)

    stage = relationship("AIStage", back_populates="actions")
