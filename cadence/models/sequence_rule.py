import uuid

from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cadence.database import Base


class FollowUpRule(Base):
    """Inactivity follow-up step, ordered by delay."""

    __tablename__ = "workspace_ai_follow_up_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    delay_milliseconds = Column(BigInteger, nullable=False)
    message_content = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    workspace = relationship("Workspace", back_populates="follow_up_rules")


class AbandonedCartRule(Base):
    """Cart recovery step, ordered by explicit position."""

    __tablename__ = "abandoned_cart_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    delay_milliseconds = Column(BigInteger, nullable=False)
    message_content = Column(Text, nullable=False)
    sequence_order = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    workspace = relationship("Workspace", back_populates="abandoned_cart_rules")
