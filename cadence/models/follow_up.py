import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cadence.database import Base


class FollowUp(Base):
    __tablename__ = "follow_ups"
    __table_args__ = (
        # One running sequence per client and kind; terminal rows are kept for history.
        Index(
            "uq_follow_ups_running",
            "workspace_id",
            "client_id",
            "sequence_kind",
            unique=True,
            postgresql_where=text("status IN ('ACTIVE', 'PAUSED')"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"))
    sequence_kind = Column(Text, nullable=False, default="INACTIVITY")  # INACTIVITY, ABANDONED_CART
    status = Column(Text, nullable=False, default="ACTIVE")
    current_sequence_step_order = Column(Integer, nullable=False, default=0)
    next_sequence_message_at = Column(TIMESTAMP(timezone=True))
    started_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    last_step_sent_at = Column(TIMESTAMP(timezone=True))
    completed_at = Column(TIMESTAMP(timezone=True))
    cancellation_reason = Column(Text)
    follow_up_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    client = relationship("Client", back_populates="follow_ups")
