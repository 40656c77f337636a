import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cadence.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "client_id", "channel", name="uq_conversations_workspace_client_channel"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False)
    channel = Column(Text, nullable=False)  # WHATSAPP_CLOUDAPI, LUMIBOT
    channel_conversation_id = Column(Text)  # provider thread id (Lumibot conversation)
    status = Column(Text, nullable=False, default="ACTIVE")  # ACTIVE, CLOSED
    is_ai_active = Column(Boolean, nullable=False, default=True)
    last_message_at = Column(TIMESTAMP(timezone=True))
    conversation_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    client = relationship("Client", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
