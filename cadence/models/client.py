import uuid

from sqlalchemy import Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cadence.database import Base


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (UniqueConstraint("workspace_id", "phone_number", "channel", name="uq_clients_workspace_phone_channel"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    external_id = Column(Text)
    phone_number = Column(Text, nullable=False)
    name = Column(Text)
    channel = Column(Text, nullable=False)
    client_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    workspace = relationship("Workspace", back_populates="clients")
    conversations = relationship("Conversation", back_populates="client")
    follow_ups = relationship("FollowUp", back_populates="client")
