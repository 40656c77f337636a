import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cadence.database import Base


class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)

    ai_default_system_prompt = Column(Text)
    ai_model_preference = Column(Text)
    ai_name = Column(Text)

    # WhatsApp Cloud API
    whatsapp_phone_number_id = Column(Text)
    whatsapp_access_token = Column(Text)
    whatsapp_app_secret = Column(Text)
    whatsapp_webhook_verify_token = Column(Text)
    whatsapp_webhook_route_token = Column(Text, unique=True)

    # Lumibot (Chatwoot)
    lumibot_account_id = Column(Text)
    lumibot_api_token = Column(Text)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    clients = relationship("Client", back_populates="workspace")
    follow_up_rules = relationship(
        "FollowUpRule", back_populates="workspace", order_by="FollowUpRule.delay_milliseconds"
    )
    abandoned_cart_rules = relationship(
        "AbandonedCartRule", back_populates="workspace", order_by="AbandonedCartRule.sequence_order"
    )
    ai_stages = relationship("AIStage", back_populates="workspace")
