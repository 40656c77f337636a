from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WebhookResponse(BaseModel):
    success: bool
    message: str
    conversation_id: Optional[UUID] = None
    message_id: Optional[UUID] = None


# --- WhatsApp Cloud API ---------------------------------------------------


class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppMedia(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class WhatsAppInboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    from_: str = Field(validation_alias=AliasChoices("from", "from_"))
    id: str
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[WhatsAppText] = None
    image: Optional[WhatsAppMedia] = None
    audio: Optional[WhatsAppMedia] = None
    video: Optional[WhatsAppMedia] = None
    document: Optional[WhatsAppMedia] = None


class WhatsAppProfile(BaseModel):
    name: Optional[str] = None


class WhatsAppContact(BaseModel):
    wa_id: Optional[str] = None
    profile: Optional[WhatsAppProfile] = None


class WhatsAppStatusError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None


class WhatsAppStatus(BaseModel):
    id: str
    status: str
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    errors: list[WhatsAppStatusError] = Field(default_factory=list)


class WhatsAppChangeValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    contacts: list[WhatsAppContact] = Field(default_factory=list)
    messages: list[WhatsAppInboundMessage] = Field(default_factory=list)
    statuses: list[WhatsAppStatus] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    field: str
    value: WhatsAppChangeValue


class WhatsAppEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[WhatsAppEntry] = Field(default_factory=list)


# --- Lumibot (Chatwoot) ---------------------------------------------------


class LumibotSender(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Any] = None
    name: Optional[str] = None
    phone_number: Optional[str] = None
    type: Optional[str] = None


class LumibotConversation(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Any] = None
    channel: Optional[str] = None


class LumibotWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    message_type: Optional[str] = None
    sender_type: Optional[str] = None
    id: Optional[Any] = None
    source_id: Optional[str] = None
    content: Optional[str] = None
    created_at: Optional[Any] = None
    sender: Optional[LumibotSender] = None
    conversation: Optional[LumibotConversation] = None


# --- Normalized inbound event ---------------------------------------------


class InboundMessage(BaseModel):
    """Channel-independent view of one inbound customer message."""

    phone_number: str
    display_name: Optional[str] = None
    content: str
    channel_message_id: Optional[str] = None
    channel_conversation_id: Optional[str] = None
    provider_timestamp: Optional[int] = None  # milliseconds
    message_type: str = "text"
    media: Optional[dict[str, Any]] = None
