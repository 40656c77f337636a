"""Channel adapter layer: one send() contract, one implementation per backend."""

from typing import Optional

from cadence.config import settings
from cadence.models.enums import ChannelType
from cadence.services.channels.base import (
    ERROR_CONFIG,
    ERROR_NETWORK,
    ERROR_PROVIDER,
    ChannelAdapter,
    ChannelCredentials,
    SendResult,
)
from cadence.services.channels.lumibot import LumibotAdapter
from cadence.services.channels.whatsapp_cloud import WhatsAppCloudAdapter

__all__ = [
    "ChannelAdapter",
    "ChannelCredentials",
    "SendResult",
    "WhatsAppCloudAdapter",
    "LumibotAdapter",
    "ERROR_CONFIG",
    "ERROR_NETWORK",
    "ERROR_PROVIDER",
    "get_adapter",
    "credentials_for",
    "recipient_for",
    "send_to_conversation",
]


def get_adapter(channel: str) -> Optional[ChannelAdapter]:
    if channel == ChannelType.WHATSAPP_CLOUD.value:
        return WhatsAppCloudAdapter(settings.whatsapp_graph_api_url, settings.channel_timeout_seconds)
    if channel == ChannelType.LUMIBOT.value:
        return LumibotAdapter(settings.lumibot_api_url, settings.channel_timeout_seconds)
    return None


def credentials_for(workspace, channel: str) -> ChannelCredentials:
    if channel == ChannelType.WHATSAPP_CLOUD.value:
        return ChannelCredentials(
            access_token=workspace.whatsapp_access_token,
            phone_number_id=workspace.whatsapp_phone_number_id,
        )
    if channel == ChannelType.LUMIBOT.value:
        return ChannelCredentials(
            access_token=workspace.lumibot_api_token,
            account_id=workspace.lumibot_account_id,
        )
    return ChannelCredentials()


def recipient_for(conversation, client) -> Optional[str]:
    if conversation.channel == ChannelType.LUMIBOT.value:
        return conversation.channel_conversation_id
    return client.phone_number


def send_to_conversation(workspace, conversation, client, content: str, adapter: Optional[ChannelAdapter] = None) -> SendResult:
    """Pick the backend from the conversation's stored channel and send."""
    adapter = adapter or get_adapter(conversation.channel)
    if adapter is None:
        return SendResult.failed(f"Unsupported channel: {conversation.channel}", ERROR_CONFIG)
    return adapter.send(
        credentials_for(workspace, conversation.channel),
        recipient_for(conversation, client),
        content,
    )
