"""Live-update fan-out over Redis pub/sub.

Storage is the source of truth; a publish that fails is logged and dropped.
"""

import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import redis.asyncio as redis_async

from cadence.config import settings
from cadence.logging_config import get_logger

logger = get_logger("notification_service")

EVENT_NEW_MESSAGE = "new_message"
EVENT_MESSAGE_STATUS_UPDATE = "message_status_update"
EVENT_CONVERSATION_UPDATED = "conversation_updated"
EVENT_CLIENT_CREATED = "client_created"

_redis_client = None
_redis_url = None


def _get_redis(redis_url: str):
    global _redis_client, _redis_url

    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=0.5,
            socket_timeout=0.5,
        )
    return _redis_client


def workspace_channel(workspace_id) -> str:
    return f"workspace-updates:{workspace_id}"


def conversation_channel(conversation_id) -> str:
    return f"chat-updates:{conversation_id}"


def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


async def publish_event(
    event_type: str,
    payload: dict,
    *,
    workspace_id,
    conversation_id=None,
    redis_client=None,
) -> bool:
    """Publish {type, payload} to the workspace channel and, when given, the conversation channel."""
    data = json.dumps({"type": event_type, "payload": payload}, default=_json_default, ensure_ascii=False)
    channels = [workspace_channel(workspace_id)]
    if conversation_id is not None:
        channels.append(conversation_channel(conversation_id))

    redis_client = redis_client or _get_redis(settings.redis_url)
    try:
        for channel in channels:
            await redis_client.publish(channel, data)
        return True
    except Exception as e:
        logger.warning(
            "Notification publish failed",
            extra={"context": {"event": event_type, "channels": channels, "error": str(e)}},
        )
        return False


def serialize_message(message) -> dict:
    return {
        "id": message.id,
        "conversationId": message.conversation_id,
        "senderKind": message.sender_type,
        "content": message.content,
        "status": message.status,
        "timestamp": message.timestamp,
        "channelMessageId": message.channel_message_id,
    }


async def notify_new_message(message, *, workspace_id, redis_client=None) -> bool:
    return await publish_event(
        EVENT_NEW_MESSAGE,
        serialize_message(message),
        workspace_id=workspace_id,
        conversation_id=message.conversation_id,
        redis_client=redis_client,
    )


async def notify_message_status(message, *, workspace_id, redis_client=None) -> bool:
    payload = {
        "id": message.id,
        "conversationId": message.conversation_id,
        "status": message.status,
        "providerMessageId": message.channel_message_id,
        "error": message.error_message,
    }
    return await publish_event(
        EVENT_MESSAGE_STATUS_UPDATE,
        payload,
        workspace_id=workspace_id,
        conversation_id=message.conversation_id,
        redis_client=redis_client,
    )


async def notify_conversation_updated(
    conversation,
    client,
    *,
    active_follow_up_id: Optional[UUID] = None,
    redis_client=None,
) -> bool:
    payload = {
        "id": conversation.id,
        "status": conversation.status,
        "channel": conversation.channel,
        "isAiActive": conversation.is_ai_active,
        "lastMessageAt": conversation.last_message_at,
        "client": {"id": client.id, "name": client.name, "phoneNumber": client.phone_number},
        "activeFollowUpId": active_follow_up_id,
    }
    return await publish_event(
        EVENT_CONVERSATION_UPDATED,
        payload,
        workspace_id=conversation.workspace_id,
        redis_client=redis_client,
    )


async def notify_client_created(client, *, redis_client=None) -> bool:
    payload = {"id": client.id, "name": client.name, "phoneNumber": client.phone_number, "channel": client.channel}
    return await publish_event(
        EVENT_CLIENT_CREATED,
        payload,
        workspace_id=client.workspace_id,
        redis_client=redis_client,
    )
