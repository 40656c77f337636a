from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from cadence.logging_config import get_logger
from cadence.models import Workspace
from cadence.models.enums import ChannelType, MessageStatus
from cadence.schemas.jobs import ProcessMessageJob
from cadence.schemas.webhook import InboundMessage, WebhookResponse
from cadence.services.conversation_service import resolve_conversation
from cadence.services.message_service import save_inbound_message, update_status_by_channel_id
from cadence.services.notification_service import (
    notify_client_created,
    notify_conversation_updated,
    notify_message_status,
    notify_new_message,
)
from cadence.services.queue_service import JobQueue
from cadence.services.sequence_service import SKIP_ALREADY_RUNNING, start_follow_up_sequence

logger = get_logger("ingestion")

WHATSAPP_STATUS_MAP = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.SENT,
    "read": MessageStatus.SENT,
    "failed": MessageStatus.FAILED,
}


class IngestionError(Exception):
    """Inbound message could not be stored; the channel should retry."""


async def ingest_inbound_message(
    db: Session,
    *,
    workspace: Workspace,
    channel: ChannelType,
    inbound: InboundMessage,
    message_queue: JobQueue,
    sequence_queue: JobQueue,
) -> WebhookResponse:
    """Resolve, persist, notify, start the sequence for new threads, and enqueue processing.

    Raises IngestionError only before the message is durably stored.
    """
    received_at = datetime.now(timezone.utc)
    context = {
        "workspace_id": str(workspace.id),
        "channel": channel.value,
        "channel_message_id": inbound.channel_message_id,
    }

    try:
        resolved = resolve_conversation(
            db,
            workspace.id,
            inbound.phone_number,
            inbound.display_name,
            channel,
            channel_conversation_id=inbound.channel_conversation_id,
        )
        message_metadata = {"message_type": inbound.message_type}
        if inbound.provider_timestamp is not None:
            message_metadata["provider_timestamp"] = inbound.provider_timestamp
        if inbound.media:
            message_metadata["media"] = inbound.media
        message = save_inbound_message(
            db,
            resolved.conversation.id,
            inbound.content,
            channel_message_id=inbound.channel_message_id,
            message_metadata=message_metadata,
            timestamp=received_at,
        )
        if message is None:
            db.rollback()
            logger.info("Duplicate inbound message ignored", extra={"context": context})
            return WebhookResponse(success=True, message="duplicate")
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error("Failed to store inbound message", extra={"context": {**context, "error": str(e)}})
        raise IngestionError(str(e)) from e

    client = resolved.client
    conversation = resolved.conversation
    context.update({"conversation_id": str(conversation.id), "message_id": str(message.id)})

    await notify_new_message(message, workspace_id=workspace.id)
    if resolved.client_created:
        await notify_client_created(client)

    if resolved.conversation_created:
        active_follow_up_id = None
        try:
            started = start_follow_up_sequence(
                db,
                sequence_queue,
                workspace_id=workspace.id,
                client_id=client.id,
                conversation_id=conversation.id,
            )
            db.commit()
            follow_up = started.unwrap_or(None)
            if follow_up is not None:
                active_follow_up_id = follow_up.id
            elif started.error_code == SKIP_ALREADY_RUNNING:
                logger.warning(
                    "New conversation for a client with a running follow-up",
                    extra={"context": {**context, "client_id": str(client.id)}},
                )
            elif not started.ok:
                logger.error(
                    "Follow-up sequence not started",
                    extra={"context": {**context, "error": started.error, "code": started.error_code}},
                )
        except Exception as e:
            db.rollback()
            logger.error("Failed to start follow-up sequence", extra={"context": {**context, "error": str(e)}})
        await notify_conversation_updated(conversation, client, active_follow_up_id=active_follow_up_id)

    job = ProcessMessageJob(
        conversation_id=conversation.id,
        client_id=client.id,
        new_message_id=message.id,
        workspace_id=workspace.id,
        received_at=received_at,
    )
    try:
        message_queue.enqueue(db, job.to_payload(), job_id=f"msg_{message.id}")
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error("Failed to enqueue message processing", extra={"context": {**context, "error": str(e)}})

    logger.info("Inbound message accepted", extra={"context": context})
    return WebhookResponse(success=True, message="accepted", conversation_id=conversation.id, message_id=message.id)


async def apply_delivery_status(
    db: Session,
    *,
    workspace: Workspace,
    channel_message_id: str,
    provider_status: str,
    error_message: Optional[str] = None,
) -> bool:
    """Update an outbound message from a provider status callback."""
    status = WHATSAPP_STATUS_MAP.get((provider_status or "").lower())
    if status is None:
        return False
    message = update_status_by_channel_id(db, workspace.id, channel_message_id, status, error_message)
    if message is None:
        return False
    db.commit()
    await notify_message_status(message, workspace_id=workspace.id)
    return True
