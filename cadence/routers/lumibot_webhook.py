from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from cadence.database import get_db
from cadence.dependencies import get_message_queue, get_sequence_queue
from cadence.logging_config import get_logger
from cadence.models import Workspace
from cadence.models.enums import ChannelType
from cadence.schemas.webhook import InboundMessage, LumibotWebhookPayload, WebhookResponse
from cadence.services.ingestion_service import IngestionError, ingest_inbound_message
from cadence.services.queue_service import JobQueue

logger = get_logger("lumibot_webhook")

router = APIRouter(prefix="/webhooks/lumibot", tags=["webhooks"])


def is_customer_message(payload: LumibotWebhookPayload) -> bool:
    """Only incoming message_created events sent by a contact are ingested."""
    if payload.event != "message_created" or payload.message_type != "incoming":
        return False
    sender_type = payload.sender_type or (payload.sender.type if payload.sender else None)
    return (sender_type or "").lower() == "contact"


def to_inbound_message(payload: LumibotWebhookPayload) -> InboundMessage:
    sender = payload.sender
    phone_number = sender.phone_number if sender else None
    conversation_id = payload.conversation.id if payload.conversation else None
    message_id = payload.source_id or (str(payload.id) if payload.id is not None else None)

    missing = [
        name
        for name, value in (
            ("sender.phone_number", phone_number),
            ("conversation.id", conversation_id),
            ("content", payload.content),
            ("id", message_id),
        )
        if value in (None, "")
    ]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing fields: {', '.join(missing)}")

    return InboundMessage(
        phone_number=phone_number,
        display_name=sender.name,
        content=payload.content,
        channel_message_id=message_id,
        channel_conversation_id=str(conversation_id),
    )


@router.post("", response_model=WebhookResponse)
async def handle_lumibot_webhook(
    payload: LumibotWebhookPayload,
    workspace_id: Optional[UUID] = Query(default=None, alias="workspaceId"),
    db: Session = Depends(get_db),
    message_queue: JobQueue = Depends(get_message_queue),
    sequence_queue: JobQueue = Depends(get_sequence_queue),
):
    if workspace_id is None:
        raise HTTPException(status_code=400, detail="workspaceId is required")

    workspace = db.get(Workspace, workspace_id)
    if not workspace:
        raise HTTPException(status_code=404, detail=f"Workspace {workspace_id} not found")

    if not is_customer_message(payload):
        logger.info(
            "Lumibot event ignored",
            extra={
                "context": {
                    "workspace_id": str(workspace_id),
                    "event": payload.event,
                    "message_type": payload.message_type,
                }
            },
        )
        return WebhookResponse(success=True, message="ignored")

    inbound = to_inbound_message(payload)
    try:
        return await ingest_inbound_message(
            db,
            workspace=workspace,
            channel=ChannelType.LUMIBOT,
            inbound=inbound,
            message_queue=message_queue,
            sequence_queue=sequence_queue,
        )
    except IngestionError as e:
        raise HTTPException(status_code=500, detail="Failed to store message") from e
