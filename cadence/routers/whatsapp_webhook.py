import hashlib
import hmac
import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from cadence.database import get_db
from cadence.dependencies import get_message_queue, get_sequence_queue
from cadence.logging_config import get_logger
from cadence.models import Workspace
from cadence.models.enums import ChannelType
from cadence.schemas.webhook import (
    InboundMessage,
    WebhookResponse,
    WhatsAppChangeValue,
    WhatsAppInboundMessage,
    WhatsAppWebhookPayload,
)
from cadence.services.ingestion_service import IngestionError, apply_delivery_status, ingest_inbound_message
from cadence.services.queue_service import JobQueue

logger = get_logger("whatsapp_webhook")

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

MEDIA_TYPES = ("image", "audio", "video", "document")


def _get_workspace(db: Session, route_token: str) -> Workspace:
    workspace = db.query(Workspace).filter(Workspace.whatsapp_webhook_route_token == route_token).first()
    if not workspace:
        raise HTTPException(status_code=404, detail="Unknown webhook route")
    return workspace


def verify_signature(app_secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Check X-Hub-Signature-256 (sha256=<hex hmac of the raw body>)."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len("sha256="):])


def to_inbound_message(message: WhatsAppInboundMessage, value: WhatsAppChangeValue) -> Optional[InboundMessage]:
    """Normalize one Cloud API message; None for types we cannot represent as text."""
    media = None
    if message.type == "text" and message.text:
        content = message.text.body
    elif message.type in MEDIA_TYPES:
        attachment = getattr(message, message.type)
        content = f"[{message.type}]"
        if attachment is not None:
            media = attachment.model_dump(exclude_none=True)
            if attachment.caption:
                content = f"{content} {attachment.caption}"
    else:
        return None

    if not content.strip():
        return None

    display_name = None
    for contact in value.contacts:
        if contact.wa_id == message.from_ or len(value.contacts) == 1:
            display_name = contact.profile.name if contact.profile else None
            break

    provider_timestamp = None
    if message.timestamp and message.timestamp.isdigit():
        provider_timestamp = int(message.timestamp) * 1000

    return InboundMessage(
        phone_number=message.from_,
        display_name=display_name,
        content=content,
        channel_message_id=message.id,
        provider_timestamp=provider_timestamp,
        message_type=message.type,
        media=media,
    )


@router.get("/{route_token}")
def verify_webhook(
    route_token: str,
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    """Meta subscription handshake."""
    workspace = _get_workspace(db, route_token)
    if (
        hub_mode == "subscribe"
        and workspace.whatsapp_webhook_verify_token
        and hub_verify_token == workspace.whatsapp_webhook_verify_token
    ):
        return PlainTextResponse(hub_challenge or "")
    logger.warning("Webhook verification rejected", extra={"context": {"workspace_id": str(workspace.id)}})
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/{route_token}", response_model=WebhookResponse)
async def handle_whatsapp_webhook(
    route_token: str,
    request: Request,
    db: Session = Depends(get_db),
    message_queue: JobQueue = Depends(get_message_queue),
    sequence_queue: JobQueue = Depends(get_sequence_queue),
):
    workspace = _get_workspace(db, route_token)
    body = await request.body()

    if workspace.whatsapp_app_secret:
        signature = request.headers.get("X-Hub-Signature-256")
        if not verify_signature(workspace.whatsapp_app_secret, body, signature):
            logger.warning("Invalid webhook signature", extra={"context": {"workspace_id": str(workspace.id)}})
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = WhatsAppWebhookPayload.model_validate(json.loads(body or b"{}"))
    except (json.JSONDecodeError, ValidationError) as e:
        raise HTTPException(status_code=400, detail="Invalid payload") from e

    accepted = 0
    last_response: Optional[WebhookResponse] = None
    for entry in payload.entry:
        for change in entry.changes:
            if change.field != "messages":
                continue
            value = change.value

            for status_update in value.statuses:
                error_message = None
                if status_update.errors:
                    first = status_update.errors[0]
                    error_message = first.message or first.title
                await apply_delivery_status(
                    db,
                    workspace=workspace,
                    channel_message_id=status_update.id,
                    provider_status=status_update.status,
                    error_message=error_message,
                )

            for message in value.messages:
                inbound = to_inbound_message(message, value)
                if inbound is None:
                    logger.info(
                        "Unsupported WhatsApp message type ignored",
                        extra={"context": {"workspace_id": str(workspace.id), "type": message.type}},
                    )
                    continue
                try:
                    last_response = await ingest_inbound_message(
                        db,
                        workspace=workspace,
                        channel=ChannelType.WHATSAPP_CLOUD,
                        inbound=inbound,
                        message_queue=message_queue,
                        sequence_queue=sequence_queue,
                    )
                except IngestionError as e:
                    raise HTTPException(status_code=500, detail="Failed to store message") from e
                accepted += 1

    if accepted == 1 and last_response is not None:
        return last_response
    return WebhookResponse(success=True, message=f"processed {accepted} message(s)" if accepted else "ok")
