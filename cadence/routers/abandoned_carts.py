from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from cadence.database import get_db
from cadence.dependencies import get_sequence_queue
from cadence.logging_config import get_logger
from cadence.models import Workspace
from cadence.schemas.follow_up import AbandonedCartRequest, AbandonedCartResponse
from cadence.services.conversation_service import resolve_conversation
from cadence.services.notification_service import notify_client_created, notify_conversation_updated
from cadence.services.queue_service import JobQueue
from cadence.services.sequence_service import start_abandoned_cart_sequence

logger = get_logger("abandoned_carts")

router = APIRouter(prefix="/abandoned-carts", tags=["follow-ups"])


@router.post("", response_model=AbandonedCartResponse)
async def start_abandoned_cart(
    request: AbandonedCartRequest,
    db: Session = Depends(get_db),
    sequence_queue: JobQueue = Depends(get_sequence_queue),
):
    """Start cart-recovery messages for a client who left items behind."""
    workspace = db.get(Workspace, request.workspace_id)
    if not workspace:
        raise HTTPException(status_code=404, detail=f"Workspace {request.workspace_id} not found")

    try:
        resolved = resolve_conversation(db, workspace.id, request.phone_number, request.name, request.channel)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    result = start_abandoned_cart_sequence(
        db,
        sequence_queue,
        workspace_id=workspace.id,
        client_id=resolved.client.id,
        conversation_id=resolved.conversation.id,
        cart=request.cart,
    )
    db.commit()

    if resolved.client_created:
        await notify_client_created(resolved.client)

    if not result.ok:
        raise HTTPException(status_code=500, detail=result.error)

    follow_up = result.value
    if follow_up is not None:
        await notify_conversation_updated(resolved.conversation, resolved.client, active_follow_up_id=follow_up.id)
        return AbandonedCartResponse(
            success=True,
            message="started",
            conversation_id=resolved.conversation.id,
            follow_up_id=follow_up.id,
        )
    return AbandonedCartResponse(
        success=True,
        message=result.error_code or "skipped",
        conversation_id=resolved.conversation.id,
    )
