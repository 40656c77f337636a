"""Debounce & batch coordinator for inbound messages.

Every inbound message enqueues one job. After a short buffer each job
recomputes the pending batch (CLIENT messages newer than the last AI reply)
and only the job whose message is last in that batch goes on to generate
and send a reply. The others report skipped.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from cadence.config import settings
from cadence.logging_config import get_logger
from cadence.models import Client, Conversation, Message, Workspace
from cadence.models.enums import MessageStatus, SenderType
from cadence.schemas.jobs import ProcessMessageJob
from cadence.services.ai_service import (
    SIGNAL_HUMAN_TRANSFER,
    SIGNAL_MISSING_DATA,
    AIResponseGenerator,
    ReplyText,
    SystemContext,
    ToolSignal,
    get_ai_generator,
)
from cadence.services.channels import ChannelAdapter, send_to_conversation
from cadence.services.conversation_service import (
    EntityNotFoundError,
    get_conversation_metadata,
    set_ai_active,
    set_conversation_metadata,
    touch_conversation,
)
from cadence.services.message_service import (
    apply_send_result,
    get_last_ai_timestamp,
    get_pending_client_batch,
    get_recent_history,
    save_message,
    to_chat_history,
)
from cadence.services.notification_service import notify_message_status, notify_new_message
from cadence.services.result import Result
from cadence.services.stage_service import load_active_stages

logger = get_logger("message_processor")

MSG_MISSING_DATA = "To continue, could you please share: {fields}?"

SKIP_AI_DISABLED = "ai_disabled"
SKIP_EMPTY_BATCH = "empty_batch"
SKIP_NOT_LATEST = "not_latest"
SKIP_NO_REPLY = "no_reply"


def is_batch_owner(batch: list[Message], new_message_id) -> bool:
    """Only the job for the newest pending message owns the batch."""
    if not batch:
        return False
    return str(batch[-1].id) == str(new_message_id)


def build_missing_data_question(fields: list[str]) -> str:
    labels = [name.replace("_", " ") for name in fields]
    return MSG_MISSING_DATA.format(fields=", ".join(labels))


def _reply_from_result(db: Session, conversation: Conversation, result) -> str:
    """Apply tool-signal side effects to the conversation and return user-facing text (may be empty)."""
    if isinstance(result, ReplyText):
        return result.text

    signal: ToolSignal = result
    if signal.kind == SIGNAL_HUMAN_TRANSFER:
        set_ai_active(db, conversation, False)
        logger.info("Conversation handed to human", extra={"context": {"conversation_id": str(conversation.id)}})
        return ""

    metadata = get_conversation_metadata(conversation)
    if signal.stage_name:
        metadata.enter_stage(signal.stage_name)
    metadata.collect(signal.collected_data)
    set_conversation_metadata(conversation, metadata)

    if signal.kind == SIGNAL_MISSING_DATA:
        return build_missing_data_question(signal.missing_fields)
    return signal.text


async def deliver_ai_message(
    db: Session,
    *,
    workspace: Workspace,
    conversation: Conversation,
    client: Client,
    content: str,
    message_metadata: Optional[dict] = None,
    adapter: Optional[ChannelAdapter] = None,
) -> Message:
    """Persist an AI message as PENDING, send it, and record the delivery outcome.

    A send failure is stored on the message (FAILED + error) and never raised.
    """
    message = save_message(
        db,
        conversation.id,
        SenderType.AI,
        content,
        status=MessageStatus.PENDING,
        message_metadata=message_metadata,
    )
    touch_conversation(db, conversation)
    db.commit()
    await notify_new_message(message, workspace_id=workspace.id)

    send_result = await asyncio.to_thread(send_to_conversation, workspace, conversation, client, content, adapter)
    apply_send_result(message, send_result)
    db.commit()
    if not send_result.success:
        logger.warning(
            "AI message delivery failed",
            extra={
                "context": {
                    "message_id": str(message.id),
                    "conversation_id": str(conversation.id),
                    "error": send_result.error,
                    "error_code": send_result.error_code,
                }
            },
        )
    await notify_message_status(message, workspace_id=workspace.id)
    return message


async def process_message_job(
    db: Session,
    job: ProcessMessageJob,
    *,
    generator: Optional[AIResponseGenerator] = None,
    adapter: Optional[ChannelAdapter] = None,
    sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    buffer_seconds: Optional[float] = None,
    history_limit: Optional[int] = None,
) -> Result[Message]:
    """Handle one message-processing job.

    Raises for vanished entities and AI failures so the queue retries.
    """
    buffer_seconds = settings.message_buffer_seconds if buffer_seconds is None else buffer_seconds
    history_limit = history_limit or settings.history_limit
    job_context = {"conversation_id": str(job.conversation_id), "new_message_id": str(job.new_message_id)}

    await sleep_func(buffer_seconds)

    conversation = db.get(Conversation, job.conversation_id)
    if not conversation:
        raise EntityNotFoundError("Conversation", job.conversation_id)
    if not conversation.is_ai_active:
        logger.info("Skipping job: AI disabled", extra={"context": job_context})
        return Result.skipped(SKIP_AI_DISABLED)

    since = get_last_ai_timestamp(db, conversation.id)
    batch = get_pending_client_batch(db, conversation.id, since)
    if not batch:
        logger.info("Skipping job: empty batch", extra={"context": job_context})
        return Result.skipped(SKIP_EMPTY_BATCH)
    if not is_batch_owner(batch, job.new_message_id):
        logger.info(
            "Skipping job: not the latest message",
            extra={"context": {**job_context, "latest_message_id": str(batch[-1].id), "batch_size": len(batch)}},
        )
        return Result.skipped(SKIP_NOT_LATEST)

    workspace = db.get(Workspace, conversation.workspace_id)
    if not workspace:
        raise EntityNotFoundError("Workspace", conversation.workspace_id)
    client = db.get(Client, conversation.client_id)
    if not client:
        raise EntityNotFoundError("Client", conversation.client_id)

    history = to_chat_history(get_recent_history(db, conversation.id, history_limit))
    metadata = get_conversation_metadata(conversation)
    context = SystemContext(
        system_prompt=workspace.ai_default_system_prompt or "",
        client_name=client.name or "",
        ai_name=workspace.ai_name,
        model=workspace.ai_model_preference,
        conversation_id=str(conversation.id),
        collected_data=dict(metadata.collected_data),
    )
    stages = load_active_stages(db, workspace.id)

    generator = generator or get_ai_generator()
    result = await asyncio.to_thread(generator.generate, history, context, stages)
    reply = _reply_from_result(db, conversation, result).strip()
    db.commit()

    if not reply:
        logger.info("No user-facing reply generated", extra={"context": {**job_context, "batch_size": len(batch)}})
        return Result.skipped(SKIP_NO_REPLY)

    message = await deliver_ai_message(
        db,
        workspace=workspace,
        conversation=conversation,
        client=client,
        content=reply,
        message_metadata={"batch_size": len(batch), "batch_message_ids": [str(m.id) for m in batch]},
        adapter=adapter,
    )
    logger.info(
        "Reply processed",
        extra={"context": {**job_context, "message_id": str(message.id), "status": message.status}},
    )
    return Result.success(message)


async def handle_message_job(db: Session, payload: dict) -> Result[Message]:
    """Queue entry point for message-processing jobs."""
    return await process_message_job(db, ProcessMessageJob.model_validate(payload))
