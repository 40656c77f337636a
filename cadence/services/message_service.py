import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from cadence.models import Conversation, Message
from cadence.models.enums import MessageStatus, SenderType

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def save_message(
    db: Session,
    conversation_id: UUID,
    sender_type: SenderType,
    content: str,
    *,
    status: MessageStatus = MessageStatus.PENDING,
    channel_message_id: Optional[str] = None,
    message_metadata: Optional[dict] = None,
    timestamp: Optional[datetime] = None,
) -> Message:
    """Save message to database."""
    message = Message(
        conversation_id=conversation_id,
        sender_type=sender_type.value,
        content=content,
        status=status.value,
        channel_message_id=channel_message_id,
        message_metadata=message_metadata or {},
        timestamp=timestamp or datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def save_inbound_message(
    db: Session,
    conversation_id: UUID,
    content: str,
    *,
    channel_message_id: Optional[str],
    message_metadata: Optional[dict] = None,
    timestamp: Optional[datetime] = None,
) -> Optional[Message]:
    """Persist a CLIENT message that already arrived.

    Returns None when the channel id was stored before for this conversation
    (webhook re-delivery).
    """
    message_id = uuid.uuid4()
    stmt = (
        insert(Message)
        .values(
            id=message_id,
            conversation_id=conversation_id,
            sender_type=SenderType.CLIENT.value,
            content=content,
            status=MessageStatus.SENT.value,
            channel_message_id=channel_message_id,
            message_metadata=message_metadata or {},
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["conversation_id", "channel_message_id"])
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        return None
    return db.get(Message, message_id)


def apply_send_result(message: Message, send_result) -> Message:
    """Copy a SendResult onto the outbound message."""
    if send_result.success:
        message.status = MessageStatus.SENT.value
        message.channel_message_id = send_result.provider_message_id
        message.error_message = None
    else:
        message.status = MessageStatus.FAILED.value
        message.error_message = send_result.error
    return message


def update_status_by_channel_id(
    db: Session,
    workspace_id: UUID,
    channel_message_id: str,
    status: MessageStatus,
    error_message: Optional[str] = None,
) -> Optional[Message]:
    message = (
        db.query(Message)
        .join(Conversation, Conversation.id == Message.conversation_id)
        .filter(Conversation.workspace_id == workspace_id, Message.channel_message_id == channel_message_id)
        .first()
    )
    if not message:
        return None
    message.status = status.value
    if error_message:
        message.error_message = error_message
    db.flush()
    return message


def get_last_ai_timestamp(db: Session, conversation_id: UUID) -> datetime:
    last_ai = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.sender_type == SenderType.AI.value)
        .order_by(Message.timestamp.desc(), Message.created_at.desc())
        .first()
    )
    return last_ai.timestamp if last_ai else EPOCH


def get_last_client_timestamp(db: Session, conversation_id: UUID) -> Optional[datetime]:
    last_client = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.sender_type == SenderType.CLIENT.value)
        .order_by(Message.timestamp.desc())
        .first()
    )
    return last_client.timestamp if last_client else None


def get_pending_client_batch(db: Session, conversation_id: UUID, since: datetime) -> list[Message]:
    """CLIENT messages newer than `since`, oldest first."""
    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.sender_type == SenderType.CLIENT.value,
            Message.timestamp > since,
        )
        .order_by(Message.timestamp.asc(), Message.created_at.asc())
        .all()
    )


def get_recent_history(db: Session, conversation_id: UUID, limit: int) -> list[Message]:
    """Last `limit` messages, oldest first."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.desc(), Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def to_chat_history(messages: list[Message]) -> list[dict]:
    history = []
    for message in messages:
        role = "user" if message.sender_type == SenderType.CLIENT.value else "assistant"
        history.append({"role": role, "content": message.content})
    return history
