from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, literal_column
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from cadence.logging_config import get_logger
from cadence.models import Client, Conversation
from cadence.models.enums import ChannelType, ConversationStatus
from cadence.schemas.conversation import ConversationMetadata

logger = get_logger("conversation_service")


class EntityNotFoundError(Exception):
    """A referenced row vanished between enqueue and processing."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


@dataclass
class ResolvedConversation:
    client: Client
    conversation: Conversation
    client_created: bool
    conversation_created: bool


def _normalize_phone(phone_number: str) -> str:
    return "".join(ch for ch in (phone_number or "") if ch.isdigit())


def upsert_client(
    db: Session,
    workspace_id: UUID,
    phone_number: str,
    display_name: Optional[str],
    channel: ChannelType,
    client_metadata: Optional[dict] = None,
) -> tuple[UUID, bool]:
    """Insert or refresh the client. Returns (client_id, created)."""
    now = datetime.now(timezone.utc)
    stmt = insert(Client).values(
        workspace_id=workspace_id,
        phone_number=phone_number,
        external_id=phone_number,
        name=display_name or None,
        channel=channel.value,
        client_metadata=client_metadata or {},
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["workspace_id", "phone_number", "channel"],
        set_={
            Client.name: func.coalesce(stmt.excluded["name"], Client.name),
            Client.client_metadata: Client.client_metadata.op("||")(stmt.excluded["metadata"]),
            Client.updated_at: now,
        },
    ).returning(Client.id, literal_column("(xmax = 0)").label("inserted"))
    row = db.execute(stmt).one()
    return row.id, bool(row.inserted)


def upsert_conversation(
    db: Session,
    workspace_id: UUID,
    client_id: UUID,
    channel: ChannelType,
    channel_conversation_id: Optional[str] = None,
) -> tuple[UUID, bool]:
    """Find-or-create the single conversation for (workspace, client, channel).

    An existing row is reopened: status goes back to ACTIVE and the activity
    timestamp is refreshed. Returns (conversation_id, created).
    """
    now = datetime.now(timezone.utc)
    stmt = insert(Conversation).values(
        workspace_id=workspace_id,
        client_id=client_id,
        channel=channel.value,
        channel_conversation_id=channel_conversation_id,
        status=ConversationStatus.ACTIVE.value,
        is_ai_active=True,
        last_message_at=now,
        conversation_metadata=ConversationMetadata().model_dump(),
        created_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["workspace_id", "client_id", "channel"],
        set_={
            Conversation.status: ConversationStatus.ACTIVE.value,
            Conversation.last_message_at: now,
            Conversation.channel_conversation_id: func.coalesce(
                stmt.excluded["channel_conversation_id"], Conversation.channel_conversation_id
            ),
        },
    ).returning(Conversation.id, literal_column("(xmax = 0)").label("inserted"))
    row = db.execute(stmt).one()
    return row.id, bool(row.inserted)


def resolve_conversation(
    db: Session,
    workspace_id: UUID,
    phone_number: str,
    display_name: Optional[str],
    channel: ChannelType,
    *,
    channel_conversation_id: Optional[str] = None,
) -> ResolvedConversation:
    """Upsert client and conversation; the created flags come from the same statements."""
    phone = _normalize_phone(phone_number)
    if not phone:
        raise ValueError("phone_number is required")

    client_id, client_created = upsert_client(db, workspace_id, phone, display_name, channel)
    conversation_id, conversation_created = upsert_conversation(
        db, workspace_id, client_id, channel, channel_conversation_id
    )

    client = db.get(Client, client_id, populate_existing=True)
    conversation = db.get(Conversation, conversation_id, populate_existing=True)

    logger.info(
        "Conversation resolved",
        extra={
            "context": {
                "workspace_id": str(workspace_id),
                "client_id": str(client_id),
                "conversation_id": str(conversation_id),
                "client_created": client_created,
                "conversation_created": conversation_created,
            }
        },
    )
    return ResolvedConversation(
        client=client,
        conversation=conversation,
        client_created=client_created,
        conversation_created=conversation_created,
    )


def get_conversation_metadata(conversation: Conversation) -> ConversationMetadata:
    return ConversationMetadata.model_validate(conversation.conversation_metadata or {})


def set_conversation_metadata(conversation: Conversation, metadata: ConversationMetadata) -> None:
    conversation.conversation_metadata = metadata.model_dump()


def set_ai_active(db: Session, conversation: Conversation, active: bool) -> None:
    conversation.is_ai_active = active
    db.flush()


def touch_conversation(db: Session, conversation: Conversation) -> None:
    conversation.last_message_at = datetime.now(timezone.utc)
    db.flush()
