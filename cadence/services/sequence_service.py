"""Timed follow-up sequences driven by self-rescheduling delayed jobs.

Two rule families share one algorithm: inactivity follow-ups (rules ordered
by delay, jobs keyed by follow-up id) and abandoned-cart recovery (rules
ordered by sequence position, jobs keyed by conversation id).

Cancellation is lazy. Nothing removes a queued job; convert/cancel/pause
only flip FollowUp.status, and a step that fires on a non-ACTIVE run exits
without sending.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from cadence.config import settings
from cadence.logging_config import get_logger
from cadence.models import AbandonedCartRule, Client, Conversation, FollowUp, FollowUpRule, Workspace
from cadence.models.enums import ConversationStatus, SequenceKind
from cadence.schemas.jobs import SequenceStepJob
from cadence.services import state_machine
from cadence.services.ai_service import AIResponseGenerator, get_ai_generator
from cadence.services.channels import ChannelAdapter, credentials_for, get_adapter
from cadence.services.conversation_service import EntityNotFoundError
from cadence.services.message_processor import deliver_ai_message
from cadence.services.message_service import get_last_client_timestamp
from cadence.services.queue_service import JobQueue
from cadence.services.result import Result
from cadence.services.state_machine import FollowUpStatus, InvalidTransitionError

logger = get_logger("sequence_service")

CLIENT_NAME_PLACEHOLDER = "[ClientName]"

SKIP_ALREADY_RUNNING = "already_running"
SKIP_NO_RULES = "no_rules"
SKIP_INVALID_DELAY = "invalid_delay"
SKIP_NOT_ACTIVE = "not_active"
SKIP_STALE_STEP = "stale_step"
SKIP_MISSING_CREDENTIALS = "missing_credentials"
SKIP_CLIENT_RESPONDED = "client_responded"

ERROR_SCHEDULE_FAILED = "schedule_failed"


@dataclass(frozen=True)
class RuleFamily:
    kind: SequenceKind
    rule_model: type
    order_by: tuple


INACTIVITY = RuleFamily(
    kind=SequenceKind.INACTIVITY,
    rule_model=FollowUpRule,
    order_by=(FollowUpRule.delay_milliseconds.asc(), FollowUpRule.created_at.asc()),
)
ABANDONED_CART = RuleFamily(
    kind=SequenceKind.ABANDONED_CART,
    rule_model=AbandonedCartRule,
    order_by=(AbandonedCartRule.sequence_order.asc(), AbandonedCartRule.created_at.asc()),
)


def _family_for(kind: str) -> RuleFamily:
    return ABANDONED_CART if kind == SequenceKind.ABANDONED_CART.value else INACTIVITY


def load_rules(db: Session, workspace_id: UUID, family: RuleFamily) -> list:
    model = family.rule_model
    return db.query(model).filter(model.workspace_id == workspace_id).order_by(*family.order_by).all()


def rule_delay_seconds(rule) -> Optional[float]:
    """Delay in seconds, or None when the stored value is negative or not a number."""
    try:
        delay_ms = int(rule.delay_milliseconds)
    except (TypeError, ValueError):
        return None
    if delay_ms < 0:
        return None
    return delay_ms / 1000.0


def personalize(template: str, client_name: Optional[str]) -> str:
    return (template or "").replace(CLIENT_NAME_PLACEHOLDER, client_name or "").strip()


def build_step_job(follow_up: FollowUp, rule_id: UUID) -> SequenceStepJob:
    if follow_up.sequence_kind == SequenceKind.ABANDONED_CART.value:
        return SequenceStepJob(conversation_id=follow_up.conversation_id, rule_id=rule_id, workspace_id=follow_up.workspace_id)
    return SequenceStepJob(follow_up_id=follow_up.id, rule_id=rule_id, workspace_id=follow_up.workspace_id)


def schedule_step(
    db: Session,
    queue: JobQueue,
    follow_up: FollowUp,
    rule,
    delay_seconds: float,
    *,
    replace_pending: bool = False,
) -> bool:
    job = build_step_job(follow_up, rule.id)
    return queue.enqueue(
        db, job.to_payload(), job_id=job.job_id, delay_seconds=delay_seconds, replace_pending=replace_pending
    )


def get_running_follow_up(db: Session, workspace_id: UUID, client_id: UUID, kind: SequenceKind) -> Optional[FollowUp]:
    return (
        db.query(FollowUp)
        .filter(
            FollowUp.workspace_id == workspace_id,
            FollowUp.client_id == client_id,
            FollowUp.sequence_kind == kind.value,
            FollowUp.status.in_([s.value for s in state_machine.RUNNING_STATUSES]),
        )
        .first()
    )


def _insert_running_follow_up(
    db: Session,
    *,
    workspace_id: UUID,
    client_id: UUID,
    conversation_id: Optional[UUID],
    kind: SequenceKind,
    next_fire_at: datetime,
    now: datetime,
    metadata: Optional[dict] = None,
) -> Optional[FollowUp]:
    """Insert an ACTIVE run; None when another run already holds the slot."""
    stmt = (
        insert(FollowUp)
        .values(
            workspace_id=workspace_id,
            client_id=client_id,
            conversation_id=conversation_id,
            sequence_kind=kind.value,
            status=FollowUpStatus.ACTIVE.value,
            current_sequence_step_order=0,
            next_sequence_message_at=next_fire_at,
            started_at=now,
            follow_up_metadata=metadata or {},
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=["workspace_id", "client_id", "sequence_kind"],
            index_where=text("status IN ('ACTIVE', 'PAUSED')"),
        )
        .returning(FollowUp.id)
    )
    row = db.execute(stmt).first()
    if row is None:
        return None
    return db.get(FollowUp, row.id)


def _start_sequence(
    db: Session,
    queue: JobQueue,
    family: RuleFamily,
    *,
    workspace_id: UUID,
    client_id: UUID,
    conversation_id: Optional[UUID],
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Result[FollowUp]:
    now = now or datetime.now(timezone.utc)
    context = {"workspace_id": str(workspace_id), "client_id": str(client_id), "kind": family.kind.value}

    if get_running_follow_up(db, workspace_id, client_id, family.kind):
        logger.info("Sequence already running", extra={"context": context})
        return Result.skipped(SKIP_ALREADY_RUNNING)

    rules = load_rules(db, workspace_id, family)
    if not rules:
        logger.info("No sequence rules configured", extra={"context": context})
        return Result.skipped(SKIP_NO_RULES)

    first_rule = rules[0]
    delay_seconds = rule_delay_seconds(first_rule)
    if delay_seconds is None:
        logger.warning(
            "Invalid delay on first sequence rule",
            extra={"context": {**context, "rule_id": str(first_rule.id)}},
        )
        return Result.skipped(SKIP_INVALID_DELAY)

    # The run and its first job land together or not at all.
    savepoint = db.begin_nested()
    follow_up = _insert_running_follow_up(
        db,
        workspace_id=workspace_id,
        client_id=client_id,
        conversation_id=conversation_id,
        kind=family.kind,
        next_fire_at=now + timedelta(seconds=delay_seconds),
        now=now,
        metadata=metadata,
    )
    if follow_up is None:
        savepoint.rollback()
        logger.info("Sequence started concurrently elsewhere", extra={"context": context})
        return Result.skipped(SKIP_ALREADY_RUNNING)

    # A pending job left by an earlier cart run on this conversation is
    # rescheduled for the new run; only a job that is mid-flight blocks the start.
    if not schedule_step(db, queue, follow_up, first_rule, delay_seconds, replace_pending=True):
        savepoint.rollback()
        logger.error(
            "First sequence step could not be queued",
            extra={"context": {**context, "first_rule_id": str(first_rule.id)}},
        )
        return Result.failure("First step job is held by a running job", code=ERROR_SCHEDULE_FAILED)
    savepoint.commit()

    logger.info(
        "Sequence started",
        extra={
            "context": {
                **context,
                "follow_up_id": str(follow_up.id),
                "first_rule_id": str(first_rule.id),
                "delay_seconds": delay_seconds,
            }
        },
    )
    return Result.success(follow_up)


def start_follow_up_sequence(
    db: Session,
    queue: JobQueue,
    *,
    workspace_id: UUID,
    client_id: UUID,
    conversation_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> Result[FollowUp]:
    """Start the inactivity sequence unless one is ACTIVE/PAUSED for this client."""
    return _start_sequence(
        db,
        queue,
        INACTIVITY,
        workspace_id=workspace_id,
        client_id=client_id,
        conversation_id=conversation_id,
        now=now,
    )


def start_abandoned_cart_sequence(
    db: Session,
    queue: JobQueue,
    *,
    workspace_id: UUID,
    client_id: UUID,
    conversation_id: UUID,
    cart: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Result[FollowUp]:
    return _start_sequence(
        db,
        queue,
        ABANDONED_CART,
        workspace_id=workspace_id,
        client_id=client_id,
        conversation_id=conversation_id,
        metadata={"cart": cart or {}},
        now=now,
    )


def _load_follow_up_for_job(db: Session, job: SequenceStepJob) -> FollowUp:
    if job.is_abandoned_cart:
        follow_up = (
            db.query(FollowUp)
            .filter(
                FollowUp.conversation_id == job.conversation_id,
                FollowUp.sequence_kind == SequenceKind.ABANDONED_CART.value,
            )
            .order_by(FollowUp.started_at.desc())
            .first()
        )
        if not follow_up:
            raise EntityNotFoundError("Cart FollowUp for conversation", job.conversation_id)
        return follow_up

    follow_up = db.get(FollowUp, job.follow_up_id)
    if not follow_up:
        raise EntityNotFoundError("FollowUp", job.follow_up_id)
    return follow_up


def _load_target_conversation(db: Session, follow_up: FollowUp) -> Conversation:
    if follow_up.sequence_kind == SequenceKind.ABANDONED_CART.value and follow_up.conversation_id:
        conversation = db.get(Conversation, follow_up.conversation_id)
    else:
        conversation = (
            db.query(Conversation)
            .filter(
                Conversation.workspace_id == follow_up.workspace_id,
                Conversation.client_id == follow_up.client_id,
                Conversation.status == ConversationStatus.ACTIVE.value,
            )
            .order_by(Conversation.last_message_at.desc())
            .first()
        )
        if conversation is None and follow_up.conversation_id:
            conversation = db.get(Conversation, follow_up.conversation_id)
    if conversation is None:
        raise EntityNotFoundError("Conversation for FollowUp", follow_up.id)
    return conversation


def generate_step_message(
    generator: Optional[AIResponseGenerator],
    workspace: Workspace,
    client: Client,
    conversation: Conversation,
    rule,
    family: RuleFamily,
) -> tuple[str, bool]:
    """Message text for a step and whether it came from the model.

    Falls back to the personalized rule text when generation fails, so the
    timeline is preserved.
    """
    fallback = personalize(rule.message_content, client.name)
    if generator is None or not settings.sequence_ai_enabled:
        return fallback, False

    if family.kind == SequenceKind.ABANDONED_CART:
        instruction = (
            "You are a sales professional. Your goal is to win back a client who left items in the cart. "
            f"Follow this instruction: {fallback}"
        )
    else:
        instruction = f"Send a follow-up message to the client {client.name or ''} following this rule: {fallback}"
    system_prompt = f"{workspace.ai_default_system_prompt or ''}\n===\n{instruction}".strip()

    try:
        text_out = generator.generate_text(
            system_prompt,
            [{"role": "user", "content": fallback}],
            model=workspace.ai_model_preference,
        )
    except Exception as e:
        logger.warning(
            "Sequence message generation failed, using rule text",
            extra={"context": {"conversation_id": str(conversation.id), "rule_id": str(rule.id), "error": str(e)}},
        )
        return fallback, False
    if not text_out:
        return fallback, False
    return text_out, True


def _client_responded(db: Session, follow_up: FollowUp, conversation: Conversation) -> bool:
    """True when the client wrote after the last step was sent (or after the run started)."""
    last_client_at = get_last_client_timestamp(db, conversation.id)
    if last_client_at is None:
        return False
    baseline = follow_up.last_step_sent_at or follow_up.started_at
    return baseline is not None and last_client_at > baseline


def _advance(db: Session, queue: JobQueue, follow_up: FollowUp, rules: list, index: int, now: datetime) -> str:
    """Move to the next rule or complete the run. Returns the new status."""
    next_index = index + 1
    if next_index < len(rules):
        next_rule = rules[next_index]
        delay_seconds = rule_delay_seconds(next_rule)
        if delay_seconds is not None:
            follow_up.current_sequence_step_order = next_index
            follow_up.next_sequence_message_at = now + timedelta(seconds=delay_seconds)
            follow_up.updated_at = now
            if not schedule_step(db, queue, follow_up, next_rule, delay_seconds):
                logger.warning(
                    "Next sequence step already queued",
                    extra={"context": {"follow_up_id": str(follow_up.id), "rule_id": str(next_rule.id)}},
                )
            return follow_up.status
        logger.warning(
            "Invalid delay on next sequence rule; completing",
            extra={"context": {"follow_up_id": str(follow_up.id), "rule_id": str(next_rule.id)}},
        )

    follow_up.status = state_machine.complete(FollowUpStatus(follow_up.status)).value
    follow_up.next_sequence_message_at = None
    follow_up.completed_at = now
    follow_up.updated_at = now
    return follow_up.status


async def process_sequence_step(
    db: Session,
    job: SequenceStepJob,
    queue: JobQueue,
    *,
    generator: Optional[AIResponseGenerator] = None,
    adapter: Optional[ChannelAdapter] = None,
    now: Optional[datetime] = None,
) -> Result[FollowUp]:
    """Handle one fired sequence step."""
    follow_up = _load_follow_up_for_job(db, job)
    family = _family_for(follow_up.sequence_kind)
    context = {"follow_up_id": str(follow_up.id), "rule_id": str(job.rule_id), "kind": family.kind.value}

    if follow_up.status != FollowUpStatus.ACTIVE.value:
        logger.info("Sequence step skipped: run not active", extra={"context": {**context, "status": follow_up.status}})
        return Result.skipped(SKIP_NOT_ACTIVE)

    rules = load_rules(db, follow_up.workspace_id, family)
    rule_ids = [str(rule.id) for rule in rules]
    if str(job.rule_id) not in rule_ids:
        follow_up.status = state_machine.fail(FollowUpStatus(follow_up.status)).value
        follow_up.next_sequence_message_at = None
        follow_up.updated_at = datetime.now(timezone.utc)
        db.commit()
        logger.error("Sequence rule no longer exists", extra={"context": context})
        return Result.failure(f"Rule {job.rule_id} not found", code="rule_not_found")

    index = rule_ids.index(str(job.rule_id))
    if index != follow_up.current_sequence_step_order:
        logger.info(
            "Sequence step skipped: stale delivery",
            extra={"context": {**context, "current_step": follow_up.current_sequence_step_order, "job_step": index}},
        )
        return Result.skipped(SKIP_STALE_STEP)
    rule = rules[index]
    now = now or datetime.now(timezone.utc)

    conversation = _load_target_conversation(db, follow_up)
    if family.kind == SequenceKind.INACTIVITY and _client_responded(db, follow_up, conversation):
        follow_up.status = state_machine.cancel(FollowUpStatus(follow_up.status)).value
        follow_up.cancellation_reason = SKIP_CLIENT_RESPONDED
        follow_up.next_sequence_message_at = None
        follow_up.completed_at = now
        follow_up.updated_at = now
        db.commit()
        logger.info("Sequence ended: client responded", extra={"context": context})
        return Result.skipped(SKIP_CLIENT_RESPONDED)

    workspace = db.get(Workspace, follow_up.workspace_id)
    if not workspace:
        raise EntityNotFoundError("Workspace", follow_up.workspace_id)
    client = db.get(Client, follow_up.client_id)
    if not client:
        raise EntityNotFoundError("Client", follow_up.client_id)

    adapter = adapter or get_adapter(conversation.channel)
    config_error = adapter.validate_credentials(credentials_for(workspace, conversation.channel)) if adapter else "unsupported channel"
    if config_error:
        logger.warning("Sequence step skipped: channel not configured", extra={"context": {**context, "error": config_error}})
        return Result.skipped(SKIP_MISSING_CREDENTIALS)

    if generator is None and settings.sequence_ai_enabled:
        generator = get_ai_generator()
    content, ai_generated = await asyncio.to_thread(
        generate_step_message, generator, workspace, client, conversation, rule, family
    )

    message_metadata = {
        "ruleId": str(rule.id),
        "followUpId": str(follow_up.id),
        "type": "sequence_step_sent",
        "sequenceKind": family.kind.value,
        "aiGenerated": ai_generated,
    }
    message = await deliver_ai_message(
        db,
        workspace=workspace,
        conversation=conversation,
        client=client,
        content=content,
        message_metadata=message_metadata,
        adapter=adapter,
    )

    # Status may have changed while the message was being sent.
    db.refresh(follow_up, with_for_update=True)
    if follow_up.status != FollowUpStatus.ACTIVE.value or follow_up.current_sequence_step_order != index:
        db.commit()
        logger.info(
            "Sequence step sent; run changed meanwhile, not advancing",
            extra={"context": {**context, "status": follow_up.status, "current_step": follow_up.current_sequence_step_order}},
        )
        return Result.skipped(SKIP_NOT_ACTIVE)

    follow_up.last_step_sent_at = now
    new_status = _advance(db, queue, follow_up, rules, index, now)
    db.commit()
    logger.info(
        "Sequence step sent",
        extra={
            "context": {
                **context,
                "message_id": str(message.id),
                "delivery_status": message.status,
                "status": new_status,
                "current_step": follow_up.current_sequence_step_order,
            }
        },
    )
    return Result.success(follow_up)


def mark_sequence_failed(db: Session, payload: dict, error: str) -> None:
    """Queue hook: a step exhausted its retries, so the run becomes FAILED."""
    job = SequenceStepJob.model_validate(payload)
    try:
        follow_up = _load_follow_up_for_job(db, job)
    except EntityNotFoundError:
        return
    if follow_up.status == FollowUpStatus.FAILED.value:
        return

    # Cart jobs resolve to the conversation's latest run, which may be a newer
    # run than the one this job was scheduled for.
    rule_ids = [str(rule.id) for rule in load_rules(db, follow_up.workspace_id, _family_for(follow_up.sequence_kind))]
    job_step = rule_ids.index(str(job.rule_id)) if str(job.rule_id) in rule_ids else None
    if job_step != follow_up.current_sequence_step_order:
        logger.warning(
            "Exhausted step does not belong to the current run step; leaving run as is",
            extra={"context": {"follow_up_id": str(follow_up.id), "rule_id": str(job.rule_id), "error": error[:500]}},
        )
        return

    follow_up.status = state_machine.fail(FollowUpStatus(follow_up.status)).value
    follow_up.next_sequence_message_at = None
    follow_up.follow_up_metadata = {**(follow_up.follow_up_metadata or {}), "last_error": error[:500]}
    follow_up.updated_at = datetime.now(timezone.utc)
    db.flush()
    logger.error("Sequence marked failed", extra={"context": {"follow_up_id": str(follow_up.id), "error": error[:500]}})


def make_sequence_handler(queue: JobQueue):
    async def handle_sequence_job(db: Session, payload: dict) -> Result[FollowUp]:
        return await process_sequence_step(db, SequenceStepJob.model_validate(payload), queue)

    return handle_sequence_job


# --- Manual control -----------------------------------------------------


def _change_status(
    db: Session,
    follow_up_id: UUID,
    target: FollowUpStatus,
    *,
    reason: Optional[str] = None,
) -> Result[FollowUp]:
    follow_up = db.get(FollowUp, follow_up_id)
    if not follow_up:
        return Result.failure(f"FollowUp {follow_up_id} not found", code="not_found")
    try:
        new_status = state_machine.transition(FollowUpStatus(follow_up.status), target)
    except InvalidTransitionError as e:
        return Result.failure(str(e), code="invalid_transition")

    now = datetime.now(timezone.utc)
    follow_up.status = new_status.value
    follow_up.updated_at = now
    if state_machine.is_terminal(new_status):
        follow_up.next_sequence_message_at = None
        follow_up.completed_at = now
    if reason:
        follow_up.cancellation_reason = reason
    db.flush()
    logger.info(
        "FollowUp status changed",
        extra={"context": {"follow_up_id": str(follow_up_id), "status": new_status.value, "reason": reason}},
    )
    return Result.success(follow_up)


def convert_follow_up(db: Session, follow_up_id: UUID) -> Result[FollowUp]:
    """Mark converted; only ACTIVE or PAUSED runs can convert."""
    return _change_status(db, follow_up_id, FollowUpStatus.CONVERTED)


def cancel_follow_up(db: Session, follow_up_id: UUID, reason: Optional[str] = None) -> Result[FollowUp]:
    return _change_status(db, follow_up_id, FollowUpStatus.CANCELLED, reason=reason)


def pause_follow_up(db: Session, follow_up_id: UUID) -> Result[FollowUp]:
    return _change_status(db, follow_up_id, FollowUpStatus.PAUSED)


def resume_follow_up(
    db: Session,
    queue: JobQueue,
    follow_up_id: UUID,
    now: Optional[datetime] = None,
) -> Result[FollowUp]:
    """PAUSED -> ACTIVE and re-arm the current step.

    If the paused step's job is still queued the enqueue is a no-op and that
    job fires at its original time.
    """
    result = _change_status(db, follow_up_id, FollowUpStatus.ACTIVE)
    if not result.ok:
        return result
    follow_up = result.value

    rules = load_rules(db, follow_up.workspace_id, _family_for(follow_up.sequence_kind))
    index = follow_up.current_sequence_step_order
    if index >= len(rules):
        follow_up.status = state_machine.complete(FollowUpStatus.ACTIVE).value
        follow_up.completed_at = now or datetime.now(timezone.utc)
        follow_up.next_sequence_message_at = None
        db.flush()
        return Result.success(follow_up)

    rule = rules[index]
    delay_seconds = rule_delay_seconds(rule) or 0.0
    now = now or datetime.now(timezone.utc)
    follow_up.next_sequence_message_at = now + timedelta(seconds=delay_seconds)
    schedule_step(db, queue, follow_up, rule, delay_seconds)
    db.flush()
    return Result.success(follow_up)
