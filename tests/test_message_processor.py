import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch
from uuid import uuid4

import pytest

from cadence.models import Client, Conversation, Workspace
from cadence.schemas.jobs import ProcessMessageJob
from cadence.services.ai_service import (
    SIGNAL_HUMAN_TRANSFER,
    SIGNAL_MISSING_DATA,
    SIGNAL_STAGE_EXECUTED,
    ReplyText,
    ToolSignal,
)
from cadence.services.channels import ERROR_PROVIDER, SendResult
from cadence.services.conversation_service import EntityNotFoundError
from cadence.services.message_processor import (
    SKIP_AI_DISABLED,
    SKIP_EMPTY_BATCH,
    SKIP_NO_REPLY,
    SKIP_NOT_LATEST,
    build_missing_data_question,
    is_batch_owner,
    process_message_job,
)

MODULE = "cadence.services.message_processor"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _client_message(offset_seconds: int):
    return SimpleNamespace(
        id=uuid4(),
        sender_type="CLIENT",
        content=f"message {offset_seconds}",
        timestamp=NOW + timedelta(seconds=offset_seconds),
    )


def _db_with(workspace, conversation, client_row):
    rows = {Conversation: conversation, Workspace: workspace, Client: client_row}
    db = Mock()
    db.get.side_effect = lambda model, _id, **kwargs: rows.get(model)
    return db


def _job(conversation, client_row, workspace, message):
    return ProcessMessageJob(
        conversation_id=conversation.id,
        client_id=client_row.id,
        new_message_id=message.id,
        workspace_id=workspace.id,
        received_at=NOW,
    )


def _adapter(result=None):
    adapter = Mock()
    adapter.send.return_value = result or SendResult.sent("wamid.OUT")
    return adapter


def _run(db, job, generator, adapter=None):
    with patch(f"{MODULE}.get_last_ai_timestamp", return_value=NOW - timedelta(minutes=5)), patch(
        f"{MODULE}.get_recent_history", return_value=[]
    ), patch(f"{MODULE}.load_active_stages", return_value=[]):
        return asyncio.run(
            process_message_job(
                db,
                job,
                generator=generator,
                adapter=adapter or _adapter(),
                sleep_func=AsyncMock(),
                buffer_seconds=0,
                history_limit=20,
            )
        )


class TestBatchOwnership:
    def test_only_last_message_owns_batch(self):
        batch = [_client_message(0), _client_message(1), _client_message(2)]
        assert is_batch_owner(batch, batch[-1].id)
        assert not is_batch_owner(batch, batch[0].id)

    def test_empty_batch_has_no_owner(self):
        assert not is_batch_owner([], uuid4())

    def test_owner_compares_string_ids(self):
        message = _client_message(0)
        assert is_batch_owner([message], str(message.id))


class TestProcessMessageJob:
    def test_burst_produces_single_reply(self, workspace, conversation, client_row, silent_notifications):
        batch = [_client_message(0), _client_message(1), _client_message(2)]
        generator = Mock()
        generator.generate.return_value = ReplyText(text="Hi Maria, how can I help?")
        adapter = _adapter()

        results = []
        for message in batch:
            db = _db_with(workspace, conversation, client_row)
            with patch(f"{MODULE}.get_pending_client_batch", return_value=batch):
                results.append(_run(db, _job(conversation, client_row, workspace, message), generator, adapter))

        assert [r.error_code for r in results[:2]] == [SKIP_NOT_LATEST, SKIP_NOT_LATEST]
        assert results[2].ok and results[2].value is not None
        generator.generate.assert_called_once()
        adapter.send.assert_called_once()
        assert adapter.send.call_args[0][1] == client_row.phone_number
        assert adapter.send.call_args[0][2] == "Hi Maria, how can I help?"

    def test_reply_is_stored_as_ai_message_with_batch_metadata(self, workspace, conversation, client_row, silent_notifications):
        batch = [_client_message(0), _client_message(1)]
        generator = Mock()
        generator.generate.return_value = ReplyText(text="Sure!")
        db = _db_with(workspace, conversation, client_row)

        with patch(f"{MODULE}.get_pending_client_batch", return_value=batch):
            result = _run(db, _job(conversation, client_row, workspace, batch[-1]), generator)

        message = result.value
        assert message.sender_type == "AI"
        assert message.status == "SENT"
        assert message.channel_message_id == "wamid.OUT"
        assert message.message_metadata["batch_size"] == 2
        silent_notifications["message_processor.notify_new_message"].assert_awaited_once()
        silent_notifications["message_processor.notify_message_status"].assert_awaited_once()

    def test_ai_disabled_skips(self, workspace, conversation, client_row):
        conversation.is_ai_active = False
        generator = Mock()
        db = _db_with(workspace, conversation, client_row)

        result = _run(db, _job(conversation, client_row, workspace, _client_message(0)), generator)

        assert result.error_code == SKIP_AI_DISABLED
        generator.generate.assert_not_called()

    def test_empty_batch_skips(self, workspace, conversation, client_row):
        generator = Mock()
        db = _db_with(workspace, conversation, client_row)

        with patch(f"{MODULE}.get_pending_client_batch", return_value=[]):
            result = _run(db, _job(conversation, client_row, workspace, _client_message(0)), generator)

        assert result.error_code == SKIP_EMPTY_BATCH
        generator.generate.assert_not_called()

    def test_send_failure_is_recorded_not_raised(self, workspace, conversation, client_row, silent_notifications):
        batch = [_client_message(0)]
        generator = Mock()
        generator.generate.return_value = ReplyText(text="Hello")
        adapter = _adapter(SendResult.failed("WhatsApp API error 400: Invalid parameter", ERROR_PROVIDER))
        db = _db_with(workspace, conversation, client_row)

        with patch(f"{MODULE}.get_pending_client_batch", return_value=batch):
            result = _run(db, _job(conversation, client_row, workspace, batch[0]), generator, adapter)

        assert result.ok
        assert result.value.status == "FAILED"
        assert "Invalid parameter" in result.value.error_message

    def test_missing_conversation_raises_for_retry(self, workspace, conversation, client_row):
        db = Mock()
        db.get.return_value = None

        with pytest.raises(EntityNotFoundError):
            _run(db, _job(conversation, client_row, workspace, _client_message(0)), Mock())

    def test_human_transfer_disables_ai_without_reply(self, workspace, conversation, client_row, silent_notifications):
        batch = [_client_message(0)]
        generator = Mock()
        generator.generate.return_value = ToolSignal(kind=SIGNAL_HUMAN_TRANSFER)
        adapter = _adapter()
        db = _db_with(workspace, conversation, client_row)

        with patch(f"{MODULE}.get_pending_client_batch", return_value=batch):
            result = _run(db, _job(conversation, client_row, workspace, batch[0]), generator, adapter)

        assert result.error_code == SKIP_NO_REPLY
        assert conversation.is_ai_active is False
        adapter.send.assert_not_called()

    def test_missing_data_asks_for_fields_and_records_stage(self, workspace, conversation, client_row, silent_notifications):
        batch = [_client_message(0)]
        generator = Mock()
        generator.generate.return_value = ToolSignal(
            kind=SIGNAL_MISSING_DATA,
            stage_name="Booking",
            missing_fields=["preferred_date"],
            collected_data={"name": "Maria"},
        )
        adapter = _adapter()
        db = _db_with(workspace, conversation, client_row)

        with patch(f"{MODULE}.get_pending_client_batch", return_value=batch):
            _run(db, _job(conversation, client_row, workspace, batch[0]), generator, adapter)

        assert adapter.send.call_args[0][2] == build_missing_data_question(["preferred_date"])
        assert conversation.conversation_metadata["current_stage"] == "Booking"
        assert conversation.conversation_metadata["collected_data"] == {"name": "Maria"}

    def test_stage_executed_sends_stage_text(self, workspace, conversation, client_row, silent_notifications):
        batch = [_client_message(0)]
        generator = Mock()
        generator.generate.return_value = ToolSignal(
            kind=SIGNAL_STAGE_EXECUTED,
            stage_name="Booking",
            collected_data={"preferred_date": "Friday"},
            text="Booked for Friday.",
        )
        adapter = _adapter()
        db = _db_with(workspace, conversation, client_row)

        with patch(f"{MODULE}.get_pending_client_batch", return_value=batch):
            _run(db, _job(conversation, client_row, workspace, batch[0]), generator, adapter)

        assert adapter.send.call_args[0][2] == "Booked for Friday."


class TestMissingDataQuestion:
    def test_fields_are_humanized(self):
        question = build_missing_data_question(["full_name", "email"])
        assert "full name, email" in question
