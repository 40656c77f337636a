from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from cadence.database import get_db
from cadence.dependencies import get_sequence_queue
from cadence.main import app
from cadence.services.conversation_service import ResolvedConversation
from cadence.services.result import Result

FOLLOW_UPS = "cadence.routers.follow_ups"
CARTS = "cadence.routers.abandoned_carts"


def _follow_up(status="CONVERTED", kind="INACTIVITY"):
    return SimpleNamespace(
        id=uuid4(),
        status=status,
        sequence_kind=kind,
        current_sequence_step_order=1,
        next_sequence_message_at=None,
        completed_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def api():
    db = Mock()
    queue = Mock(name="sequence_queue")

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_sequence_queue] = lambda: queue
    try:
        yield TestClient(app), db, queue
    finally:
        app.dependency_overrides.clear()


class TestFollowUpControl:
    def test_convert(self, api):
        client, db, _ = api
        follow_up = _follow_up()
        with patch(f"{FOLLOW_UPS}.convert_follow_up", return_value=Result.success(follow_up)):
            response = client.post(f"/follow-ups/{follow_up.id}/convert")

        assert response.status_code == 200
        assert response.json()["status"] == "CONVERTED"
        db.commit.assert_called_once()

    def test_invalid_transition_is_conflict(self, api):
        client, db, _ = api
        failure = Result.failure("Invalid transition: COMPLETED -> CONVERTED", code="invalid_transition")
        with patch(f"{FOLLOW_UPS}.convert_follow_up", return_value=failure):
            response = client.post(f"/follow-ups/{uuid4()}/convert")

        assert response.status_code == 409
        db.commit.assert_not_called()
        db.rollback.assert_called_once()

    def test_unknown_follow_up(self, api):
        client, _, _ = api
        with patch(f"{FOLLOW_UPS}.pause_follow_up", return_value=Result.failure("missing", code="not_found")):
            assert client.post(f"/follow-ups/{uuid4()}/pause").status_code == 404

    def test_cancel_passes_reason(self, api):
        client, db, _ = api
        follow_up = _follow_up(status="CANCELLED")
        with patch(f"{FOLLOW_UPS}.cancel_follow_up", return_value=Result.success(follow_up)) as cancel:
            response = client.post(f"/follow-ups/{follow_up.id}/cancel", json={"reason": "client asked to stop"})

        assert response.status_code == 200
        assert cancel.call_args.kwargs["reason"] == "client asked to stop"

    def test_cancel_without_body(self, api):
        client, _, _ = api
        follow_up = _follow_up(status="CANCELLED")
        with patch(f"{FOLLOW_UPS}.cancel_follow_up", return_value=Result.success(follow_up)) as cancel:
            assert client.post(f"/follow-ups/{follow_up.id}/cancel").status_code == 200
        assert cancel.call_args.kwargs["reason"] is None

    def test_resume_uses_sequence_queue(self, api):
        client, db, queue = api
        follow_up = _follow_up(status="ACTIVE")
        with patch(f"{FOLLOW_UPS}.resume_follow_up", return_value=Result.success(follow_up)) as resume:
            response = client.post(f"/follow-ups/{follow_up.id}/resume")

        assert response.status_code == 200
        assert resume.call_args[0][1] is queue


class TestAbandonedCart:
    def _resolved(self, workspace):
        client_row = SimpleNamespace(id=uuid4(), workspace_id=workspace.id, name="Maria", phone_number="5511999990000")
        conversation = SimpleNamespace(id=uuid4(), workspace_id=workspace.id)
        return ResolvedConversation(client=client_row, conversation=conversation, client_created=False, conversation_created=True)

    def test_unknown_workspace(self, api):
        client, db, _ = api
        db.get.return_value = None
        response = client.post("/abandoned-carts", json={"workspace_id": str(uuid4()), "phone_number": "5511999990000"})
        assert response.status_code == 404

    def test_starts_cart_sequence(self, api, workspace):
        client, db, queue = api
        db.get.return_value = workspace
        resolved = self._resolved(workspace)
        follow_up = _follow_up(status="ACTIVE", kind="ABANDONED_CART")

        with patch(f"{CARTS}.resolve_conversation", return_value=resolved), patch(
            f"{CARTS}.start_abandoned_cart_sequence", return_value=Result.success(follow_up)
        ) as start, patch(f"{CARTS}.notify_conversation_updated", new=AsyncMock(return_value=True)):
            response = client.post(
                "/abandoned-carts",
                json={"workspace_id": str(workspace.id), "phone_number": "5511999990000", "cart": {"total": 99.9}},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "started"
        assert body["follow_up_id"] == str(follow_up.id)
        assert start.call_args[0][1] is queue
        assert start.call_args.kwargs["cart"] == {"total": 99.9}

    def test_already_running_cart(self, api, workspace):
        client, db, _ = api
        db.get.return_value = workspace
        with patch(f"{CARTS}.resolve_conversation", return_value=self._resolved(workspace)), patch(
            f"{CARTS}.start_abandoned_cart_sequence", return_value=Result.skipped("already_running")
        ):
            response = client.post(
                "/abandoned-carts", json={"workspace_id": str(workspace.id), "phone_number": "5511999990000"}
            )

        assert response.status_code == 200
        assert response.json()["message"] == "already_running"
        assert response.json()["follow_up_id"] is None
