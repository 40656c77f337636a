import hashlib
import hmac
import json
from unittest.mock import AsyncMock, Mock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from cadence.database import get_db
from cadence.dependencies import get_message_queue, get_sequence_queue
from cadence.main import app
from cadence.models.enums import ChannelType
from cadence.schemas.webhook import WebhookResponse

WHATSAPP = "cadence.routers.whatsapp_webhook"
LUMIBOT = "cadence.routers.lumibot_webhook"


def _whatsapp_payload(messages=None, statuses=None, contacts=None):
    value = {"messaging_product": "whatsapp", "metadata": {"phone_number_id": "1098765"}}
    if messages is not None:
        value["messages"] = messages
        value["contacts"] = contacts or [{"wa_id": "5511999990000", "profile": {"name": "Maria"}}]
    if statuses is not None:
        value["statuses"] = statuses
    return {"object": "whatsapp_business_account", "entry": [{"id": "WABA", "changes": [{"field": "messages", "value": value}]}]}


def _text_message(body="Hi there", message_id="wamid.IN1"):
    return {"from": "5511999990000", "id": message_id, "timestamp": "1714564800", "type": "text", "text": {"body": body}}


@pytest.fixture
def api(workspace):
    db = Mock()
    db.query.return_value.filter.return_value.first.return_value = workspace
    db.get.return_value = workspace

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_message_queue] = lambda: Mock(name="message_queue")
    app.dependency_overrides[get_sequence_queue] = lambda: Mock(name="sequence_queue")
    try:
        yield TestClient(app), db
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def ingest():
    response = WebhookResponse(success=True, message="accepted", conversation_id=uuid4(), message_id=uuid4())
    with patch(f"{WHATSAPP}.ingest_inbound_message", new=AsyncMock(return_value=response)) as wa, patch(
        f"{LUMIBOT}.ingest_inbound_message", new=AsyncMock(return_value=response)
    ) as lumi:
        yield {"whatsapp": wa, "lumibot": lumi}


class TestHealth:
    def test_health(self, api):
        client, _ = api
        assert client.get("/health").json() == {"status": "ok"}


class TestWhatsAppVerification:
    def test_valid_token_echoes_challenge(self, api):
        client, _ = api
        response = client.get(
            "/webhooks/whatsapp/route-abc",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
        )
        assert response.status_code == 200
        assert response.text == "12345"

    def test_wrong_token_is_forbidden(self, api):
        client, _ = api
        response = client.get(
            "/webhooks/whatsapp/route-abc",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345"},
        )
        assert response.status_code == 403

    def test_unknown_route(self, api):
        client, db = api
        db.query.return_value.filter.return_value.first.return_value = None
        assert client.get("/webhooks/whatsapp/unknown").status_code == 404


class TestWhatsAppInbound:
    def test_text_message_is_normalized(self, api, ingest):
        client, _ = api
        response = client.post("/webhooks/whatsapp/route-abc", json=_whatsapp_payload(messages=[_text_message()]))

        assert response.status_code == 200
        assert response.json()["message"] == "accepted"
        kwargs = ingest["whatsapp"].await_args.kwargs
        inbound = kwargs["inbound"]
        assert kwargs["channel"] == ChannelType.WHATSAPP_CLOUD
        assert inbound.phone_number == "5511999990000"
        assert inbound.display_name == "Maria"
        assert inbound.content == "Hi there"
        assert inbound.channel_message_id == "wamid.IN1"
        assert inbound.provider_timestamp == 1714564800000

    def test_media_caption_becomes_content(self, api, ingest):
        client, _ = api
        message = {"from": "5511999990000", "id": "wamid.IMG", "type": "image", "image": {"id": "media-1", "caption": "is this in stock?"}}
        client.post("/webhooks/whatsapp/route-abc", json=_whatsapp_payload(messages=[message]))

        inbound = ingest["whatsapp"].await_args.kwargs["inbound"]
        assert inbound.content == "[image] is this in stock?"
        assert inbound.media["id"] == "media-1"

    def test_unsupported_type_is_ignored(self, api, ingest):
        client, _ = api
        message = {"from": "5511999990000", "id": "wamid.LOC", "type": "location"}
        response = client.post("/webhooks/whatsapp/route-abc", json=_whatsapp_payload(messages=[message]))

        assert response.status_code == 200
        ingest["whatsapp"].assert_not_awaited()

    def test_status_callback_updates_delivery(self, api, ingest):
        client, _ = api
        statuses = [{"id": "wamid.OUT1", "status": "failed", "errors": [{"code": 131026, "title": "Message undeliverable"}]}]
        with patch(f"{WHATSAPP}.apply_delivery_status", new=AsyncMock(return_value=True)) as apply_status:
            response = client.post("/webhooks/whatsapp/route-abc", json=_whatsapp_payload(statuses=statuses))

        assert response.status_code == 200
        kwargs = apply_status.await_args.kwargs
        assert kwargs["channel_message_id"] == "wamid.OUT1"
        assert kwargs["provider_status"] == "failed"
        assert kwargs["error_message"] == "Message undeliverable"

    def test_invalid_json(self, api):
        client, _ = api
        response = client.post("/webhooks/whatsapp/route-abc", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400


class TestWhatsAppSignature:
    def _post(self, client, body: bytes, signature: str | None):
        headers = {"Content-Type": "application/json"}
        if signature is not None:
            headers["X-Hub-Signature-256"] = signature
        return client.post("/webhooks/whatsapp/route-abc", content=body, headers=headers)

    def test_missing_signature_rejected(self, api, workspace, ingest):
        workspace.whatsapp_app_secret = "app-secret"
        client, _ = api
        body = json.dumps(_whatsapp_payload(messages=[_text_message()])).encode()
        assert self._post(client, body, None).status_code == 401
        ingest["whatsapp"].assert_not_awaited()

    def test_wrong_signature_rejected(self, api, workspace, ingest):
        workspace.whatsapp_app_secret = "app-secret"
        client, _ = api
        body = json.dumps(_whatsapp_payload(messages=[_text_message()])).encode()
        assert self._post(client, body, "sha256=deadbeef").status_code == 401

    def test_valid_signature_accepted(self, api, workspace, ingest):
        workspace.whatsapp_app_secret = "app-secret"
        client, _ = api
        body = json.dumps(_whatsapp_payload(messages=[_text_message()])).encode()
        signature = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

        assert self._post(client, body, signature).status_code == 200
        ingest["whatsapp"].assert_awaited_once()


def _lumibot_payload(**overrides):
    payload = {
        "event": "message_created",
        "message_type": "incoming",
        "sender_type": "Contact",
        "id": 555,
        "source_id": "src-555",
        "content": "Hello, is the store open?",
        "sender": {"id": 9, "name": "Maria", "phone_number": "+55 11 99999-0000", "type": "contact"},
        "conversation": {"id": 321},
    }
    payload.update(overrides)
    return payload


class TestLumibotWebhook:
    def test_requires_workspace_id(self, api):
        client, _ = api
        assert client.post("/webhooks/lumibot", json=_lumibot_payload()).status_code == 400

    def test_unknown_workspace(self, api):
        client, db = api
        db.get.return_value = None
        response = client.post(f"/webhooks/lumibot?workspaceId={uuid4()}", json=_lumibot_payload())
        assert response.status_code == 404

    @pytest.mark.parametrize(
        "overrides",
        [
            {"message_type": "outgoing"},
            {"event": "conversation_updated"},
            {"sender_type": "User"},
        ],
    )
    def test_non_customer_events_are_ignored(self, api, workspace, ingest, overrides):
        client, _ = api
        response = client.post(f"/webhooks/lumibot?workspaceId={workspace.id}", json=_lumibot_payload(**overrides))

        assert response.status_code == 200
        assert response.json()["message"] == "ignored"
        ingest["lumibot"].assert_not_awaited()

    def test_sender_type_falls_back_to_sender(self, api, workspace, ingest):
        client, _ = api
        payload = _lumibot_payload()
        del payload["sender_type"]
        client.post(f"/webhooks/lumibot?workspaceId={workspace.id}", json=payload)
        ingest["lumibot"].assert_awaited_once()

    def test_missing_phone_is_bad_request(self, api, workspace, ingest):
        client, _ = api
        payload = _lumibot_payload(sender={"id": 9, "name": "Maria"})
        response = client.post(f"/webhooks/lumibot?workspaceId={workspace.id}", json=payload)

        assert response.status_code == 400
        assert "sender.phone_number" in response.json()["detail"]

    def test_accepted_message(self, api, workspace, ingest):
        client, _ = api
        response = client.post(f"/webhooks/lumibot?workspaceId={workspace.id}", json=_lumibot_payload())

        assert response.status_code == 200
        kwargs = ingest["lumibot"].await_args.kwargs
        inbound = kwargs["inbound"]
        assert kwargs["channel"] == ChannelType.LUMIBOT
        assert inbound.channel_message_id == "src-555"
        assert inbound.channel_conversation_id == "321"
        assert inbound.display_name == "Maria"
