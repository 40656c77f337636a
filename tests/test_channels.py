import json
from types import SimpleNamespace

import httpx

from cadence.services.channels import (
    ERROR_CONFIG,
    ERROR_NETWORK,
    ERROR_PROVIDER,
    ChannelCredentials,
    LumibotAdapter,
    WhatsAppCloudAdapter,
    get_adapter,
    recipient_for,
    send_to_conversation,
)

WA_CREDENTIALS = ChannelCredentials(access_token="wa-token", phone_number_id="1098765")
LUMIBOT_CREDENTIALS = ChannelCredentials(access_token="lumi-token", account_id="7")


def _whatsapp(handler):
    return WhatsAppCloudAdapter("https://graph.test/v19.0", transport=httpx.MockTransport(handler))


def _lumibot(handler):
    return LumibotAdapter("https://lumibot.test/", transport=httpx.MockTransport(handler))


class TestWhatsAppCloudAdapter:
    def test_send_success_returns_provider_id(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

        result = _whatsapp(handler).send(WA_CREDENTIALS, "5511999990000", "Hello Maria")

        assert result.success is True
        assert result.provider_message_id == "wamid.ABC"
        assert captured["url"] == "https://graph.test/v19.0/1098765/messages"
        assert captured["auth"] == "Bearer wa-token"
        assert captured["body"]["to"] == "5511999990000"
        assert captured["body"]["text"] == {"preview_url": False, "body": "Hello Maria"}

    def test_provider_error_is_classified(self):
        def handler(request):
            return httpx.Response(
                400,
                json={"error": {"message": "Invalid parameter", "code": 100, "error_subcode": 33, "fbtrace_id": "Ax1"}},
            )

        result = _whatsapp(handler).send(WA_CREDENTIALS, "5511999990000", "Hi")

        assert result.success is False
        assert result.error_code == ERROR_PROVIDER
        assert "Invalid parameter" in result.error
        assert "code=100" in result.error
        assert "fbtrace_id=Ax1" in result.error

    def test_network_error_is_classified(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = _whatsapp(handler).send(WA_CREDENTIALS, "5511999990000", "Hi")

        assert result.success is False
        assert result.error_code == ERROR_NETWORK

    def test_missing_credentials_never_calls_provider(self):
        def handler(request):
            raise AssertionError("provider must not be called")

        result = _whatsapp(handler).send(ChannelCredentials(access_token="t"), "5511999990000", "Hi")

        assert result.success is False
        assert result.error_code == ERROR_CONFIG

    def test_string_error_body_still_fails_cleanly(self):
        result = _whatsapp(lambda request: httpx.Response(400, json={"error": "bad token"})).send(
            WA_CREDENTIALS, "5511999990000", "Hi"
        )

        assert result.success is False
        assert result.error_code == ERROR_PROVIDER
        assert "bad token" in result.error

    def test_non_object_error_body(self):
        result = _whatsapp(lambda request: httpx.Response(500, json=["oops"])).send(WA_CREDENTIALS, "5511999990000", "Hi")

        assert result.error_code == ERROR_PROVIDER
        assert result.error.startswith("WhatsApp API error 500")

    def test_success_with_odd_body_has_no_provider_id(self):
        result = _whatsapp(lambda request: httpx.Response(200, json={"messages": {"id": "x"}})).send(
            WA_CREDENTIALS, "5511999990000", "Hi"
        )

        assert result.success is True
        assert result.provider_message_id is None


class TestLumibotAdapter:
    def test_send_success(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["token"] = request.headers["api_access_token"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": 991})

        result = _lumibot(handler).send(LUMIBOT_CREDENTIALS, "321", "Hello")

        assert result.success is True
        assert result.provider_message_id == "991"
        assert captured["url"] == "https://lumibot.test/api/v1/accounts/7/conversations/321/messages"
        assert captured["token"] == "lumi-token"
        assert captured["body"] == {"content": "Hello", "message_type": "outgoing"}

    def test_provider_error(self):
        result = _lumibot(lambda request: httpx.Response(404, json={"error": "Resource not found"})).send(
            LUMIBOT_CREDENTIALS, "321", "Hello"
        )
        assert result.error_code == ERROR_PROVIDER
        assert "Resource not found" in result.error

    def test_list_error_body_still_fails_cleanly(self):
        result = _lumibot(lambda request: httpx.Response(422, json=["content is required"])).send(
            LUMIBOT_CREDENTIALS, "321", "Hello"
        )

        assert result.success is False
        assert result.error_code == ERROR_PROVIDER
        assert "content is required" in result.error


class TestRouting:
    def test_get_adapter_by_stored_channel(self):
        assert isinstance(get_adapter("WHATSAPP_CLOUDAPI"), WhatsAppCloudAdapter)
        assert isinstance(get_adapter("LUMIBOT"), LumibotAdapter)
        assert get_adapter("TELEGRAM") is None

    def test_recipient_for_lumibot_uses_provider_conversation(self):
        conversation = SimpleNamespace(channel="LUMIBOT", channel_conversation_id="321")
        client = SimpleNamespace(phone_number="5511999990000")
        assert recipient_for(conversation, client) == "321"

    def test_recipient_for_whatsapp_uses_phone(self):
        conversation = SimpleNamespace(channel="WHATSAPP_CLOUDAPI", channel_conversation_id=None)
        client = SimpleNamespace(phone_number="5511999990000")
        assert recipient_for(conversation, client) == "5511999990000"

    def test_unsupported_channel(self, workspace, client_row):
        conversation = SimpleNamespace(channel="TELEGRAM", channel_conversation_id=None)
        result = send_to_conversation(workspace, conversation, client_row, "Hi")
        assert result.success is False
        assert result.error_code == ERROR_CONFIG
