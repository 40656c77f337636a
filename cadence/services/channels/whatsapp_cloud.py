from typing import Optional

import httpx

from cadence.services.channels.base import ChannelAdapter, ChannelCredentials


class WhatsAppCloudAdapter(ChannelAdapter):
    """Meta WhatsApp Cloud API (graph /{phone_number_id}/messages)."""

    name = "whatsapp_cloud"

    def validate_credentials(self, credentials: ChannelCredentials) -> Optional[str]:
        if not credentials.phone_number_id:
            return "WhatsApp phone number id is not configured"
        if not credentials.access_token:
            return "WhatsApp access token is not configured"
        return None

    def build_request(self, credentials: ChannelCredentials, to_address: str, content: str) -> tuple[str, dict, dict]:
        url = f"{self.base_url}/{credentials.phone_number_id}/messages"
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Content-Type": "application/json",
        }
        body = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_address,
            "type": "text",
            "text": {"preview_url": False, "body": content},
        }
        return url, headers, body

    def parse_success(self, data: dict) -> Optional[str]:
        messages = data.get("messages")
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            return messages[0].get("id")
        return None

    def parse_error(self, response: httpx.Response) -> str:
        fallback = f"WhatsApp API error {response.status_code}: {response.text[:200]}"
        try:
            data = response.json()
        except ValueError:
            return fallback
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, str) and error:
            return f"WhatsApp API error {response.status_code}: {error}"
        if not isinstance(error, dict):
            return fallback
        message = error.get("message") or "Unknown error"
        parts = [f"WhatsApp API error {response.status_code}: {message}"]
        if error.get("code") is not None:
            parts.append(f"code={error.get('code')}")
        if error.get("error_subcode") is not None:
            parts.append(f"subcode={error.get('error_subcode')}")
        if error.get("fbtrace_id"):
            parts.append(f"fbtrace_id={error.get('fbtrace_id')}")
        return " ".join(parts)
