from typing import Optional

import httpx

from cadence.services.channels.base import ChannelAdapter, ChannelCredentials


class LumibotAdapter(ChannelAdapter):
    """Lumibot (Chatwoot) conversations API. The recipient address is the provider conversation id."""

    name = "lumibot"

    def validate_credentials(self, credentials: ChannelCredentials) -> Optional[str]:
        if not credentials.account_id:
            return "Lumibot account id is not configured"
        if not credentials.access_token:
            return "Lumibot API token is not configured"
        return None

    def build_request(self, credentials: ChannelCredentials, to_address: str, content: str) -> tuple[str, dict, dict]:
        url = f"{self.base_url}/api/v1/accounts/{credentials.account_id}/conversations/{to_address}/messages"
        headers = {"api_access_token": credentials.access_token, "Content-Type": "application/json"}
        body = {"content": content, "message_type": "outgoing"}
        return url, headers, body

    def parse_success(self, data: dict) -> Optional[str]:
        message_id = data.get("id")
        return str(message_id) if message_id is not None else None

    def parse_error(self, response: httpx.Response) -> str:
        fallback = f"Lumibot API error {response.status_code}: {response.text[:200]}"
        try:
            data = response.json()
        except ValueError:
            return fallback
        if not isinstance(data, dict):
            return fallback
        message = data.get("message") or data.get("error") or data.get("errors")
        if not message:
            return fallback
        return f"Lumibot API error {response.status_code}: {message}"
