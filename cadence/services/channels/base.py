from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from cadence.logging_config import get_logger

logger = get_logger("channels")

ERROR_PROVIDER = "provider_error"
ERROR_NETWORK = "network_error"
ERROR_CONFIG = "config_error"


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def sent(provider_message_id: Optional[str]) -> "SendResult":
        return SendResult(success=True, provider_message_id=provider_message_id)

    @staticmethod
    def failed(error: str, code: str) -> "SendResult":
        return SendResult(success=False, error=error, error_code=code)


@dataclass
class ChannelCredentials:
    """Per-workspace secrets for one channel; fields not used by a backend stay None."""

    access_token: Optional[str] = None
    phone_number_id: Optional[str] = None
    account_id: Optional[str] = None


class ChannelAdapter(ABC):
    """One external messaging backend.

    send() never raises: every failure is folded into a SendResult whose
    error_code is provider_error, network_error or config_error.
    """

    name: str = "base"

    def __init__(self, base_url: str, timeout_seconds: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @abstractmethod
    def validate_credentials(self, credentials: ChannelCredentials) -> Optional[str]:
        """Return an error message when credentials are unusable."""

    @abstractmethod
    def build_request(self, credentials: ChannelCredentials, to_address: str, content: str) -> tuple[str, dict, dict]:
        """Return (url, headers, json body)."""

    @abstractmethod
    def parse_success(self, data: dict) -> Optional[str]:
        """Extract the provider message id from a 2xx body."""

    @abstractmethod
    def parse_error(self, response: httpx.Response) -> str:
        """Human-readable error from a non-2xx response."""

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_seconds, transport=self.transport)

    def send(self, credentials: ChannelCredentials, to_address: str, content: str) -> SendResult:
        config_error = self.validate_credentials(credentials)
        if config_error:
            logger.warning(f"{self.name}: {config_error}")
            return SendResult.failed(config_error, ERROR_CONFIG)
        if not to_address:
            return SendResult.failed("Recipient address is missing", ERROR_CONFIG)
        if not content or not content.strip():
            return SendResult.failed("Message content is empty", ERROR_CONFIG)

        url, headers, body = self.build_request(credentials, to_address, content)
        try:
            with self._client() as client:
                response = client.post(url, headers=headers, json=body)
        except httpx.HTTPError as e:
            logger.error(
                f"{self.name} send failed without response",
                extra={"context": {"to": to_address, "error": str(e)}},
            )
            return SendResult.failed(f"No response from {self.name}: {e}", ERROR_NETWORK)

        if response.is_success:
            try:
                data = response.json()
            except ValueError:
                data = {}
            try:
                provider_message_id = self.parse_success(data if isinstance(data, dict) else {})
            except (AttributeError, KeyError, TypeError, IndexError):
                logger.warning(f"{self.name} sent message with unreadable body", extra={"context": {"to": to_address}})
                provider_message_id = None
            logger.info(
                f"{self.name} message sent",
                extra={"context": {"to": to_address, "provider_message_id": provider_message_id}},
            )
            return SendResult.sent(provider_message_id)

        try:
            error = self.parse_error(response)
        except (AttributeError, KeyError, TypeError, IndexError):
            error = f"{self.name} API error {response.status_code}"
        logger.error(
            f"{self.name} rejected message",
            extra={"context": {"to": to_address, "status_code": response.status_code, "error": error}},
        )
        return SendResult.failed(error, ERROR_PROVIDER)
