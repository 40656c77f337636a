import json
from typing import List, Optional

import httpx

from cadence.logging_config import get_logger
from cadence.services.llm.base import LLMProvider, LLMProviderError, LLMResponse, ToolCall

logger = get_logger("llm.openai")

OPENAI_CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"


def _parse_tool_calls(message: dict) -> List[ToolCall]:
    calls = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") or {}
        try:
            arguments = json.loads(function.get("arguments") or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Tool call with invalid JSON arguments: {function.get('name')}")
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        calls.append(ToolCall(id=raw.get("id", ""), name=function.get("name", ""), arguments=arguments))
    return calls


class OpenAIProvider(LLMProvider):
    """Chat Completions over plain httpx; tools are offered with tool_choice=auto."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o",
        transport: Optional[httpx.BaseTransport] = None,
        url: str = OPENAI_CHAT_COMPLETIONS_URL,
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.transport = transport
        self.url = url
        self.timeout_seconds = timeout_seconds

    def _build_payload(self, messages, model, temperature, max_tokens, tools) -> dict:
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        tools: Optional[List[dict]] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = self._build_payload(messages, model, temperature, max_tokens, tools)
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = client.post(self.url, headers=headers, json=payload)

        if response.status_code != 200:
            logger.error(
                "OpenAI request failed",
                extra={"context": {"model": model, "status_code": response.status_code, "body": response.text[:500]}},
            )
            raise LLMProviderError(f"OpenAI API error: {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise LLMProviderError("OpenAI API returned a non-JSON body") from e

        choices = data.get("choices") or []
        message = choices[0].get("message", {}) if choices else {}
        result = LLMResponse(
            content=message.get("content") or "",
            model=data.get("model", model),
            usage=data.get("usage"),
            tool_calls=_parse_tool_calls(message),
        )
        logger.debug(
            "OpenAI response",
            extra={"context": {"model": result.model, "tool_calls": [c.name for c in result.tool_calls], "usage": result.usage}},
        )
        return result
