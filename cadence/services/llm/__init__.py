from cadence.services.llm.base import LLMProvider, LLMProviderError, LLMResponse, ToolCall
from cadence.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMProviderError", "LLMResponse", "OpenAIProvider", "ToolCall"]
