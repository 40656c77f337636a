from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


class LLMProviderError(Exception):
    """The model endpoint answered with an error or an unusable body."""


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class LLMProvider(ABC):
    """Chat-completion backend with optional function tools."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        tools: Optional[List[dict]] = None,
    ) -> LLMResponse:
        """Return the first choice; tool calls come back parsed, never executed."""
