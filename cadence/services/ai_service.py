from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

import httpx

from cadence.config import settings
from cadence.logging_config import get_logger
from cadence.services.llm import LLMProvider, OpenAIProvider, ToolCall
from cadence.services.stage_service import (
    ActionOutcome,
    StageDefinition,
    build_stage_tool,
    execute_stage_actions,
    find_missing_fields,
)

logger = get_logger("ai_service")

HUMAN_TRANSFER_TOOL_NAME = "transfer_to_human"
HUMAN_TRANSFER_TOOL = {
    "type": "function",
    "function": {
        "name": HUMAN_TRANSFER_TOOL_NAME,
        "description": (
            "Hand the conversation to a human agent when the client explicitly asks for a person "
            "or when you can no longer help."
        ),
        "parameters": {"type": "object", "properties": {}, "required": []},
    },
}

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

SIGNAL_MISSING_DATA = "missing_data"
SIGNAL_STAGE_EXECUTED = "stage_executed"
SIGNAL_HUMAN_TRANSFER = "human_transfer"


class AIGenerationError(Exception):
    pass


@dataclass
class ReplyText:
    text: str


@dataclass
class ToolSignal:
    kind: str
    stage_name: Optional[str] = None
    missing_fields: List[str] = field(default_factory=list)
    collected_data: dict = field(default_factory=dict)
    text: str = ""
    action_results: List[ActionOutcome] = field(default_factory=list)


GenerationResult = Union[ReplyText, ToolSignal]


@dataclass
class SystemContext:
    system_prompt: str
    client_name: str = ""
    ai_name: Optional[str] = None
    model: Optional[str] = None
    conversation_id: Optional[str] = None
    collected_data: dict = field(default_factory=dict)


def build_system_prompt(context: SystemContext, stages: List[StageDefinition]) -> str:
    lines = [context.system_prompt or DEFAULT_SYSTEM_PROMPT, ""]
    if context.ai_name:
        lines.append(f"Your name: {context.ai_name}")
    lines.append(f"Client name: {context.client_name or 'unknown'}")
    if context.conversation_id:
        lines.append(f"Conversation id: {context.conversation_id}")
    if stages:
        lines.append("")
        lines.append("Available stages (call the matching tool when its condition applies):")
        for stage in stages:
            fields = ", ".join(stage.data_to_collect) or "none"
            lines.append(f"- {stage.tool_name}: {stage.condition} (required data: {fields})")
    if context.collected_data:
        lines.append("")
        lines.append("Data already collected from the client:")
        for key, value in context.collected_data.items():
            lines.append(f"- {key}: {value}")
    return "\n".join(lines)


class AIResponseGenerator:
    """Reply text or tool signal from history, system context and stage tools.

    No persistence and no sending here; the only I/O is the model call and
    the stage's own configured actions.
    """

    def __init__(
        self,
        provider: Optional[LLMProvider],
        default_model: str = "gpt-4o",
        http_client_factory: Optional[Callable[[], httpx.Client]] = None,
    ):
        self.provider = provider
        self.default_model = default_model
        self.http_client_factory = http_client_factory

    def _require_provider(self) -> LLMProvider:
        if self.provider is None:
            raise AIGenerationError("LLM provider is not configured")
        return self.provider

    def generate_text(self, system_prompt: str, messages: List[dict], model: Optional[str] = None) -> str:
        provider = self._require_provider()
        response = provider.generate(
            messages=[{"role": "system", "content": system_prompt}] + messages,
            model=model or self.default_model,
        )
        return (response.content or "").strip()

    def generate(
        self,
        history: List[dict],
        context: SystemContext,
        stages: Optional[List[StageDefinition]] = None,
    ) -> GenerationResult:
        provider = self._require_provider()
        stages = stages or []
        tools = [build_stage_tool(stage) for stage in stages] + [HUMAN_TRANSFER_TOOL]
        system_prompt = build_system_prompt(context, stages)

        response = provider.generate(
            messages=[{"role": "system", "content": system_prompt}] + history,
            model=context.model or self.default_model,
            tools=tools,
        )
        if not response.tool_calls:
            return ReplyText(text=(response.content or "").strip())

        call = response.tool_calls[0]
        if len(response.tool_calls) > 1:
            logger.info(f"Model requested {len(response.tool_calls)} tool calls; handling {call.name} only")

        if call.name == HUMAN_TRANSFER_TOOL_NAME:
            return ToolSignal(kind=SIGNAL_HUMAN_TRANSFER)

        stage = next((s for s in stages if s.tool_name == call.name), None)
        if stage is None:
            logger.warning(f"Model called unknown tool: {call.name}")
            return ReplyText(text=(response.content or "").strip())

        return self._run_stage(stage, call, history, context, system_prompt)

    def _run_stage(
        self,
        stage: StageDefinition,
        call: ToolCall,
        history: List[dict],
        context: SystemContext,
        system_prompt: str,
    ) -> ToolSignal:
        data = {**context.collected_data, **{k: v for k, v in call.arguments.items() if v not in (None, "")}}
        missing = find_missing_fields(stage, data)
        if missing:
            logger.info("Stage missing data", extra={"context": {"stage": stage.name, "missing": missing}})
            return ToolSignal(
                kind=SIGNAL_MISSING_DATA,
                stage_name=stage.name,
                missing_fields=missing,
                collected_data=data,
            )

        outcomes = execute_stage_actions(stage, data, client_factory=self.http_client_factory)
        text = "\n\n".join(o.text for o in outcomes if o.success and o.text)

        if stage.final_response_instruction:
            results = [
                {"type": o.type, "success": o.success, "data": o.data, "text": o.text, "error": o.error}
                for o in outcomes
            ]
            final_prompt = (
                f"{system_prompt}\n\nStage '{stage.name}' finished. {stage.final_response_instruction}\n"
                f"Collected data: {json.dumps(data, ensure_ascii=False)}\n"
                f"Action results: {json.dumps(results, ensure_ascii=False, default=str)}"
            )
            text = self.generate_text(final_prompt, history, model=context.model)

        return ToolSignal(
            kind=SIGNAL_STAGE_EXECUTED,
            stage_name=stage.name,
            collected_data=data,
            text=text,
            action_results=outcomes,
        )


def get_ai_generator() -> AIResponseGenerator:
    provider = OpenAIProvider(settings.openai_api_key, settings.openai_model) if settings.openai_api_key else None
    return AIResponseGenerator(provider, default_model=settings.openai_model)
