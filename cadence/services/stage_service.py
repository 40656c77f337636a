"""AI stages: named sub-flows exposed to the model as callable tools.

A stage declares the fields it needs (data_to_collect) and an ordered list
of actions. Actions run only once every declared field is present.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from cadence.logging_config import get_logger
from cadence.models import AIStage

logger = get_logger("stage_service")

ACTION_API_CALL = "API_CALL"
ACTION_SEND_MESSAGE = "SEND_MESSAGE"

_PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")
_QUERY_METHODS = {"GET", "DELETE"}


@dataclass
class StageAction:
    type: str
    config: dict
    is_enabled: bool = True
    order: int = 0


@dataclass
class StageDefinition:
    name: str
    condition: str
    data_to_collect: list[str] = field(default_factory=list)
    final_response_instruction: Optional[str] = None
    actions: list[StageAction] = field(default_factory=list)

    @property
    def tool_name(self) -> str:
        slug = re.sub(r"[^a-zA-Z0-9_]+", "_", self.name.strip().lower()).strip("_")
        return f"stage_{slug or 'unnamed'}"[:64]


@dataclass
class ActionOutcome:
    type: str
    success: bool
    text: str = ""
    data: Optional[dict] = None
    error: Optional[str] = None


def load_active_stages(db: Session, workspace_id: UUID) -> list[StageDefinition]:
    rows = db.query(AIStage).filter(AIStage.workspace_id == workspace_id, AIStage.is_active.is_(True)).all()
    return [stage_from_model(row) for row in rows]


def stage_from_model(stage: AIStage) -> StageDefinition:
    return StageDefinition(
        name=stage.name,
        condition=stage.condition,
        data_to_collect=[str(item) for item in (stage.data_to_collect or []) if item],
        final_response_instruction=stage.final_response_instruction,
        actions=[
            StageAction(type=a.type, config=a.config or {}, is_enabled=a.is_enabled, order=a.order or 0)
            for a in (stage.actions or [])
        ],
    )


def build_stage_tool(stage: StageDefinition) -> dict:
    """OpenAI function-tool definition for a stage."""
    properties = {name: {"type": "string", "description": f"Value for '{name}' as stated by the client"} for name in stage.data_to_collect}
    return {
        "type": "function",
        "function": {
            "name": stage.tool_name,
            "description": f"Stage '{stage.name}'. Call when: {stage.condition}",
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": list(stage.data_to_collect),
            },
        },
    }


def find_missing_fields(stage: StageDefinition, data: dict) -> list[str]:
    missing = []
    for name in stage.data_to_collect:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def substitute_placeholders(template: str, data: dict) -> tuple[str, set[str]]:
    """Replace {field} with data values. Returns (text, names used)."""
    used: set[str] = set()

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in data and data[key] is not None:
            used.add(key)
            return str(data[key])
        return match.group(0)

    return _PLACEHOLDER_PATTERN.sub(_replace, template or ""), used


def extract_path(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def _render_mapped(mapped: dict) -> str:
    return "\n".join(f"{key}: {value}" for key, value in mapped.items() if value is not None)


def _run_api_call(config: dict, data: dict, client_factory: Callable[[], httpx.Client]) -> ActionOutcome:
    url_template = config.get("url")
    if not url_template:
        return ActionOutcome(type=ACTION_API_CALL, success=False, error="API call without url")

    method = str(config.get("method") or "GET").upper()
    url, used = substitute_placeholders(url_template, data)
    remaining = {key: value for key, value in data.items() if key not in used}
    headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}

    request_kwargs: dict[str, Any] = {"headers": headers}
    if method in _QUERY_METHODS:
        request_kwargs["params"] = remaining
    else:
        request_kwargs["json"] = remaining

    try:
        with client_factory() as client:
            response = client.request(method, url, **request_kwargs)
        response.raise_for_status()
        payload = response.json() if response.content else {}
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Stage API call failed", extra={"context": {"url": url, "method": method, "error": str(e)}})
        return ActionOutcome(type=ACTION_API_CALL, success=False, error=str(e))

    mapping = config.get("responseMapping") or {}
    mapped = {key: extract_path(payload, str(path)) for key, path in mapping.items()} if mapping else payload
    text = ""
    if config.get("useApiResponse"):
        text = _render_mapped(mapped) if isinstance(mapped, dict) else str(mapped)
    return ActionOutcome(type=ACTION_API_CALL, success=True, text=text, data=mapped if isinstance(mapped, dict) else {"result": mapped})


def _run_send_message(config: dict, data: dict) -> ActionOutcome:
    template = config.get("message") or ""
    text, _ = substitute_placeholders(template, data)
    return ActionOutcome(type=ACTION_SEND_MESSAGE, success=bool(text.strip()), text=text.strip())


def execute_stage_actions(
    stage: StageDefinition,
    data: dict,
    *,
    client_factory: Optional[Callable[[], httpx.Client]] = None,
) -> list[ActionOutcome]:
    """Run enabled actions in order. Failures are reported, not raised."""
    client_factory = client_factory or (lambda: httpx.Client(timeout=15.0))
    outcomes = []
    for action in sorted(stage.actions, key=lambda a: a.order):
        if not action.is_enabled:
            continue
        if action.type == ACTION_API_CALL:
            outcomes.append(_run_api_call(action.config, data, client_factory))
        elif action.type == ACTION_SEND_MESSAGE:
            outcomes.append(_run_send_message(action.config, data))
        else:
            logger.warning(f"Unknown stage action type: {action.type}")
    logger.info(
        "Stage actions executed",
        extra={
            "context": {
                "stage": stage.name,
                "actions": len(outcomes),
                "failed": sum(1 for o in outcomes if not o.success),
            }
        },
    )
    return outcomes
