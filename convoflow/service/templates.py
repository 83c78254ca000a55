from __future__ import annotations

import copy
import json
import re
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from convoflow.storage.models import Node, NodeType, SessionState

_VARIABLE_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")
_SEPARATOR = "\n\n"


class CompositionMode(str, Enum):
    REPLACE = "replace"
    PREFIX = "prefix"
    SUFFIX = "suffix"


class NodeOverride(BaseModel):
    content: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", frozen=True)


class TemplateOverride(BaseModel):
    """Tenant configuration that reshapes nodes at execution time.

    Accepts both snake_case and the camelCase keys authoring tools emit.
    Overrides are applied to a copy of each node when it is visited and are
    never written back into the flow graph or the session state.
    """

    ai_model: Optional[str] = Field(None, alias="aiModel")
    temperature: Optional[float] = Field(None, ge=0, le=2)
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")
    prompt_mode: CompositionMode = Field(CompositionMode.REPLACE, alias="promptMode")
    instructions: Optional[str] = None
    instruction_mode: CompositionMode = Field(
        CompositionMode.REPLACE, alias="instructionMode"
    )
    node_overrides: Dict[str, NodeOverride] = Field(
        default_factory=dict, alias="nodeOverrides"
    )

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    @classmethod
    def coerce(cls, value: Any) -> Optional["TemplateOverride"]:
        if value is None or isinstance(value, TemplateOverride):
            return value
        return cls.model_validate(value)


def compose(base: Optional[str], addition: Optional[str], mode: CompositionMode) -> str:
    base = base or ""
    if addition is None:
        return base
    if mode == CompositionMode.REPLACE or not base:
        return addition
    if mode == CompositionMode.PREFIX:
        return f"{addition}{_SEPARATOR}{base}"
    return f"{base}{_SEPARATOR}{addition}"


def apply_template_override(node: Node, override: Optional[TemplateOverride]) -> Node:
    """Return ``node`` as it should execute under ``override``."""
    if override is None:
        return node

    content = node.content
    metadata = copy.deepcopy(node.metadata)

    if node.type == NodeType.AI:
        model_config = dict(metadata.get("model_config") or {})
        if override.ai_model:
            model_config["model"] = override.ai_model
        if override.temperature is not None:
            model_config["temperature"] = override.temperature
        if model_config:
            metadata["model_config"] = model_config
        if override.system_prompt is not None:
            metadata["system_prompt"] = compose(
                metadata.get("system_prompt"), override.system_prompt, override.prompt_mode
            )
        if override.instructions is not None:
            content = compose(content, override.instructions, override.instruction_mode)

    node_override = override.node_overrides.get(node.id)
    if node_override is not None:
        if node_override.content is not None:
            content = node_override.content
        metadata.update(copy.deepcopy(node_override.metadata))

    return node.with_changes(content=content, metadata=metadata)


def _lookup(variables: Mapping[str, Any], path: str) -> Any:
    current: Any = variables
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            raise KeyError(path)
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return "" if value is None else str(value)


def render_template(text: Optional[str], variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left as written."""
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        try:
            return _stringify(_lookup(variables, match.group(1)))
        except KeyError:
            return match.group(0)

    return _VARIABLE_PATTERN.sub(_replace, text)


def render_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """Render placeholders inside nested request bodies and header maps."""
    if isinstance(value, str):
        return render_template(value, variables)
    if isinstance(value, dict):
        return {key: render_value(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, variables) for item in value]
    return value


def template_variables(state: SessionState) -> Dict[str, Any]:
    variables: Dict[str, Any] = dict(state.context)
    variables.update(
        user_id=state.user_id,
        tenant_id=state.tenant_id,
        session_id=state.session_id,
    )
    return variables
