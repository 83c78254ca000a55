from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft202012Validator

from convoflow.logging import get_logger
from convoflow.service.errors import ConfigurationError
from convoflow.storage.models import (
    Branch,
    Condition,
    Conditional,
    Direct,
    FlowGraph,
    Node,
    NodeType,
    Transition,
)

logger = get_logger(__name__)

TYPE_ALIASES: Dict[str, NodeType] = {
    "start": NodeType.START,
    "startnode": NodeType.START,
    "start-node": NodeType.START,
    "start_node": NodeType.START,
    "message": NodeType.MESSAGE,
    "messagenode": NodeType.MESSAGE,
    "message-node": NodeType.MESSAGE,
    "message_node": NodeType.MESSAGE,
    "input": NodeType.INPUT,
    "inputnode": NodeType.INPUT,
    "input-node": NodeType.INPUT,
    "question": NodeType.INPUT,
    "condition": NodeType.CONDITION,
    "conditionnode": NodeType.CONDITION,
    "condition-node": NodeType.CONDITION,
    "condition_node": NodeType.CONDITION,
    "action": NodeType.ACTION,
    "actionnode": NodeType.ACTION,
    "action-node": NodeType.ACTION,
    "api_call": NodeType.API_CALL,
    "api-call": NodeType.API_CALL,
    "apicall": NodeType.API_CALL,
    "apicallnode": NodeType.API_CALL,
    "webhook": NodeType.API_CALL,
    "ai": NodeType.AI,
    "ainode": NodeType.AI,
    "ai-node": NodeType.AI,
    "ai_node": NodeType.AI,
    "ai_voice_agent": NodeType.AI,
    "aivoiceagentnode": NodeType.AI,
    "agentevozia": NodeType.AI,
    "agente-voz-ia": NodeType.AI,
    "tts": NodeType.TTS,
    "ttsnode": NodeType.TTS,
    "tts-node": NodeType.TTS,
    "text_to_speech": NodeType.TTS,
    "voice_response": NodeType.TTS,
    "stt": NodeType.STT,
    "sttnode": NodeType.STT,
    "stt-node": NodeType.STT,
    "speech_to_text": NodeType.STT,
    "end": NodeType.END,
    "endnode": NodeType.END,
    "end-node": NodeType.END,
    "end_node": NodeType.END,
}

_IDENTIFIER = {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_]*$"}

_METADATA_SCHEMAS: Dict[NodeType, Dict[str, Any]] = {
    NodeType.INPUT: {
        "type": "object",
        "properties": {
            "variable_name": _IDENTIFIER,
            "validation": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "type": {
                            "enum": [
                                "required",
                                "min_length",
                                "max_length",
                                "pattern",
                                "email",
                                "number",
                            ]
                        },
                        "message": {"type": "string"},
                    },
                    "required": ["type"],
                },
            },
        },
    },
    NodeType.ACTION: {
        "type": "object",
        "properties": {
            "actions": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "type": {
                            "enum": ["set_variable", "increment", "clear_variable", "append"]
                        },
                        "key": _IDENTIFIER,
                    },
                    "required": ["type", "key"],
                },
            },
        },
    },
    NodeType.API_CALL: {
        "type": "object",
        "properties": {
            "url": {"type": "string", "minLength": 1},
            "method": {"enum": ["GET", "POST", "PUT", "PATCH", "DELETE", "get", "post", "put", "patch", "delete"]},
            "headers": {"type": "object"},
            "result_variable": _IDENTIFIER,
            "timeout_ms": {"type": "number", "exclusiveMinimum": 0},
        },
        "required": ["url"],
    },
    NodeType.AI: {
        "type": "object",
        "properties": {
            "system_prompt": {"type": "string"},
            "model_config": {"type": "object"},
            "response_variable": _IDENTIFIER,
            "voice": {"type": ["object", "string"]},
            "max_retries": {"type": "integer", "minimum": 0},
        },
    },
    NodeType.TTS: {
        "type": "object",
        "properties": {
            "voice": {"type": "string"},
            "rate": {"type": "number", "exclusiveMinimum": 0},
            "delay": {"type": "number", "minimum": 0},
        },
    },
    NodeType.STT: {
        "type": "object",
        "properties": {
            "variable_name": _IDENTIFIER,
            "language": {"type": "string"},
        },
    },
}

_FLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "tenant_id": {"type": "string", "minLength": 1},
        "entry_node_id": {"type": ["string", "null"]},
        "name": {"type": "string"},
        "version": {"type": "integer", "minimum": 1},
        "is_active": {"type": "boolean"},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"type": "string"},
                    "canonical_type": {"type": "string"},
                    "content": {"type": "string"},
                    "metadata": {"type": "object"},
                },
                "required": ["id", "type"],
                "allOf": [
                    {
                        "if": {
                            "properties": {"canonical_type": {"const": node_type.value}},
                            "required": ["canonical_type"],
                        },
                        "then": {"properties": {"metadata": schema}},
                    }
                    for node_type, schema in _METADATA_SCHEMAS.items()
                ],
            },
        },
    },
    "required": ["id", "tenant_id", "nodes"],
}

_FLOW_VALIDATOR = Draft202012Validator(_FLOW_SCHEMA)


@dataclass
class FlowValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def normalize_node_type(raw_type: Optional[str]) -> NodeType:
    if not raw_type:
        return NodeType.UNKNOWN
    key = str(raw_type).strip()
    return TYPE_ALIASES.get(key) or TYPE_ALIASES.get(key.lower(), NodeType.UNKNOWN)


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _parse_condition(raw: Any) -> Condition:
    if isinstance(raw, str):
        return Condition(operator=raw)
    if not isinstance(raw, dict):
        return Condition(operator="default")
    return Condition(
        operator=str(_pick(raw, "operator", "type", default="equals")),
        value=raw.get("value"),
        field=_pick(raw, "field", "variable"),
        case_sensitive=bool(_pick(raw, "case_sensitive", "caseSensitive", default=False)),
    )


def _parse_branch(raw: Any) -> Optional[Branch]:
    if isinstance(raw, str):
        # bare ids in a branch list act as catch-all targets
        return Branch(condition=Condition(operator="default"), target=raw)
    if not isinstance(raw, dict):
        return None
    target = _pick(raw, "target", "next_node_id", "nextNodeId", "node_id")
    if not target:
        return None
    condition_raw = raw.get("condition", raw)
    return Branch(condition=_parse_condition(condition_raw), target=str(target))


def parse_transition(raw_node: Dict[str, Any]) -> Optional[Transition]:
    """Turn the authored ``next`` field into a Direct or Conditional transition."""
    raw_next = _pick(raw_node, "next", "next_node_id", "nextNodeId")
    if raw_next is None and isinstance(raw_node.get("conditions"), list):
        raw_next = raw_node["conditions"]
    if raw_next is None:
        return None
    if isinstance(raw_next, str):
        return Direct(raw_next) if raw_next.strip() else None
    if isinstance(raw_next, dict):
        target = _pick(raw_next, "node_id", "target", "id")
        return Direct(str(target)) if target else None
    if isinstance(raw_next, list):
        branches = tuple(b for b in (_parse_branch(item) for item in raw_next) if b)
        return Conditional(branches)
    return None


def _canonical_nodes(raw_nodes: Any) -> List[Dict[str, Any]]:
    if isinstance(raw_nodes, dict):
        items = []
        for node_id, body in raw_nodes.items():
            body = dict(body or {})
            body.setdefault("id", node_id)
            items.append(body)
        raw_nodes = items
    if not isinstance(raw_nodes, list):
        return []
    canonical = []
    for raw in raw_nodes:
        if not isinstance(raw, dict):
            canonical.append(raw)
            continue
        raw_type = _pick(raw, "type", "node_type", "nodeType", default="")
        canonical.append(
            {
                **raw,
                "id": str(raw.get("id", "")),
                "type": str(raw_type),
                "canonical_type": normalize_node_type(raw_type).value,
                "content": str(_pick(raw, "content", "message", "text", default="")),
                "metadata": _pick(raw, "metadata", "data", default={}),
            }
        )
    return canonical


def _canonical_flow(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": _pick(raw, "id", "flow_id", "flowId"),
        "tenant_id": _pick(raw, "tenant_id", "tenantId"),
        "entry_node_id": _pick(raw, "entry_node_id", "entryNodeId"),
        "name": str(raw.get("name") or ""),
        "version": raw.get("version", 1),
        "is_active": bool(_pick(raw, "is_active", "isActive", default=False)),
        "nodes": _canonical_nodes(raw.get("nodes")),
    }


def _schema_errors(doc: Dict[str, Any]) -> List[str]:
    errors = sorted(_FLOW_VALIDATOR.iter_errors(doc), key=lambda e: list(e.path))
    return [
        f"{'/'.join(str(p) for p in e.path) or '<flow>'}: {e.message}" for e in errors
    ]


def _build(doc: Dict[str, Any], report: FlowValidationReport) -> FlowGraph:
    nodes: Dict[str, Node] = {}
    for raw in doc["nodes"]:
        node_id = raw["id"]
        if node_id in nodes:
            raise ConfigurationError(
                "duplicate node id", detail={"node_id": node_id, "flow_id": doc["id"]}
            )
        nodes[node_id] = Node(
            id=node_id,
            type=NodeType(raw["canonical_type"]),
            content=raw["content"],
            metadata=dict(raw["metadata"]),
            next=parse_transition(raw),
            raw_type=raw["type"],
        )
    if not nodes:
        raise ConfigurationError("flow has no nodes", detail={"flow_id": doc["id"]})

    for node_id, node in list(nodes.items()):
        if node.type == NodeType.UNKNOWN:
            report.warnings.append(f"{node_id}: unrecognized node type '{node.raw_type}'")
        transition = node.next
        if isinstance(transition, Direct) and transition.node_id not in nodes:
            report.warnings.append(f"{node_id}: next node '{transition.node_id}' does not exist")
            nodes[node_id] = node.with_changes(next=None)
        elif isinstance(transition, Conditional):
            kept = tuple(b for b in transition.branches if b.target in nodes)
            for dropped in transition.branches:
                if dropped.target not in nodes:
                    report.warnings.append(
                        f"{node_id}: branch target '{dropped.target}' does not exist"
                    )
            if len(kept) != len(transition.branches):
                nodes[node_id] = node.with_changes(next=Conditional(kept))
        node = nodes[node_id]
        if node.type == NodeType.CONDITION and not (
            isinstance(node.next, Conditional) and node.next.branches
        ):
            report.errors.append(f"{node_id}: condition node has no transitions")

    entry_node_id = doc.get("entry_node_id")
    if entry_node_id not in nodes:
        if entry_node_id:
            report.warnings.append(f"entry node '{entry_node_id}' does not exist")
        start = next((n for n in nodes.values() if n.type == NodeType.START), None)
        entry_node_id = start.id if start else next(iter(nodes))

    graph = FlowGraph(
        id=str(doc["id"]),
        tenant_id=str(doc["tenant_id"]),
        entry_node_id=entry_node_id,
        nodes=nodes,
        version=int(doc.get("version") or 1),
        name=doc.get("name", ""),
        is_active=bool(doc.get("is_active")),
    )
    for node_id in sorted(set(nodes) - reachable_nodes(graph)):
        report.warnings.append(f"{node_id}: unreachable from entry node")
    return graph


def reachable_nodes(graph: FlowGraph) -> set:
    seen = {graph.entry_node_id}
    queue = deque([graph.entry_node_id])
    while queue:
        node = graph.nodes[queue.popleft()]
        targets: Tuple[str, ...] = node.next.targets() if node.next else ()
        for target in targets:
            if target in graph.nodes and target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def compile_flow(raw: Dict[str, Any]) -> FlowGraph:
    """Validate an authored flow document and compile it into a FlowGraph.

    Schema violations, duplicate ids and empty graphs raise
    ConfigurationError. Dangling transitions are dropped and condition nodes
    without branches are kept; both are logged so the executor can answer
    with a fallback message instead of failing the whole flow.
    """
    if not isinstance(raw, dict):
        raise ConfigurationError("flow document must be an object")
    doc = _canonical_flow(raw)
    errors = _schema_errors(doc)
    if errors:
        raise ConfigurationError(
            "flow validation failed", detail={"flow_id": doc.get("id"), "errors": errors}
        )
    report = FlowValidationReport()
    graph = _build(doc, report)
    if report.errors or report.warnings:
        logger.warning(
            "flow_compiled_with_issues",
            flow_id=graph.id,
            tenant_id=graph.tenant_id,
            errors=report.errors,
            warnings=report.warnings,
        )
    return graph


def validate_flow(raw: Dict[str, Any]) -> FlowValidationReport:
    """Report problems in an authored flow without raising."""
    report = FlowValidationReport()
    if not isinstance(raw, dict):
        report.errors.append("flow document must be an object")
        return report
    doc = _canonical_flow(raw)
    report.errors.extend(_schema_errors(doc))
    if report.errors:
        return report
    try:
        _build(doc, report)
    except ConfigurationError as exc:
        report.errors.append(exc.message)
    return report


__all__ = [
    "FlowValidationReport",
    "TYPE_ALIASES",
    "compile_flow",
    "normalize_node_type",
    "parse_transition",
    "reachable_nodes",
    "validate_flow",
]
