from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class NodeType(str, Enum):
    """Canonical node types understood by the executor."""

    START = "start"
    MESSAGE = "message"
    INPUT = "input"
    CONDITION = "condition"
    ACTION = "action"
    API_CALL = "api_call"
    AI = "ai"
    TTS = "tts"
    STT = "stt"
    END = "end"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Condition:
    operator: str
    value: Any = None
    # None compares against the user's last message
    field: Optional[str] = None
    case_sensitive: bool = False

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"operator": self.operator, "value": self.value}
        if self.field is not None:
            data["field"] = self.field
        if self.case_sensitive:
            data["case_sensitive"] = True
        return data


@dataclass(frozen=True)
class Branch:
    condition: Condition
    target: str

    def to_dict(self) -> dict:
        return {"condition": self.condition.to_dict(), "target": self.target}


@dataclass(frozen=True)
class Direct:
    node_id: str

    def targets(self) -> Tuple[str, ...]:
        return (self.node_id,)

    def to_raw(self) -> Any:
        return self.node_id


@dataclass(frozen=True)
class Conditional:
    branches: Tuple[Branch, ...] = ()

    def targets(self) -> Tuple[str, ...]:
        return tuple(branch.target for branch in self.branches)

    def to_raw(self) -> Any:
        return [branch.to_dict() for branch in self.branches]


Transition = Union[Direct, Conditional]


@dataclass(frozen=True)
class Node:
    id: str
    type: NodeType
    content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    next: Optional[Transition] = None
    # type string as authored, before alias normalization
    raw_type: Optional[str] = None

    def with_changes(self, **changes: Any) -> "Node":
        """Return a copy with independent metadata; the original is untouched."""
        if "metadata" not in changes:
            changes["metadata"] = copy.deepcopy(self.metadata)
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.raw_type or self.type.value,
            "content": self.content,
            "metadata": copy.deepcopy(self.metadata),
        }
        if self.next is not None:
            data["next"] = self.next.to_raw()
        return data


@dataclass(frozen=True)
class FlowGraph:
    id: str
    tenant_id: str
    entry_node_id: str
    nodes: Mapping[str, Node]
    version: int = 1
    name: str = ""
    is_active: bool = False
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self) -> None:
        if not isinstance(self.nodes, MappingProxyType):
            object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))

    def get(self, node_id: Optional[str]) -> Optional[Node]:
        if not node_id:
            return None
        return self.nodes.get(node_id)

    def first_of_type(self, node_type: NodeType) -> Optional[Node]:
        for node in self.nodes.values():
            if node.type == node_type:
                return node
        return None

    def with_changes(self, **changes: Any) -> "FlowGraph":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entry_node_id": self.entry_node_id,
            "name": self.name,
            "version": self.version,
            "is_active": self.is_active,
            "nodes": [node.to_dict() for node in self.nodes.values()],
        }


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if raw:
        return datetime.fromisoformat(str(raw))
    return datetime.utcnow()


@dataclass
class HistoryEntry:
    role: str
    content: str
    node_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "node_id": self.node_id,
            "timestamp": _ts(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        return cls(
            role=data.get("role", "assistant"),
            content=data.get("content", ""),
            node_id=data.get("node_id"),
            timestamp=_parse_ts(data.get("timestamp")),
        )


@dataclass(frozen=True)
class NavigationStep:
    """Audit record for one navigation attempt."""

    timestamp: datetime
    from_node_id: Optional[str]
    to_node_id: str
    method: str
    success: bool
    duration_ms: float
    error_message: Optional[str] = None
    context_snapshot: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": _ts(self.timestamp),
            "from_node_id": self.from_node_id,
            "to_node_id": self.to_node_id,
            "method": self.method,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "context_snapshot": self.context_snapshot,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NavigationStep":
        return cls(
            timestamp=_parse_ts(data.get("timestamp")),
            from_node_id=data.get("from_node_id"),
            to_node_id=data["to_node_id"],
            method=data.get("method", "goto"),
            success=bool(data.get("success")),
            duration_ms=float(data.get("duration_ms") or 0.0),
            error_message=data.get("error_message"),
            context_snapshot=data.get("context_snapshot"),
        )


@dataclass
class SessionState:
    tenant_id: str
    user_id: str
    session_id: str
    current_node_id: Optional[str] = None
    flow_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    history: List[HistoryEntry] = field(default_factory=list)
    navigation_history: List[NavigationStep] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    last_updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(cls, tenant_id: str, user_id: str, session_id: str) -> "SessionState":
        now = datetime.utcnow()
        return cls(
            tenant_id=tenant_id,
            user_id=user_id,
            session_id=session_id,
            started_at=now,
            last_updated_at=now,
        )

    @property
    def session_key(self) -> str:
        return session_key(self.tenant_id, self.user_id, self.session_id)

    def copy(self) -> "SessionState":
        return copy.deepcopy(self)

    def touch(self) -> None:
        self.last_updated_at = datetime.utcnow()

    def append_history(self, entry: HistoryEntry, cap: int = 50) -> None:
        self.history.append(entry)
        if len(self.history) > cap:
            del self.history[0 : len(self.history) - cap]

    def record_navigation(self, step: NavigationStep, cap: int = 100) -> None:
        self.navigation_history.append(step)
        if len(self.navigation_history) > cap:
            del self.navigation_history[0 : len(self.navigation_history) - cap]

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "current_node_id": self.current_node_id,
            "flow_id": self.flow_id,
            "context": copy.deepcopy(self.context),
            "history": [entry.to_dict() for entry in self.history],
            "navigation_history": [step.to_dict() for step in self.navigation_history],
            "started_at": _ts(self.started_at),
            "last_updated_at": _ts(self.last_updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionState":
        return cls(
            tenant_id=data["tenant_id"],
            user_id=data["user_id"],
            session_id=data["session_id"],
            current_node_id=data.get("current_node_id"),
            flow_id=data.get("flow_id"),
            context=dict(data.get("context") or {}),
            history=[HistoryEntry.from_dict(h) for h in data.get("history") or []],
            navigation_history=[
                NavigationStep.from_dict(s) for s in data.get("navigation_history") or []
            ],
            started_at=_parse_ts(data.get("started_at")),
            last_updated_at=_parse_ts(data.get("last_updated_at")),
        )


def session_key(tenant_id: str, user_id: str, session_id: str) -> str:
    return f"{tenant_id}:{user_id}:{session_id}"
