from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from convoflow.logging import get_logger
from convoflow.storage.common import session_storage_key
from convoflow.storage.errors import ConstraintViolation
from convoflow.storage.models import FlowGraph, SessionState


class MemoryFlowStore:
    """In-process flow graph store with an optional JSON state file.

    When ``fs_root`` is given every write is mirrored to ``flows.json`` there
    so a development runtime keeps its flows across restarts.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.flows: Dict[str, FlowGraph] = {}
        # tenant_id -> flow_id of the active flow
        self.active: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        return self.fs_root / "flows.json"

    async def get(self, tenant_id: str) -> Optional[FlowGraph]:
        with self._data_lock:
            flow_id = self.active.get(tenant_id)
            if not flow_id:
                return None
            return self.flows.get(flow_id)

    async def get_by_id(self, flow_id: str) -> Optional[FlowGraph]:
        with self._data_lock:
            return self.flows.get(flow_id)

    async def list_by_tenant(self, tenant_id: str) -> List[FlowGraph]:
        with self._data_lock:
            flows = [g for g in self.flows.values() if g.tenant_id == tenant_id]
        return sorted(flows, key=lambda g: g.updated_at, reverse=True)

    async def upsert(self, graph: FlowGraph) -> FlowGraph:
        with self._data_lock:
            existing = self.flows.get(graph.id)
            if existing is not None and existing.tenant_id != graph.tenant_id:
                raise ConstraintViolation(
                    "flow belongs to another tenant",
                    {"flow_id": graph.id, "tenant_id": graph.tenant_id},
                )
            version = graph.version
            if existing is not None and version <= existing.version:
                version = existing.version + 1
            stored = graph.with_changes(
                version=version,
                is_active=self.active.get(graph.tenant_id) == graph.id,
                updated_at=datetime.utcnow(),
            )
            self.flows[graph.id] = stored
            if graph.is_active:
                stored = self._activate(stored)
            self._persist_state()
            return stored

    async def delete(self, flow_id: str) -> bool:
        with self._data_lock:
            graph = self.flows.pop(flow_id, None)
            if graph is None:
                return False
            if self.active.get(graph.tenant_id) == flow_id:
                del self.active[graph.tenant_id]
            self._persist_state()
            return True

    async def set_active(self, flow_id: str, tenant_id: str) -> Optional[FlowGraph]:
        with self._data_lock:
            graph = self.flows.get(flow_id)
            if graph is None:
                return None
            if graph.tenant_id != tenant_id:
                raise ConstraintViolation(
                    "cannot activate a flow owned by another tenant",
                    {"flow_id": flow_id, "tenant_id": tenant_id},
                )
            activated = self._activate(graph)
            self._persist_state()
            return activated

    def _activate(self, graph: FlowGraph) -> FlowGraph:
        previous_id = self.active.get(graph.tenant_id)
        if previous_id and previous_id != graph.id and previous_id in self.flows:
            self.flows[previous_id] = self.flows[previous_id].with_changes(is_active=False)
        activated = graph.with_changes(is_active=True)
        self.flows[graph.id] = activated
        self.active[graph.tenant_id] = graph.id
        return activated

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "flows": [
                {**graph.to_dict(), "updated_at": graph.updated_at.isoformat()}
                for graph in self.flows.values()
            ],
            "active": self.active,
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        from convoflow.service.graph import compile_flow

        try:
            data = json.loads(self._state_path().read_text())
        except FileNotFoundError:
            return False
        for raw in data.get("flows", []):
            graph = compile_flow(raw)
            if raw.get("updated_at"):
                graph = graph.with_changes(updated_at=datetime.fromisoformat(raw["updated_at"]))
            self.flows[graph.id] = graph
        self.active = {
            tenant: flow_id
            for tenant, flow_id in (data.get("active") or {}).items()
            if flow_id in self.flows
        }
        self.logger.info("memory_flow_store_loaded", flows=len(self.flows))
        return True


class MemorySessionStore:
    """Session states kept as serialized dicts so callers never share objects."""

    def __init__(self, *, clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, dict] = {}
        self._data_lock = threading.RLock()
        self._clock = clock

    async def load(
        self, tenant_id: str, user_id: str, session_id: str
    ) -> Optional[SessionState]:
        key = session_storage_key(tenant_id, user_id, session_id)
        with self._data_lock:
            raw = self.sessions.get(key)
        if raw is None:
            return None
        return SessionState.from_dict(raw)

    async def save(self, state: SessionState) -> None:
        key = session_storage_key(state.tenant_id, state.user_id, state.session_id)
        payload = state.to_dict()
        with self._data_lock:
            self.sessions[key] = payload

    async def purge_older_than(self, duration: timedelta) -> int:
        cutoff = self._clock() - duration
        removed = 0
        with self._data_lock:
            for key, raw in list(self.sessions.items()):
                last_updated = datetime.fromisoformat(raw["last_updated_at"])
                if last_updated < cutoff:
                    del self.sessions[key]
                    removed += 1
        if removed:
            self.logger.info("memory_sessions_purged", removed=removed)
        return removed
