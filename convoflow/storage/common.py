"""Store contracts shared by the memory and Redis implementations.

The engine only talks to persistence through these protocols, so relational
or remote backends can be swapped in without touching the executor.
"""

from __future__ import annotations

from datetime import timedelta
from typing import List, Optional, Protocol, runtime_checkable

from convoflow.storage.models import FlowGraph, SessionState


@runtime_checkable
class FlowGraphStore(Protocol):
    async def get(self, tenant_id: str) -> Optional[FlowGraph]:
        """Return the tenant's active flow, if any."""

    async def get_by_id(self, flow_id: str) -> Optional[FlowGraph]: ...

    async def list_by_tenant(self, tenant_id: str) -> List[FlowGraph]: ...

    async def upsert(self, graph: FlowGraph) -> FlowGraph: ...

    async def delete(self, flow_id: str) -> bool: ...

    async def set_active(self, flow_id: str, tenant_id: str) -> Optional[FlowGraph]: ...


@runtime_checkable
class SessionStateStore(Protocol):
    async def load(
        self, tenant_id: str, user_id: str, session_id: str
    ) -> Optional[SessionState]: ...

    async def save(self, state: SessionState) -> None: ...

    async def purge_older_than(self, duration: timedelta) -> int:
        """Delete sessions idle for longer than ``duration``; return how many."""


def session_storage_key(tenant_id: str, user_id: str, session_id: str) -> str:
    """Key layout used by every session backend."""
    return f"flow:session:{tenant_id}:{user_id}:{session_id}"


__all__ = ["FlowGraphStore", "SessionStateStore", "session_storage_key"]
