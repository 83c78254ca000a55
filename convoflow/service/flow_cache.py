from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from convoflow.logging import get_logger
from convoflow.storage.models import FlowGraph

logger = get_logger(__name__)

DEFAULT_FLOW_CACHE_TTL_SECONDS = 300

Loader = Callable[[str], Awaitable[Optional[FlowGraph]]]


@dataclass(frozen=True)
class CacheEntry:
    # None records that the tenant has no active flow
    graph: Optional[FlowGraph]
    expires_at: float
    generation: int


class FlowCache:
    """TTL cache of compiled flow graphs keyed by tenant.

    Entries are immutable and replaced whole under a lock. Every invalidation
    bumps the tenant's generation; a load that started under an older
    generation is discarded instead of published, so a slow read racing a
    flow update cannot reinstate the old graph.

    A tenant's generation is its own counter plus a cache-wide epoch, so a
    global invalidation also covers tenants whose first load is in flight.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_FLOW_CACHE_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self.hits = 0
        self.misses = 0
        self.loads = 0

    def _generation_locked(self, tenant_id: str) -> int:
        return self._epoch + self._generations.get(tenant_id, 0)

    def _lookup(self, tenant_id: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[tenant_id]
                return None
            return entry

    def generation(self, tenant_id: str) -> int:
        with self._lock:
            return self._generation_locked(tenant_id)

    def get(self, tenant_id: str) -> Optional[FlowGraph]:
        entry = self._lookup(tenant_id)
        return entry.graph if entry else None

    def contains(self, tenant_id: str) -> bool:
        return self._lookup(tenant_id) is not None

    def put(
        self,
        tenant_id: str,
        graph: Optional[FlowGraph],
        *,
        generation: Optional[int] = None,
    ) -> bool:
        with self._lock:
            current = self._generation_locked(tenant_id)
            if generation is not None and generation != current:
                logger.info(
                    "flow_cache_stale_load_discarded",
                    tenant_id=tenant_id,
                    load_generation=generation,
                    current_generation=current,
                )
                return False
            self._entries[tenant_id] = CacheEntry(
                graph=graph,
                expires_at=self._clock() + self.ttl_seconds,
                generation=current,
            )
            return True

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._epoch += 1
                self._entries.clear()
            else:
                self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
                self._entries.pop(tenant_id, None)
        logger.debug("flow_cache_invalidated", tenant_id=tenant_id or "*")

    async def get_or_load(self, tenant_id: str, loader: Loader) -> Optional[FlowGraph]:
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is not None and entry.expires_at <= self._clock():
                del self._entries[tenant_id]
                entry = None
            if entry is not None:
                self.hits += 1
                return entry.graph
            self.misses += 1
            generation = self._generation_locked(tenant_id)
        graph = await loader(tenant_id)
        with self._lock:
            self.loads += 1
        self.put(tenant_id, graph, generation=generation)
        return graph

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "loads": self.loads,
            }
