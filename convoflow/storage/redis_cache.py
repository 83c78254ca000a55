from __future__ import annotations

import json
import time
from datetime import timedelta
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis import Redis

from convoflow.logging import get_logger
from convoflow.storage.common import session_storage_key
from convoflow.storage.models import SessionState

logger = get_logger(__name__)


class RedisSessionStore:
    """Session state store backed by Redis.

    Each session is a JSON string under ``flow:session:{tenant}:{user}:{session}``
    with a TTL slightly above the inactivity timeout. A sorted set indexes
    session keys by last write time so purges need no keyspace scan.
    """

    INDEX_KEY = "flow:sessions:index"
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str = "",
        *,
        client: Any = None,
        ttl_seconds: int = 3600,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_url = redis_url
        if client is None:
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self.ttl_seconds = max(1, int(ttl_seconds))
        self._clock = clock

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime relies on it."""
        # Short-lived sync client so the async pool is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def load(
        self, tenant_id: str, user_id: str, session_id: str
    ) -> Optional[SessionState]:
        cached = await self.client.get(session_storage_key(tenant_id, user_id, session_id))
        if not cached:
            return None
        try:
            return SessionState.from_dict(json.loads(cached))
        except (json.JSONDecodeError, TypeError, KeyError, ValueError) as exc:
            # Corrupted entry is treated as a fresh session
            logger.warning(
                "redis_session_corrupt",
                tenant_id=tenant_id,
                session_id=session_id,
                error=str(exc),
            )
            return None

    async def save(self, state: SessionState) -> None:
        key = session_storage_key(state.tenant_id, state.user_id, state.session_id)
        pipe = self.client.pipeline()
        pipe.set(key, json.dumps(state.to_dict()), ex=self.ttl_seconds)
        pipe.zadd(self.INDEX_KEY, {key: self._clock()})
        await pipe.execute()

    async def delete(self, tenant_id: str, user_id: str, session_id: str) -> None:
        key = session_storage_key(tenant_id, user_id, session_id)
        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.zrem(self.INDEX_KEY, key)
        await pipe.execute()

    async def purge_older_than(self, duration: timedelta) -> int:
        cutoff = self._clock() - duration.total_seconds()
        stale = await self.client.zrangebyscore(self.INDEX_KEY, "-inf", cutoff)
        if not stale:
            return 0
        pipe = self.client.pipeline()
        pipe.delete(*stale)
        pipe.zrem(self.INDEX_KEY, *stale)
        await pipe.execute()
        logger.info("redis_sessions_purged", removed=len(stale))
        return len(stale)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
