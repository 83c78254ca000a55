from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from convoflow.config import get_settings, reset_settings_cache
from convoflow.logging import configure_logging, get_logger
from convoflow.service.delegates import AIDelegate, HttpRequester, SpeechDelegate
from convoflow.service.executor import NodeExecutor
from convoflow.service.flow_cache import FlowCache
from convoflow.service.flow_service import FlowService
from convoflow.service.navigation import NavigationService
from convoflow.storage.memory import MemoryFlowStore, MemorySessionStore
from convoflow.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide flow engine components built from settings."""

    def __init__(
        self,
        *,
        ai_delegate: Optional[AIDelegate] = None,
        speech_delegate: Optional[SpeechDelegate] = None,
    ):
        self.settings = get_settings()
        settings = self.settings
        configure_logging(settings.log_level, json_output=settings.log_json)
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        self.flow_store = MemoryFlowStore()
        self.session_store: Union[MemorySessionStore, RedisSessionStore] = self._build_session_store()

        self.cache = FlowCache(ttl_seconds=settings.flow_cache_ttl_seconds)
        self.executor = NodeExecutor(
            ai_delegate=ai_delegate,
            speech_delegate=speech_delegate,
            http=HttpRequester(timeout_ms=settings.api_call_timeout_ms),
            max_hops=settings.max_auto_advance_hops,
            per_hop_token_overhead=settings.per_hop_token_overhead,
            history_cap=settings.session_history_cap,
            delegate_timeout_ms=settings.delegate_timeout_ms,
            delegate_max_retries=settings.delegate_max_retries,
            delegate_backoff_ms=settings.delegate_backoff_ms,
        )
        self.flow_service = FlowService(
            self.flow_store,
            self.executor,
            session_store=self.session_store,
            cache=self.cache,
            session_inactivity_minutes=settings.session_inactivity_minutes,
        )
        self.navigation = NavigationService(
            self.executor,
            graph_loader=self.flow_service.get_flow_for_tenant,
            history_cap=settings.navigation_history_cap,
            circular_window=settings.circular_window,
            circular_threshold=settings.circular_threshold,
            circular_policy=settings.circular_policy,
        )
        self.flow_service.navigation = self.navigation
        logger.info(
            "runtime_init_completed",
            session_store=type(self.session_store).__name__,
            flow_cache_ttl_seconds=settings.flow_cache_ttl_seconds,
        )

    def _build_session_store(self) -> Union[MemorySessionStore, RedisSessionStore]:
        settings = self.settings
        if settings.use_memory_store or not settings.redis_url:
            return MemorySessionStore()

        store = RedisSessionStore(
            settings.redis_url,
            ttl_seconds=settings.session_inactivity_minutes * 60 + 60,
        )
        try:
            store.verify_connection()
            return store
        except Exception as exc:
            redis_error = exc

        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for session state; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error),
            mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return MemorySessionStore()

    async def close(self) -> None:
        await self.executor.aclose()
        if isinstance(self.session_store, RedisSessionStore):
            await self.session_store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building it at once.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())
        reset_settings_cache()
        runtime = Runtime()
        return runtime
