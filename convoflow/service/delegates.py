from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar, runtime_checkable

import httpx

from convoflow.logging import get_logger
from convoflow.service.errors import DelegateError

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_DELEGATE_TIMEOUT_MS = 30000
DEFAULT_DELEGATE_MAX_RETRIES = 2
DEFAULT_DELEGATE_BACKOFF_MS = 250
MAX_RETRIES_HARD_CAP = 3


@dataclass(frozen=True)
class AICompletion:
    text: str
    tokens_used: Optional[int] = None


@runtime_checkable
class AIDelegate(Protocol):
    async def complete(
        self,
        prompt: str,
        history: List[Dict[str, str]],
        model_config: Dict[str, Any],
    ) -> AICompletion: ...


@runtime_checkable
class SpeechDelegate(Protocol):
    async def text_to_speech(self, text: str, voice_config: Dict[str, Any]) -> bytes: ...

    async def speech_to_text(self, audio: bytes, language_hint: Optional[str]) -> str: ...


def classify_status(status: int) -> Tuple[str, bool]:
    """Map a provider HTTP status onto (error kind, retryable)."""
    if status == 429:
        return "rate_limit", False
    if status in (401, 403):
        return "auth", False
    if 500 <= status < 600:
        return "upstream", True
    if status == 408:
        return "timeout", True
    return "bad_request", False


def error_for_status(status: int, message: str = "", *, detail: Optional[dict] = None) -> DelegateError:
    kind, retryable = classify_status(status)
    return DelegateError(
        message or f"delegate returned status {status}",
        kind=kind,
        retryable=retryable,
        status=status,
        detail=detail,
    )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    max_retries: int = DEFAULT_DELEGATE_MAX_RETRIES,
    backoff_ms: int = DEFAULT_DELEGATE_BACKOFF_MS,
    timeout_ms: int = DEFAULT_DELEGATE_TIMEOUT_MS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run a delegate call with a timeout and exponential backoff.

    Only DelegateErrors marked retryable (upstream faults and timeouts) are
    attempted again; rate-limit, auth and bad-request failures surface
    immediately. The backoff quadruples after each failed attempt.
    """
    max_retries = max(0, min(max_retries, MAX_RETRIES_HARD_CAP))
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            error = DelegateError(
                f"{name} timed out", kind="timeout", retryable=True, detail={"timeout_ms": timeout_ms}
            )
        except DelegateError as exc:
            error = exc
        except Exception as exc:
            error = DelegateError(f"{name} failed: {exc}", kind="upstream", retryable=False)

        attempt += 1
        if not error.retryable or attempt > max_retries:
            logger.warning(
                "delegate_call_failed",
                delegate=name,
                kind=error.kind,
                attempts=attempt,
                retryable=error.retryable,
            )
            raise error

        current_backoff_ms = backoff_ms * (4 ** (attempt - 1))
        logger.info(
            "delegate_call_retry",
            delegate=name,
            kind=error.kind,
            attempt=attempt,
            backoff_ms=current_backoff_ms,
        )
        if current_backoff_ms > 0:
            await sleep(current_backoff_ms / 1000.0)


class HttpRequester:
    """Performs the outbound requests of api_call nodes.

    Transport failures and error statuses are raised as DelegateError so the
    executor treats them like any other collaborator failure.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout_ms: int = 10000,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout_ms = timeout_ms

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_ms / 1000.0)
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        method = method.upper()
        kwargs: Dict[str, Any] = {"headers": headers or {}}
        if body is not None:
            if method == "GET":
                kwargs["params"] = body
            else:
                kwargs["json"] = body
        timeout = (timeout_ms or self.timeout_ms) / 1000.0
        try:
            response = await self.client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise DelegateError(
                "api call timed out", kind="timeout", retryable=True, detail={"url": url}
            ) from exc
        except httpx.HTTPError as exc:
            raise DelegateError(
                f"api call failed: {type(exc).__name__}",
                kind="upstream",
                retryable=True,
                detail={"url": url},
            ) from exc
        if response.status_code >= 400:
            raise error_for_status(
                response.status_code, "api call returned an error status", detail={"url": url}
            )
        try:
            return response.json()
        except ValueError:
            return response.text

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


__all__ = [
    "AICompletion",
    "AIDelegate",
    "HttpRequester",
    "SpeechDelegate",
    "call_with_retry",
    "classify_status",
    "error_for_status",
]
