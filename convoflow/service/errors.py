from __future__ import annotations

from typing import Optional


class FlowError(Exception):
    """Base class for flow engine errors.

    Each subclass carries a stable ``error_code`` that ends up in turn metrics
    and navigation results, so callers can branch on the kind of failure
    without parsing messages:
    - configuration_error: malformed graph (missing entry, bad condition node)
    - not_found: unknown node, flow or tenant
    - validation_error: navigation outside the tenant, circular navigation
    - delegate_error: AI or speech collaborator failure
    - internal_error: unexpected dispatch failure
    - concurrent_session: a second turn arrived for a busy session
    """

    error_code: str = "flow_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(FlowError):
    """Flow graph is malformed for the operation requested."""
    error_code = "configuration_error"


class NotFoundError(FlowError):
    """Requested node, flow or tenant does not exist."""
    error_code = "not_found"


class ValidationError(FlowError):
    """Request is well-formed but not allowed."""
    error_code = "validation_error"


class DelegateError(FlowError):
    """An external AI or speech collaborator failed.

    ``kind`` is one of ``rate_limit``, ``auth``, ``bad_request``, ``upstream``
    or ``timeout``. Only retryable errors are attempted again.
    """

    error_code = "delegate_error"

    def __init__(
        self,
        message: str,
        *,
        kind: str = "upstream",
        retryable: bool = False,
        status: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.kind = kind
        self.retryable = retryable
        self.status = status


class InternalError(FlowError):
    """Unexpected exception while dispatching a node."""
    error_code = "internal_error"


class ConcurrentSessionError(FlowError):
    """Another turn or navigation is already running for this session."""
    error_code = "concurrent_session"


__all__ = [
    "FlowError",
    "ConfigurationError",
    "NotFoundError",
    "ValidationError",
    "DelegateError",
    "InternalError",
    "ConcurrentSessionError",
]
