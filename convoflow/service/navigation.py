from __future__ import annotations

import copy
import inspect
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from convoflow.config import CircularNavigationPolicy
from convoflow.logging import get_logger, sanitize_error_message
from convoflow.service.errors import (
    ConcurrentSessionError,
    FlowError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from convoflow.service.executor import ExecutionResult, NodeExecutor
from convoflow.service.templates import TemplateOverride
from convoflow.storage.models import (
    FlowGraph,
    HistoryEntry,
    NavigationStep,
    Node,
    SessionState,
)

logger = get_logger(__name__)

DEFAULT_HISTORY_CAP = 100
DEFAULT_CIRCULAR_WINDOW = 10
DEFAULT_CIRCULAR_THRESHOLD = 2
LONG_HISTORY_WARNING = 50


class NavigationMethod(str, Enum):
    GOTO = "goto"
    CONDITIONAL = "conditional"
    BUTTON_CLICK = "button_click"
    USER_INPUT = "user_input"
    AUTO = "auto"


@dataclass
class NavigationContext:
    state: SessionState
    # Loaded through the service's graph loader when not supplied
    graph: Optional[FlowGraph] = None
    # External record (e.g. a CRM lead) updated by post-navigation hooks
    side_channel: Any = None
    template_override: Optional[TemplateOverride] = None

    @property
    def tenant_id(self) -> str:
        return self.state.tenant_id

    @property
    def session_key(self) -> str:
        return self.state.session_key


@dataclass
class NavigationOptions:
    method: Union[NavigationMethod, str] = NavigationMethod.GOTO
    validate: bool = True
    preserve_context: bool = True
    enable_rollback: bool = True
    circular_policy: Optional[CircularNavigationPolicy] = None
    # merged into the session context before the target executes
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NavigationResult:
    success: bool
    target_node_id: str
    response: str = ""
    next_node_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    rolled_back: bool = False
    requires_input: bool = False
    tokens_used: int = 0
    attachments: Dict[str, Any] = field(default_factory=dict)
    step: Optional[NavigationStep] = None


PostNavigationHook = Callable[
    [NavigationContext, Node, NavigationStep], Union[None, Awaitable[None]]
]
GraphLoader = Callable[[str], Awaitable[Optional[FlowGraph]]]


def update_stage_hook(context: NavigationContext, node: Node, step: NavigationStep) -> None:
    """Copy a node's sales stage and funnel step onto the side-channel record."""
    record = context.side_channel
    if record is None:
        return
    stage = node.metadata.get("stage") or node.metadata.get("lead_stage")
    funnel_step = node.metadata.get("funnel_step")
    if stage is None and funnel_step is None:
        return
    if isinstance(record, dict):
        if stage is not None:
            record["stage"] = stage
            record["stage_updated_at"] = step.timestamp.isoformat()
        if funnel_step is not None:
            record.setdefault("funnel_steps", []).append(funnel_step)
        return
    if stage is not None:
        setattr(record, "stage", stage)
        setattr(record, "stage_updated_at", step.timestamp)
    if funnel_step is not None:
        steps = list(getattr(record, "funnel_steps", None) or [])
        steps.append(funnel_step)
        setattr(record, "funnel_steps", steps)


def capture_snapshot(state: SessionState) -> Dict[str, Any]:
    return {
        "current_node_id": state.current_node_id,
        "context": copy.deepcopy(state.context),
        "history": [entry.to_dict() for entry in state.history],
    }


def restore_snapshot(state: SessionState, snapshot: Dict[str, Any]) -> None:
    state.current_node_id = snapshot.get("current_node_id")
    state.context = copy.deepcopy(snapshot.get("context") or {})
    state.history = [HistoryEntry.from_dict(h) for h in snapshot.get("history") or []]


class NavigationService:
    """Validated, out-of-band jumps to arbitrary nodes of a flow.

    Navigation for one session key runs one at a time. Each attempt that gets
    past the lock leaves a NavigationStep in the session's bounded history,
    which also feeds circular-navigation detection and rollback.
    """

    def __init__(
        self,
        executor: NodeExecutor,
        *,
        graph_loader: Optional[GraphLoader] = None,
        history_cap: int = DEFAULT_HISTORY_CAP,
        circular_window: int = DEFAULT_CIRCULAR_WINDOW,
        circular_threshold: int = DEFAULT_CIRCULAR_THRESHOLD,
        circular_policy: CircularNavigationPolicy = CircularNavigationPolicy.REJECT,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.executor = executor
        self.graph_loader = graph_loader
        self.history_cap = history_cap
        self.circular_window = circular_window
        self.circular_threshold = circular_threshold
        self.circular_policy = circular_policy
        self._clock = clock
        self._in_progress: set[str] = set()
        self._lock = threading.Lock()
        self._hooks: List[PostNavigationHook] = [update_stage_hook]

    def add_post_navigation_hook(self, hook: PostNavigationHook) -> None:
        self._hooks.append(hook)

    def is_in_progress(self, session_key: str) -> bool:
        with self._lock:
            return session_key in self._in_progress

    def _acquire(self, session_key: str) -> bool:
        with self._lock:
            if session_key in self._in_progress:
                return False
            self._in_progress.add(session_key)
            return True

    def _release(self, session_key: str) -> None:
        with self._lock:
            self._in_progress.discard(session_key)

    def count_recent_visits(self, state: SessionState, target_node_id: str) -> int:
        recent = state.navigation_history[-self.circular_window :]
        return sum(1 for step in recent if step.to_node_id == target_node_id)

    def is_circular(self, state: SessionState, target_node_id: str) -> bool:
        return self.count_recent_visits(state, target_node_id) > self.circular_threshold

    def validate_navigation(
        self,
        graph: FlowGraph,
        state: SessionState,
        target_node_id: str,
        *,
        policy: Optional[CircularNavigationPolicy] = None,
    ) -> List[str]:
        """Raise for navigation that must not happen; return soft warnings."""
        if graph.get(target_node_id) is None:
            raise NotFoundError(
                "navigation target does not exist",
                detail={"node_id": target_node_id, "flow_id": graph.id},
            )
        if graph.tenant_id != state.tenant_id:
            raise ValidationError(
                "navigation target belongs to another tenant",
                detail={"node_id": target_node_id},
            )
        warnings: List[str] = []
        visits = self.count_recent_visits(state, target_node_id)
        if visits > self.circular_threshold:
            policy = policy or self.circular_policy
            if policy == CircularNavigationPolicy.REJECT:
                raise ValidationError(
                    "circular navigation detected",
                    detail={
                        "node_id": target_node_id,
                        "visits": visits,
                        "window": self.circular_window,
                    },
                )
            logger.warning(
                "navigation_circular_warning",
                session_key=state.session_key,
                node_id=target_node_id,
                visits=visits,
            )
            warnings.append(f"node '{target_node_id}' visited {visits} times recently")
        if len(state.navigation_history) > LONG_HISTORY_WARNING:
            warnings.append("navigation history is unusually long")
        return warnings

    def rollback(
        self, state: SessionState, *, fallback: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Restore the newest successful snapshot, else ``fallback``.

        Best effort: side effects already committed by executed nodes (API
        calls, audio synthesis) are not undone.
        """
        for step in reversed(state.navigation_history):
            if step.success and step.context_snapshot is not None:
                restore_snapshot(state, step.context_snapshot)
                logger.info(
                    "navigation_rolled_back",
                    session_key=state.session_key,
                    restored_node_id=state.current_node_id,
                    source="history",
                )
                return True
        if fallback is not None:
            restore_snapshot(state, fallback)
            logger.info(
                "navigation_rolled_back",
                session_key=state.session_key,
                restored_node_id=state.current_node_id,
                source="preflight",
            )
            return True
        return False

    async def _resolve_graph(self, context: NavigationContext) -> FlowGraph:
        graph = context.graph
        if graph is None and self.graph_loader is not None:
            graph = await self.graph_loader(context.tenant_id)
        if graph is None:
            raise NotFoundError(
                "no active flow for tenant", detail={"tenant_id": context.tenant_id}
            )
        return graph

    async def goto_flow(
        self,
        context: NavigationContext,
        target_node_id: str,
        options: Optional[NavigationOptions] = None,
    ) -> NavigationResult:
        options = options or NavigationOptions()
        session_key = context.session_key
        if not self._acquire(session_key):
            logger.warning(
                "navigation_in_progress",
                session_key=session_key,
                target_node_id=target_node_id,
            )
            return NavigationResult(
                success=False,
                target_node_id=target_node_id,
                error="navigation already in progress for this session",
                error_code=ConcurrentSessionError.error_code,
            )
        try:
            return await self._navigate(context, target_node_id, options)
        finally:
            self._release(session_key)

    async def _navigate(
        self,
        context: NavigationContext,
        target_node_id: str,
        options: NavigationOptions,
    ) -> NavigationResult:
        state = context.state
        started = self._clock()
        from_node_id = state.current_node_id
        snapshot: Optional[Dict[str, Any]] = None
        warnings: List[str] = []
        graph: Optional[FlowGraph] = None
        result: Optional[ExecutionResult] = None
        error: Optional[FlowError] = None
        executed = False

        try:
            graph = await self._resolve_graph(context)
            if options.validate:
                warnings = self.validate_navigation(
                    graph, state, target_node_id, policy=options.circular_policy
                )
            elif graph.get(target_node_id) is None:
                raise NotFoundError(
                    "navigation target does not exist", detail={"node_id": target_node_id}
                )
            if options.preserve_context:
                snapshot = capture_snapshot(state)
            if options.variables:
                state.context.update(copy.deepcopy(options.variables))
            state.current_node_id = target_node_id
            executed = True
            result = await self.executor.execute(
                graph,
                state,
                capture_input=False,
                template_override=context.template_override,
            )
            error = result.error
        except FlowError as exc:
            error = exc
        except Exception as exc:
            logger.error(
                "navigation_unexpected_error",
                session_key=state.session_key,
                target_node_id=target_node_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            error = InternalError(
                "navigation failed unexpectedly",
                detail={"error_type": type(exc).__name__},
            )

        rolled_back = False
        if error is not None and executed and options.enable_rollback:
            rolled_back = self.rollback(state, fallback=snapshot)

        method = options.method.value if isinstance(options.method, Enum) else str(options.method)
        step = NavigationStep(
            timestamp=datetime.utcnow(),
            from_node_id=from_node_id,
            to_node_id=target_node_id,
            method=method,
            success=error is None,
            duration_ms=round((self._clock() - started) * 1000, 3),
            error_message=sanitize_error_message(error.message) if error else None,
            context_snapshot=snapshot,
        )
        state.record_navigation(step, self.history_cap)
        state.touch()

        if error is None and graph is not None:
            await self._run_hooks(context, graph.nodes[target_node_id], step)
            logger.info(
                "navigation_completed",
                session_key=state.session_key,
                from_node_id=from_node_id,
                to_node_id=target_node_id,
                method=method,
                duration_ms=step.duration_ms,
            )
        else:
            logger.warning(
                "navigation_failed",
                session_key=state.session_key,
                to_node_id=target_node_id,
                error_code=error.error_code if error else None,
                rolled_back=rolled_back,
            )

        return NavigationResult(
            success=error is None,
            target_node_id=target_node_id,
            response=result.response if result else "",
            next_node_id=state.current_node_id,
            error=step.error_message,
            error_code=error.error_code if error else None,
            warnings=warnings,
            rolled_back=rolled_back,
            requires_input=result.requires_input if result else False,
            tokens_used=result.metrics.tokens_used if result else 0,
            attachments=result.attachments if result else {},
            step=step,
        )

    async def _run_hooks(
        self, context: NavigationContext, node: Node, step: NavigationStep
    ) -> None:
        for hook in self._hooks:
            try:
                outcome = hook(context, node, step)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                # Side-channel updates never fail a navigation that already happened
                logger.warning(
                    "navigation_hook_failed",
                    hook=getattr(hook, "__name__", type(hook).__name__),
                    error=str(exc),
                )

    def get_navigation_history(
        self, state: SessionState, limit: Optional[int] = None
    ) -> List[NavigationStep]:
        history = list(state.navigation_history)
        return history[-limit:] if limit else history

    def clear_history(self, state: SessionState) -> None:
        state.navigation_history.clear()

    def navigation_stats(self, state: SessionState) -> Dict[str, Any]:
        history = state.navigation_history
        successes = [step for step in history if step.success]
        visits = Counter(step.to_node_id for step in history)
        return {
            "total": len(history),
            "successful": len(successes),
            "failed": len(history) - len(successes),
            "average_duration_ms": (
                round(sum(step.duration_ms for step in history) / len(history), 3)
                if history
                else 0.0
            ),
            "most_visited": visits.most_common(1)[0][0] if visits else None,
        }


__all__ = [
    "NavigationContext",
    "NavigationMethod",
    "NavigationOptions",
    "NavigationResult",
    "NavigationService",
    "capture_snapshot",
    "restore_snapshot",
    "update_stage_hook",
]
