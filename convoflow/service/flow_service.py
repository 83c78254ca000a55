from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from convoflow.logging import get_logger, sanitize_error_message, set_turn_id
from convoflow.service.errors import (
    ConcurrentSessionError,
    FlowError,
    NotFoundError,
    ValidationError,
)
from convoflow.service.executor import ExecutionResult, NodeExecutor
from convoflow.service.flow_cache import FlowCache
from convoflow.service.graph import FlowValidationReport, compile_flow, validate_flow
from convoflow.service.metrics import MetricsAggregator, TurnMetrics
from convoflow.service.navigation import (
    NavigationContext,
    NavigationOptions,
    NavigationResult,
    NavigationService,
)
from convoflow.service.templates import TemplateOverride
from convoflow.service.tokenizer_utils import (
    ERROR_NOMINAL_TOKENS,
    NO_FLOW_TOKEN_OVERHEAD,
    estimate_flow_tokens,
    estimate_token_count,
)
from convoflow.storage.common import FlowGraphStore, SessionStateStore
from convoflow.storage.errors import ConstraintViolation
from convoflow.storage.models import FlowGraph, SessionState, session_key

logger = get_logger(__name__)

NO_FLOW_RESPONSE = "No conversation flow is configured for this account yet."
BUSY_RESPONSE = "Your previous message is still being processed. Please wait a moment."
FALLBACK_RESPONSE = "Sorry, an error occurred while processing your message. Please try again."
ERROR_CONTEXT_KEY = "error"

TemplateInput = Union[TemplateOverride, Dict[str, Any], None]


@dataclass
class TurnResult:
    response: str
    state: SessionState
    metrics: TurnMetrics
    requires_input: bool = False
    attachments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimulationReport:
    responses: List[str] = field(default_factory=list)
    turns: List[TurnMetrics] = field(default_factory=list)
    final_state: Optional[SessionState] = None

    @property
    def total_tokens(self) -> int:
        return sum(turn.tokens_used for turn in self.turns)

    @property
    def total_processing_ms(self) -> float:
        return round(sum(turn.processing_time_ms for turn in self.turns), 3)

    @property
    def errors(self) -> List[str]:
        return [turn.error_code for turn in self.turns if turn.error_code]


class FlowService:
    """Entry point for channel adapters and the authoring layer.

    ``process_message`` runs one turn: it loads the tenant's active graph
    through the flow cache, executes it against the session state and saves
    the new state. No exception leaves this class; failures become a safe
    response and an error-tagged metrics record.
    """

    def __init__(
        self,
        flow_store: FlowGraphStore,
        executor: NodeExecutor,
        *,
        session_store: Optional[SessionStateStore] = None,
        cache: Optional[FlowCache] = None,
        navigation: Optional[NavigationService] = None,
        metrics: Optional[MetricsAggregator] = None,
        session_inactivity_minutes: int = 60,
    ) -> None:
        self.flow_store = flow_store
        self.executor = executor
        self.session_store = session_store
        self.cache = cache or FlowCache()
        self.navigation = navigation or NavigationService(
            executor, graph_loader=self.get_flow_for_tenant
        )
        self.metrics = metrics or MetricsAggregator()
        self.session_inactivity_minutes = session_inactivity_minutes
        self._template_overrides: Dict[str, TemplateOverride] = {}
        self._active_sessions: set[str] = set()
        self._sessions_lock = threading.Lock()

    # Session ownership

    def _acquire(self, key: str) -> bool:
        with self._sessions_lock:
            if key in self._active_sessions:
                return False
            self._active_sessions.add(key)
            return True

    def _release(self, key: str) -> None:
        with self._sessions_lock:
            self._active_sessions.discard(key)

    def is_session_busy(self, tenant_id: str, user_id: str, session_id: str) -> bool:
        with self._sessions_lock:
            return session_key(tenant_id, user_id, session_id) in self._active_sessions

    async def _load_state(
        self,
        prev_state: Optional[SessionState],
        tenant_id: str,
        user_id: str,
        session_id: str,
    ) -> SessionState:
        if prev_state is not None:
            if (prev_state.tenant_id, prev_state.user_id, prev_state.session_id) != (
                tenant_id,
                user_id,
                session_id,
            ):
                raise ValidationError(
                    "session state does not belong to this session",
                    detail={"tenant_id": tenant_id, "session_id": session_id},
                )
            return prev_state.copy()
        if self.session_store is not None:
            stored = await self.session_store.load(tenant_id, user_id, session_id)
            if stored is not None:
                return stored
        return SessionState.new(tenant_id, user_id, session_id)

    async def _safe_state(
        self,
        loaded: Optional[SessionState],
        prev_state: Optional[SessionState],
        tenant_id: str,
        user_id: str,
        session_id: str,
    ) -> SessionState:
        """State handed back when a call fails or is rejected.

        Prefers the state the call already loaded, then the caller's own
        state, then the stored session, so the conversation keeps its place.
        """
        if loaded is not None:
            return loaded.copy()
        if prev_state is not None and prev_state.session_key == session_key(
            tenant_id, user_id, session_id
        ):
            return prev_state.copy()
        if self.session_store is not None:
            try:
                stored = await self.session_store.load(tenant_id, user_id, session_id)
            except Exception as exc:
                logger.error(
                    "flow_session_load_failed",
                    session_key=session_key(tenant_id, user_id, session_id),
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(str(exc)),
                )
            else:
                if stored is not None:
                    return stored
        return SessionState.new(tenant_id, user_id, session_id)

    async def _save_state(self, state: SessionState) -> None:
        if self.session_store is None:
            return
        try:
            await self.session_store.save(state)
        except Exception as exc:
            # The caller still receives the state, so the session can continue
            logger.error(
                "flow_session_save_failed",
                session_key=state.session_key,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    # Graph access

    async def get_flow_for_tenant(self, tenant_id: str) -> Optional[FlowGraph]:
        return await self.cache.get_or_load(tenant_id, self.flow_store.get)

    def set_template_override(self, tenant_id: str, override: TemplateInput) -> None:
        if override is None:
            self._template_overrides.pop(tenant_id, None)
            return
        self._template_overrides[tenant_id] = TemplateOverride.coerce(override)

    def get_template_override(self, tenant_id: str) -> Optional[TemplateOverride]:
        return self._template_overrides.get(tenant_id)

    # Turn processing

    async def process_message(
        self,
        message: str,
        user_id: str,
        session_id: str,
        tenant_id: str,
        prev_state: Optional[SessionState] = None,
        override_graph: Optional[FlowGraph] = None,
        template_overrides: TemplateInput = None,
        *,
        audio: Optional[bytes] = None,
    ) -> TurnResult:
        set_turn_id()
        started = time.perf_counter()
        key = session_key(tenant_id, user_id, session_id)
        if not self._acquire(key):
            logger.warning("flow_session_busy", session_key=key)
            return self._record(
                tenant_id,
                TurnResult(
                    response=BUSY_RESPONSE,
                    state=await self._safe_state(None, prev_state, tenant_id, user_id, session_id),
                    metrics=TurnMetrics(
                        tokens_used=ERROR_NOMINAL_TOKENS,
                        error_code=ConcurrentSessionError.error_code,
                    ),
                ),
                started,
            )
        loaded: Optional[SessionState] = None
        try:
            loaded = await self._load_state(prev_state, tenant_id, user_id, session_id)
            result = await self._process(
                message,
                loaded.copy(),
                tenant_id,
                override_graph,
                template_overrides,
                audio,
            )
        except Exception as exc:
            error_code = exc.error_code if isinstance(exc, FlowError) else "internal_error"
            logger.error(
                "flow_process_message_failed",
                session_key=key,
                error_code=error_code,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            state = await self._safe_state(loaded, prev_state, tenant_id, user_id, session_id)
            state.context[ERROR_CONTEXT_KEY] = sanitize_error_message(str(exc))
            state.touch()
            result = TurnResult(
                response=FALLBACK_RESPONSE,
                state=state,
                metrics=TurnMetrics(tokens_used=ERROR_NOMINAL_TOKENS, error_code=error_code),
            )
        finally:
            self._release(key)
        return self._record(tenant_id, result, started)

    def _record(self, tenant_id: str, result: TurnResult, started: float) -> TurnResult:
        result.metrics.processing_time_ms = round((time.perf_counter() - started) * 1000, 3)
        self.metrics.record(tenant_id, result.metrics)
        return result

    async def _process(
        self,
        message: str,
        state: SessionState,
        tenant_id: str,
        override_graph: Optional[FlowGraph],
        template_overrides: TemplateInput,
        audio: Optional[bytes],
    ) -> TurnResult:
        graph = override_graph or await self.get_flow_for_tenant(tenant_id)
        if graph is None:
            logger.info("flow_not_configured", tenant_id=tenant_id)
            state.touch()
            await self._save_state(state)
            return TurnResult(
                response=NO_FLOW_RESPONSE,
                state=state,
                metrics=TurnMetrics(
                    tokens_used=estimate_token_count(message) + NO_FLOW_TOKEN_OVERHEAD
                ),
            )
        if graph.tenant_id != tenant_id:
            raise ValidationError(
                "flow belongs to another tenant",
                detail={"flow_id": graph.id, "tenant_id": tenant_id},
            )

        override = (
            TemplateOverride.coerce(template_overrides)
            if template_overrides is not None
            else self._template_overrides.get(tenant_id)
        )
        execution = await self.executor.execute(
            graph, state, message, template_override=override, audio=audio
        )
        self._tag_error(state, execution)
        await self._save_state(state)
        return TurnResult(
            response=execution.response,
            state=state,
            metrics=TurnMetrics(
                tokens_used=execution.metrics.tokens_used,
                nodes_visited=execution.metrics.nodes_visited,
                error_code=execution.error_code,
                flow_id=graph.id,
                node_id=state.current_node_id,
            ),
            requires_input=execution.requires_input,
            attachments=execution.attachments,
        )

    @staticmethod
    def _tag_error(state: SessionState, execution: ExecutionResult) -> None:
        if execution.error is not None:
            state.context[ERROR_CONTEXT_KEY] = sanitize_error_message(execution.error.message)
        else:
            state.context.pop(ERROR_CONTEXT_KEY, None)

    async def navigate(
        self,
        tenant_id: str,
        user_id: str,
        session_id: str,
        target_node_id: str,
        *,
        prev_state: Optional[SessionState] = None,
        options: Optional[NavigationOptions] = None,
        side_channel: Any = None,
        template_overrides: TemplateInput = None,
    ) -> Tuple[NavigationResult, SessionState]:
        """Jump a session to ``target_node_id`` and persist the outcome."""
        set_turn_id()
        key = session_key(tenant_id, user_id, session_id)
        if not self._acquire(key):
            logger.warning("flow_session_busy", session_key=key, target_node_id=target_node_id)
            return (
                NavigationResult(
                    success=False,
                    target_node_id=target_node_id,
                    error="session is busy",
                    error_code=ConcurrentSessionError.error_code,
                ),
                await self._safe_state(None, prev_state, tenant_id, user_id, session_id),
            )
        loaded: Optional[SessionState] = None
        try:
            loaded = await self._load_state(prev_state, tenant_id, user_id, session_id)
            state = loaded.copy()
            override = (
                TemplateOverride.coerce(template_overrides)
                if template_overrides is not None
                else self._template_overrides.get(tenant_id)
            )
            context = NavigationContext(
                state=state,
                side_channel=side_channel,
                template_override=override,
            )
            result = await self.navigation.goto_flow(context, target_node_id, options)
            await self._save_state(state)
            return result, state
        except Exception as exc:
            logger.error(
                "flow_navigation_failed",
                session_key=key,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return (
                NavigationResult(
                    success=False,
                    target_node_id=target_node_id,
                    error=sanitize_error_message(str(exc)),
                    error_code=exc.error_code if isinstance(exc, FlowError) else "internal_error",
                ),
                await self._safe_state(loaded, prev_state, tenant_id, user_id, session_id),
            )
        finally:
            self._release(key)

    # Administration

    async def create_flow(self, raw: Union[Dict[str, Any], FlowGraph]) -> FlowGraph:
        if isinstance(raw, FlowGraph):
            graph = raw
        else:
            graph = compile_flow({**raw, "id": raw.get("id") or str(uuid.uuid4())})
        if await self.flow_store.get_by_id(graph.id) is not None:
            raise ValidationError("flow already exists", detail={"flow_id": graph.id})
        stored = await self._upsert(graph)
        logger.info("flow_created", flow_id=stored.id, tenant_id=stored.tenant_id)
        return stored

    async def update_flow(self, flow_id: str, changes: Dict[str, Any]) -> FlowGraph:
        existing = await self.get_flow(flow_id)
        raw = existing.to_dict()
        raw.update(changes)
        raw.update(id=flow_id, tenant_id=existing.tenant_id, version=existing.version + 1)
        stored = await self._upsert(compile_flow(raw))
        logger.info("flow_updated", flow_id=flow_id, version=stored.version)
        return stored

    async def activate_flow(self, flow_id: str, tenant_id: str) -> FlowGraph:
        try:
            activated = await self.flow_store.set_active(flow_id, tenant_id)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if activated is None:
            raise NotFoundError("flow not found", detail={"flow_id": flow_id})
        self.cache.invalidate(tenant_id)
        logger.info("flow_activated", flow_id=flow_id, tenant_id=tenant_id)
        return activated

    async def delete_flow(self, flow_id: str) -> None:
        existing = await self.get_flow(flow_id)
        await self.flow_store.delete(flow_id)
        self.cache.invalidate(existing.tenant_id)
        logger.info("flow_deleted", flow_id=flow_id, tenant_id=existing.tenant_id)

    async def get_flow(self, flow_id: str) -> FlowGraph:
        graph = await self.flow_store.get_by_id(flow_id)
        if graph is None:
            raise NotFoundError("flow not found", detail={"flow_id": flow_id})
        return graph

    async def get_flows_by_tenant(self, tenant_id: str) -> List[FlowGraph]:
        return await self.flow_store.list_by_tenant(tenant_id)

    def validate_flow(self, raw: Dict[str, Any]) -> FlowValidationReport:
        return validate_flow(raw)

    async def _upsert(self, graph: FlowGraph) -> FlowGraph:
        try:
            stored = await self.flow_store.upsert(graph)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        self.cache.invalidate(stored.tenant_id)
        return stored

    # Estimation, simulation and housekeeping

    async def estimate_tokens(
        self, message: str, tenant_id: str, flow_id: Optional[str] = None
    ) -> int:
        if flow_id:
            graph = await self.flow_store.get_by_id(flow_id)
        else:
            graph = await self.get_flow_for_tenant(tenant_id)
        return estimate_flow_tokens(message, len(graph.nodes) if graph else None)

    async def simulate_conversation(
        self,
        flow: Union[FlowGraph, Dict[str, Any]],
        messages: List[str],
        *,
        template_overrides: TemplateInput = None,
    ) -> SimulationReport:
        """Run ``messages`` through a throwaway session without persisting anything."""
        graph = flow if isinstance(flow, FlowGraph) else compile_flow(flow)
        override = TemplateOverride.coerce(template_overrides)
        state = SessionState.new(graph.tenant_id, "simulation", str(uuid.uuid4()))
        report = SimulationReport()
        for message in messages:
            started = time.perf_counter()
            execution = await self.executor.execute(
                graph, state, message, template_override=override
            )
            report.responses.append(execution.response)
            report.turns.append(
                TurnMetrics(
                    tokens_used=execution.metrics.tokens_used,
                    processing_time_ms=round((time.perf_counter() - started) * 1000, 3),
                    nodes_visited=execution.metrics.nodes_visited,
                    error_code=execution.error_code,
                    flow_id=graph.id,
                    node_id=state.current_node_id,
                )
            )
        report.final_state = state
        return report

    async def purge_inactive_sessions(self) -> int:
        if self.session_store is None:
            return 0
        removed = await self.session_store.purge_older_than(
            timedelta(minutes=self.session_inactivity_minutes)
        )
        logger.info("flow_sessions_purged", removed=removed)
        return removed

    def get_metrics(self, tenant_id: str) -> dict:
        return self.metrics.get(tenant_id)
