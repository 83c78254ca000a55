from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from convoflow.logging import get_logger, log_flow_trace
from convoflow.service.conditions import evaluate_branches
from convoflow.service.delegates import (
    DEFAULT_DELEGATE_BACKOFF_MS,
    DEFAULT_DELEGATE_MAX_RETRIES,
    DEFAULT_DELEGATE_TIMEOUT_MS,
    AIDelegate,
    HttpRequester,
    SpeechDelegate,
    call_with_retry,
)
from convoflow.service.errors import (
    ConfigurationError,
    DelegateError,
    FlowError,
    InternalError,
    NotFoundError,
)
from convoflow.service.templates import (
    TemplateOverride,
    apply_template_override,
    render_template,
    render_value,
    template_variables,
)
from convoflow.service.tokenizer_utils import (
    DELEGATE_ERROR_NOMINAL_TOKENS,
    ERROR_NOMINAL_TOKENS,
    estimate_turn_tokens,
)
from convoflow.storage.models import (
    Conditional,
    Direct,
    FlowGraph,
    HistoryEntry,
    Node,
    NodeType,
    SessionState,
)

logger = get_logger(__name__)

DEFAULT_MAX_AUTO_ADVANCE_HOPS = 25
DEFAULT_PER_HOP_TOKEN_OVERHEAD = 5
DEFAULT_HISTORY_CAP = 50
AI_HISTORY_WINDOW = 10

# Reserved context keys written by the engine itself
LAST_USER_MESSAGE = "last_user_message"
TTS_CONTEXT_KEY = "tts"
VOICE_AGENT_CONTEXT_KEY = "voice_agent"
COMPLETED_CONTEXT_KEY = "completed"

APOLOGY_RESPONSE = "Sorry, something went wrong with this conversation. Please try again later."
CONFIGURATION_ERROR_RESPONSE = (
    "Sorry, this conversation is not configured correctly. Please contact support."
)
NO_MATCH_RESPONSE = "I didn't understand your request. Could you rephrase it?"
DELEGATE_ERROR_RESPONSE = "Sorry, I couldn't process that right now. Please try again in a moment."
INTERNAL_ERROR_RESPONSE = "Sorry, an internal error occurred while processing your message."
WELCOME_RESPONSE = "Welcome!"
INPUT_PROMPT_RESPONSE = "Please type your answer."
ACTION_DONE_RESPONSE = "Action completed."
API_DONE_RESPONSE = "Request completed."
END_RESPONSE = "Conversation ended."

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class StepKind(str, Enum):
    ADVANCE = "advance"
    PAUSE = "pause"
    TERMINAL = "terminal"


@dataclass
class StepOutcome:
    kind: StepKind
    response: str = ""
    # ADVANCE: node to dispatch next. PAUSE/TERMINAL: node for the next turn,
    # None keeps the session on the node that produced the outcome.
    next_node_id: Optional[str] = None
    error: Optional[FlowError] = None
    tokens_used: Optional[int] = None
    requires_input: bool = False


@dataclass
class ExecutionMetrics:
    tokens_used: int
    nodes_visited: int
    delegate_tokens: Optional[int] = None


@dataclass
class ExecutionResult:
    response: str
    next_node_id: Optional[str]
    metrics: ExecutionMetrics
    error: Optional[FlowError] = None
    requires_input: bool = False
    attachments: Dict[str, Any] = field(default_factory=dict)
    visited: List[str] = field(default_factory=list)
    # node id the session pointed at when it had to fall back
    fallback_from: Optional[str] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None


@dataclass
class _Turn:
    message: str
    capture_input: bool
    audio: Optional[bytes]
    override: Optional[TemplateOverride]
    # the turn picked up a node the session was already waiting on
    resumed: bool = False
    hop: int = 0
    attachments: Dict[str, Any] = field(default_factory=dict)

    @property
    def can_capture(self) -> bool:
        return self.capture_input and self.resumed and self.hop == 0


Handler = Callable[[Node, FlowGraph, SessionState, _Turn], Awaitable[StepOutcome]]


class NodeExecutor:
    """Runs one turn of a flow graph against a session state.

    Logic nodes (start, action, api_call, condition, captured input) advance
    inside the turn; message-like nodes (message, ai, tts, end, input
    prompts) end it with one visible response. The loop is bounded by
    ``max_hops`` so a cycle of logic nodes cannot spin forever.

    ``execute`` mutates ``state`` in place and never raises; failures come
    back as results carrying a fallback response and a FlowError.
    """

    def __init__(
        self,
        *,
        ai_delegate: Optional[AIDelegate] = None,
        speech_delegate: Optional[SpeechDelegate] = None,
        http: Optional[HttpRequester] = None,
        max_hops: int = DEFAULT_MAX_AUTO_ADVANCE_HOPS,
        per_hop_token_overhead: int = DEFAULT_PER_HOP_TOKEN_OVERHEAD,
        history_cap: int = DEFAULT_HISTORY_CAP,
        delegate_timeout_ms: int = DEFAULT_DELEGATE_TIMEOUT_MS,
        delegate_max_retries: int = DEFAULT_DELEGATE_MAX_RETRIES,
        delegate_backoff_ms: int = DEFAULT_DELEGATE_BACKOFF_MS,
    ) -> None:
        self.ai_delegate = ai_delegate
        self.speech_delegate = speech_delegate
        self.http = http or HttpRequester()
        self.max_hops = max_hops
        self.per_hop_token_overhead = per_hop_token_overhead
        self.history_cap = history_cap
        self.delegate_timeout_ms = delegate_timeout_ms
        self.delegate_max_retries = delegate_max_retries
        self.delegate_backoff_ms = delegate_backoff_ms
        self._handlers: Dict[NodeType, Handler] = {
            NodeType.START: self._run_start,
            NodeType.MESSAGE: self._run_message,
            NodeType.INPUT: self._run_input,
            NodeType.CONDITION: self._run_condition,
            NodeType.ACTION: self._run_action,
            NodeType.API_CALL: self._run_api_call,
            NodeType.AI: self._run_ai,
            NodeType.TTS: self._run_tts,
            NodeType.STT: self._run_stt,
            NodeType.END: self._run_end,
            NodeType.UNKNOWN: self._run_unknown,
        }

    def resolve_node(
        self, graph: FlowGraph, node_id: Optional[str]
    ) -> Tuple[Optional[Node], Optional[str]]:
        """Find the node a turn starts from.

        Returns the node plus the stale id when a fallback was needed. The
        fallback order is the entry node, any start node, then any message
        node.
        """
        if node_id is not None:
            node = graph.get(node_id)
            if node is not None:
                return node, None
            logger.warning(
                "flow_node_missing",
                node_id=node_id,
                flow_id=graph.id,
                tenant_id=graph.tenant_id,
            )
        fallback = (
            graph.get(graph.entry_node_id)
            or graph.first_of_type(NodeType.START)
            or graph.first_of_type(NodeType.MESSAGE)
        )
        return fallback, node_id

    async def execute(
        self,
        graph: FlowGraph,
        state: SessionState,
        message: str = "",
        *,
        template_override: Optional[TemplateOverride] = None,
        capture_input: bool = True,
        audio: Optional[bytes] = None,
    ) -> ExecutionResult:
        message = message or ""
        if not capture_input:
            message = str(state.context.get(LAST_USER_MESSAGE) or message)
        turn = _Turn(
            message=message,
            capture_input=capture_input,
            audio=audio,
            override=template_override,
        )
        state.flow_id = graph.id
        if capture_input:
            state.context[LAST_USER_MESSAGE] = message
            if message:
                state.append_history(
                    HistoryEntry(role="user", content=message, node_id=state.current_node_id),
                    self.history_cap,
                )

        start_node, fallback_from = self.resolve_node(graph, state.current_node_id)
        turn.resumed = state.current_node_id is not None and fallback_from is None
        if start_node is None:
            logger.error(
                "flow_resolution_exhausted",
                node_id=state.current_node_id,
                flow_id=graph.id,
                tenant_id=graph.tenant_id,
            )
            error = NotFoundError(
                "no node available to resume the conversation",
                detail={"node_id": state.current_node_id, "flow_id": graph.id},
            )
            return self._finish(
                state, turn, [], StepOutcome(StepKind.TERMINAL, APOLOGY_RESPONSE, error=error),
                None, None, fallback_from,
            )

        node = start_node
        visited: List[str] = []
        trace: List[Dict[str, Any]] = []
        delegate_tokens: Optional[int] = None
        while True:
            if len(visited) >= self.max_hops:
                logger.warning(
                    "flow_hop_limit_exceeded",
                    flow_id=graph.id,
                    max_hops=self.max_hops,
                    path=visited[-5:],
                )
                outcome = StepOutcome(
                    StepKind.TERMINAL,
                    CONFIGURATION_ERROR_RESPONSE,
                    next_node_id=start_node.id,
                    error=ConfigurationError(
                        "auto-advance cycle detected",
                        detail={"max_hops": self.max_hops, "flow_id": graph.id},
                    ),
                )
                break
            visited.append(node.id)
            outcome = await self._dispatch(node, graph, state, turn)
            trace.append({"node_id": node.id, "type": node.type.value, "outcome": outcome.kind.value})
            turn.hop += 1
            if outcome.tokens_used is not None:
                delegate_tokens = (delegate_tokens or 0) + outcome.tokens_used
            if outcome.kind != StepKind.ADVANCE:
                break
            next_node = graph.get(outcome.next_node_id)
            if next_node is None:
                logger.error(
                    "flow_next_node_missing",
                    node_id=node.id,
                    next_node_id=outcome.next_node_id,
                    flow_id=graph.id,
                )
                outcome = StepOutcome(
                    StepKind.TERMINAL,
                    APOLOGY_RESPONSE,
                    error=NotFoundError(
                        "transition target does not exist",
                        detail={"node_id": node.id, "next_node_id": outcome.next_node_id},
                    ),
                )
                break
            node = next_node

        log_flow_trace(trace, logger)
        return self._finish(state, turn, visited, outcome, node, delegate_tokens, fallback_from)

    def _finish(
        self,
        state: SessionState,
        turn: _Turn,
        visited: List[str],
        outcome: StepOutcome,
        last_node: Optional[Node],
        delegate_tokens: Optional[int],
        fallback_from: Optional[str],
    ) -> ExecutionResult:
        if outcome.next_node_id is not None:
            state.current_node_id = outcome.next_node_id
        elif last_node is not None:
            state.current_node_id = last_node.id

        if outcome.error is not None:
            tokens = (
                DELEGATE_ERROR_NOMINAL_TOKENS
                if isinstance(outcome.error, DelegateError)
                else ERROR_NOMINAL_TOKENS
            )
        elif delegate_tokens is not None:
            tokens = delegate_tokens
        else:
            tokens = estimate_turn_tokens(
                turn.message,
                outcome.response,
                len(visited),
                per_hop_overhead=self.per_hop_token_overhead,
            )

        if outcome.response:
            state.append_history(
                HistoryEntry(
                    role="assistant",
                    content=outcome.response,
                    node_id=last_node.id if last_node else None,
                ),
                self.history_cap,
            )
        state.touch()
        return ExecutionResult(
            response=outcome.response,
            next_node_id=state.current_node_id,
            metrics=ExecutionMetrics(
                tokens_used=tokens,
                nodes_visited=len(visited),
                delegate_tokens=delegate_tokens,
            ),
            error=outcome.error,
            requires_input=outcome.requires_input,
            attachments=dict(turn.attachments),
            visited=visited,
            fallback_from=fallback_from,
        )

    async def _dispatch(
        self, node: Node, graph: FlowGraph, state: SessionState, turn: _Turn
    ) -> StepOutcome:
        effective = apply_template_override(node, turn.override)
        handler = self._handlers.get(effective.type, self._run_unknown)
        try:
            return await handler(effective, graph, state, turn)
        except ConfigurationError as exc:
            logger.warning(
                "flow_node_configuration_error",
                node_id=node.id,
                flow_id=graph.id,
                error=exc.message,
            )
            return StepOutcome(StepKind.TERMINAL, CONFIGURATION_ERROR_RESPONSE, error=exc)
        except DelegateError as exc:
            logger.warning(
                "flow_node_delegate_error",
                node_id=node.id,
                kind=exc.kind,
                retryable=exc.retryable,
            )
            return StepOutcome(StepKind.TERMINAL, DELEGATE_ERROR_RESPONSE, error=exc)
        except FlowError as exc:
            logger.warning("flow_node_error", node_id=node.id, error_code=exc.error_code)
            return StepOutcome(StepKind.TERMINAL, APOLOGY_RESPONSE, error=exc)
        except Exception as exc:
            logger.error(
                "flow_node_dispatch_failed",
                node_id=node.id,
                node_type=node.type.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return StepOutcome(
                StepKind.TERMINAL,
                INTERNAL_ERROR_RESPONSE,
                error=InternalError(
                    "unexpected error while executing node",
                    detail={"node_id": node.id, "error_type": type(exc).__name__},
                ),
            )

    def _render(self, text: Optional[str], state: SessionState) -> str:
        return render_template(text, template_variables(state))

    def _next_target(self, node: Node, state: SessionState, turn: _Turn) -> Optional[str]:
        transition = node.next
        if isinstance(transition, Direct):
            return transition.node_id
        if isinstance(transition, Conditional):
            branch = evaluate_branches(transition.branches, turn.message, state.context)
            return branch.target if branch else None
        return None

    def _retry_options(self, node: Node) -> Dict[str, Any]:
        return {
            "max_retries": int(node.metadata.get("max_retries", self.delegate_max_retries)),
            "backoff_ms": self.delegate_backoff_ms,
            "timeout_ms": int(node.metadata.get("timeout_ms", self.delegate_timeout_ms)),
        }

    def _advance_or_pause(
        self, node: Node, state: SessionState, turn: _Turn, default_response: str
    ) -> StepOutcome:
        target = self._next_target(node, state, turn)
        if target:
            return StepOutcome(StepKind.ADVANCE, next_node_id=target)
        return StepOutcome(
            StepKind.PAUSE, self._render(node.content, state) or default_response
        )

    async def _run_start(self, node, graph, state, turn) -> StepOutcome:
        return self._advance_or_pause(node, state, turn, WELCOME_RESPONSE)

    async def _run_message(self, node, graph, state, turn) -> StepOutcome:
        return StepOutcome(
            StepKind.PAUSE,
            self._render(node.content, state),
            next_node_id=self._next_target(node, state, turn),
        )

    async def _run_condition(self, node, graph, state, turn) -> StepOutcome:
        transition = node.next
        if not isinstance(transition, Conditional) or not transition.branches:
            raise ConfigurationError(
                "condition node has no transitions", detail={"node_id": node.id}
            )
        branch = evaluate_branches(transition.branches, turn.message, state.context)
        if branch is None:
            logger.info("flow_condition_no_match", node_id=node.id, flow_id=graph.id)
            return StepOutcome(StepKind.TERMINAL, NO_MATCH_RESPONSE, requires_input=True)
        return StepOutcome(StepKind.ADVANCE, next_node_id=branch.target)

    def _validate_input(self, value: str, rules: Any) -> Optional[str]:
        for rule in rules or []:
            kind = rule.get("type")
            expected = rule.get("value")
            failed = False
            if kind == "required":
                failed = not value.strip()
            elif kind == "min_length":
                failed = len(value.strip()) < int(expected or 0)
            elif kind == "max_length":
                failed = len(value.strip()) > int(expected or 0)
            elif kind == "pattern":
                failed = re.fullmatch(str(expected), value.strip()) is None
            elif kind == "email":
                failed = _EMAIL_PATTERN.match(value.strip()) is None
            elif kind == "number":
                try:
                    float(value.strip())
                except ValueError:
                    failed = True
            if failed:
                return rule.get("message") or f"That answer is not valid ({kind})."
        return None

    async def _run_input(self, node, graph, state, turn) -> StepOutcome:
        if not turn.can_capture:
            return StepOutcome(
                StepKind.PAUSE,
                self._render(node.content, state) or INPUT_PROMPT_RESPONSE,
                requires_input=True,
            )
        failure = self._validate_input(turn.message, node.metadata.get("validation"))
        if failure:
            return StepOutcome(StepKind.PAUSE, failure, requires_input=True)
        variable = node.metadata.get("variable_name")
        if variable:
            state.context[variable] = turn.message
        return self._advance_or_pause(node, state, turn, "Thank you.")

    async def _run_stt(self, node, graph, state, turn) -> StepOutcome:
        if not turn.can_capture:
            return StepOutcome(
                StepKind.PAUSE,
                self._render(node.content, state) or INPUT_PROMPT_RESPONSE,
                requires_input=True,
            )
        transcript = turn.message
        if turn.audio is not None:
            if self.speech_delegate is None:
                raise ConfigurationError(
                    "speech-to-text node needs a speech delegate", detail={"node_id": node.id}
                )
            audio = turn.audio
            language = node.metadata.get("language")
            transcript = await call_with_retry(
                lambda: self.speech_delegate.speech_to_text(audio, language),
                name="speech_to_text",
                **self._retry_options(node),
            )
            turn.message = transcript
            state.context[LAST_USER_MESSAGE] = transcript
        state.context[node.metadata.get("variable_name") or "transcription"] = transcript
        return self._advance_or_pause(node, state, turn, "Thank you.")

    async def _run_action(self, node, graph, state, turn) -> StepOutcome:
        variables = template_variables(state)
        for action in node.metadata.get("actions") or []:
            kind = action.get("type")
            key = action.get("key")
            if not key:
                continue
            if kind == "set_variable":
                state.context[key] = render_value(action.get("value"), variables)
            elif kind == "increment":
                current = state.context.get(key) or 0
                state.context[key] = float(current) + float(action.get("value", 1))
                if state.context[key].is_integer():
                    state.context[key] = int(state.context[key])
            elif kind == "clear_variable":
                state.context.pop(key, None)
            elif kind == "append":
                items = state.context.get(key)
                items = list(items) if isinstance(items, list) else []
                items.append(render_value(action.get("value"), variables))
                state.context[key] = items
            else:
                logger.warning("flow_action_unknown", node_id=node.id, action_type=kind)
                continue
            variables = template_variables(state)
        return self._advance_or_pause(node, state, turn, ACTION_DONE_RESPONSE)

    async def _run_api_call(self, node, graph, state, turn) -> StepOutcome:
        metadata = node.metadata
        url = metadata.get("url")
        if not url:
            raise ConfigurationError("api_call node has no url", detail={"node_id": node.id})
        variables = template_variables(state)
        method = str(metadata.get("method") or "GET")
        headers = render_value(metadata.get("headers") or {}, variables)
        body = render_value(metadata.get("body"), variables)
        timeout_ms = int(metadata.get("timeout_ms", self.http.timeout_ms))
        result = await call_with_retry(
            lambda: self.http.request(
                method,
                render_template(url, variables),
                headers=headers,
                body=body,
                timeout_ms=timeout_ms,
            ),
            name="api_call",
            max_retries=int(metadata.get("max_retries", 0)),
            backoff_ms=self.delegate_backoff_ms,
            timeout_ms=timeout_ms + 1000,
        )
        state.context[metadata.get("result_variable") or "api_response"] = result
        return self._advance_or_pause(node, state, turn, API_DONE_RESPONSE)

    async def _run_ai(self, node, graph, state, turn) -> StepOutcome:
        metadata = node.metadata
        prompt = self._render(node.content, state) or turn.message
        tokens_used: Optional[int] = None
        if self.ai_delegate is None:
            logger.info("flow_ai_delegate_missing", node_id=node.id)
            text = prompt
        else:
            model_config = dict(metadata.get("model_config") or {})
            if metadata.get("system_prompt"):
                model_config["system_prompt"] = self._render(metadata["system_prompt"], state)
            history = [
                {"role": entry.role, "content": entry.content}
                for entry in state.history[-AI_HISTORY_WINDOW:]
            ]
            completion = await call_with_retry(
                lambda: self.ai_delegate.complete(prompt, history, model_config),
                name="ai",
                **self._retry_options(node),
            )
            text = completion.text
            tokens_used = completion.tokens_used

        if metadata.get("response_variable"):
            state.context[metadata["response_variable"]] = text
        voice = metadata.get("voice")
        if voice:
            voice_config = voice if isinstance(voice, dict) else {"voice": voice}
            state.context[VOICE_AGENT_CONTEXT_KEY] = {"text": text, **voice_config}
            if self.speech_delegate is not None:
                turn.attachments["audio"] = await call_with_retry(
                    lambda: self.speech_delegate.text_to_speech(text, voice_config),
                    name="text_to_speech",
                    **self._retry_options(node),
                )
        return StepOutcome(
            StepKind.PAUSE,
            text,
            next_node_id=self._next_target(node, state, turn),
            tokens_used=tokens_used,
        )

    async def _run_tts(self, node, graph, state, turn) -> StepOutcome:
        metadata = node.metadata
        text = self._render(node.content, state)
        voice_config = {
            "voice": metadata.get("voice", "default"),
            "rate": metadata.get("rate", 1.0),
        }
        state.context[TTS_CONTEXT_KEY] = {
            "text": text,
            "delay": metadata.get("delay", 0),
            **voice_config,
        }
        if self.speech_delegate is not None and text:
            turn.attachments["audio"] = await call_with_retry(
                lambda: self.speech_delegate.text_to_speech(text, voice_config),
                name="text_to_speech",
                **self._retry_options(node),
            )
        return StepOutcome(
            StepKind.PAUSE, text, next_node_id=self._next_target(node, state, turn)
        )

    async def _run_end(self, node, graph, state, turn) -> StepOutcome:
        state.context[COMPLETED_CONTEXT_KEY] = True
        return StepOutcome(StepKind.PAUSE, self._render(node.content, state) or END_RESPONSE)

    async def _run_unknown(self, node, graph, state, turn) -> StepOutcome:
        target = self._next_target(node, state, turn)
        if target:
            logger.info("flow_unknown_node_skipped", node_id=node.id, raw_type=node.raw_type)
            return StepOutcome(StepKind.ADVANCE, next_node_id=target)
        return StepOutcome(StepKind.PAUSE, node.content)

    async def aclose(self) -> None:
        await self.http.aclose()


__all__ = [
    "APOLOGY_RESPONSE",
    "CONFIGURATION_ERROR_RESPONSE",
    "DELEGATE_ERROR_RESPONSE",
    "ExecutionMetrics",
    "ExecutionResult",
    "INTERNAL_ERROR_RESPONSE",
    "LAST_USER_MESSAGE",
    "NO_MATCH_RESPONSE",
    "NodeExecutor",
    "StepKind",
    "StepOutcome",
]
