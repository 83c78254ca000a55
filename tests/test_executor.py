"""Tests for NodeExecutor turn execution."""

from __future__ import annotations

import httpx
import pytest

from convoflow.service.delegates import AICompletion, HttpRequester, error_for_status
from convoflow.service.errors import ConfigurationError, DelegateError, InternalError
from convoflow.service.executor import (
    CONFIGURATION_ERROR_RESPONSE,
    DELEGATE_ERROR_RESPONSE,
    INTERNAL_ERROR_RESPONSE,
    NO_MATCH_RESPONSE,
    NodeExecutor,
)
from convoflow.service.graph import compile_flow
from convoflow.service.templates import TemplateOverride
from convoflow.service.tokenizer_utils import estimate_turn_tokens
from convoflow.storage.models import SessionState

PRICE_FLOW = {
    "id": "flow-price",
    "tenant_id": "tenant-a",
    "entry_node_id": "start",
    "nodes": [
        {"id": "start", "type": "start", "next": "greet"},
        {"id": "greet", "type": "message", "content": "Hi", "next": "route"},
        {
            "id": "route",
            "type": "condition",
            "next": [
                {"condition": {"operator": "contains", "value": "price"}, "target": "pricing"},
                {"condition": {"operator": "default"}, "target": "help"},
            ],
        },
        {"id": "pricing", "type": "message", "content": "Our prices start at $10."},
        {"id": "help", "type": "message", "content": "How can I help you?"},
    ],
}


def _flow(nodes, entry="start"):
    return compile_flow(
        {"id": "flow-1", "tenant_id": "tenant-a", "entry_node_id": entry, "nodes": nodes}
    )


def _state():
    return SessionState.new("tenant-a", "u1", "s1")


class MockAIDelegate:
    def __init__(self, text="AI says hi", tokens=42, errors=None):
        self.text = text
        self.tokens = tokens
        self.errors = list(errors or [])
        self.calls = []

    async def complete(self, prompt, history, model_config):
        self.calls.append({"prompt": prompt, "history": history, "model_config": model_config})
        if self.errors:
            raise self.errors.pop(0)
        return AICompletion(self.text, self.tokens)


class MockSpeechDelegate:
    def __init__(self, transcript="transcribed text"):
        self.transcript = transcript
        self.spoken = []
        self.heard = []

    async def text_to_speech(self, text, voice_config):
        self.spoken.append((text, voice_config))
        return b"audio:" + text.encode()

    async def speech_to_text(self, audio, language_hint):
        self.heard.append((audio, language_hint))
        return self.transcript


class ExplodingAIDelegate:
    async def complete(self, prompt, history, model_config):
        raise ValueError("boom")


class TestPriceScenario:
    """Two-turn walk through a start, message and condition flow."""

    @pytest.mark.asyncio
    async def test_greeting_then_branch(self):
        graph = compile_flow(PRICE_FLOW)
        executor = NodeExecutor()
        state = _state()

        first = await executor.execute(graph, state, "hello")
        assert first.response == "Hi"
        assert first.visited == ["start", "greet"]
        assert state.current_node_id == "route"

        pricing_state = state.copy()
        second = await executor.execute(graph, pricing_state, "what is the price?")
        assert second.response == "Our prices start at $10."
        assert pricing_state.current_node_id == "pricing"

        third = await executor.execute(graph, state, "hi again")
        assert third.response == "How can I help you?"

    @pytest.mark.asyncio
    async def test_token_estimate(self):
        graph = compile_flow(PRICE_FLOW)
        result = await NodeExecutor().execute(graph, _state(), "hello")

        assert result.metrics.tokens_used == estimate_turn_tokens("hello", "Hi", 2)
        assert result.metrics.tokens_used == 13
        assert result.metrics.nodes_visited == 2

    @pytest.mark.asyncio
    async def test_history_is_recorded(self):
        graph = compile_flow(PRICE_FLOW)
        state = _state()

        await NodeExecutor().execute(graph, state, "hello")

        assert [(h.role, h.content) for h in state.history] == [("user", "hello"), ("assistant", "Hi")]
        assert state.flow_id == "flow-price"
        assert state.context["last_user_message"] == "hello"


class TestResolution:
    @pytest.mark.asyncio
    async def test_removed_node_falls_back_to_entry(self):
        graph = compile_flow(PRICE_FLOW)
        state = _state()
        state.current_node_id = "deleted-node"

        result = await NodeExecutor().execute(graph, state, "hello")

        assert result.error is None
        assert result.fallback_from == "deleted-node"
        assert result.response == "Hi"

    @pytest.mark.asyncio
    async def test_stale_node_resolves_to_entry(self):
        graph = _flow(
            [
                {"id": "ask", "type": "input", "content": "Name?"},
                {"id": "info", "type": "message", "content": "Info"},
            ],
            entry="ask",
        )
        executor = NodeExecutor()

        node, stale = executor.resolve_node(graph, "ghost")

        assert node.id == "ask"
        assert stale == "ghost"

    @pytest.mark.asyncio
    async def test_starting_from_entry_never_raises(self):
        flows = [
            PRICE_FLOW["nodes"],
            [{"id": "start", "type": "condition"}],
            [{"id": "start", "type": "mystery"}],
            [{"id": "start", "type": "api_call", "metadata": {"url": "http://127.0.0.1:1/x"}}],
            [{"id": "start", "type": "ai", "content": ""}],
            [{"id": "start", "type": "input", "metadata": {"validation": [{"type": "required"}]}}],
        ]
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        executor = NodeExecutor(
            http=HttpRequester(httpx.AsyncClient(transport=transport)),
            ai_delegate=ExplodingAIDelegate(),
            delegate_backoff_ms=0,
        )
        for nodes in flows:
            for message in ("", "hello"):
                result = await executor.execute(_flow(nodes), _state(), message)
                assert isinstance(result.response, str)
        await executor.http.client.aclose()


class TestAutoAdvance:
    @pytest.mark.asyncio
    async def test_hop_ceiling_stops_cycles(self):
        graph = _flow(
            [
                {"id": "start", "type": "action", "next": "bump"},
                {
                    "id": "bump",
                    "type": "action",
                    "metadata": {"actions": [{"type": "increment", "key": "loops"}]},
                    "next": "start",
                },
            ]
        )
        state = _state()

        result = await NodeExecutor(max_hops=5).execute(graph, state, "go")

        assert isinstance(result.error, ConfigurationError)
        assert result.response == CONFIGURATION_ERROR_RESPONSE
        assert len(result.visited) == 5
        assert state.current_node_id == "start"
        assert result.metrics.tokens_used == 10

    @pytest.mark.asyncio
    async def test_condition_without_transitions(self):
        graph = _flow(
            [
                {"id": "start", "type": "start", "next": "check"},
                {"id": "check", "type": "condition"},
            ]
        )

        result = await NodeExecutor().execute(graph, _state(), "anything")

        assert result.error_code == "configuration_error"
        assert result.response == CONFIGURATION_ERROR_RESPONSE

    @pytest.mark.asyncio
    async def test_no_branch_matches(self):
        graph = _flow(
            [
                {
                    "id": "confirm",
                    "type": "condition",
                    "next": [{"condition": {"operator": "equals", "value": "yes"}, "target": "done"}],
                },
                {"id": "done", "type": "end", "content": "Done"},
            ],
            entry="confirm",
        )
        state = _state()
        state.current_node_id = "confirm"

        result = await NodeExecutor().execute(graph, state, "maybe")

        assert result.response == NO_MATCH_RESPONSE
        assert result.error is None
        assert result.requires_input
        assert state.current_node_id == "confirm"

    @pytest.mark.asyncio
    async def test_actions_update_context(self):
        graph = _flow(
            [
                {
                    "id": "start",
                    "type": "action",
                    "metadata": {
                        "actions": [
                            {"type": "set_variable", "key": "greeting", "value": "hi {{user_id}}"},
                            {"type": "increment", "key": "visits", "value": 2},
                            {"type": "append", "key": "tags", "value": "new"},
                            {"type": "clear_variable", "key": "stale"},
                        ]
                    },
                    "next": "end",
                },
                {"id": "end", "type": "end"},
            ]
        )
        state = _state()
        state.context["stale"] = True

        result = await NodeExecutor().execute(graph, state, "")

        assert result.response == "Conversation ended."
        assert state.context["greeting"] == "hi u1"
        assert state.context["visits"] == 2
        assert state.context["tags"] == ["new"]
        assert "stale" not in state.context
        assert state.context["completed"] is True

    @pytest.mark.asyncio
    async def test_unknown_nodes(self):
        passthrough = _flow(
            [
                {"id": "start", "type": "carousel", "next": "m"},
                {"id": "m", "type": "message", "content": "after"},
            ]
        )
        terminal = _flow([{"id": "start", "type": "carousel", "content": "raw content"}])

        assert (await NodeExecutor().execute(passthrough, _state(), "")).response == "after"
        assert (await NodeExecutor().execute(terminal, _state(), "")).response == "raw content"


class TestInputNodes:
    @pytest.mark.asyncio
    async def test_prompt_validate_and_capture(self):
        graph = _flow(
            [
                {"id": "start", "type": "start", "next": "ask"},
                {
                    "id": "ask",
                    "type": "input",
                    "content": "What is your email?",
                    "metadata": {
                        "variable_name": "email",
                        "validation": [{"type": "email", "message": "Please enter a valid email."}],
                    },
                    "next": "thanks",
                },
                {"id": "thanks", "type": "message", "content": "Thanks {{email}}"},
            ]
        )
        executor = NodeExecutor()
        state = _state()

        prompt = await executor.execute(graph, state, "hi")
        assert prompt.response == "What is your email?"
        assert prompt.requires_input
        assert "email" not in state.context

        invalid = await executor.execute(graph, state, "nope")
        assert invalid.response == "Please enter a valid email."
        assert state.current_node_id == "ask"

        accepted = await executor.execute(graph, state, "ana@example.com")
        assert accepted.response == "Thanks ana@example.com"
        assert state.context["email"] == "ana@example.com"

    @pytest.mark.asyncio
    async def test_navigation_mode_does_not_capture(self):
        graph = _flow(
            [{"id": "ask", "type": "input", "metadata": {"variable_name": "name"}}],
            entry="ask",
        )
        state = _state()
        state.current_node_id = "ask"
        state.context["last_user_message"] = "earlier"

        result = await NodeExecutor().execute(graph, state, "", capture_input=False)

        assert result.response == "Please type your answer."
        assert "name" not in state.context


class TestDelegates:
    def _ai_flow(self):
        return _flow(
            [
                {"id": "start", "type": "start", "next": "agent"},
                {
                    "id": "agent",
                    "type": "ai",
                    "content": "Answer: {{last_user_message}}",
                    "metadata": {
                        "system_prompt": "You help {{user_id}}.",
                        "model_config": {"model": "base-model"},
                        "response_variable": "answer",
                    },
                },
            ]
        )

    @pytest.mark.asyncio
    async def test_ai_completion_and_reported_tokens(self):
        graph = self._ai_flow()
        ai = MockAIDelegate()
        state = _state()
        override = TemplateOverride(
            ai_model="tenant-model", instructions="Use English.", instruction_mode="suffix"
        )

        result = await NodeExecutor(ai_delegate=ai).execute(
            graph, state, "question", template_override=override
        )

        assert result.response == "AI says hi"
        assert result.metrics.tokens_used == 42
        assert state.context["answer"] == "AI says hi"
        call = ai.calls[0]
        assert call["prompt"] == "Answer: question\n\nUse English."
        assert call["model_config"] == {"model": "tenant-model", "system_prompt": "You help u1."}
        assert call["history"][-1] == {"role": "user", "content": "question"}
        assert graph.nodes["agent"].metadata["model_config"] == {"model": "base-model"}

    @pytest.mark.asyncio
    async def test_missing_ai_delegate_echoes_prompt(self):
        result = await NodeExecutor().execute(self._ai_flow(), _state(), "question")

        assert result.response == "Answer: question"

    @pytest.mark.asyncio
    async def test_retryable_failure_is_retried(self):
        ai = MockAIDelegate(errors=[DelegateError("flaky", kind="upstream", retryable=True)])

        result = await NodeExecutor(ai_delegate=ai, delegate_backoff_ms=0).execute(
            self._ai_flow(), _state(), "question"
        )

        assert result.response == "AI says hi"
        assert len(ai.calls) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_is_not_retried(self):
        ai = MockAIDelegate(errors=[error_for_status(429)])

        result = await NodeExecutor(ai_delegate=ai, delegate_backoff_ms=0).execute(
            self._ai_flow(), _state(), "question"
        )

        assert result.response == DELEGATE_ERROR_RESPONSE
        assert result.error.kind == "rate_limit"
        assert result.metrics.tokens_used == 15
        assert len(ai.calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_delegate_exception(self):
        result = await NodeExecutor(ai_delegate=ExplodingAIDelegate()).execute(
            self._ai_flow(), _state(), "question"
        )

        assert result.response == DELEGATE_ERROR_RESPONSE
        assert result.error.kind == "upstream"

    @pytest.mark.asyncio
    async def test_tts_attaches_audio(self):
        graph = _flow(
            [
                {"id": "start", "type": "start", "next": "speak"},
                {
                    "id": "speak",
                    "type": "text_to_speech",
                    "content": "Hello {{user_id}}",
                    "metadata": {"voice": "nova", "delay": 2},
                },
            ]
        )
        speech = MockSpeechDelegate()
        state = _state()

        result = await NodeExecutor(speech_delegate=speech).execute(graph, state, "")

        assert result.response == "Hello u1"
        assert result.attachments["audio"] == b"audio:Hello u1"
        assert state.context["tts"] == {"text": "Hello u1", "delay": 2, "voice": "nova", "rate": 1.0}

    @pytest.mark.asyncio
    async def test_stt_transcribes_audio(self):
        graph = _flow(
            [
                {"id": "start", "type": "start", "next": "prompt"},
                {"id": "prompt", "type": "message", "content": "Say something", "next": "listen"},
                {
                    "id": "listen",
                    "type": "stt",
                    "metadata": {"variable_name": "said", "language": "en"},
                    "next": "echo",
                },
                {"id": "echo", "type": "message", "content": "You said {{said}}"},
            ]
        )
        speech = MockSpeechDelegate()
        executor = NodeExecutor(speech_delegate=speech)
        state = _state()

        assert (await executor.execute(graph, state, "")).response == "Say something"
        result = await executor.execute(graph, state, "", audio=b"raw")

        assert result.response == "You said transcribed text"
        assert speech.heard == [(b"raw", "en")]
        assert state.context["last_user_message"] == "transcribed text"


class TestApiCallNodes:
    def _order_flow(self):
        return _flow(
            [
                {"id": "start", "type": "start", "next": "ask"},
                {
                    "id": "ask",
                    "type": "input",
                    "content": "Order number?",
                    "metadata": {"variable_name": "order_id"},
                    "next": "lookup",
                },
                {
                    "id": "lookup",
                    "type": "api_call",
                    "metadata": {
                        "url": "https://api.example.com/orders/{{order_id}}",
                        "headers": {"X-User": "{{user_id}}"},
                        "result_variable": "order",
                    },
                    "next": "reply",
                },
                {"id": "reply", "type": "message", "content": "Order is {{order.status}}"},
            ]
        )

    @pytest.mark.asyncio
    async def test_result_is_stored_in_context(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"status": "shipped"})

        http = HttpRequester(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        executor = NodeExecutor(http=http)
        state = _state()

        await executor.execute(self._order_flow(), state, "hi")
        result = await executor.execute(self._order_flow(), state, "42")

        assert result.response == "Order is shipped"
        assert str(requests[0].url) == "https://api.example.com/orders/42"
        assert requests[0].headers["X-User"] == "u1"
        await http.client.aclose()

    @pytest.mark.asyncio
    async def test_error_status_becomes_delegate_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="down")

        http = HttpRequester(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        executor = NodeExecutor(http=http)
        state = _state()

        await executor.execute(self._order_flow(), state, "hi")
        result = await executor.execute(self._order_flow(), state, "42")

        assert result.response == DELEGATE_ERROR_RESPONSE
        assert result.error.status == 500
        assert len(calls) == 1
        await http.client.aclose()


class TestInternalErrors:
    @pytest.mark.asyncio
    async def test_handler_exception_is_contained(self):
        class BrokenExecutor(NodeExecutor):
            async def _run_message(self, node, graph, state, turn):
                raise KeyError("missing")

        graph = _flow([{"id": "start", "type": "message", "content": "x"}])

        result = await BrokenExecutor().execute(graph, _state(), "")

        assert result.response == INTERNAL_ERROR_RESPONSE
        assert isinstance(result.error, InternalError)
        assert result.metrics.tokens_used == 10
