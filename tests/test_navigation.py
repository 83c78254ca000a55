"""Tests for out-of-band navigation between flow nodes."""

from __future__ import annotations

import asyncio
from datetime import datetime
from types import SimpleNamespace

import pytest

from convoflow.config import CircularNavigationPolicy
from convoflow.service.delegates import AICompletion
from convoflow.service.executor import NodeExecutor
from convoflow.service.graph import compile_flow
from convoflow.service.navigation import (
    NavigationContext,
    NavigationMethod,
    NavigationOptions,
    NavigationService,
    capture_snapshot,
    restore_snapshot,
    update_stage_hook,
)
from convoflow.storage.models import NavigationStep, SessionState

NAV_FLOW = {
    "id": "flow-nav",
    "tenant_id": "tenant-a",
    "entry_node_id": "start",
    "nodes": [
        {"id": "start", "type": "start", "next": "menu"},
        {"id": "menu", "type": "message", "content": "Main menu"},
        {
            "id": "billing",
            "type": "message",
            "content": "Billing help",
            "metadata": {"stage": "billing", "funnel_step": "billing_viewed"},
        },
        {"id": "support", "type": "message", "content": "Support for {{name}}"},
        {"id": "broken", "type": "ai", "content": "Summarize"},
        {"id": "slow", "type": "ai", "content": "Think hard"},
    ],
}


class FailingAIDelegate:
    async def complete(self, prompt, history, model_config):
        raise RuntimeError("provider exploded")


class GatedAIDelegate:
    """Blocks inside ``complete`` until the test opens the gate."""

    def __init__(self):
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def complete(self, prompt, history, model_config):
        self.started.set()
        await self.gate.wait()
        return AICompletion("done thinking", 7)


def _graph(**overrides):
    return compile_flow({**NAV_FLOW, **overrides})


def _state(tenant_id="tenant-a"):
    state = SessionState.new(tenant_id, "u1", "s1")
    state.current_node_id = "menu"
    state.context["name"] = "Ana"
    return state


def _service(ai_delegate=None, **kwargs):
    executor = NodeExecutor(ai_delegate=ai_delegate or FailingAIDelegate(), delegate_backoff_ms=0)
    return NavigationService(executor, **kwargs)


class TestGotoFlow:
    @pytest.mark.asyncio
    async def test_successful_navigation(self):
        service = _service()
        state = _state()
        context = NavigationContext(state=state, graph=_graph())

        result = await service.goto_flow(context, "support")

        assert result.success
        assert result.response == "Support for Ana"
        assert result.next_node_id == "support"
        assert state.current_node_id == "support"
        step = state.navigation_history[-1]
        assert step.from_node_id == "menu"
        assert step.to_node_id == "support"
        assert step.method == "goto"
        assert step.success
        assert step.context_snapshot["current_node_id"] == "menu"

    @pytest.mark.asyncio
    async def test_graph_loader_and_variables(self):
        graph = _graph()
        loaded = []

        async def loader(tenant_id):
            loaded.append(tenant_id)
            return graph

        service = _service(graph_loader=loader)
        state = _state()
        options = NavigationOptions(
            method=NavigationMethod.BUTTON_CLICK, variables={"name": "Bea"}
        )

        result = await service.goto_flow(NavigationContext(state=state), "support", options)

        assert loaded == ["tenant-a"]
        assert result.response == "Support for Bea"
        assert state.navigation_history[-1].method == "button_click"

    @pytest.mark.asyncio
    async def test_unknown_target(self):
        service = _service()
        state = _state()

        result = await service.goto_flow(NavigationContext(state=state, graph=_graph()), "nowhere")

        assert not result.success
        assert result.error_code == "not_found"
        assert not result.rolled_back
        assert state.current_node_id == "menu"
        assert state.navigation_history[-1].success is False

    @pytest.mark.asyncio
    async def test_missing_flow(self):
        async def loader(tenant_id):
            return None

        service = _service(graph_loader=loader)

        result = await service.goto_flow(NavigationContext(state=_state()), "menu")

        assert result.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_tenant_mismatch(self):
        service = _service()
        state = _state()

        result = await service.goto_flow(
            NavigationContext(state=state, graph=_graph(tenant_id="tenant-b")), "billing"
        )

        assert not result.success
        assert result.error_code == "validation_error"
        assert state.current_node_id == "menu"


class TestCircularNavigation:
    @pytest.mark.asyncio
    async def test_two_visits_are_not_circular(self):
        service = _service()
        state = _state()
        context = NavigationContext(state=state, graph=_graph())

        for _ in range(2):
            assert (await service.goto_flow(context, "billing")).success

        assert service.count_recent_visits(state, "billing") == 2
        assert not service.is_circular(state, "billing")

    @pytest.mark.asyncio
    async def test_fourth_visit_is_rejected(self):
        service = _service()
        state = _state()
        context = NavigationContext(state=state, graph=_graph())

        results = [await service.goto_flow(context, "billing") for _ in range(4)]

        assert [r.success for r in results] == [True, True, True, False]
        assert results[-1].error_code == "validation_error"
        assert "circular" in results[-1].error

    @pytest.mark.asyncio
    async def test_warn_policy_allows_navigation(self):
        service = _service(circular_policy=CircularNavigationPolicy.WARN)
        state = _state()
        context = NavigationContext(state=state, graph=_graph())

        results = [await service.goto_flow(context, "billing") for _ in range(4)]

        assert all(r.success for r in results)
        assert results[-1].warnings

    @pytest.mark.asyncio
    async def test_only_recent_window_counts(self):
        service = _service(circular_window=4)
        state = _state()
        context = NavigationContext(state=state, graph=_graph())

        for _ in range(3):
            await service.goto_flow(context, "billing")
        for _ in range(2):
            await service.goto_flow(context, "support")

        assert service.count_recent_visits(state, "billing") == 2
        assert (await service.goto_flow(context, "billing")).success


class TestRollback:
    @pytest.mark.asyncio
    async def test_failure_restores_last_successful_snapshot(self):
        service = _service()
        state = _state()
        context = NavigationContext(state=state, graph=_graph())

        assert (await service.goto_flow(context, "billing")).success
        state.context["cart"] = "full"

        result = await service.goto_flow(context, "broken")

        assert not result.success
        assert result.rolled_back
        assert result.error_code == "delegate_error"
        assert state.current_node_id == "menu"
        assert state.context == {"name": "Ana"}

    @pytest.mark.asyncio
    async def test_failure_without_history_uses_preflight_snapshot(self):
        service = _service()
        state = _state()

        result = await service.goto_flow(NavigationContext(state=state, graph=_graph()), "broken")

        assert result.rolled_back
        assert state.current_node_id == "menu"
        assert state.context["name"] == "Ana"

    @pytest.mark.asyncio
    async def test_rollback_can_be_disabled(self):
        service = _service()
        state = _state()

        result = await service.goto_flow(
            NavigationContext(state=state, graph=_graph()),
            "broken",
            NavigationOptions(enable_rollback=False),
        )

        assert not result.rolled_back
        assert state.current_node_id == "broken"

    def test_snapshot_is_a_deep_copy(self):
        state = _state()
        state.context["items"] = ["a"]
        snapshot = capture_snapshot(state)

        state.context["items"].append("b")
        state.current_node_id = "elsewhere"
        restore_snapshot(state, snapshot)

        assert state.context["items"] == ["a"]
        assert state.current_node_id == "menu"


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_second_navigation_for_same_session_is_rejected(self):
        ai = GatedAIDelegate()
        service = _service(ai_delegate=ai)
        graph = _graph()
        state = _state()

        first = asyncio.create_task(service.goto_flow(NavigationContext(state=state, graph=graph), "slow"))
        await ai.started.wait()
        assert service.is_in_progress(state.session_key)

        second = await service.goto_flow(NavigationContext(state=state.copy(), graph=graph), "billing")
        assert not second.success
        assert second.error_code == "concurrent_session"

        other = _state()
        other.session_id = "s2"
        assert (await service.goto_flow(NavigationContext(state=other, graph=graph), "billing")).success

        ai.gate.set()
        result = await first
        assert result.success
        assert result.response == "done thinking"
        assert not service.is_in_progress(state.session_key)


class TestHooks:
    @pytest.mark.asyncio
    async def test_stage_hook_updates_side_channel(self):
        service = _service()
        lead = {"id": "lead-1"}

        await service.goto_flow(NavigationContext(state=_state(), graph=_graph(), side_channel=lead), "billing")

        assert lead["stage"] == "billing"
        assert lead["funnel_steps"] == ["billing_viewed"]
        assert "stage_updated_at" in lead

    def test_stage_hook_on_objects(self):
        graph = _graph()
        lead = SimpleNamespace(stage=None)
        step = NavigationStep(
            timestamp=datetime(2024, 1, 1),
            from_node_id="menu",
            to_node_id="billing",
            method="goto",
            success=True,
            duration_ms=1.0,
        )

        update_stage_hook(NavigationContext(state=_state(), side_channel=lead), graph.nodes["billing"], step)

        assert lead.stage == "billing"
        assert lead.funnel_steps == ["billing_viewed"]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_fail_navigation(self):
        service = _service()
        seen = []

        def broken_hook(context, node, step):
            raise RuntimeError("crm down")

        async def recording_hook(context, node, step):
            seen.append(node.id)

        service.add_post_navigation_hook(broken_hook)
        service.add_post_navigation_hook(recording_hook)

        result = await service.goto_flow(NavigationContext(state=_state(), graph=_graph()), "support")

        assert result.success
        assert seen == ["support"]

    @pytest.mark.asyncio
    async def test_hooks_skip_failed_navigation(self):
        service = _service()
        seen = []
        service.add_post_navigation_hook(lambda context, node, step: seen.append(node.id))

        await service.goto_flow(NavigationContext(state=_state(), graph=_graph()), "broken")

        assert seen == []


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        service = _service(history_cap=3, circular_threshold=100)
        state = _state()
        context = NavigationContext(state=state, graph=_graph())

        for target in ["menu", "billing", "support", "menu", "billing"]:
            await service.goto_flow(context, target)

        history = service.get_navigation_history(state)
        assert [step.to_node_id for step in history] == ["support", "menu", "billing"]
        assert [step.to_node_id for step in service.get_navigation_history(state, limit=1)] == ["billing"]

    @pytest.mark.asyncio
    async def test_stats_and_clear(self):
        service = _service()
        state = _state()
        context = NavigationContext(state=state, graph=_graph())

        await service.goto_flow(context, "billing")
        await service.goto_flow(context, "billing")
        await service.goto_flow(context, "nowhere")

        stats = service.navigation_stats(state)
        assert stats["total"] == 3
        assert stats["successful"] == 2
        assert stats["failed"] == 1
        assert stats["most_visited"] == "billing"

        service.clear_history(state)
        assert service.navigation_stats(state)["total"] == 0
