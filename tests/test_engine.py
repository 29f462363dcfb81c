"""Tests for scheduling, node outcomes and run status."""

import asyncio
import time

import pytest
from conftest import flow

from flow_runtime.config import Settings
from flow_runtime.errors import ValidationError
from flow_runtime.events import EventKind
from flow_runtime.models import TRANSITIONS, CancelReason, NodeState, RunRequest, RunStatus
from flow_runtime.nodes.builtin import condition_node, input_node, split_node
from flow_runtime.runtime import FlowRuntime


def _node_events(log, run_id):
    return [e for e in log.read(run_id) if e.kind is EventKind.NODE_STATE]


async def _collect(iterator):
    return [event async for event in iterator]


def _position(events, node_id, state):
    for i, e in enumerate(events):
        if e.node_id == node_id and e.state is state:
            return i
    return None


class TestHappyPath:
    async def test_linear_flow_completes(self, runtime, log) -> None:
        snap = await runtime.run_to_end(
            flow([("a", "task"), ("b", "task"), ("c", "task", {"value": "done"})], [("a", "b"), ("b", "c")])
        )

        assert snap.status is RunStatus.COMPLETED
        assert all(st.state is NodeState.COMPLETED for st in snap.nodes.values())
        assert snap.outputs == {"c": "done"}
        assert snap.nodes["a"].started_at is not None
        assert snap.nodes["a"].finished_at >= snap.nodes["a"].started_at

    async def test_outputs_flow_along_edges(self, runtime, recorder) -> None:
        await runtime.run_to_end(
            flow([("a", "task", {"value": 41}), ("b", "task")], [("a", "b")])
        )

        assert recorder.inputs_of("b") == {"default": 41}

    async def test_successor_ready_only_after_every_predecessor_completed(self, runtime, log) -> None:
        edges = [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")]
        request = flow(
            [("a", "task"), ("b", "task", {"sleep": 0.05}), ("c", "task"), ("d", "task")], edges
        )

        snap = await runtime.run_to_end(request)
        events = _node_events(log, snap.run_id)

        for src, dst in edges:
            assert _position(events, src, NodeState.COMPLETED) < _position(events, dst, NodeState.READY)

    async def test_each_node_moves_forward_only(self, runtime, log) -> None:
        snap = await runtime.run_to_end(
            flow([("a", "task"), ("b", "fail"), ("c", "task")], [("a", "b"), ("b", "c")])
        )

        for node_id in snap.nodes:
            state = NodeState.PENDING
            for event in _node_events(log, snap.run_id):
                if event.node_id == node_id:
                    assert event.state in TRANSITIONS[state]
                    state = event.state

    async def test_sync_handlers_are_supported(self, runtime) -> None:
        snap = await runtime.run_to_end(flow([("s", "sync", {"numbers": [1, 2, 3]})]))

        assert snap.nodes["s"].result == {"sum": 6}

    async def test_initial_inputs_reach_handlers(self, runtime, registry) -> None:
        registry.register("input")(input_node)

        snap = await runtime.run_to_end(
            flow([("in", "input"), ("echo", "task")], [("in", "echo")], initial_inputs={"input": "hi"})
        )

        assert snap.nodes["in"].result == "hi"

    async def test_empty_graph_completes(self, runtime) -> None:
        snap = await runtime.run_to_end(flow([]))

        assert snap.status is RunStatus.COMPLETED

    def test_invalid_graph_never_creates_a_run(self, runtime) -> None:
        with pytest.raises(ValidationError):
            runtime.start_run(flow([("a", "task"), ("b", "task")], [("a", "b"), ("b", "a")]))

        assert runtime.runs == {}


class TestConcurrency:
    async def test_independent_branches_run_in_parallel(self, runtime) -> None:
        request = flow([("x", "task", {"sleep": 0.2}), ("y", "task", {"sleep": 0.2}), ("z", "task", {"sleep": 0.2})])

        started = time.monotonic()
        snap = await runtime.run_to_end(request)

        assert snap.status is RunStatus.COMPLETED
        assert time.monotonic() - started < 0.5

    async def test_concurrency_limit_is_honoured(self, runtime, registry) -> None:
        active = {"now": 0, "peak": 0}

        @registry.register("gauge")
        async def gauge(ctx):
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.02)
            active["now"] -= 1

        request = flow([(f"n{i}", "gauge") for i in range(6)], concurrency_limit=2)
        snap = await runtime.run_to_end(request)

        assert snap.status is RunStatus.COMPLETED
        assert active["peak"] == 2

    async def test_progress_is_streamed(self, runtime, registry, log) -> None:
        @registry.register("chatty")
        async def chatty(ctx):
            ctx.report_progress("halfway")
            return "ok"

        snap = await runtime.run_to_end(flow([("c", "chatty")]))
        progress = [e for e in log.read(snap.run_id) if e.kind is EventKind.NODE_PROGRESS]

        assert [(e.node_id, e.progress, e.state) for e in progress] == [("c", "halfway", NodeState.RUNNING)]


class TestFailures:
    async def test_isolated_failure_skips_only_dependents(self, runtime) -> None:
        snap = await runtime.run_to_end(
            flow(
                [("a", "task"), ("b", "fail", {"message": "kaput"}), ("c", "task"), ("d", "task")],
                [("a", "b"), ("b", "c"), ("a", "d")],
            )
        )

        assert snap.status is RunStatus.FAILED
        assert snap.nodes["b"].state is NodeState.FAILED
        assert snap.nodes["b"].error == "kaput"
        assert snap.nodes["c"].state is NodeState.SKIPPED
        assert snap.nodes["d"].state is NodeState.COMPLETED

    async def test_failure_event_carries_error(self, runtime, log) -> None:
        snap = await runtime.run_to_end(flow([("b", "fail", {"message": "kaput"})]))

        failed = [e for e in _node_events(log, snap.run_id) if e.state is NodeState.FAILED]
        assert failed[0].error == "kaput"

    async def test_fail_fast_aborts_the_run(self, runtime) -> None:
        snap = await runtime.run_to_end(
            flow(
                [("bad", "fail"), ("slow", "task", {"sleep": 0.3}), ("after", "task")],
                [("slow", "after")],
                fail_fast=True,
            )
        )

        assert snap.status is RunStatus.FAILED
        assert snap.reason is CancelReason.FAIL_FAST
        assert snap.nodes["after"].state is NodeState.SKIPPED
        # the in-flight handler is not killed, only abandoned
        assert snap.nodes["slow"].state is NodeState.RUNNING

    async def test_abandoned_result_is_discarded(self, runtime) -> None:
        request = flow(
            [("bad", "fail"), ("slow", "task", {"sleep": 0.1, "value": "late"})],
            fail_fast=True,
        )
        snap = await runtime.run_to_end(request)
        await asyncio.sleep(0.2)

        later = runtime.get(snap.run_id)
        assert later.nodes["slow"].state is NodeState.SKIPPED
        assert later.nodes["slow"].result is None
        assert later.status is RunStatus.FAILED

    async def test_node_timeout_fails_node(self, runtime) -> None:
        snap = await runtime.run_to_end(
            flow([("slow", "task", {"sleep": 1})], node_timeout_seconds=0.05)
        )

        assert snap.nodes["slow"].state is NodeState.FAILED
        assert "timed out" in snap.nodes["slow"].error

    async def test_input_request_from_plain_node_fails_it(self, runtime) -> None:
        snap = await runtime.run_to_end(flow([("n", "ask")]))

        assert snap.nodes["n"].state is NodeState.FAILED
        assert "not a checkpoint" in snap.nodes["n"].error

    async def test_unserializable_output_fails_node_and_stream_closes(self, registry, tmp_path) -> None:
        class Opaque:
            pass

        @registry.register("opaque")
        async def opaque(ctx):
            return Opaque()

        runtime = FlowRuntime(registry=registry, settings=Settings(EVENT_LOG_DIR=str(tmp_path)))
        snap = await runtime.run_to_end(flow([("o", "opaque"), ("after", "task")], [("o", "after")]))

        assert snap.status is RunStatus.FAILED
        assert snap.nodes["o"].state is NodeState.FAILED
        assert "not JSON serializable" in snap.nodes["o"].error
        assert snap.nodes["after"].state is NodeState.SKIPPED

        events = await asyncio.wait_for(_collect(runtime.subscribe(snap.run_id)), 1)
        assert events[-1].final
        assert events[-1].status is RunStatus.FAILED

    async def test_outputs_are_stored_as_json_values(self, runtime) -> None:
        snap = await runtime.run_to_end(flow([("a", "task", {"value": ("x", 1)})]))

        assert snap.outputs == {"a": ["x", 1]}


class TestBranching:
    async def test_condition_routes_by_source_handle(self, runtime, registry, recorder) -> None:
        registry.register("condition")(condition_node)
        request = RunRequest(
            graph={
                "nodes": [
                    {"id": "src", "type": "task", "data": {"value": "hello"}},
                    {"id": "cond", "type": "condition", "data": {"condition": "contains('ell')"}},
                    {"id": "yes", "type": "task"},
                    {"id": "no", "type": "task"},
                ],
                "edges": [
                    {"source": "src", "target": "cond"},
                    {"source": "cond", "target": "yes", "sourceHandle": "trueHandle"},
                    {"source": "cond", "target": "no", "sourceHandle": "falseHandle"},
                ],
            }
        )

        await runtime.run_to_end(request)

        assert recorder.inputs_of("yes") == {"trueHandle": "hello"}
        assert recorder.inputs_of("no") == {"falseHandle": None}

    async def test_split_feeds_each_handle(self, runtime, registry, recorder) -> None:
        registry.register("split")(split_node)
        request = RunRequest(
            graph={
                "nodes": [
                    {"id": "src", "type": "task", "data": {"value": [1, 2, 3, 4]}},
                    {"id": "fan", "type": "split"},
                    {"id": "left", "type": "task"},
                    {"id": "right", "type": "task"},
                ],
                "edges": [
                    {"source": "src", "target": "fan"},
                    {"source": "fan", "target": "left", "sourceHandle": "output-1"},
                    {"source": "fan", "target": "right", "sourceHandle": "output-2"},
                ],
            }
        )

        await runtime.run_to_end(request)

        assert recorder.inputs_of("left") == {"output-1": [1, 3]}
        assert recorder.inputs_of("right") == {"output-2": [2, 4]}
