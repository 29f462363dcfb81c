"""Shared fixtures: an isolated handler registry and runtime per test."""

import asyncio
from typing import Any, Dict, List

import pytest

from flow_runtime.config import Settings
from flow_runtime.events import InMemoryLog
from flow_runtime.models import NeedsInput, RunRequest
from flow_runtime.nodes.builtin import checkpoint_node, delay_node, merge_node
from flow_runtime.registry import HandlerRegistry, NodeContext
from flow_runtime.runtime import FlowRuntime


class Recorder:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def inputs_of(self, node_id: str) -> Dict[str, Any]:
        return next(c["inputs"] for c in self.calls if c["node_id"] == node_id)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def registry(recorder: Recorder) -> HandlerRegistry:
    reg = HandlerRegistry()
    reg.register("checkpoint")(checkpoint_node)
    reg.register("delay")(delay_node)
    reg.register("merge")(merge_node)

    @reg.register("task")
    async def task(ctx: NodeContext):
        recorder.calls.append({"node_id": ctx.node_id, "inputs": dict(ctx.inputs)})
        if ctx.data.get("sleep"):
            await asyncio.sleep(ctx.data["sleep"])
        return ctx.data.get("value", ctx.node_id)

    @reg.register("sync")
    def sync_task(ctx: NodeContext):
        recorder.calls.append({"node_id": ctx.node_id, "inputs": dict(ctx.inputs)})
        return {"sum": sum(ctx.data.get("numbers", []))}

    @reg.register("fail")
    async def fail(ctx: NodeContext):
        raise RuntimeError(ctx.data.get("message", "boom"))

    @reg.register("hang")
    async def hang(ctx: NodeContext):
        # ignores the cancel signal on purpose
        await asyncio.sleep(3600)

    @reg.register("cooperative")
    async def cooperative(ctx: NodeContext):
        await ctx.cancel_signal.wait()
        ctx.raise_if_cancelled()

    @reg.register("ask")
    async def ask(ctx: NodeContext):
        return NeedsInput(message="not allowed here")

    return reg


@pytest.fixture
def settings() -> Settings:
    return Settings(DEFAULT_TIMEOUT_SECONDS=5.0, SSE_KEEPALIVE_SECONDS=0.5, EVENT_LOG_DIR=None)


@pytest.fixture
def log() -> InMemoryLog:
    return InMemoryLog()


@pytest.fixture
def runtime(registry: HandlerRegistry, log: InMemoryLog, settings: Settings) -> FlowRuntime:
    return FlowRuntime(registry=registry, log=log, settings=settings)


def flow(nodes, edges=(), **options) -> RunRequest:
    """Build a run request from ``(id, type[, data])`` tuples and ``(src, dst)`` pairs."""
    node_dicts = []
    for entry in nodes:
        node_id, node_type = entry[0], entry[1]
        data = entry[2] if len(entry) > 2 else {}
        node_dicts.append({"id": node_id, "type": node_type, "data": data})
    edge_dicts = [{"source": s, "target": t} for s, t in edges]
    return RunRequest(graph={"nodes": node_dicts, "edges": edge_dicts}, **options)


async def wait_for_checkpoint(runtime: FlowRuntime, run_id: str, node_id: str, timeout: float = 2.0):
    async def poll():
        while True:
            snap = runtime.get(run_id)
            if snap.checkpoint is not None and snap.checkpoint.node_id == node_id:
                return snap
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(poll(), timeout)
