# flow_runtime/engine.py
import asyncio
import logging
from collections import deque
from functools import partial
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from pydantic_core import PydanticSerializationError, to_jsonable_python

from .checkpoint import CheckpointController
from .errors import ExecutionError, InvalidStateError
from .events import DurableLog, EventKind, EventStream
from .graph import FlowGraph, node_inputs
from .models import (
    TRANSITIONS,
    CancelReason,
    CheckpointDecision,
    JoinMode,
    NeedsInput,
    NodeResult,
    NodeRuntimeState,
    NodeState,
    RunConfig,
    RunSnapshot,
    RunStatus,
    utcnow,
)
from .registry import HandlerRegistry
from .supervisor import Supervisor

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


class RunSession:
    """Aggregate state of one run. Only its ExecutionEngine mutates it."""

    def __init__(
        self,
        run_id: str,
        graph: FlowGraph,
        config: RunConfig,
        log: DurableLog,
        initial_inputs: Optional[Dict[str, Any]] = None,
    ):
        self.run_id = run_id
        self.graph = graph
        self.config = config
        self.initial_inputs = dict(initial_inputs or {})
        self.nodes: Dict[str, NodeRuntimeState] = {
            n: NodeRuntimeState(node_id=n) for n in graph.order
        }
        self.outputs: Dict[str, Any] = {}
        self.checkpoints = CheckpointController()
        self.stream = EventStream(run_id, log)
        self.status = RunStatus.RUNNING
        self.reason: Optional[CancelReason] = None
        self.error: Optional[str] = None
        self.started_at = utcnow()
        self.finished_at = None
        self.supervisor: Optional[Supervisor] = None

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def exit_outputs(self) -> Dict[str, Any]:
        return {n: self.outputs[n] for n in self.graph.exit_nodes() if n in self.outputs}

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            run_id=self.run_id,
            status=self.status,
            reason=self.reason,
            nodes={n: st.model_copy() for n, st in self.nodes.items()},
            checkpoint=self.checkpoints.active.model_copy() if self.checkpoints.active else None,
            queued_checkpoints=self.checkpoints.queued,
            outputs=self.exit_outputs(),
            timeout_seconds=self.config.timeout_seconds,
            remaining_seconds=self.supervisor.remaining() if self.supervisor else None,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


def _preview(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)[:PREVIEW_CHARS]


class ExecutionEngine:
    """Drives a RunSession from its entry nodes to a terminal status.

    Node handlers run as tasks; every state change happens in engine methods
    on the event loop, so the session is never written concurrently.
    """

    def __init__(self, session: RunSession, registry: HandlerRegistry):
        self.session = session
        self.registry = registry
        self.supervisor = Supervisor(session.config.timeout_seconds, self._on_cancel)
        session.supervisor = self.supervisor
        self._ready: Deque[str] = deque()
        self._resume: Deque[Tuple[str, CheckpointDecision]] = deque()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()

    @property
    def graph(self) -> FlowGraph:
        return self.session.graph

    @property
    def in_flight(self) -> List[str]:
        return list(self._in_flight)

    async def run(self) -> RunSnapshot:
        s = self.session
        if s.terminal:
            # cancelled before the first step
            return s.snapshot()
        logger.info("run %s started with %d nodes", s.run_id, len(s.nodes))
        s.stream.publish(
            EventKind.RUN_STATUS,
            status=RunStatus.RUNNING,
            data={
                "total_nodes": len(s.nodes),
                "layers": [list(layer) for layer in self.graph.layers],
            },
        )
        self.supervisor.start()
        for node_id in self.graph.entry_nodes():
            self._transition(node_id, NodeState.READY)
            self._ready.append(node_id)

        while not s.terminal:
            self._dispatch()
            if self._settle():
                break
            await self._wakeup.wait()
            self._wakeup.clear()
        return s.snapshot()

    # -- scheduling

    def _dispatch(self) -> None:
        limit = self.session.config.concurrency_limit
        while self._resume or self._ready:
            if limit is not None and len(self._in_flight) >= limit:
                break
            if self._resume:
                node_id, decision = self._resume.popleft()
                self._start(node_id, decision)
            else:
                self._start(self._ready.popleft())

    def _start(self, node_id: str, decision: Optional[CheckpointDecision] = None) -> None:
        s = self.session
        node = self.graph.node(node_id)
        self._transition(node_id, NodeState.RUNNING)
        if decision is None and node.is_checkpoint:
            # flagged nodes wait for approval before their handler runs
            self._suspend(node_id, NeedsInput(message=node.approval_message))
            return
        inputs = node_inputs(self.graph, node_id, s.outputs)
        if decision is not None and decision.user_input:
            inputs["user_input"] = decision.user_input
        self._in_flight[node_id] = asyncio.create_task(
            self._execute(node_id, inputs, decision), name=f"{s.run_id}:{node_id}"
        )

    async def _execute(self, node_id: str, inputs: Dict[str, Any], decision) -> None:
        s = self.session
        node = self.graph.node(node_id)
        timeout = node.data.get("timeoutSeconds") or s.config.node_timeout_seconds
        call = self.registry.execute(
            node.type,
            dict(node.data),
            inputs,
            self.supervisor.signal,
            node_id=node_id,
            flow_inputs=s.initial_inputs,
            decision=decision,
            on_progress=partial(self._progress, node_id),
        )
        try:
            if timeout:
                outcome = await asyncio.wait_for(call, timeout)
            else:
                outcome = await call
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError) and timeout:
                message = f"timed out after {timeout}s"
            else:
                message = str(e) or e.__class__.__name__
            logger.warning("run %s: node %s failed: %s", s.run_id, node_id, message)
            outcome = ExecutionError(node_id, message)
        self._in_flight.pop(node_id, None)
        self._apply(node_id, outcome)
        self._wakeup.set()

    def _apply(self, node_id: str, outcome) -> None:
        s = self.session
        if s.terminal:
            logger.info("run %s is %s; discarding result of node %s", s.run_id, s.status.value, node_id)
            if s.nodes[node_id].state is NodeState.RUNNING:
                self._transition(node_id, NodeState.SKIPPED)
            return
        if isinstance(outcome, ExecutionError):
            self._fail(node_id, outcome.message)
        elif isinstance(outcome, NeedsInput):
            if self.graph.node(node_id).is_checkpoint:
                self._suspend(node_id, outcome)
            else:
                self._fail(node_id, "handler asked for user input but the node is not a checkpoint")
        else:
            self._complete(node_id, outcome)

    def _settle(self) -> bool:
        s = self.session
        if s.terminal:
            return True
        if not all(st.state.terminal for st in s.nodes.values()):
            return False
        failed = [n for n, st in s.nodes.items() if st.state is NodeState.FAILED]
        if failed:
            self._finish(RunStatus.FAILED, error=f"failed nodes: {', '.join(failed)}")
        else:
            self._finish(RunStatus.COMPLETED)
        return True

    # -- node outcomes

    def _complete(self, node_id: str, result: NodeResult) -> None:
        try:
            output = to_jsonable_python(result.output)
        except PydanticSerializationError as e:
            self._fail(node_id, f"output is not JSON serializable: {e}")
            return
        st = self.session.nodes[node_id]
        st.result = output
        if result.log:
            st.progress = result.log
        self.session.outputs[node_id] = output
        self._transition(node_id, NodeState.COMPLETED)
        self._evaluate(self.graph.successors[node_id])

    def _fail(self, node_id: str, message: str) -> None:
        self.session.nodes[node_id].error = message
        self._transition(node_id, NodeState.FAILED)
        if self.session.config.fail_fast:
            self.supervisor.signal.set(CancelReason.FAIL_FAST)
            self._halt(RunStatus.FAILED, CancelReason.FAIL_FAST, error=f"node {node_id} failed: {message}")
        else:
            self._evaluate(self.graph.successors[node_id])

    def _suspend(self, node_id: str, needs: NeedsInput) -> None:
        s = self.session
        preview = needs.input_preview
        if preview is None:
            preview = _preview(next(iter(node_inputs(self.graph, node_id, s.outputs).values()), None))
        s.nodes[node_id].progress = needs.message
        self._transition(node_id, NodeState.WAITING_USER)
        request = s.checkpoints.suspend(node_id, needs.message, preview)
        if s.checkpoints.active is request:
            self._announce(request)
        else:
            logger.info("run %s: checkpoint %s queued", s.run_id, node_id)

    def _announce(self, request) -> None:
        logger.info("run %s: waiting for decision on %s", self.session.run_id, request.node_id)
        self.session.stream.publish(
            EventKind.CHECKPOINT,
            node_id=request.node_id,
            state=NodeState.WAITING_USER,
            progress=request.message,
            data={"message": request.message, "input_preview": request.input_preview},
        )

    def _evaluate(self, candidates: Sequence[str]) -> None:
        """Re-check only the given pending nodes, propagating skips downstream."""
        s = self.session
        work = deque(candidates)
        while work:
            node_id = work.popleft()
            if s.nodes[node_id].state is not NodeState.PENDING:
                continue
            verdict = self._join([s.nodes[p].state for p in self.graph.predecessors[node_id]])
            if verdict is NodeState.READY:
                self._transition(node_id, NodeState.READY)
                self._ready.append(node_id)
            elif verdict is NodeState.SKIPPED:
                s.nodes[node_id].progress = "upstream did not complete"
                self._transition(node_id, NodeState.SKIPPED)
                work.extend(self.graph.successors[node_id])

    def _join(self, states: List[NodeState]) -> Optional[NodeState]:
        if self.session.config.join_mode is JoinMode.ANY:
            if not all(st.terminal for st in states):
                return None
            if any(st is NodeState.COMPLETED for st in states):
                return NodeState.READY
            return NodeState.SKIPPED
        if any(st in (NodeState.FAILED, NodeState.SKIPPED) for st in states):
            return NodeState.SKIPPED
        if all(st is NodeState.COMPLETED for st in states):
            return NodeState.READY
        return None

    def _progress(self, node_id: str, text: str) -> None:
        s = self.session
        if s.terminal:
            return
        st = s.nodes[node_id]
        st.progress = text
        s.stream.publish(EventKind.NODE_PROGRESS, node_id=node_id, state=st.state, progress=text)

    def _transition(self, node_id: str, new: NodeState) -> None:
        st = self.session.nodes[node_id]
        if new not in TRANSITIONS[st.state]:
            raise InvalidStateError(
                f"node {node_id!r} cannot move from {st.state.value} to {new.value}"
            )
        st.state = new
        if new is NodeState.RUNNING and st.started_at is None:
            st.started_at = utcnow()
        if new.terminal:
            st.finished_at = utcnow()
        logger.debug("run %s: %s -> %s", self.session.run_id, node_id, new.value)
        self.session.stream.publish(
            EventKind.NODE_STATE,
            node_id=node_id,
            state=new,
            progress=st.progress,
            error=st.error,
        )

    # -- checkpoint decisions and cancellation

    def resolve(self, decision: CheckpointDecision) -> None:
        s = self.session
        if s.terminal:
            raise InvalidStateError(f"run {s.run_id} is {s.status.value}")
        if decision.node_id not in s.nodes:
            raise InvalidStateError(f"unknown node {decision.node_id!r}")
        s.checkpoints.resolve(decision)
        nxt = s.checkpoints.consume(decision.node_id)
        logger.info("run %s: checkpoint %s %s", s.run_id, decision.node_id, decision.decision.value)
        if decision.approved:
            self._resume.append((decision.node_id, decision))
        else:
            s.nodes[decision.node_id].progress = "rejected by user"
            self._transition(decision.node_id, NodeState.SKIPPED)
            self._evaluate(self.graph.successors[decision.node_id])
        if nxt is not None:
            self._announce(nxt)
        self._wakeup.set()

    async def cancel(self, reason: CancelReason = CancelReason.USER_CANCELLED) -> bool:
        if self.session.terminal:
            return False
        return await self.supervisor.cancel(reason)

    async def _on_cancel(self, reason: CancelReason) -> None:
        if self.session.terminal:
            return
        logger.info("run %s cancelled: %s", self.session.run_id, reason.value)
        self._halt(RunStatus.CANCELLED, reason)

    def crash(self, message: str) -> None:
        if not self.session.terminal:
            self.supervisor.signal.set(CancelReason.FAIL_FAST)
            self._halt(RunStatus.FAILED, CancelReason.FAIL_FAST, error=message)

    def _halt(self, status: RunStatus, reason: CancelReason, error: Optional[str] = None) -> None:
        """Stop dispatching and skip everything not already executing."""
        s = self.session
        s.checkpoints.discard()
        self._ready.clear()
        self._resume.clear()
        for node_id in self.graph.order:
            st = s.nodes[node_id]
            if st.state in (NodeState.PENDING, NodeState.READY, NodeState.WAITING_USER):
                st.progress = f"run stopped ({reason.value})"
                self._transition(node_id, NodeState.SKIPPED)
        self._finish(status, reason=reason, error=error)

    def _finish(self, status: RunStatus, reason: Optional[CancelReason] = None, error: Optional[str] = None) -> None:
        s = self.session
        s.status = status
        s.reason = reason
        s.error = error
        s.finished_at = utcnow()
        self.supervisor.stop()
        logger.info("run %s finished: %s", s.run_id, status.value)
        final = dict(status=status, reason=reason, error=error, final=True)
        try:
            s.stream.publish(
                EventKind.RUN_STATUS,
                data={"outputs": s.exit_outputs(), "abandoned": self.in_flight},
                **final,
            )
        except PydanticSerializationError:
            # the stream must still close; retry without the payload
            logger.exception("run %s: could not write final event with outputs", s.run_id)
            s.stream.publish(EventKind.RUN_STATUS, data={"abandoned": self.in_flight}, **final)
        self._wakeup.set()
