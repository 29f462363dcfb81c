# flow_runtime/runtime.py
import asyncio
import logging
import uuid
from typing import AsyncIterator, Callable, Dict, Optional

from .config import Settings, get_settings
from .engine import ExecutionEngine, RunSession
from .errors import InvalidStateError, RunNotFoundError
from .events import DurableLog, FlowEvent, InMemoryLog, JsonlLog, replay
from .graph import build_graph
from .models import CancelReason, CheckpointDecision, RunConfig, RunRequest, RunSnapshot
from .registry import HANDLERS, HandlerRegistry

logger = logging.getLogger(__name__)

Archiver = Callable[[RunSnapshot], None]


def default_log(settings: Settings) -> DurableLog:
    if settings.EVENT_LOG_DIR:
        return JsonlLog(settings.EVENT_LOG_DIR)
    return InMemoryLog()


class FlowRuntime:
    """Registry of live runs keyed by run id.

    A run stays here after it ends so clients can inspect it; archive()
    hands the final snapshot to the archiver and evicts it.
    """

    def __init__(
        self,
        registry: Optional[HandlerRegistry] = None,
        log: Optional[DurableLog] = None,
        settings: Optional[Settings] = None,
        archiver: Optional[Archiver] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or HANDLERS
        self.log = log if log is not None else default_log(self.settings)
        self.archiver = archiver
        self.runs: Dict[str, ExecutionEngine] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def _run_config(self, request: RunRequest) -> RunConfig:
        st = self.settings
        timeout = request.timeout_seconds or st.DEFAULT_TIMEOUT_SECONDS
        return RunConfig(
            timeout_seconds=min(timeout, st.MAX_TIMEOUT_SECONDS),
            node_timeout_seconds=request.node_timeout_seconds or st.NODE_TIMEOUT_SECONDS,
            concurrency_limit=request.concurrency_limit or st.DEFAULT_CONCURRENCY_LIMIT,
            fail_fast=st.FAIL_FAST if request.fail_fast is None else request.fail_fast,
            join_mode=request.join_mode or st.JOIN_MODE,
        )

    def start_run(self, request: RunRequest) -> str:
        """Validate the graph and schedule the run; ValidationError leaves no trace."""
        graph = build_graph(request.graph.nodes, request.graph.edges, self.registry)
        run_id = str(uuid.uuid4())
        session = RunSession(
            run_id=run_id,
            graph=graph,
            config=self._run_config(request),
            log=self.log,
            initial_inputs=request.initial_inputs,
        )
        engine = ExecutionEngine(session, self.registry)
        self.runs[run_id] = engine

        async def _runner():
            try:
                await engine.run()
            except Exception as e:
                logger.exception("run %s crashed", run_id)
                engine.crash(str(e) or e.__class__.__name__)
            finally:
                self._tasks.pop(run_id, None)

        self._tasks[run_id] = asyncio.create_task(_runner())
        return run_id

    async def run_to_end(self, request: RunRequest) -> RunSnapshot:
        run_id = self.start_run(request)
        await self.wait(run_id)
        return self.get(run_id)

    async def wait(self, run_id: str) -> None:
        self._engine(run_id)
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)

    def _engine(self, run_id: str) -> ExecutionEngine:
        engine = self.runs.get(run_id)
        if engine is None:
            raise RunNotFoundError(run_id)
        return engine

    def known(self, run_id: str) -> bool:
        return run_id in self.runs or bool(self.log.read(run_id))

    def get(self, run_id: str) -> RunSnapshot:
        return self._engine(run_id).session.snapshot()

    def resolve_checkpoint(self, decision: CheckpointDecision) -> RunSnapshot:
        if decision.run_id is None:
            raise InvalidStateError("checkpoint decision has no run id")
        engine = self._engine(decision.run_id)
        engine.resolve(decision)
        return engine.session.snapshot()

    async def cancel(self, run_id: str) -> bool:
        return await self._engine(run_id).cancel(CancelReason.USER_CANCELLED)

    async def subscribe(self, run_id: str, after: int = 0) -> AsyncIterator[FlowEvent]:
        engine = self.runs.get(run_id)
        if engine is not None:
            source = engine.session.stream.subscribe(after)
        else:
            if not self.log.read(run_id):
                raise RunNotFoundError(run_id)
            source = replay(self.log, run_id, after)
        async for event in source:
            yield event

    def archive(self, run_id: str) -> RunSnapshot:
        engine = self._engine(run_id)
        if not engine.session.terminal:
            raise InvalidStateError(f"run {run_id} is still {engine.session.status.value}")
        snapshot = engine.session.snapshot()
        if self.archiver is not None:
            self.archiver(snapshot)
        del self.runs[run_id]
        logger.info("run %s archived", run_id)
        return snapshot

    async def shutdown(self) -> None:
        for run_id, engine in list(self.runs.items()):
            if not engine.session.terminal:
                await engine.cancel(CancelReason.USER_CANCELLED)
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
