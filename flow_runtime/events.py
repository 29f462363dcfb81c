# flow_runtime/events.py
import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from .models import CancelReason, NodeState, RunStatus, utcnow

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    RUN_STATUS = "run_status"
    NODE_STATE = "node_state"
    NODE_PROGRESS = "node_progress"
    CHECKPOINT = "checkpoint"


class FlowEvent(BaseModel):
    seq: int = 0
    run_id: str
    kind: EventKind
    node_id: Optional[str] = None
    state: Optional[NodeState] = None
    status: Optional[RunStatus] = None
    progress: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[CancelReason] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    final: bool = False
    timestamp: datetime = Field(default_factory=utcnow)

    def to_sse(self) -> str:
        payload = self.model_dump_json(exclude_none=True)
        return f"id: {self.seq}\nevent: {self.kind.value}\ndata: {payload}\n\n"


SSE_DONE = "data: [DONE]\n\n"


class DurableLog(Protocol):
    """Append-only per-run event storage used for replay and run history."""

    def append(self, run_id: str, event: FlowEvent) -> None: ...

    def read(self, run_id: str, after: int = 0) -> List[FlowEvent]: ...


class InMemoryLog:
    def __init__(self):
        self._events: Dict[str, List[FlowEvent]] = {}

    def append(self, run_id: str, event: FlowEvent) -> None:
        self._events.setdefault(run_id, []).append(event)

    def read(self, run_id: str, after: int = 0) -> List[FlowEvent]:
        return [e for e in self._events.get(run_id, []) if e.seq > after]


class JsonlLog:
    """One JSON-lines file per run under ``directory``."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.jsonl"

    def append(self, run_id: str, event: FlowEvent) -> None:
        with self._path(run_id).open("a", encoding="utf-8") as fh:
            fh.write(event.model_dump_json() + "\n")

    def read(self, run_id: str, after: int = 0) -> List[FlowEvent]:
        path = self._path(run_id)
        if not path.exists():
            return []
        events = []
        with path.open(encoding="utf-8") as fh:
            for line in fh:
                if not line.strip():
                    continue
                event = FlowEvent.model_validate(json.loads(line))
                if event.seq > after:
                    events.append(event)
        return events


class EventStream:
    """Ordered, replayable event sequence for one run.

    Events are written through the durable log before being fanned out to
    live subscribers, so a subscriber that attaches late reads history from
    the log and then continues with live events.
    """

    def __init__(self, run_id: str, log: DurableLog):
        self.run_id = run_id
        self.log = log
        self._seq = 0
        self._closed = False
        self._subscribers: List[asyncio.Queue] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_seq(self) -> int:
        return self._seq

    def publish(self, kind: EventKind, **fields: Any) -> Optional[FlowEvent]:
        if self._closed:
            logger.debug("run %s: stream closed, dropping %s event", self.run_id, kind.value)
            return None
        event = FlowEvent(seq=self._seq + 1, run_id=self.run_id, kind=kind, **fields)
        # a failed append must not burn a sequence number
        self.log.append(self.run_id, event)
        self._seq = event.seq
        for queue in self._subscribers:
            queue.put_nowait(event)
        if event.final:
            self._closed = True
        return event

    async def subscribe(self, after: int = 0) -> AsyncIterator[FlowEvent]:
        # register before reading the log so nothing published in between is lost
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            last = after
            for event in self.log.read(self.run_id, after):
                last = event.seq
                yield event
                if event.final:
                    return
            while True:
                if self._closed and last >= self._seq:
                    return
                event = await queue.get()
                if event.seq <= last:
                    continue
                last = event.seq
                yield event
                if event.final:
                    return
        finally:
            self._subscribers.remove(queue)


async def replay(log: DurableLog, run_id: str, after: int = 0) -> AsyncIterator[FlowEvent]:
    """History of a run that is no longer held in memory."""
    for event in log.read(run_id, after):
        yield event
