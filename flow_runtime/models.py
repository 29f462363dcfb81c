# flow_runtime/models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    WAITING_USER = "waiting_user"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_NODE_STATES


TERMINAL_NODE_STATES = frozenset({NodeState.COMPLETED, NodeState.FAILED, NodeState.SKIPPED})

# forward-only moves; running -> skipped is reserved for cancelled/aborted runs
TRANSITIONS = {
    NodeState.PENDING: frozenset({NodeState.READY, NodeState.SKIPPED}),
    NodeState.READY: frozenset({NodeState.RUNNING, NodeState.SKIPPED}),
    NodeState.RUNNING: frozenset(
        {NodeState.WAITING_USER, NodeState.COMPLETED, NodeState.FAILED, NodeState.SKIPPED}
    ),
    NodeState.WAITING_USER: frozenset({NodeState.RUNNING, NodeState.SKIPPED}),
    NodeState.COMPLETED: frozenset(),
    NodeState.FAILED: frozenset(),
    NodeState.SKIPPED: frozenset(),
}


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class JoinMode(str, Enum):
    # all: every predecessor must complete; any: one completed predecessor suffices
    ALL = "all"
    ANY = "any"


class CancelReason(str, Enum):
    TIMEOUT = "timeout"
    USER_CANCELLED = "user_cancelled"
    FAIL_FAST = "fail_fast"


DEFAULT_APPROVAL_MESSAGE = "Approval required to continue"


def approval_message(data: Dict[str, Any]) -> str:
    return data.get("checkpointMessage") or data.get("label") or DEFAULT_APPROVAL_MESSAGE


class FlowNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = None

    @property
    def is_checkpoint(self) -> bool:
        return (
            self.type == "checkpoint"
            or bool(self.data.get("isCheckpoint"))
            or bool(self.data.get("requiresApproval"))
        )

    @property
    def approval_message(self) -> str:
        return approval_message(self.data)


class FlowEdge(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = Field(None, alias="sourceHandle")
    target_handle: Optional[str] = Field(None, alias="targetHandle")
    data: Optional[Dict[str, Any]] = None


class NodeResult(BaseModel):
    output: Any = None
    log: Optional[str] = None


class NeedsInput(BaseModel):
    """Returned by a handler that cannot finish without a human decision."""

    message: str = DEFAULT_APPROVAL_MESSAGE
    input_preview: Optional[str] = None


class NodeRuntimeState(BaseModel):
    node_id: str
    state: NodeState = NodeState.PENDING
    progress: Optional[str] = None
    error: Optional[str] = None
    result: Any = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class CheckpointDecision(BaseModel):
    run_id: Optional[str] = None
    node_id: str
    decision: Decision
    user_input: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.decision is Decision.APPROVE


class CheckpointStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    APPROVED = "approved"
    REJECTED = "rejected"


class CheckpointRequest(BaseModel):
    node_id: str
    message: str
    input_preview: Optional[str] = None
    status: CheckpointStatus = CheckpointStatus.QUEUED
    user_input: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def resolved(self) -> bool:
        return self.status in (CheckpointStatus.APPROVED, CheckpointStatus.REJECTED)


class GraphPayload(BaseModel):
    nodes: List[FlowNode]
    edges: List[FlowEdge] = Field(default_factory=list)


class RunRequest(BaseModel):
    graph: GraphPayload
    initial_inputs: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = Field(None, gt=0)
    node_timeout_seconds: Optional[float] = Field(None, gt=0)
    concurrency_limit: Optional[int] = Field(None, ge=1)
    fail_fast: Optional[bool] = None
    join_mode: Optional[JoinMode] = None


class RunConfig(BaseModel):
    timeout_seconds: float
    node_timeout_seconds: Optional[float] = None
    concurrency_limit: Optional[int] = None
    fail_fast: bool = False
    join_mode: JoinMode = JoinMode.ALL


class RunSnapshot(BaseModel):
    run_id: str
    status: RunStatus
    reason: Optional[CancelReason] = None
    nodes: Dict[str, NodeRuntimeState]
    checkpoint: Optional[CheckpointRequest] = None
    queued_checkpoints: List[str] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float
    remaining_seconds: Optional[float] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
