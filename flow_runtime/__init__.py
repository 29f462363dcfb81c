from . import nodes  # noqa: F401  registers the built-in node types
from .engine import ExecutionEngine, RunSession
from .errors import (
    CancellationError,
    ExecutionError,
    FlowRuntimeError,
    InvalidStateError,
    RunNotFoundError,
    RunTimeoutError,
    ValidationError,
)
from .events import EventKind, EventStream, FlowEvent, InMemoryLog, JsonlLog
from .graph import FlowGraph, build_graph
from .models import (
    CheckpointDecision,
    NeedsInput,
    NodeResult,
    NodeState,
    RunRequest,
    RunStatus,
)
from .registry import HANDLERS, HandlerRegistry, NodeContext, register_handler
from .runtime import FlowRuntime

__all__ = [
    "CancellationError",
    "CheckpointDecision",
    "EventKind",
    "EventStream",
    "ExecutionEngine",
    "ExecutionError",
    "FlowEvent",
    "FlowGraph",
    "FlowRuntime",
    "FlowRuntimeError",
    "HANDLERS",
    "HandlerRegistry",
    "InMemoryLog",
    "InvalidStateError",
    "JsonlLog",
    "NeedsInput",
    "NodeContext",
    "NodeResult",
    "NodeState",
    "RunNotFoundError",
    "RunRequest",
    "RunSession",
    "RunStatus",
    "RunTimeoutError",
    "ValidationError",
    "build_graph",
    "register_handler",
]
