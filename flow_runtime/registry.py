# flow_runtime/registry.py
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from .errors import CancellationError, RunTimeoutError
from .models import CancelReason, CheckpointDecision, NeedsInput, NodeResult
from .supervisor import CancelSignal

logger = logging.getLogger(__name__)

Handler = Callable[["NodeContext"], Any]


class NodeContext:
    """Everything a handler may look at while executing one node."""

    def __init__(
        self,
        node_id: str,
        node_type: str,
        data: Dict[str, Any],
        inputs: Dict[str, Any],
        cancel_signal: CancelSignal,
        flow_inputs: Optional[Dict[str, Any]] = None,
        decision: Optional[CheckpointDecision] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ):
        self.node_id = node_id
        self.node_type = node_type
        self.data = data
        self.inputs = inputs
        self.cancel_signal = cancel_signal
        self.flow_inputs = flow_inputs or {}
        self.decision = decision
        self._on_progress = on_progress

    @property
    def cancelled(self) -> bool:
        return self.cancel_signal.is_set()

    def raise_if_cancelled(self) -> None:
        if not self.cancel_signal.is_set():
            return
        if self.cancel_signal.reason is CancelReason.TIMEOUT:
            raise RunTimeoutError()
        raise CancellationError(f"run cancelled ({self.cancel_signal.reason.value})")

    def first_input(self, default: Any = None) -> Any:
        for value in self.inputs.values():
            return value
        return default

    def report_progress(self, text: str) -> None:
        if self._on_progress is not None:
            self._on_progress(text)


class HandlerRegistry:
    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, node_type: str):
        def decorator(fn: Handler) -> Handler:
            self._handlers[node_type] = fn
            return fn
        return decorator

    def knows(self, node_type: str) -> bool:
        return node_type in self._handlers

    def types(self) -> List[str]:
        return sorted(self._handlers)

    async def execute(
        self,
        node_type: str,
        node_data: Dict[str, Any],
        inputs: Dict[str, Any],
        cancel_signal: CancelSignal,
        **context: Any,
    ):
        """Run the handler for node_type; returns a NodeResult or NeedsInput."""
        fn = self._handlers[node_type]
        ctx = NodeContext(
            node_id=context.pop("node_id", node_type),
            node_type=node_type,
            data=node_data,
            inputs=inputs,
            cancel_signal=cancel_signal,
            **context,
        )
        if inspect.iscoroutinefunction(fn):
            res = await fn(ctx)
        else:
            # quick sync handlers run inline on the loop
            res = fn(ctx)
            if inspect.isawaitable(res):
                res = await res
        if isinstance(res, (NodeResult, NeedsInput)):
            return res
        return NodeResult(output=res)


# default registry; built-in node types register themselves on import
HANDLERS = HandlerRegistry()


def register_handler(node_type: str):
    return HANDLERS.register(node_type)
