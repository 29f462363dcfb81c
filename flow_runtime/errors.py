# flow_runtime/errors.py
from typing import List, Optional


class FlowRuntimeError(Exception):
    """Base class for every error raised by the flow runtime."""


class ValidationError(FlowRuntimeError):
    """The submitted graph cannot be run; no session is created."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid flow graph")


class ExecutionError(FlowRuntimeError):
    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        self.message = message
        super().__init__(f"node {node_id!r} failed: {message}")


class InvalidStateError(FlowRuntimeError):
    pass


class RunNotFoundError(FlowRuntimeError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run {run_id!r} not found")


class RunTimeoutError(FlowRuntimeError):
    def __init__(self, budget: Optional[float] = None):
        self.budget = budget
        super().__init__(f"run exceeded its {budget}s budget" if budget else "run timed out")


class CancellationError(FlowRuntimeError):
    pass
