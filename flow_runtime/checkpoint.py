# flow_runtime/checkpoint.py
import logging
from collections import deque
from typing import Deque, Dict, List, Optional

from .errors import InvalidStateError
from .models import CheckpointDecision, CheckpointRequest, CheckpointStatus, utcnow

logger = logging.getLogger(__name__)


class CheckpointController:
    """Holds at most one pending human decision per run.

    Checkpoints reached while another is pending wait in arrival order and
    become pending one at a time as earlier decisions are consumed.
    """

    def __init__(self):
        self.active: Optional[CheckpointRequest] = None
        self._queue: Deque[CheckpointRequest] = deque()
        self._requests: Dict[str, CheckpointRequest] = {}

    @property
    def queued(self) -> List[str]:
        return [r.node_id for r in self._queue]

    def suspend(self, node_id: str, message: str, input_preview: Optional[str] = None) -> CheckpointRequest:
        existing = self._requests.get(node_id)
        if existing is not None and not existing.resolved:
            raise InvalidStateError(f"node {node_id!r} already has an open checkpoint")
        request = CheckpointRequest(node_id=node_id, message=message, input_preview=input_preview)
        self._requests[node_id] = request
        if self.active is None:
            request.status = CheckpointStatus.PENDING
            self.active = request
        else:
            self._queue.append(request)
            logger.debug("checkpoint %s queued behind %s", node_id, self.active.node_id)
        return request

    def resolve(self, decision: CheckpointDecision) -> CheckpointRequest:
        """Apply a decision to the pending checkpoint of ``decision.node_id``.

        Unknown, queued or already resolved checkpoints raise
        InvalidStateError and leave the controller unchanged.
        """
        request = self._requests.get(decision.node_id)
        if request is None:
            raise InvalidStateError(f"no checkpoint for node {decision.node_id!r}")
        if request.resolved:
            raise InvalidStateError(f"checkpoint for node {decision.node_id!r} is already resolved")
        if self.active is None:
            raise InvalidStateError(f"checkpoint for node {decision.node_id!r} is no longer pending")
        if request is not self.active:
            raise InvalidStateError(
                f"checkpoint for node {decision.node_id!r} is queued behind {self.active.node_id!r}"
            )
        request.status = CheckpointStatus.APPROVED if decision.approved else CheckpointStatus.REJECTED
        request.user_input = decision.user_input if decision.approved else None
        request.resolved_at = utcnow()
        return request

    def consume(self, node_id: str) -> Optional[CheckpointRequest]:
        """Release a resolved checkpoint; returns the next one made pending."""
        if self.active is None or self.active.node_id != node_id or not self.active.resolved:
            raise InvalidStateError(f"checkpoint for node {node_id!r} is not resolved")
        self.active = None
        if not self._queue:
            return None
        nxt = self._queue.popleft()
        nxt.status = CheckpointStatus.PENDING
        self.active = nxt
        return nxt

    def discard(self) -> List[CheckpointRequest]:
        """Drop every unresolved request (run cancelled or aborted)."""
        dropped = [r for r in self._requests.values() if not r.resolved]
        self.active = None
        self._queue.clear()
        return dropped
