# flow_runtime/graph.py
from collections import deque
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import FlowEdge, FlowNode
from .registry import HANDLERS, HandlerRegistry

NodeLike = Union[FlowNode, Mapping[str, Any]]
EdgeLike = Union[FlowEdge, Mapping[str, Any]]


class FlowGraph(BaseModel):
    """Fixed topology of one run. Execution state lives elsewhere."""

    model_config = ConfigDict(frozen=True)

    nodes: Dict[str, FlowNode]
    edges: Tuple[FlowEdge, ...]
    order: Tuple[str, ...]
    layers: Tuple[Tuple[str, ...], ...]
    predecessors: Dict[str, Tuple[str, ...]]
    successors: Dict[str, Tuple[str, ...]]
    inbound: Dict[str, Tuple[FlowEdge, ...]]

    def node(self, node_id: str) -> FlowNode:
        return self.nodes[node_id]

    def incoming(self, node_id: str) -> List[FlowEdge]:
        return list(self.inbound[node_id])

    def entry_nodes(self) -> List[str]:
        return [n for n in self.order if not self.predecessors[n]]

    def exit_nodes(self) -> List[str]:
        return [n for n in self.order if not self.successors[n]]


def _coerce(items: Iterable[Any], model, kind: str, problems: List[str]) -> list:
    out = []
    for i, item in enumerate(items):
        if isinstance(item, model):
            out.append(item)
            continue
        try:
            out.append(model.model_validate(item))
        except PydanticValidationError as e:
            problems.append(f"{kind} #{i} is malformed: {e}")
    return out


def _unique(ids: Iterable[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(ids))


def build_graph(
    nodes: Iterable[NodeLike],
    edges: Iterable[EdgeLike],
    registry: Optional[HandlerRegistry] = None,
) -> FlowGraph:
    """Validate a caller-supplied snapshot and precompute its adjacency.

    Raises ValidationError listing every problem found; cycles are only
    checked once ids, endpoints and types are sound.
    """
    registry = registry or HANDLERS
    problems: List[str] = []
    node_list = _coerce(nodes, FlowNode, "node", problems)
    edge_list = _coerce(edges, FlowEdge, "edge", problems)

    by_id: Dict[str, FlowNode] = {}
    for node in node_list:
        if node.id in by_id:
            problems.append(f"duplicate node id {node.id!r}")
            continue
        by_id[node.id] = node

    for edge in edge_list:
        for end in (edge.source, edge.target):
            if end not in by_id:
                problems.append(f"edge {edge.source!r}->{edge.target!r} references unknown node {end!r}")

    for node in by_id.values():
        if not registry.knows(node.type):
            problems.append(f"node {node.id!r} has unknown type {node.type!r}")

    if problems:
        raise ValidationError(problems)

    preds: Dict[str, List[str]] = {n: [] for n in by_id}
    succs: Dict[str, List[str]] = {n: [] for n in by_id}
    inbound: Dict[str, List[FlowEdge]] = {n: [] for n in by_id}
    for edge in edge_list:
        preds[edge.target].append(edge.source)
        succs[edge.source].append(edge.target)
        inbound[edge.target].append(edge)
    predecessors = {n: _unique(p) for n, p in preds.items()}
    successors = {n: _unique(s) for n, s in succs.items()}

    # kahn; depth per node gives the execution layers
    indegree = {n: len(predecessors[n]) for n in by_id}
    depth = {n: 0 for n in by_id}
    queue = deque(n for n in by_id if indegree[n] == 0)
    order: List[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for nxt in successors[current]:
            depth[nxt] = max(depth[nxt], depth[current] + 1)
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    if len(order) != len(by_id):
        stuck = sorted(n for n in by_id if indegree[n] > 0)
        raise ValidationError([f"circular dependency detected among nodes {stuck}"])

    layers: Dict[int, List[str]] = {}
    for n in order:
        layers.setdefault(depth[n], []).append(n)

    return FlowGraph(
        nodes=by_id,
        edges=tuple(edge_list),
        order=tuple(order),
        layers=tuple(tuple(layers[d]) for d in sorted(layers)),
        predecessors=predecessors,
        successors=successors,
        inbound={n: tuple(e) for n, e in inbound.items()},
    )


def node_inputs(graph: FlowGraph, node_id: str, outputs: Mapping[str, Any]) -> Dict[str, Any]:
    """Collect a node's inputs from the outputs of its completed predecessors.

    Keyed by target handle, then source handle, then ``default`` (the source
    node id when several unlabelled edges meet). A mapping output holding the
    edge's source handle only passes that entry along.
    """
    inputs: Dict[str, Any] = {}
    incoming = graph.incoming(node_id)
    shared = len(incoming) > 1
    for edge in incoming:
        if edge.source not in outputs:
            continue
        value = outputs[edge.source]
        handle = edge.source_handle or "default"
        if isinstance(value, Mapping) and handle in value:
            value = value[handle]
        key = edge.target_handle or edge.source_handle or (edge.source if shared else "default")
        inputs[key] = value
    return inputs
