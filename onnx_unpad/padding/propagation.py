# file: onnx_unpad/padding/propagation.py

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import onnx_ir as ir
from onnx_ir import traversal

from onnx_unpad.graph.ir_utils import DimValue, output_consumer_nodes, shape_dims
from onnx_unpad.padding.op_rules import classify

logger = logging.getLogger("onnx_unpad.padding.propagation")


@dataclass(frozen=True, eq=False)
class RegionAnalysis:
    """
    Read-only result of walking the graph forward from the embedding.

    ``members`` are the values whose two leading dims are still ``[batch, seq]``;
    ``original_dims`` keeps their shapes from before any rewrite so the mutation
    phase can restore ``[batch, seq, ...]`` without re-deriving anything.
    """

    anchor: ir.Node
    members: Tuple[ir.Value, ...]
    original_dims: Dict[int, Optional[Tuple[DimValue, ...]]] = field(repr=False)
    candidate_inputs: Tuple[ir.Node, ...] = ()
    candidate_outputs: Tuple[ir.Node, ...] = ()
    pass_through: Tuple[ir.Node, ...] = ()
    hooks: Tuple[ir.Node, ...] = ()
    inspect_hook_ranks: Tuple[Tuple[ir.Node, int], ...] = ()

    def is_member(self, v: Optional[ir.Value]) -> bool:
        return v is not None and id(v) in self.original_dims

    def dims_before(self, v: ir.Value) -> Optional[Tuple[DimValue, ...]]:
        return self.original_dims.get(id(v))


def _topological_positions(graph: ir.Graph) -> Dict[int, int]:
    return {id(n): i for i, n in enumerate(traversal.RecursiveGraphIterator(graph))}


def discover_region(graph: ir.Graph, anchor: ir.Node) -> RegionAnalysis:
    """
    Worklist traversal from the consumers of ``anchor``.

    Nodes leave the worklist in topological position order, so by the time a node
    is classified every region node feeding it has been classified already. A node
    is enqueued at most once and classified exactly once.
    """
    positions = _topological_positions(graph)
    opset_imports = graph.opset_imports
    tie = itertools.count()

    members: List[ir.Value] = []
    original_dims: Dict[int, Optional[Tuple[DimValue, ...]]] = {}
    candidate_inputs: List[ir.Node] = []
    candidate_outputs: List[ir.Node] = []
    pass_through: List[ir.Node] = []
    hooks: List[ir.Node] = []
    inspect_hook_ranks: List[Tuple[ir.Node, int]] = []

    def add_member(v: Optional[ir.Value]) -> None:
        if v is None or id(v) in original_dims:
            return
        members.append(v)
        original_dims[id(v)] = shape_dims(v)

    def is_member(v: Optional[ir.Value]) -> bool:
        return v is not None and id(v) in original_dims

    to_visit: List[Tuple[int, int, ir.Node]] = []
    visited: set[int] = set()

    def push_all_output_nodes(node: ir.Node) -> None:
        for user in output_consumer_nodes(node):
            if id(user) in visited:
                continue
            visited.add(id(user))
            pos = positions.get(id(user), len(positions))
            heapq.heappush(to_visit, (pos, next(tie), user))

    for v in anchor.outputs:
        add_member(v)
    visited.add(id(anchor))
    push_all_output_nodes(anchor)

    while to_visit:
        _pos, _tie, cur = heapq.heappop(to_visit)
        decision = classify(cur, is_member, opset_imports)
        if not decision.expand:
            candidate_outputs.append(cur)
            continue
        for v in decision.member_outputs:
            add_member(v)
        if decision.candidate_input:
            candidate_inputs.append(cur)
        if decision.pass_through:
            pass_through.append(cur)
        if decision.hook:
            hooks.append(cur)
            if decision.inspect_rank is not None:
                inspect_hook_ranks.append((cur, decision.inspect_rank))
        push_all_output_nodes(cur)

    logger.debug(
        "PaddingElimination::region of %s: %d values, %d candidate inputs, "
        "%d candidate outputs, %d pass-through nodes",
        anchor.name,
        len(members),
        len(candidate_inputs),
        len(candidate_outputs),
        len(pass_through),
    )
    return RegionAnalysis(
        anchor=anchor,
        members=tuple(members),
        original_dims=original_dims,
        candidate_inputs=tuple(candidate_inputs),
        candidate_outputs=tuple(candidate_outputs),
        pass_through=tuple(pass_through),
        hooks=tuple(hooks),
        inspect_hook_ranks=tuple(inspect_hook_ranks),
    )
