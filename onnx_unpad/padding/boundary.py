# file: onnx_unpad/padding/boundary.py

"""
Boundary surgery for padding elimination.

Inside the region every value is ``[valid_token_count, ...]``. Values crossing
into the region get a *filter* (reshape to ``[batch*seq, ...]`` then gather the
valid rows), values leaving it get a *restore* (scatter the valid rows into
zeros of ``[batch*seq, ...]`` then reshape to ``[batch, seq, ...]``). All of
them share the one valid-index tensor built for the region.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import onnx_ir as ir

from onnx_unpad.graph.ir_surgery import GraphEditor
from onnx_unpad.graph.ir_utils import (
    DimValue,
    broadcast_dims,
    graph_output_slots,
    is_static_int,
    same_dim,
    shape_dims,
    value_consumers,
)
from onnx_unpad.padding.anchor import Anchor
from onnx_unpad.padding.propagation import RegionAnalysis
from onnx_unpad.padding.valid_index import ValidTokens

logger = logging.getLogger("onnx_unpad.padding.boundary")

_INT64_MAX = np.iinfo(np.int64).max


@dataclass
class BoundaryStats:
    handled_input_count: int = 0
    handled_output_count: int = 0
    expanded_input_count: int = 0


def _static_tail(dims: Optional[Sequence[DimValue]], start: int) -> Optional[List[int]]:
    if dims is None:
        return None
    tail = list(dims[start:])
    if all(is_static_int(d) for d in tail):
        return [int(d) for d in tail]
    return None


class BoundaryRewriter:
    """Inserts filter / expand / restore nodes around one region."""

    def __init__(
        self,
        editor: GraphEditor,
        anchor: Anchor,
        region: RegionAnalysis,
        valid: ValidTokens,
    ):
        self.editor = editor
        self.anchor = anchor
        self.region = region
        self.valid = valid
        self.stats = BoundaryStats()
        self._first_two_dims: Optional[ir.Value] = None
        self._flat_count: Optional[ir.Value] = None
        self._scatter_indices: Optional[ir.Value] = None

    # ---------- shared values ----------
    def build_shared(self) -> None:
        """[batch, seq], [batch*seq] and the [valid_token_count, 1] scatter indices, before the anchor."""
        ed = self.editor
        tokens = self.anchor.tokens
        dims = self.anchor.token_dims
        nodes = []

        shape = ed.make_value("shape_result", ir.DataType.INT64, [len(dims)])
        nodes.append(ed.make_node("Shape", [tokens], [shape], name=ed.fresh_node_name("shape")))
        first_two = ed.make_value("gather_result", ir.DataType.INT64, [2])
        nodes.append(
            ed.make_node(
                "Gather",
                [shape, ed.const_i64("first_two_indices", [0, 1])],
                [first_two],
                {"axis": 0},
                name=ed.fresh_node_name("gather_first_dim"),
            )
        )
        flat_count = ed.make_value("flat_token_count", ir.DataType.INT64, [1])
        nodes.append(ed.make_node("ReduceProd", [first_two], [flat_count], {"keepdims": 1}))

        extra, attrs = ed.axes_operands("Unsqueeze", [1])
        scatter_indices = ed.make_value(
            "scatter_indices", ir.DataType.INT64, [ir.SymbolicDim(self.valid.token_dim), 1]
        )
        nodes.append(ed.make_node("Unsqueeze", [self.valid.index, *extra], [scatter_indices], attrs))

        ed.insert_before(self.anchor.node, nodes)
        self._first_two_dims = first_two
        self._flat_count = flat_count
        self._scatter_indices = scatter_indices

    # ---------- building blocks ----------
    def _tail_shape(
        self, x: ir.Value, static: Optional[List[int]], start: int, nodes: List[ir.Node]
    ) -> ir.Value:
        """1-D int64 tensor holding ``x.shape[start:]``; a constant when ``static`` is given."""
        ed = self.editor
        if static is not None:
            return ed.const_i64("other_shape", static)
        full = ed.make_value("shape_result", ir.DataType.INT64, None)
        nodes.append(ed.make_node("Shape", [x], [full], name=ed.fresh_node_name("shape")))
        tail = ed.make_value("tail_shape", ir.DataType.INT64, None)
        nodes.append(
            ed.make_node(
                "Slice",
                [full, ed.const_i64("slice_starts", [start]), ed.const_i64("slice_ends", [_INT64_MAX])],
                [tail],
            )
        )
        return tail

    def _concat(self, parts: Sequence[ir.Value], base: str, nodes: List[ir.Node]) -> ir.Value:
        out = self.editor.make_value(base, ir.DataType.INT64, None)
        nodes.append(
            self.editor.make_node(
                "Concat", list(parts), [out], {"axis": 0}, name=self.editor.fresh_node_name("concat_shape")
            )
        )
        return out

    def make_filter(
        self, x: ir.Value, dims: Optional[Sequence[DimValue]]
    ) -> Tuple[List[ir.Node], ir.Value]:
        """Nodes turning ``x`` of shape ``[batch, seq, ...]`` into ``[valid_token_count, ...]``."""
        ed = self.editor
        nodes: List[ir.Node] = []
        tail_dims = list(dims[2:]) if dims is not None else None

        if x is self.anchor.tokens:
            flat = self.valid.flat_tokens
        else:
            static = _static_tail(dims, 2)
            if static is not None:
                target = ed.const_i64("flattened_shape", [-1, *static])
            else:
                target = self._concat(
                    [ed.const_i64("minus_one", [-1]), self._tail_shape(x, None, 2, nodes)],
                    "flattened_shape",
                    nodes,
                )
            flat = ed.make_value("flattened_result", x.dtype, None)
            nodes.append(ed.make_node("Reshape", [x, target], [flat]))

        out_dims = None if tail_dims is None else [ir.SymbolicDim(self.valid.token_dim), *tail_dims]
        out = ed.make_value("padding_filter_result", x.dtype, out_dims)
        nodes.append(
            ed.make_node(
                "Gather",
                [flat, self.valid.index],
                [out],
                {"axis": 0},
                name=ed.fresh_node_name("PaddingFilter"),
            )
        )
        return nodes, out

    def make_restore(
        self, x: ir.Value, dims: Optional[Sequence[DimValue]]
    ) -> Tuple[List[ir.Node], ir.Value]:
        """Nodes turning region value ``x`` back into ``dims`` (its ``[batch, seq, ...]`` shape)."""
        ed = self.editor
        nodes: List[ir.Node] = []
        # x is [valid_token_count, d2, ...], so its own tail starts at 1
        tail = self._tail_shape(x, _static_tail(dims, 2), 1, nodes)

        flat_shape = self._concat([self._flat_count, tail], "padded_flat_shape", nodes)
        zeros = ed.make_value("padding_zeros", x.dtype, None)
        if x.dtype is not None:
            zero = np.zeros((1,), dtype=x.dtype.numpy())
            nodes.append(
                ed.make_node("ConstantOfShape", [flat_shape], [zeros], {"value": ir.tensor(zero)})
            )
        else:
            raw_zeros = ed.make_value("padding_zeros_f32", ir.DataType.FLOAT, None)
            nodes.append(ed.make_node("ConstantOfShape", [flat_shape], [raw_zeros]))
            nodes.append(ed.make_node("CastLike", [raw_zeros, x], [zeros]))

        scattered = ed.make_value("padded_flat_result", x.dtype, None)
        nodes.append(
            ed.make_node(
                "ScatterND",
                [zeros, self._scatter_indices, x],
                [scattered],
                name=ed.fresh_node_name("PaddingRecover"),
            )
        )
        out_shape = self._concat([self._first_two_dims, tail], "padded_shape", nodes)
        out = ed.make_value("padded_result", x.dtype, list(dims) if dims is not None else None)
        nodes.append(ed.make_node("Reshape", [scattered, out_shape], [out]))
        return nodes, out

    def make_expand(
        self, x: ir.Value, member_dims: Sequence[DimValue]
    ) -> Tuple[List[ir.Node], ir.Value]:
        """Broadcast ``x`` against ``[batch, seq, 1, ...]`` of the member operand's rank."""
        ed = self.editor
        nodes: List[ir.Node] = []
        rank = len(member_dims)
        if rank == 2:
            expand_shape = self._first_two_dims
        else:
            expand_shape = self._concat(
                [self._first_two_dims, ed.const_i64("other_shape", [1] * (rank - 2))],
                "concat_shape_result",
                nodes,
            )
        x_dims = shape_dims(x)
        out_dims = None
        if x_dims is not None:
            out_dims = broadcast_dims(x_dims, [member_dims[0], member_dims[1], *([1] * (rank - 2))])
        out = ed.make_value("inputs_expand_result", x.dtype, out_dims)
        nodes.append(
            ed.make_node(
                "Expand", [x, expand_shape], [out], name=ed.fresh_node_name("ExpandPaddingShape")
            )
        )
        return nodes, out

    # ---------- entry points ----------
    def filter_anchor_input(self) -> None:
        node = self.anchor.node
        nodes, out = self.make_filter(self.anchor.tokens, self.anchor.token_dims)
        self.editor.insert_on_input(node, 1, nodes, out)
        self.stats.handled_input_count += 1

    def rewrite_candidate_inputs(self) -> None:
        region = self.region
        for node in region.candidate_inputs:
            for i, arg in enumerate(node.inputs):
                if region.is_member(arg):
                    continue
                # elementwise binary: the other operand is the member one
                member_arg = node.inputs[1 - i]
                member_dims = region.dims_before(member_arg)
                arg_dims = shape_dims(arg)
                if len(arg_dims) <= len(member_dims) - 2:
                    # no [batch, seq] in front, nothing to filter
                    continue
                if (
                    len(arg_dims) != len(member_dims)
                    or not same_dim(arg_dims[0], member_dims[0])
                    or not same_dim(arg_dims[1], member_dims[1])
                ):
                    nodes, expanded = self.make_expand(arg, member_dims)
                    self.editor.insert_on_input(node, i, nodes, expanded)
                    self.stats.expanded_input_count += 1
                    arg = expanded
                    arg_dims = shape_dims(expanded)
                nodes, filtered = self.make_filter(arg, arg_dims)
                self.editor.insert_on_input(node, i, nodes, filtered)
                self.stats.handled_input_count += 1

    # ---------- exit points ----------
    def restore_candidate_outputs(self) -> None:
        region = self.region
        for node in region.candidate_outputs:
            for i, arg in enumerate(node.inputs):
                if not region.is_member(arg):
                    continue
                nodes, restored = self.make_restore(arg, region.dims_before(arg))
                self.editor.insert_on_input(node, i, nodes, restored)
                self.stats.handled_output_count += 1

    def restore_graph_outputs(self) -> None:
        """Restore members that are outputs of the graph they live in, nested graphs included."""
        for v in self.region.members:
            # members are always node outputs
            producer = v.producer()
            owner = producer.graph
            if owner is None or not graph_output_slots(owner, v):
                continue
            nodes, restored = self.make_restore(v, self.region.dims_before(v))
            self.editor.insert_after(producer, nodes)
            self.editor.replace_graph_output(v, restored, graph=owner)
            self.stats.handled_output_count += 1

    def wrap_pass_through(self) -> None:
        """Restore every pass-through output, then give each of its consumers a fresh filter."""
        region = self.region
        for node in region.pass_through:
            out = node.outputs[0]
            dims = region.dims_before(out)
            consumers = value_consumers(out)
            restore_nodes, restored = self.make_restore(out, dims)
            self.editor.insert_after(node, restore_nodes)
            for user, idx in consumers:
                filter_nodes, filtered = self.make_filter(restored, dims)
                self.editor.insert_on_input(user, idx, filter_nodes, filtered)
            logger.debug(
                "PaddingElimination::wrapped output of %s(%s) for %d consumers",
                node.name,
                node.op_type,
                len(consumers),
            )
