# file: onnx_unpad/graph/ir_surgery.py

"""
Graph-mutation layer used by the padding elimination pass.

Wraps the handful of onnx_ir operations the pass needs (fresh values,
initializers, schema-checked node creation, splicing nodes onto an input slot,
moving uses) so the rewriting code never touches raw containers.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import onnx
import onnx_ir as ir
from onnx_ir import traversal

from onnx_unpad.errors import PaddingEliminationError
from onnx_unpad.graph.ir_utils import graph_output_slots, stamp_shape, value_consumers
from onnx_unpad.graph.name_generator import UniqueNameGenerator

logger = logging.getLogger("onnx_unpad.graph.ir_surgery")

_ONNX_DOMAINS = ("", "ai.onnx")
DEFAULT_OPSET = 17


def subgraphs_of(node: ir.Node) -> List[ir.Graph]:
    """Graphs held by ``node``'s GRAPH / GRAPHS attributes (If branches, Loop bodies, ...)."""
    graphs: List[ir.Graph] = []
    for attr in node.attributes.values():
        if attr.type == ir.AttributeType.GRAPH:
            graphs.append(attr.as_graph())
        elif attr.type == ir.AttributeType.GRAPHS:
            graphs.extend(attr.as_graphs())
    return graphs


def _scope_value_names(graph: ir.Graph) -> Iterable[str]:
    for v in graph.inputs:
        yield v.name or ""
    for name in graph.initializers:
        yield name


def _all_value_names(graph: ir.Graph) -> Iterable[str]:
    yield from _scope_value_names(graph)
    for node in traversal.RecursiveGraphIterator(graph):
        for v in node.outputs:
            yield v.name or ""
        for sub in subgraphs_of(node):
            yield from _scope_value_names(sub)


def _all_node_names(graph: ir.Graph) -> Iterable[str]:
    for node in traversal.RecursiveGraphIterator(graph):
        yield node.name or ""


class GraphEditor:
    """
    Creates and splices nodes into ``graph`` (and graphs nested in it).

    Names are kept unique across ``root`` (the model's main graph, defaulting to
    ``graph``), so a subgraph rewrite never shadows an outer-scope value.
    """

    def __init__(self, graph: ir.Graph, root: Optional[ir.Graph] = None):
        self.graph = graph
        scope = root if root is not None else graph
        self._value_names = UniqueNameGenerator(_all_value_names(scope))
        self._node_names = UniqueNameGenerator(_all_node_names(scope))
        self.opset = self._default_opset(scope)

    @staticmethod
    def _default_opset(graph: ir.Graph) -> int:
        imports = graph.opset_imports
        for key in _ONNX_DOMAINS:
            if key in imports:
                return int(imports[key])
        return DEFAULT_OPSET

    # ---------- naming ----------
    def fresh_value_name(self, base: str) -> str:
        return self._value_names.get(base, context="value")

    def fresh_node_name(self, base: str) -> str:
        return self._node_names.get(base, context="node")

    # ---------- values ----------
    def make_value(
        self,
        base: str,
        dtype: Optional[ir.DataType] = None,
        dims: Optional[Sequence[object]] = None,
    ) -> ir.Value:
        v = ir.Value(
            name=self.fresh_value_name(base),
            type=ir.TensorType(dtype) if dtype is not None else None,
        )
        if dims is not None:
            stamp_shape(v, dims)
        return v

    def const_array(self, base: str, array: np.ndarray) -> ir.Value:
        arr = np.asarray(array)
        v = ir.Value(
            name=self.fresh_value_name(base),
            shape=ir.Shape(arr.shape),
            type=ir.TensorType(ir.DataType.from_numpy(arr.dtype)),
            const_value=ir.tensor(arr),
        )
        self.graph.register_initializer(v)
        return v

    # convenient I64 consts for shape ops
    def const_i64(self, base: str, values: Sequence[int]) -> ir.Value:
        return self.const_array(base, np.asarray(values, dtype=np.int64))

    # ---------- schema ----------
    def _schema(self, op_type: str, domain: str):
        if domain not in _ONNX_DOMAINS:
            return None
        try:
            return onnx.defs.get_schema(op_type, self.opset, "")
        except onnx.defs.SchemaError as e:
            raise PaddingEliminationError(
                f"No schema for {op_type} at opset {self.opset}: {e}"
            ) from e

    def takes_axes_input(self, op_type: str) -> bool:
        """True when, at the graph opset, ``op_type`` reads ``axes`` from an input instead of an attribute."""
        schema = self._schema(op_type, "")
        return any(formal.name == "axes" for formal in schema.inputs)

    def axes_operands(
        self, op_type: str, axes: Sequence[int]
    ) -> Tuple[List[ir.Value], Dict[str, Any]]:
        """(extra inputs, attributes) carrying ``axes`` the way ``op_type`` expects at this opset."""
        if self.takes_axes_input(op_type):
            return [self.const_i64(f"{op_type.lower()}_axes", axes)], {}
        return [], {"axes": list(axes)}

    def _validate(
        self,
        op_type: str,
        domain: str,
        n_inputs: int,
        n_outputs: int,
        attributes: Mapping[str, Any],
    ) -> None:
        schema = self._schema(op_type, domain)
        if schema is None:
            return
        if not (schema.min_input <= n_inputs <= schema.max_input):
            raise PaddingEliminationError(
                f"{op_type}: {n_inputs} inputs outside [{schema.min_input}, {schema.max_input}]"
            )
        if not (schema.min_output <= n_outputs <= schema.max_output):
            raise PaddingEliminationError(
                f"{op_type}: {n_outputs} outputs outside [{schema.min_output}, {schema.max_output}]"
            )
        for attr_name in attributes:
            if attr_name not in schema.attributes:
                raise PaddingEliminationError(f"{op_type} has no attribute {attr_name!r}")
        for attr_name, formal in schema.attributes.items():
            if formal.required and attr_name not in attributes:
                raise PaddingEliminationError(
                    f"{op_type} requires attribute {attr_name!r}"
                )

    # ---------- nodes ----------
    def make_node(
        self,
        op_type: str,
        inputs: Sequence[Optional[ir.Value]],
        outputs: Sequence[ir.Value],
        attributes: Optional[Dict[str, Any]] = None,
        *,
        domain: str = "",
        name: Optional[str] = None,
    ) -> ir.Node:
        """Build a node (not yet inserted), validating it against its operator schema."""
        attributes = dict(attributes or {})
        self._validate(op_type, domain, len(inputs), len(outputs), attributes)
        return ir.node(
            op_type,
            inputs=list(inputs),
            attributes=attributes,
            domain=domain,
            outputs=list(outputs),
            name=name or self.fresh_node_name(op_type),
        )

    def insert_before(self, anchor: ir.Node, nodes: Sequence[ir.Node]) -> None:
        if nodes:
            anchor.graph.insert_before(anchor, nodes)

    def insert_after(self, anchor: ir.Node, nodes: Sequence[ir.Node]) -> None:
        if nodes:
            anchor.graph.insert_after(anchor, nodes)

    def insert_on_input(
        self,
        consumer: ir.Node,
        index: int,
        nodes: Sequence[ir.Node],
        new_value: ir.Value,
    ) -> ir.Value:
        """Splice ``nodes`` in front of ``consumer`` and rewire its ``index``-th input to ``new_value``."""
        self.insert_before(consumer, nodes)
        consumer.replace_input_with(index, new_value)
        return new_value

    def replace_uses(self, old: ir.Value, new: ir.Value) -> List[Tuple[ir.Node, int]]:
        """Point every use of ``old`` (graph outputs included) at ``new``; returns the moved uses."""
        moved = value_consumers(old)
        for user, idx in moved:
            user.replace_input_with(idx, new)
        producer = old.producer()
        self.replace_graph_output(old, new, producer.graph if producer is not None else None)
        return moved

    def replace_graph_output(
        self, old: ir.Value, new: ir.Value, graph: Optional[ir.Graph] = None
    ) -> bool:
        """Swap ``old`` for ``new`` in the outputs of ``graph`` (default ``self.graph``).

        ``new`` takes over the public name.
        """
        graph = graph if graph is not None else self.graph
        slots = graph_output_slots(graph, old)
        if not slots:
            return False
        public_name = old.name
        old.name = self.fresh_value_name(f"{public_name}_inner")
        new.name = public_name
        for i in slots:
            graph.outputs[i] = new
        return True

    def remove_node(self, node: ir.Node) -> None:
        node.graph.remove(node, safe=True)
        logger.debug("Removed node %s (%s)", node.name, node.op_type)
