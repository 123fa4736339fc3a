# file: onnx_unpad/padding/anchor.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AbstractSet, Optional, Tuple

import numpy as np
import onnx_ir as ir

from onnx_unpad.graph.ir_utils import (
    DimValue,
    attr_string,
    constant_array,
    is_graph_input,
    is_static_int,
    node_list,
    shape_dims,
)
from onnx_unpad.padding.op_rules import PYTORCH_ATEN_DOMAIN, since_version

logger = logging.getLogger("onnx_unpad.padding.anchor")


@dataclass(frozen=True, eq=False)
class Anchor:
    node: ir.Node
    tokens: ir.Value
    padding: ir.Value
    padding_idx: int

    @property
    def token_dims(self) -> Tuple[DimValue, ...]:
        return shape_dims(self.tokens) or ()

    def trailing_dims_static(self) -> bool:
        return all(is_static_int(d) for d in self.token_dims[2:])


def is_aten_embedding(node: ir.Node, opset_imports) -> bool:
    if node.op_type != "ATen" or (node.domain or "") != PYTORCH_ATEN_DOMAIN:
        return False
    if since_version(node, opset_imports) != 1:
        return False
    return attr_string(node, "operator") == "embedding"


def _padding_idx(v: ir.Value) -> Optional[int]:
    """Scalar int32/int64 constant payload of ``v``, else None."""
    arr = constant_array(v)
    if arr is None or arr.ndim != 0:
        return None
    if arr.dtype not in (np.dtype(np.int32), np.dtype(np.int64)):
        return None
    return int(arr)


def find_anchor(
    graph: ir.Graph, sparse_embedding_input_names: AbstractSet[str]
) -> Optional[Anchor]:
    """First eligible embedding in topological order, or None."""
    opset_imports = graph.opset_imports
    for node in node_list(graph):
        if not is_aten_embedding(node, opset_imports):
            continue
        inputs = node.inputs
        if len(inputs) < 3 or inputs[1] is None or inputs[2] is None:
            continue
        tokens, padding = inputs[1], inputs[2]
        if not is_graph_input(graph, tokens):
            continue
        dims = shape_dims(tokens)
        if dims is None or len(dims) < 2:
            continue
        if tokens.name not in sparse_embedding_input_names:
            logger.debug(
                "Skip node %s(%s) due to embedding input is not in the sparse embedding input list.",
                node.name,
                node.op_type,
            )
            continue
        padding_idx = _padding_idx(padding)
        if padding_idx is None:
            continue
        if padding_idx < 0:
            continue
        return Anchor(node=node, tokens=tokens, padding=padding, padding_idx=padding_idx)
    return None
