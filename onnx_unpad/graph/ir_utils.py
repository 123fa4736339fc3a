# file: onnx_unpad/graph/ir_utils.py

from __future__ import annotations

from collections.abc import Sequence as SequenceABC
from typing import List, Optional, Tuple, Union

import numpy as np
import onnx_ir as ir


DimValue = Union[int, ir.SymbolicDim, None]


# ---------------- Values ----------------


def shape_dims(v: Optional[ir.Value]) -> Optional[Tuple[DimValue, ...]]:
    """Dims of ``v`` as a tuple of ints / SymbolicDims, or None if the shape is unknown."""
    if v is None:
        return None
    shp = v.shape
    if shp is None:
        return None
    return tuple(shp)


def rank_of(v: Optional[ir.Value]) -> Optional[int]:
    dims = shape_dims(v)
    return None if dims is None else len(dims)


def is_static_int(d) -> bool:
    return isinstance(d, (int, np.integer)) and int(d) >= 0


def as_dim_label(dim: object) -> Union[str, int, None]:
    """
    Printable label of an onnx_ir dim:
      - ir.SymbolicDim('B') -> 'B'
      - ints stay ints
      - unknown -> None
    """
    if dim is None:
        return None
    if isinstance(dim, (int, np.integer)):
        return int(dim)
    if isinstance(dim, ir.SymbolicDim):
        return dim.value
    if isinstance(dim, str):
        return dim
    return None


def to_ir_dim(dim: object) -> DimValue:
    if dim is None:
        return None
    if isinstance(dim, ir.SymbolicDim):
        return dim
    if isinstance(dim, (int, np.integer)):
        return int(dim)
    if isinstance(dim, str):
        return ir.SymbolicDim(dim)
    return None


def same_dim(a: object, b: object) -> bool:
    """Two dims are the same only if both are known and carry the same value/name."""
    la, lb = as_dim_label(a), as_dim_label(b)
    if la is None or lb is None:
        return False
    return la == lb


def stamp_shape(v: ir.Value, dims: SequenceABC[object]) -> None:
    """Replace the shape of ``v``; existing shapes may be frozen so always build a new one."""
    v.shape = ir.Shape([to_ir_dim(d) for d in dims])


def merged_dim(a: object, b: object) -> DimValue:
    """The dim standing for ``a * b``: static when both are static, else a symbolic product."""
    if is_static_int(a) and is_static_int(b):
        return int(a) * int(b)
    la = as_dim_label(a)
    lb = as_dim_label(b)
    return ir.SymbolicDim(f"{la if la is not None else '?'}*{lb if lb is not None else '?'}")


def broadcast_dims(
    a: SequenceABC[object], b: SequenceABC[object]
) -> Optional[List[DimValue]]:
    """Numpy-style broadcast of two dim lists; None when a pair cannot be resolved statically."""
    out: List[DimValue] = []
    width = max(len(a), len(b))
    pa = [1] * (width - len(a)) + list(a)
    pb = [1] * (width - len(b)) + list(b)
    for da, db in zip(pa, pb):
        if is_static_int(da) and int(da) == 1:
            out.append(to_ir_dim(db))
        elif is_static_int(db) and int(db) == 1:
            out.append(to_ir_dim(da))
        elif same_dim(da, db):
            out.append(to_ir_dim(da))
        else:
            return None
    return out


def normalize_axis(axis: int, rank: int) -> int:
    return axis + rank if axis < 0 else axis


# ---------------- Attr access ----------------


def get_attr(node: ir.Node, name: str) -> Optional[ir.Attr]:
    return node.attributes.get(name)


def attr_int(node: ir.Node, name: str, default: Optional[int] = None) -> Optional[int]:
    a = get_attr(node, name)
    if a is None:
        return default
    return int(a.as_int())


def attr_ints(node: ir.Node, name: str) -> Optional[List[int]]:
    a = get_attr(node, name)
    if a is None:
        return None
    return [int(x) for x in a.as_ints()]


def attr_string(node: ir.Node, name: str) -> Optional[str]:
    a = get_attr(node, name)
    if a is None:
        return None
    return a.as_string()


# ---------------- Constants ----------------


def constant_array(v: Optional[ir.Value]) -> Optional[np.ndarray]:
    """
    Payload of a constant value: an initializer / attached ``const_value``, or the
    output of a ``Constant`` node. None for anything computed at runtime.
    """
    if v is None:
        return None
    if v.const_value is not None:
        return np.asarray(v.const_value.numpy())
    producer = v.producer()
    if producer is None or producer.op_type != "Constant" or producer.domain not in ("", "ai.onnx"):
        return None
    value_attr = get_attr(producer, "value")
    if value_attr is not None:
        return np.asarray(value_attr.as_tensor().numpy())
    if get_attr(producer, "value_int") is not None:
        return np.asarray(attr_int(producer, "value_int"), dtype=np.int64)
    if get_attr(producer, "value_ints") is not None:
        return np.asarray(attr_ints(producer, "value_ints"), dtype=np.int64)
    return None


# ---------------- Graph structure ----------------


def node_list(graph: ir.Graph) -> List[ir.Node]:
    """Nodes in storage order, which for a valid ONNX graph is a topological order."""
    return list(graph)


def is_graph_input(graph: ir.Graph, v: Optional[ir.Value]) -> bool:
    return v is not None and any(gi is v for gi in graph.inputs)


def graph_output_slots(graph: ir.Graph, v: ir.Value) -> List[int]:
    return [i for i, gv in enumerate(graph.outputs) if gv is v]


def value_consumers(v: Optional[ir.Value]) -> List[Tuple[ir.Node, int]]:
    """(node, input index) pairs using ``v``, in a stable order."""
    if v is None:
        return []
    return [(user, idx) for user, idx in v.uses()]


def output_consumer_nodes(node: ir.Node) -> List[ir.Node]:
    """Distinct nodes consuming any output of ``node``, first-use order."""
    seen: set[int] = set()
    out: List[ir.Node] = []
    for ov in node.outputs:
        for user, _idx in value_consumers(ov):
            if id(user) not in seen:
                seen.add(id(user))
                out.append(user)
    return out
