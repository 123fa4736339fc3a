# file: onnx_unpad/padding/op_rules.py

"""
Operator classification for padding elimination.

Every node reached from the embedding is mapped to a closed ``OpKind`` and
then judged by the rule registered for that kind. A rule only looks at the
node and at which of its inputs are already region members; it never mutates
the graph, so each rule can be exercised on a hand-built node in isolation.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Tuple

import onnx
import onnx_ir as ir

from onnx_unpad.errors import PaddingEliminationError
from onnx_unpad.graph.ir_surgery import DEFAULT_OPSET
from onnx_unpad.graph.ir_utils import (
    attr_int,
    attr_ints,
    attr_string,
    constant_array,
    normalize_axis,
    rank_of,
)

logger = logging.getLogger("onnx_unpad.padding.op_rules")

MS_DOMAIN = "com.microsoft"
PYTORCH_ATEN_DOMAIN = "org.pytorch.aten"

INSPECT_ACTIVATION_FUNC = (
    "onnxruntime.training.utils.hooks._statistics_subscriber._InspectActivation"
)
INSPECT_UNPAD_ACTIVATION_FUNC = (
    "onnxruntime.training.utils.hooks._statistics_subscriber._InspectUnpadActivation"
)
INCREMENT_STEP_FUNC = (
    "onnxruntime.training.utils.hooks._subscriber_manager._IncrementStep"
)
INSTRUMENTATION_FUNCS: FrozenSet[str] = frozenset(
    {INSPECT_ACTIVATION_FUNC, INCREMENT_STEP_FUNC}
)


class OpKind(enum.Enum):
    ELEMENTWISE_BINARY = "elementwise_binary"
    NORMALIZATION = "normalization"
    DROPOUT = "dropout"
    UNARY = "unary"
    MATMUL = "matmul"
    INSTRUMENTATION = "instrumentation"
    REDUCE_MEAN = "reduce_mean"
    OTHER = "other"


@dataclass(frozen=True)
class OpSignature:
    op_type: str
    domains: Tuple[str, ...]
    since_versions: FrozenSet[int]


_ONNX = ("", "ai.onnx")

# (op_type, domain, since-version) -> kind
KIND_TABLE: Tuple[Tuple[OpKind, OpSignature], ...] = (
    (OpKind.ELEMENTWISE_BINARY, OpSignature("Add", _ONNX, frozenset({7, 13, 14}))),
    (OpKind.ELEMENTWISE_BINARY, OpSignature("Sub", _ONNX, frozenset({7, 13, 14}))),
    (OpKind.ELEMENTWISE_BINARY, OpSignature("Mul", _ONNX, frozenset({7, 13, 14}))),
    (OpKind.ELEMENTWISE_BINARY, OpSignature("BiasGelu", (MS_DOMAIN,), frozenset({1}))),
    (OpKind.NORMALIZATION, OpSignature("LayerNormalization", _ONNX, frozenset({1, 17}))),
    (
        OpKind.NORMALIZATION,
        OpSignature("SimplifiedLayerNormalization", _ONNX + (MS_DOMAIN,), frozenset({1})),
    ),
    (OpKind.DROPOUT, OpSignature("Dropout", _ONNX, frozenset({12, 13}))),
    (OpKind.UNARY, OpSignature("Cast", _ONNX, frozenset({9, 13}))),
    (OpKind.UNARY, OpSignature("Gelu", (MS_DOMAIN,), frozenset({1}))),
    (OpKind.MATMUL, OpSignature("MatMul", _ONNX, frozenset({1, 9, 13}))),
    (OpKind.MATMUL, OpSignature("MatMulBnb4", (MS_DOMAIN,), frozenset({1}))),
    (OpKind.INSTRUMENTATION, OpSignature("PythonOp", (MS_DOMAIN,), frozenset({1}))),
    (OpKind.REDUCE_MEAN, OpSignature("ReduceMean", _ONNX, frozenset({1, 11, 13, 18}))),
)


def _imported_version(domain: str, opset_imports: Mapping[str, int]) -> Optional[int]:
    keys = _ONNX if domain in _ONNX else (domain,)
    for key in keys:
        if key in opset_imports:
            return int(opset_imports[key])
    return None


def since_version(node: ir.Node, opset_imports: Mapping[str, int]) -> Optional[int]:
    """
    Version of the operator definition ``node`` resolves to.

    ONNX-domain nodes are resolved through ``onnx.defs`` against the imported
    opset (e.g. ``Add`` at opset 17 -> 14). Runtime kernels registered in the
    ONNX domain without an ``onnx.defs`` entry (``SimplifiedLayerNormalization``)
    are defined at version 1. Other domains report the imported domain version
    directly.
    """
    domain = node.domain or ""
    opset = node.version if node.version is not None else _imported_version(domain, opset_imports)
    if domain in _ONNX:
        try:
            schema = onnx.defs.get_schema(node.op_type, opset or DEFAULT_OPSET, "")
        except onnx.defs.SchemaError:
            return 1
        return int(schema.since_version)
    return 1 if opset is None else int(opset)


def kind_of(node: ir.Node, opset_imports: Mapping[str, int]) -> OpKind:
    domain = node.domain or ""
    for kind, sig in KIND_TABLE:
        if node.op_type != sig.op_type or domain not in sig.domains:
            continue
        if since_version(node, opset_imports) in sig.since_versions:
            return kind
    return OpKind.OTHER


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class Classification:
    kind: OpKind
    member_outputs: Tuple[ir.Value, ...] = ()
    expand: bool = False
    candidate_input: bool = False
    pass_through: bool = False
    hook: bool = False
    # rank of the first output of an inspect-activation hook, when known
    inspect_rank: Optional[int] = None
    reason: str = ""

    @property
    def is_boundary(self) -> bool:
        return not self.expand


def boundary(kind: OpKind, reason: str) -> Classification:
    return Classification(kind=kind, reason=reason)


IsMember = Callable[[Optional[ir.Value]], bool]
Rule = Callable[[ir.Node, IsMember], Classification]

RULES: Dict[OpKind, Rule] = {}


def register_rule(kind: OpKind):
    def decorator(fn: Rule) -> Rule:
        RULES[kind] = fn
        return fn

    return decorator


def classify(node: ir.Node, is_member: IsMember, opset_imports: Mapping[str, int]) -> Classification:
    kind = kind_of(node, opset_imports)
    decision = RULES[kind](node, is_member)
    logger.debug(
        "PaddingElimination::%s(%s) -> %s %s",
        node.name,
        node.op_type,
        "propagate" if decision.expand else "boundary",
        decision.reason,
    )
    return decision


def _input(node: ir.Node, i: int) -> Optional[ir.Value]:
    return node.inputs[i] if i < len(node.inputs) else None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@register_rule(OpKind.ELEMENTWISE_BINARY)
def _elementwise_binary(node: ir.Node, is_member: IsMember) -> Classification:
    kind = OpKind.ELEMENTWISE_BINARY
    a, b = _input(node, 0), _input(node, 1)
    if a is None or b is None:
        return boundary(kind, "missing operand")
    a_in, b_in = is_member(a), is_member(b)
    if not (a_in or b_in):
        return boundary(kind, "no operand in subgraph")
    ra, rb = rank_of(a), rank_of(b)
    if ra is None or rb is None:
        return boundary(kind, "input has no shape")
    if (not a_in and ra > rb) or (not b_in and rb > ra):
        # the operand outside the region would broadcast the region value up
        return boundary(kind, "arg not in subgraph has more dimensions")
    return Classification(
        kind=kind,
        member_outputs=(node.outputs[0],),
        expand=True,
        candidate_input=True,
        pass_through=True,
    )


@register_rule(OpKind.NORMALIZATION)
def _normalization(node: ir.Node, is_member: IsMember) -> Classification:
    kind = OpKind.NORMALIZATION
    x = _input(node, 0)
    if not is_member(x):
        return boundary(kind, "first input is not in subgraph")
    rank = rank_of(x)
    if rank is None:
        return boundary(kind, "first input has no shape")
    axis = normalize_axis(attr_int(node, "axis", -1), rank)
    if axis < 2:
        return boundary(kind, f"axis {axis} blocks merging leading two dims")
    return Classification(
        kind=kind,
        member_outputs=(node.outputs[0],),
        expand=True,
        pass_through=True,
    )


@register_rule(OpKind.DROPOUT)
def _dropout(node: ir.Node, is_member: IsMember) -> Classification:
    kind = OpKind.DROPOUT
    if not is_member(_input(node, 0)):
        return boundary(kind, "first input is not in subgraph")
    return Classification(
        kind=kind,
        member_outputs=tuple(v for v in node.outputs[:2] if v is not None),
        expand=True,
    )


@register_rule(OpKind.UNARY)
def _unary(node: ir.Node, is_member: IsMember) -> Classification:
    kind = OpKind.UNARY
    if not is_member(_input(node, 0)):
        return boundary(kind, "input is not in subgraph")
    return Classification(
        kind=kind,
        member_outputs=(node.outputs[0],),
        expand=True,
        pass_through=True,
    )


@register_rule(OpKind.MATMUL)
def _matmul(node: ir.Node, is_member: IsMember) -> Classification:
    kind = OpKind.MATMUL
    left, right = _input(node, 0), _input(node, 1)
    if is_member(left):
        # [batch, seq] only survive into the output when they are batch dims of the left operand
        rank = rank_of(left)
        if rank is None or rank <= 2:
            return boundary(kind, "left input of MatMul has rank smaller than 3")
        return Classification(
            kind=kind,
            member_outputs=(node.outputs[0],),
            expand=True,
            pass_through=True,
        )
    if is_member(right):
        return boundary(kind, "right edge of MatMul is not included")
    raise PaddingEliminationError(
        f"PaddingElimination::found MatMul node {node.name!r} without input in subgraph."
    )


@register_rule(OpKind.INSTRUMENTATION)
def _instrumentation(node: ir.Node, is_member: IsMember) -> Classification:
    kind = OpKind.INSTRUMENTATION
    if not is_member(_input(node, 0)):
        return boundary(kind, "first input is not in subgraph")
    func_name = attr_string(node, "func_name")
    if func_name not in INSTRUMENTATION_FUNCS or len(node.outputs) < 2:
        return boundary(kind, f"PythonOp {func_name!r} is not a known hook")
    inspect_rank = None
    if func_name == INSPECT_ACTIVATION_FUNC:
        inspect_rank = rank_of(node.outputs[0])
    return Classification(
        kind=kind,
        member_outputs=(node.outputs[1],),
        expand=True,
        hook=True,
        inspect_rank=inspect_rank,
    )


def _reduce_axes(node: ir.Node) -> Optional[list[int]]:
    axes = attr_ints(node, "axes")
    if axes is not None:
        return axes
    arr = constant_array(_input(node, 1))
    if arr is None:
        return None
    return [int(a) for a in arr.reshape(-1)]


@register_rule(OpKind.REDUCE_MEAN)
def _reduce_mean(node: ir.Node, is_member: IsMember) -> Classification:
    kind = OpKind.REDUCE_MEAN
    x = _input(node, 0)
    if not is_member(x):
        return boundary(kind, "first input is not in subgraph")
    rank = rank_of(x)
    if rank is None:
        return boundary(kind, "shape of input is unknown")
    axes = _reduce_axes(node)
    if not axes:
        return boundary(kind, "no explicit axes")
    for axis in axes:
        axis = normalize_axis(axis, rank)
        if axis < 2:
            return boundary(kind, f"axis {axis} blocks merging leading two dims")
    return Classification(kind=kind, member_outputs=(node.outputs[0],), expand=True)


@register_rule(OpKind.OTHER)
def _other(node: ir.Node, is_member: IsMember) -> Classification:
    return boundary(OpKind.OTHER, "unsupported op")
