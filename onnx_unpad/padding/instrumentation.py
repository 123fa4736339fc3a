# file: onnx_unpad/padding/instrumentation.py

"""
Patching of the training-time introspection hooks (``PythonOp`` nodes).

With padding eliminated the hooks see one dim less, so their recorded ranks
shrink by one. In inspect-only mode nothing is eliminated; instead each
activation-inspection hook is swapped for one that also receives the valid
token index, so statistics can be collected over real tokens only.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

import onnx_ir as ir

from onnx_unpad.errors import PaddingEliminationError
from onnx_unpad.graph.ir_surgery import GraphEditor
from onnx_unpad.graph.ir_utils import attr_ints, attr_string, get_attr
from onnx_unpad.padding.op_rules import INSPECT_UNPAD_ACTIVATION_FUNC

logger = logging.getLogger("onnx_unpad.padding.instrumentation")

_RANK_ATTRS = ("input_tensor_ranks", "output_tensor_ranks")
_INSPECT_REQUIRED_ATTRS = ("input_convention", "input_tensor_types", "input_tensor_ranks")


def _single_rank(node: ir.Node, name: str) -> int:
    ranks = attr_ints(node, name)
    if ranks is None:
        raise PaddingEliminationError(
            f"PaddingElimination::hook {node.name!r} is missing attribute {name!r}."
        )
    if len(ranks) != 1 or ranks[0] < 2:
        raise PaddingEliminationError(
            f"PaddingElimination::hook {node.name!r} has {name}={ranks}, expected one rank >= 2."
        )
    return ranks[0]


def check_rank_attributes(hooks: Sequence[ir.Node]) -> None:
    for node in hooks:
        for name in _RANK_ATTRS:
            _single_rank(node, name)


def check_inspect_attributes(hooks: Sequence[ir.Node]) -> None:
    for node in hooks:
        for name in _INSPECT_REQUIRED_ATTRS:
            if get_attr(node, name) is None:
                raise PaddingEliminationError(
                    f"PaddingElimination::inspect hook {node.name!r} is missing attribute {name!r}."
                )


def apply_rank_updates(hooks: Sequence[ir.Node]) -> None:
    """Decrement ``input_tensor_ranks`` and ``output_tensor_ranks`` of every hook by one."""
    for node in hooks:
        for name in _RANK_ATTRS:
            rank = _single_rank(node, name)
            node.attributes[name] = ir.Attr(name, ir.AttributeType.INTS, [rank - 1])
        logger.debug("PaddingElimination::hook %s ranks decremented", node.name)


def _copy_attributes(node: ir.Node) -> dict:
    return {name: ir.Attr(name, attr.type, attr.value) for name, attr in node.attributes.items()}


def replace_inspect_hooks(
    editor: GraphEditor, hooks: Sequence[ir.Node], valid_index: ir.Value
) -> List[ir.Node]:
    """
    Swap each inspect-activation hook for an ``_InspectUnpadActivation`` one
    taking ``[input 0, valid_index]``. Returns the new nodes.
    """
    index_type = valid_index.dtype if valid_index.dtype is not None else ir.DataType.INT64
    index_rank = len(valid_index.shape) if valid_index.shape is not None else 1
    if index_rank != 1:
        raise PaddingEliminationError(
            f"PaddingElimination::valid index should have rank 1, got {index_rank}."
        )

    replaced: List[ir.Node] = []
    for old in hooks:
        attrs = _copy_attributes(old)
        attrs["func_name"] = ir.Attr(
            "func_name", ir.AttributeType.STRING, INSPECT_UNPAD_ACTIVATION_FUNC
        )
        attrs["input_convention"] = ir.Attr(
            "input_convention", ir.AttributeType.STRING, attr_string(old, "input_convention") + "d"
        )
        requires_grads = attr_ints(old, "input_requires_grads")
        if requires_grads is not None:
            attrs["input_requires_grads"] = ir.Attr(
                "input_requires_grads", ir.AttributeType.INTS, [*requires_grads, 0]
            )
        attrs["input_tensor_types"] = ir.Attr(
            "input_tensor_types",
            ir.AttributeType.INTS,
            [*attr_ints(old, "input_tensor_types"), int(index_type)],
        )
        attrs["input_tensor_ranks"] = ir.Attr(
            "input_tensor_ranks",
            ir.AttributeType.INTS,
            [*attr_ints(old, "input_tensor_ranks"), index_rank],
        )

        x = old.inputs[0]
        old_ctx, old_out = old.outputs[0], old.outputs[1]
        ctx = ir.Value(name=editor.fresh_value_name("python_op_ctx"), type=old_ctx.type)
        out = ir.Value(name=editor.fresh_value_name("python_op_out"), type=x.type)
        if x.shape is not None:
            out.shape = ir.Shape(list(x.shape))

        new = ir.Node(
            old.domain,
            old.op_type,
            [x, valid_index],
            attributes=list(attrs.values()),
            outputs=[ctx, out],
            name=editor.fresh_node_name("inspect_unpad_activation"),
            doc_string=old.doc_string,
        )
        editor.insert_before(old, [new])
        editor.replace_uses(old_ctx, ctx)
        editor.replace_uses(old_out, out)
        editor.remove_node(old)
        replaced.append(new)
        logger.debug("PaddingElimination::replaced inspect hook %s with %s", old.name, new.name)
    return replaced
