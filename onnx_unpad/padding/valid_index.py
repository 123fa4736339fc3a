# file: onnx_unpad/padding/valid_index.py

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

import onnx_ir as ir

from onnx_unpad.graph.ir_surgery import GraphEditor
from onnx_unpad.graph.ir_utils import merged_dim
from onnx_unpad.padding.anchor import Anchor

logger = logging.getLogger("onnx_unpad.padding.valid_index")


@dataclass(frozen=True, eq=False)
class ValidTokens:
    index: ir.Value  # [valid_token_count] int64, positions in row-major [batch*seq] order
    flat_tokens: ir.Value  # tokens reshaped to [batch*seq, d2, ...]
    token_dim: str


def token_dim_name(anchor: Anchor) -> str:
    """Name of the symbolic dim standing for the number of non-padding tokens.

    Derived from the anchor's identity so the same graph always yields the same name.
    """
    key = f"{anchor.node.name or ''}:{anchor.tokens.name or ''}"
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
    return f"valid_token_count_{digest}"


def build_valid_index(editor: GraphEditor, anchor: Anchor, token_dim: str) -> ValidTokens:
    """
    Insert, right before the embedding:

        Reshape(tokens, [-1, d2, ...]) -> Not(Equal(., padding)) [-> per-row ReduceMax]
            -> NonZero -> Squeeze(axis 0)
    """
    tokens = anchor.tokens
    dims = anchor.token_dims
    trailing = [int(d) for d in dims[2:]]
    nodes = []

    flat_shape = editor.const_i64("flattened_shape", [-1, *trailing])
    flat_tokens = editor.make_value(
        "flattened_input_ids", tokens.dtype, [merged_dim(dims[0], dims[1]), *trailing]
    )
    nodes.append(
        editor.make_node(
            "Reshape",
            [tokens, flat_shape],
            [flat_tokens],
            name=editor.fresh_node_name("inputs_reshape"),
        )
    )

    padding = anchor.padding
    if tokens.dtype is not None and padding.dtype is not None and padding.dtype != tokens.dtype:
        cast_padding = editor.make_value("padding_idx_cast", tokens.dtype, [])
        nodes.append(
            editor.make_node("Cast", [padding], [cast_padding], {"to": int(tokens.dtype)})
        )
        padding = cast_padding

    per_element = [merged_dim(dims[0], dims[1]), *trailing]
    is_padding = editor.make_value("is_padding", ir.DataType.BOOL, per_element)
    nodes.append(editor.make_node("Equal", [flat_tokens, padding], [is_padding]))
    mask = editor.make_value("valid_mask", ir.DataType.BOOL, per_element)
    nodes.append(editor.make_node("Not", [is_padding], [mask]))

    if trailing:
        # one flag per token: a row is valid if any of its entries is not padding
        mask_i32 = editor.make_value("valid_mask_i32", ir.DataType.INT32, per_element)
        nodes.append(editor.make_node("Cast", [mask], [mask_i32], {"to": int(ir.DataType.INT32)}))
        axes = list(range(1, len(per_element)))
        extra, attrs = editor.axes_operands("ReduceMax", axes)
        attrs["keepdims"] = 0
        row_any = editor.make_value("valid_row_i32", ir.DataType.INT32, per_element[:1])
        nodes.append(editor.make_node("ReduceMax", [mask_i32, *extra], [row_any], attrs))
        mask = editor.make_value("valid_row_mask", ir.DataType.BOOL, per_element[:1])
        nodes.append(editor.make_node("Cast", [row_any], [mask], {"to": int(ir.DataType.BOOL)}))

    nonzero = editor.make_value("valid_nonzero", ir.DataType.INT64, [1, ir.SymbolicDim(token_dim)])
    nodes.append(editor.make_node("NonZero", [mask], [nonzero]))
    extra, attrs = editor.axes_operands("Squeeze", [0])
    index = editor.make_value("valid_token_index", ir.DataType.INT64, [ir.SymbolicDim(token_dim)])
    nodes.append(editor.make_node("Squeeze", [nonzero, *extra], [index], attrs))

    editor.insert_before(anchor.node, nodes)
    logger.debug(
        "PaddingElimination::valid index %s built from %s (padding_idx=%d)",
        index.name,
        tokens.name,
        anchor.padding_idx,
    )
    return ValidTokens(index=index, flat_tokens=flat_tokens, token_dim=token_dim)
