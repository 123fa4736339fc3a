# tests/padding/test_valid_index.py

from __future__ import annotations

import onnx_ir as ir

from graph_builders import ModelBuilder
from onnx_unpad.graph.ir_surgery import GraphEditor
from onnx_unpad.padding.anchor import find_anchor
from onnx_unpad.padding.valid_index import build_valid_index, token_dim_name

NAMES = frozenset({"input_ids"})


def _setup(**kwargs):
    mb = ModelBuilder(**kwargs)
    emb = mb.embedding()
    model = mb.build([emb])
    anchor = find_anchor(model.graph, NAMES)
    return model, anchor


def test_token_dim_name_is_deterministic():
    _model, anchor = _setup(batch=2, seq=3)
    name = token_dim_name(anchor)
    assert name.startswith("valid_token_count_")
    assert name == token_dim_name(anchor)
    _model2, anchor2 = _setup(batch=2, seq=3)
    assert token_dim_name(anchor2) == name


def test_valid_index_nodes_precede_embedding():
    model, anchor = _setup(batch=4, seq=128)
    valid = build_valid_index(GraphEditor(model.graph), anchor, "T")

    ops = [n.op_type for n in model.graph]
    assert ops == ["Reshape", "Equal", "Not", "NonZero", "Squeeze", "ATen"]
    assert valid.index.dtype == ir.DataType.INT64
    assert list(valid.index.shape) == [ir.SymbolicDim("T")]
    assert list(valid.flat_tokens.shape) == [512]
    assert valid.token_dim == "T"
    # the embedding is not rewired by this step
    assert anchor.node.inputs[1] is anchor.tokens


def test_trailing_token_dims_reduce_per_row():
    model, anchor = _setup(batch=2, seq=3, trailing=(4,))
    valid = build_valid_index(GraphEditor(model.graph), anchor, "T")

    ops = [n.op_type for n in model.graph]
    assert "ReduceMax" in ops
    assert list(valid.flat_tokens.shape) == [6, 4]
    reduce_max = next(n for n in model.graph if n.op_type == "ReduceMax")
    # opset 17 still takes axes as an attribute
    assert list(reduce_max.attributes["axes"].as_ints()) == [1]
    assert reduce_max.attributes["keepdims"].as_int() == 0


def test_symbolic_leading_dims_give_symbolic_product():
    model, anchor = _setup(batch="batch", seq="seq")
    valid = build_valid_index(GraphEditor(model.graph), anchor, "T")
    (dim,) = list(valid.flat_tokens.shape)
    assert isinstance(dim, ir.SymbolicDim)
    assert dim.value == "batch*seq"
