# tests/padding/test_padding_elimination.py

from __future__ import annotations

import numpy as np
import onnx_ir as ir
import pytest

from graph_builders import (
    ModelBuilder,
    find_value,
    hook_attributes,
    nodes_of_type,
    padded_tokens,
    run_reference,
)
from onnx_unpad.config import PaddingEliminationConfig
from onnx_unpad.errors import PaddingEliminationError
from onnx_unpad.padding.op_rules import INSPECT_UNPAD_ACTIVATION_FUNC
from onnx_unpad.padding.padding_elimination import PaddingElimination

ENABLED = PaddingEliminationConfig.create(["input_ids"])
INSPECT_ONLY = PaddingEliminationConfig.create(["input_ids"], enable=False)


def _serialized(model: ir.Model) -> bytes:
    return ir.to_proto(model).SerializeToString()


def _transformer_block(batch=4, seq=128, hidden=8, out_features=6, ln_axis=-1, trailing=()):
    """emb + pos -> LayerNorm -> MatMul -> y"""
    mb = ModelBuilder(batch=batch, seq=seq, hidden=hidden, trailing=trailing)
    emb = mb.embedding()
    lead = (batch, seq, *trailing)
    pos = mb.input("pos", ir.DataType.FLOAT, (1, *lead[1:], hidden))
    add_out = mb.value("add_out", (*lead, hidden))
    mb.add("Add", [emb, pos], [add_out])
    scale = mb.initializer("ln_scale", mb.rng.standard_normal(hidden).astype(np.float32))
    bias = mb.initializer("ln_bias", mb.rng.standard_normal(hidden).astype(np.float32))
    ln_out = mb.value("ln_out", (*lead, hidden))
    mb.add("LayerNormalization", [add_out, scale, bias], [ln_out], {"axis": ln_axis})
    w = mb.initializer(
        "proj", mb.rng.standard_normal((hidden, out_features)).astype(np.float32)
    )
    y = mb.value("y", (*lead, out_features))
    mb.add("MatMul", [ln_out, w], [y])
    return mb, mb.build([y])


# ---------- soft no-ops ----------


def test_no_anchor_leaves_graph_identical():
    mb = ModelBuilder(batch=2, seq=5)
    x = mb.input("x", ir.DataType.FLOAT, (2, 5, 8))
    y = mb.value("y", (2, 5, 8))
    mb.add("Relu", [x], [y])
    model = mb.build([y])
    before = _serialized(model)

    result = PaddingElimination(ENABLED).apply(model)

    assert result.modified is False
    assert _serialized(model) == before


def test_no_registered_names_is_noop():
    _mb, model = _transformer_block(batch=2, seq=5)
    before = _serialized(model)
    result = PaddingElimination(PaddingEliminationConfig()).apply(model)
    assert not result.modified
    assert _serialized(model) == before


def test_symbolic_trailing_token_dims_is_noop():
    _mb, model = _transformer_block(batch=2, seq=5, trailing=("k",))
    before = _serialized(model)
    result = PaddingElimination(ENABLED).apply(model)
    assert not result.modified
    assert _serialized(model) == before


def test_second_run_is_noop():
    _mb, model = _transformer_block(batch=2, seq=5)
    assert PaddingElimination(ENABLED).apply(model).modified
    after_first = _serialized(model)

    result = PaddingElimination(ENABLED).apply(model)

    assert not result.modified
    assert _serialized(model) == after_first


# ---------- rewrite structure ----------


def test_member_shapes_use_valid_token_dim():
    mb, model = _transformer_block(batch=4, seq=128, hidden=8, out_features=6)
    emb = find_value(model, "emb")
    add_out = find_value(model, "add_out")

    result = PaddingElimination(ENABLED).apply(model)

    (token_dim,) = result.stats.token_dims
    assert list(emb.shape) == [ir.SymbolicDim(token_dim), 8]
    assert list(add_out.shape) == [ir.SymbolicDim(token_dim), 8]
    # the public output keeps its name and its padded shape
    (out,) = model.graph.outputs
    assert out.name == "y"
    assert list(out.shape) == [4, 128, 6]
    assert result.stats.member_count == 4


def test_counters_and_inserted_ops():
    _mb, model = _transformer_block(batch=2, seq=5)

    result = PaddingElimination(ENABLED).apply(model)

    # anchor tokens + the expanded positional input
    assert result.stats.handled_input_count == 2
    assert result.stats.expanded_input_count == 1
    # only the graph output leaves the region through a boundary restore
    assert result.stats.handled_output_count == 1
    assert len(nodes_of_type(model, "NonZero")) == 1
    assert len(nodes_of_type(model, "Expand")) == 1
    # one restore for the graph output, plus one per pass-through node (Add, LayerNorm, MatMul)
    assert len(nodes_of_type(model, "ScatterND")) == 4
    aten = nodes_of_type(model, "ATen")[0]
    assert aten.inputs[1].producer().op_type == "Gather"


def test_parameter_operand_needs_no_filter():
    mb = ModelBuilder(batch=2, seq=5, hidden=4)
    emb = mb.embedding()
    bias = mb.initializer("bias", np.ones((4,), dtype=np.float32))
    y = mb.value("y", (2, 5, 4))
    add = mb.add("Add", [emb, bias], [y])
    model = mb.build([y])

    result = PaddingElimination(ENABLED).apply(model)

    assert add.inputs[1] is bias
    assert result.stats.expanded_input_count == 0
    assert result.stats.handled_input_count == 1


def test_layer_norm_axis_one_is_a_boundary():
    mb = ModelBuilder(batch=2, seq=5, hidden=4)
    emb = mb.embedding()
    scale = mb.initializer("scale", np.ones((4,), dtype=np.float32))
    y = mb.value("y", (2, 5, 4))
    ln = mb.add("LayerNormalization", [emb, scale], [y], {"axis": 1})
    model = mb.build([y])

    result = PaddingElimination(ENABLED).apply(model)

    assert result.modified
    assert result.stats.handled_output_count == 1
    # the normalization now reads the restored [batch, seq, hidden] tensor
    restored = ln.inputs[0]
    assert restored.producer().op_type == "Reshape"
    assert list(restored.shape) == [2, 5, 4]
    assert list(y.shape) == [2, 5, 4]


def test_dropout_outputs_are_rewritten():
    mb = ModelBuilder(batch=2, seq=5, hidden=4)
    emb = mb.embedding()
    d = mb.value("drop", (2, 5, 4))
    mask = mb.value("mask", (2, 5, 4), ir.DataType.BOOL)
    mb.add("Dropout", [emb], [d, mask])
    model = mb.build([d, mask])

    result = PaddingElimination(ENABLED).apply(model)

    (token_dim,) = result.stats.token_dims
    assert list(d.shape) == [ir.SymbolicDim(token_dim), 4]
    assert list(mask.shape) == [ir.SymbolicDim(token_dim), 4]
    assert [v.name for v in model.graph.outputs] == ["drop", "mask"]
    assert result.stats.handled_output_count == 2


# ---------- numerics ----------


@pytest.mark.parametrize("batch, seq", [(4, 128), ("batch", "seq")])
def test_rewrite_matches_unpadded_computation(batch, seq):
    _mb, model = _transformer_block(batch=batch, seq=seq, hidden=8, out_features=6)
    reference = ir.to_proto(model)

    PaddingElimination(ENABLED).apply(model)
    rewritten = ir.to_proto(model)

    tokens = padded_tokens((4, 128), [40, 30, 20, 10])
    pos = np.random.default_rng(2).standard_normal((1, 128, 8)).astype(np.float32)
    feeds = {"input_ids": tokens, "pos": pos}
    (expected,) = run_reference(reference, feeds)
    (got,) = run_reference(rewritten, feeds)

    assert got.shape == expected.shape == (4, 128, 6)
    valid = tokens != 0
    np.testing.assert_allclose(got[valid], expected[valid], rtol=1e-5, atol=1e-5)
    assert np.all(got[~valid] == 0)


def test_hundred_valid_tokens_scenario():
    _mb, model = _transformer_block(batch=4, seq=128, hidden=8, out_features=6)
    PaddingElimination(ENABLED).apply(model)
    index = find_value(model, "valid_token_index")
    emb = find_value(model, "emb")
    model.graph.outputs.append(index)
    model.graph.outputs.append(emb)

    tokens = padded_tokens((4, 128), [40, 30, 20, 10])
    pos = np.zeros((1, 128, 8), dtype=np.float32)
    _y, got_index, got_emb = run_reference(
        ir.to_proto(model), {"input_ids": tokens, "pos": pos}
    )

    assert got_index.shape == (100,)
    np.testing.assert_array_equal(got_index, np.flatnonzero(tokens.reshape(-1)))
    assert got_emb.shape == (100, 8)


def test_trailing_token_dims_round_trip():
    mb = ModelBuilder(batch=2, seq=6, hidden=4, trailing=(3,))
    emb = mb.embedding()
    bias = mb.initializer("bias", np.full((4,), 0.5, dtype=np.float32))
    y = mb.value("y", (2, 6, 3, 4))
    mb.add("Add", [emb, bias], [y])
    model = mb.build([y])
    reference = ir.to_proto(model)

    PaddingElimination(ENABLED).apply(model)

    tokens = padded_tokens((2, 6, 3), [4, 2])
    (expected,) = run_reference(reference, {"input_ids": tokens})
    (got,) = run_reference(ir.to_proto(model), {"input_ids": tokens})
    valid_rows = tokens.reshape(2, 6, 3).any(axis=-1)
    np.testing.assert_allclose(got[valid_rows], expected[valid_rows], rtol=1e-6)
    assert np.all(got[~valid_rows] == 0)


# ---------- fatal conditions ----------


def test_matmul_without_member_input_is_fatal_and_leaves_graph():
    mb = ModelBuilder(batch=2, seq=5, hidden=4)
    emb = mb.embedding()
    ctx = mb.value("ctx", (2, 5, 4))
    hooked = mb.value("hooked", (2, 5, 4))
    mb.add("PythonOp", [emb], [ctx, hooked], hook_attributes(3), domain="com.microsoft")
    w = mb.initializer("w", np.ones((4, 3), dtype=np.float32))
    mm_out = mb.value("mm_out", (2, 5, 3))
    mb.add("MatMul", [ctx, w], [mm_out])
    model = mb.build([hooked, mm_out])
    before = _serialized(model)

    with pytest.raises(PaddingEliminationError):
        PaddingElimination(ENABLED).apply(model)
    assert _serialized(model) == before


def test_symbolic_dim_inside_region_is_fatal():
    mb = ModelBuilder(batch=2, seq=5, hidden=4)
    emb = mb.embedding()
    w = mb.input("w", ir.DataType.FLOAT, (4, "n"))
    y = mb.value("y", (2, 5, "n"))
    mb.add("MatMul", [emb, w], [y])
    model = mb.build([y])
    before = _serialized(model)

    with pytest.raises(PaddingEliminationError, match="non-static dim"):
        PaddingElimination(ENABLED).apply(model)
    assert _serialized(model) == before


# ---------- instrumentation hooks ----------


def _hooked_model(**attr_overrides):
    mb = ModelBuilder(batch=2, seq=5, hidden=4)
    emb = mb.embedding()
    ctx = ir.val("ctx", ir.DataType.INT64, ())
    y = mb.value("y", (2, 5, 4))
    hook = mb.add(
        "PythonOp",
        [emb],
        [ctx, y],
        hook_attributes(3, **attr_overrides),
        domain="com.microsoft",
        name="inspect",
    )
    return hook, mb.build([y])


def test_elimination_decrements_hook_ranks():
    hook, model = _hooked_model()

    result = PaddingElimination(ENABLED).apply(model)

    assert result.modified
    assert list(hook.attributes["input_tensor_ranks"].as_ints()) == [2]
    assert list(hook.attributes["output_tensor_ranks"].as_ints()) == [2]


def test_missing_hook_rank_attribute_is_fatal():
    _hook, model = _hooked_model(output_tensor_ranks=None)
    before = _serialized(model)
    with pytest.raises(PaddingEliminationError, match="output_tensor_ranks"):
        PaddingElimination(ENABLED).apply(model)
    assert _serialized(model) == before


def test_inspect_only_replaces_hook():
    _hook, model = _hooked_model()

    result = PaddingElimination(INSPECT_ONLY).apply(model)

    assert result.modified
    assert result.stats.replaced_hook_count == 1
    (new,) = nodes_of_type(model, "PythonOp")
    assert new.name.startswith("inspect_unpad_activation")
    assert new.attributes["func_name"].as_string() == INSPECT_UNPAD_ACTIVATION_FUNC
    assert new.attributes["input_convention"].as_string() == "dd"
    assert list(new.attributes["input_requires_grads"].as_ints()) == [1, 0]
    assert list(new.attributes["input_tensor_types"].as_ints()) == [
        int(ir.DataType.FLOAT),
        int(ir.DataType.INT64),
    ]
    assert list(new.attributes["input_tensor_ranks"].as_ints()) == [3, 1]
    assert new.inputs[1].name.startswith("valid_token_index")
    # graph output now comes from the replacement, under the same name
    (out,) = model.graph.outputs
    assert out.producer() is new
    assert out.name == "y"
    # nothing else was rewritten
    aten = nodes_of_type(model, "ATen")[0]
    assert aten.inputs[1].name == "input_ids"
    assert not nodes_of_type(model, "ScatterND")


def test_inspect_only_without_hooks_is_noop():
    _mb, model = _transformer_block(batch=2, seq=5)
    before = _serialized(model)
    result = PaddingElimination(INSPECT_ONLY).apply(model)
    assert not result.modified
    assert _serialized(model) == before


def test_inspect_only_missing_convention_is_fatal():
    _hook, model = _hooked_model(input_convention=None)
    with pytest.raises(PaddingEliminationError, match="input_convention"):
        PaddingElimination(INSPECT_ONLY).apply(model)


# ---------- nested graphs ----------


def test_region_consumer_inside_subgraph():
    mb = ModelBuilder(batch=2, seq=5, hidden=4)
    emb = mb.embedding()
    cond = mb.input("cond", ir.DataType.BOOL, ())

    def branch(name, op):
        out = ir.val(f"{name}_out", ir.DataType.FLOAT, (2, 5, 4))
        node = ir.node(op, inputs=[emb], outputs=[out], name=f"{name}_node")
        return ir.Graph(inputs=[], outputs=[out], nodes=[node], name=name), node

    then_graph, relu = branch("then", "Relu")
    else_graph, neg = branch("else", "Neg")
    y = mb.value("y", (2, 5, 4))
    mb.add("If", [cond], [y], {"then_branch": then_graph, "else_branch": else_graph})
    model = mb.build([y])
    reference = ir.to_proto(model)

    result = PaddingElimination(ENABLED).apply(model)

    assert result.stats.handled_output_count == 2
    # restores are placed inside each branch, right before the consumer
    assert relu.inputs[0].producer().graph is then_graph
    assert neg.inputs[0].producer().graph is else_graph

    tokens = padded_tokens((2, 5), [3, 5])
    for flag in (True, False):
        feeds = {"input_ids": tokens, "cond": np.asarray(flag)}
        (expected,) = run_reference(reference, feeds)
        (got,) = run_reference(ir.to_proto(model), feeds)
        valid = tokens != 0
        np.testing.assert_allclose(got[valid], expected[valid], rtol=1e-6)


def test_region_value_returned_by_subgraph_is_restored():
    mb = ModelBuilder(batch=2, seq=5, hidden=4)
    emb = mb.embedding()
    bias = mb.initializer("bias", np.ones((4,), dtype=np.float32))
    cond = mb.input("cond", ir.DataType.BOOL, ())

    then_out = ir.val("then_out", ir.DataType.FLOAT, (2, 5, 4))
    add = ir.node("Add", inputs=[emb, bias], outputs=[then_out], name="then_add")
    then_graph = ir.Graph(inputs=[], outputs=[then_out], nodes=[add], name="then")
    else_out = ir.val("else_out", ir.DataType.FLOAT, (2, 5, 4))
    neg = ir.node("Neg", inputs=[emb], outputs=[else_out], name="else_neg")
    else_graph = ir.Graph(inputs=[], outputs=[else_out], nodes=[neg], name="else")

    y = mb.value("y", (2, 5, 4))
    mb.add("If", [cond], [y], {"then_branch": then_graph, "else_branch": else_graph})
    model = mb.build([y])
    reference = ir.to_proto(model)

    result = PaddingElimination(ENABLED).apply(model)

    assert result.modified
    # the Add now runs on valid tokens, and the branch returns a restored tensor
    assert add.outputs[0].shape[0] == ir.SymbolicDim(result.stats.token_dims[0])
    returned = then_graph.outputs[0]
    assert returned is not add.outputs[0]
    assert returned.name == "then_out"
    assert returned.producer().graph is then_graph
    assert returned.producer().op_type == "Reshape"
    assert list(returned.shape) == [2, 5, 4]

    tokens = padded_tokens((2, 5), [3, 5])
    valid = tokens != 0
    for flag in (True, False):
        feeds = {"input_ids": tokens, "cond": np.asarray(flag)}
        (expected,) = run_reference(reference, feeds)
        (got,) = run_reference(ir.to_proto(model), feeds)
        assert got.shape == expected.shape == (2, 5, 4)
        np.testing.assert_allclose(got[valid], expected[valid], rtol=1e-6)
        np.testing.assert_array_equal(got[~valid], 0.0)


def test_onnx_domain_simplified_layer_norm_propagates():
    mb = ModelBuilder(batch=2, seq=5, hidden=4)
    emb = mb.embedding()
    scale = mb.initializer("scale", np.ones((4,), dtype=np.float32))
    norm_out = mb.value("norm_out", (2, 5, 4))
    norm = mb.add("SimplifiedLayerNormalization", [emb, scale], [norm_out], {"axis": -1})
    y = mb.value("y", (2, 5, 4))
    mb.add("Relu", [norm_out], [y])
    model = mb.build([y])

    result = PaddingElimination(ENABLED).apply(model)

    assert result.modified
    token_dim = ir.SymbolicDim(result.stats.token_dims[0])
    # the normalization reads the filtered embedding, not a restored one
    assert norm.inputs[0] is emb
    assert list(norm_out.shape) == [token_dim, 4]
    assert result.stats.handled_output_count == 1
    assert list(y.shape) == [2, 5, 4]
