# file: onnx_unpad/padding/padding_elimination.py

"""
Padding elimination for models fed with padded token batches.

The pass finds the sparse embedding lookup over ``tokens`` of shape
``[batch, seq, ...]``, follows its result forward through operators that keep
those two leading dims intact, and rewrites that region to run on the valid
(non-padding) tokens only:

    tokens -> Reshape -> Gather(valid_index) -> embedding -> ... region ...
                                                   -> ScatterND -> Reshape -> rest of graph

Phases, per graph:
  1. ``find_anchor``        locate the embedding (soft no-op if absent)
  2. ``discover_region``    read-only classification of the reachable nodes
  3. validation             everything that could fail is checked here
  4. mutation               valid index, filters/expands, restores, shapes,
                            hook ranks, pass-through wrapping

In inspect-only mode phase 4 is replaced by patching the inspection hooks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import onnx_ir as ir

from onnx_unpad.config import PaddingEliminationConfig
from onnx_unpad.graph.ir_surgery import GraphEditor, subgraphs_of
from onnx_unpad.graph.ir_utils import node_list
from onnx_unpad.padding.anchor import Anchor, find_anchor
from onnx_unpad.padding.boundary import BoundaryRewriter
from onnx_unpad.padding.instrumentation import (
    apply_rank_updates,
    check_inspect_attributes,
    check_rank_attributes,
    replace_inspect_hooks,
)
from onnx_unpad.padding.propagation import RegionAnalysis, discover_region
from onnx_unpad.padding.shapes import check_member_shapes, rewrite_member_shapes
from onnx_unpad.padding.valid_index import build_valid_index, token_dim_name

logger = logging.getLogger("onnx_unpad.padding.padding_elimination")


@dataclass
class PaddingEliminationStats:
    handled_input_count: int = 0
    handled_output_count: int = 0
    expanded_input_count: int = 0
    member_count: int = 0
    replaced_hook_count: int = 0
    token_dims: list = field(default_factory=list)


@dataclass
class PaddingEliminationResult:
    model: Any  # ir.Model; a ModelProto or a file path when requested through eliminate_padding
    modified: bool
    stats: PaddingEliminationStats


class PaddingElimination:
    def __init__(self, config: PaddingEliminationConfig):
        self.config = config

    def apply(self, model: ir.Model) -> PaddingEliminationResult:
        """Rewrite ``model`` in place; the result reports whether anything changed."""
        stats = PaddingEliminationStats()
        root = model.graph
        modified = self._apply_recursive(root, root, stats)
        if stats.handled_input_count > 0 or stats.handled_output_count > 0:
            logger.info(
                "PaddingElimination::Total handled input node count: %d output node count: %d "
                "expanded input count: %d",
                stats.handled_input_count,
                stats.handled_output_count,
                stats.expanded_input_count,
            )
        return PaddingEliminationResult(model=model, modified=modified, stats=stats)

    # ---------- per graph ----------
    def _apply_recursive(self, graph: ir.Graph, root: ir.Graph, stats: PaddingEliminationStats) -> bool:
        modified = False
        for node in node_list(graph):
            for sub in subgraphs_of(node):
                modified = self._apply_recursive(sub, root, stats) or modified
        return self._apply_graph(graph, root, stats) or modified

    def _apply_graph(self, graph: ir.Graph, root: ir.Graph, stats: PaddingEliminationStats) -> bool:
        names = self.config.sparse_embedding_input_names
        if not names:
            logger.debug("Exit PaddingElimination optimization for no sparse embedding input names.")
            return False

        anchor = find_anchor(graph, names)
        if anchor is None:
            logger.debug("Exit PaddingElimination optimization for not finding any valid embedding node.")
            return False
        if not anchor.trailing_dims_static():
            logger.debug(
                "Exit PaddingElimination optimization for shape dims of %s has no value.",
                anchor.tokens.name,
            )
            return False

        region = discover_region(graph, anchor.node)
        if not self.config.enable:
            return self._inspect_only(graph, root, anchor, region, stats)
        return self._eliminate(graph, root, anchor, region, stats)

    def _inspect_only(
        self,
        graph: ir.Graph,
        root: ir.Graph,
        anchor: Anchor,
        region: RegionAnalysis,
        stats: PaddingEliminationStats,
    ) -> bool:
        hooks = [node for node, _rank in region.inspect_hook_ranks]
        if not hooks:
            logger.debug(
                "Exit PaddingElimination optimization. enable stat: %s, inspect activation hooks: 0",
                self.config.enable,
            )
            return False
        check_inspect_attributes(hooks)

        editor = GraphEditor(graph, root)
        valid = build_valid_index(editor, anchor, token_dim_name(anchor))
        replaced = replace_inspect_hooks(editor, hooks, valid.index)
        stats.replaced_hook_count += len(replaced)
        return bool(replaced)

    def _eliminate(
        self,
        graph: ir.Graph,
        root: ir.Graph,
        anchor: Anchor,
        region: RegionAnalysis,
        stats: PaddingEliminationStats,
    ) -> bool:
        check_member_shapes(region)
        check_rank_attributes(region.hooks)

        editor = GraphEditor(graph, root)
        token_dim = token_dim_name(anchor)
        valid = build_valid_index(editor, anchor, token_dim)

        rewriter = BoundaryRewriter(editor, anchor, region, valid)
        rewriter.build_shared()
        rewriter.filter_anchor_input()
        rewriter.rewrite_candidate_inputs()
        rewriter.restore_candidate_outputs()
        rewriter.restore_graph_outputs()

        apply_rank_updates(region.hooks)
        stats.member_count += rewrite_member_shapes(region.members, region, token_dim)
        rewriter.wrap_pass_through()

        stats.handled_input_count += rewriter.stats.handled_input_count
        stats.handled_output_count += rewriter.stats.handled_output_count
        stats.expanded_input_count += rewriter.stats.expanded_input_count
        stats.token_dims.append(token_dim)
        return True
