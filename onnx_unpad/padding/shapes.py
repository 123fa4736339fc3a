# file: onnx_unpad/padding/shapes.py

from __future__ import annotations

import logging
from typing import Iterable

import onnx_ir as ir

from onnx_unpad.errors import PaddingEliminationError
from onnx_unpad.graph.ir_utils import is_static_int, stamp_shape
from onnx_unpad.padding.propagation import RegionAnalysis

logger = logging.getLogger("onnx_unpad.padding.shapes")


def check_member_shapes(region: RegionAnalysis) -> None:
    """Fail before any mutation if a member value has a symbolic dim past the leading two."""
    for v in region.members:
        dims = region.dims_before(v)
        if dims is None:
            continue
        for d in dims[2:]:
            if not is_static_int(d):
                raise PaddingEliminationError(
                    f"PaddingElimination::value {v.name!r} has non-static dim {d!r} "
                    "after the leading two; cannot merge into the valid token count."
                )


def rewrite_member_shapes(members: Iterable[ir.Value], region: RegionAnalysis, token_dim: str) -> int:
    """Stamp ``[token_dim, d2, ...]`` on every member with a known shape; returns how many."""
    count = 0
    for v in members:
        dims = region.dims_before(v)
        if dims is None:
            continue
        if len(dims) < 2:
            continue
        stamp_shape(v, [ir.SymbolicDim(token_dim), *[int(d) for d in dims[2:]]])
        count += 1
    logger.debug("PaddingElimination::rewrote %d value shapes to %s", count, token_dim)
    return count
