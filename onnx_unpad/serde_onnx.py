# onnx_unpad/serde_onnx.py

from __future__ import annotations

import os
from typing import Union

import onnx
import onnx_ir as ir

ModelSource = Union["ir.Model", onnx.ModelProto, str, "os.PathLike[str]"]


def to_ir_model(source: ModelSource) -> ir.Model:
    """
    Accept an onnx_ir Model, an ONNX ModelProto or a path to a .onnx file and
    return an onnx_ir Model. An ``ir.Model`` is returned as is (the pass mutates it).
    """
    if isinstance(source, ir.Model):
        return source
    if isinstance(source, onnx.ModelProto):
        return ir.from_proto(source)
    path_value = os.fspath(source)
    if isinstance(path_value, bytes):
        path_value = path_value.decode()
    return ir.load(path_value)


def ir_to_onnx(ir_model: ir.Model) -> onnx.ModelProto:
    """Convert an onnx-ir Model to an ONNX ModelProto."""
    return ir.to_proto(ir_model)


def save_model(ir_model: ir.Model, dest: str) -> str:
    dest_dir = os.path.dirname(dest)
    if dest_dir:
        os.makedirs(dest_dir, exist_ok=True)
    ir.save(ir_model, dest)
    return dest
