# file: onnx_unpad/user_interface.py

from typing import Iterable, Literal, Optional, Union, cast
import argparse
import logging
import os

from logging_config import configure_logging
from onnx_unpad.config import PaddingEliminationConfig, load_config
from onnx_unpad.padding.padding_elimination import (
    PaddingElimination,
    PaddingEliminationResult,
)
from onnx_unpad.serde_onnx import ModelSource, ir_to_onnx, save_model, to_ir_model

logger = logging.getLogger("onnx_unpad.user_interface")

ReturnMode = Literal["proto", "ir", "file"]
_VALID_RETURN_MODES = {"proto", "ir", "file"}

PathLikeStr = Union[str, os.PathLike[str]]


def _normalize_return_mode(value: str) -> ReturnMode:
    mode = value.lower().strip()
    if mode not in _VALID_RETURN_MODES:
        raise ValueError(
            f"Unsupported return_mode '{value}'. Expected one of: {sorted(_VALID_RETURN_MODES)}"
        )
    return cast(ReturnMode, mode)


def eliminate_padding(
    model: ModelSource,
    sparse_embedding_input_names: Iterable[str],
    *,
    enable: bool = True,
    return_mode: ReturnMode = "ir",
    output_path: Optional[PathLikeStr] = None,
) -> PaddingEliminationResult:
    """
    Remove padding tokens from the region of ``model`` fed by a sparse embedding.

    Args:
        model: An ``onnx_ir.Model`` (rewritten in place), an ``onnx.ModelProto``
            or a path to an ``.onnx`` file.
        sparse_embedding_input_names: Graph inputs allowed to act as padded
            token ids of the embedding lookup.
        enable: ``False`` selects inspect-only mode: activation-inspection hooks
            are patched to receive the valid token index, nothing else changes.
        return_mode: Type of ``result.model``. ``"ir"`` (default) gives the
            onnx_ir.Model, ``"proto"`` an ONNX ModelProto, and ``"file"`` writes
            to ``output_path`` and gives that path.
        output_path: Destination, required when ``return_mode`` is ``"file"``.

    Returns:
        ``PaddingEliminationResult(model, modified, stats)``.

    Raises:
        PaddingEliminationError: The graph violates a precondition of the
            rewrite (e.g. a MatMul reached without any region input).
    """
    normalized_mode = _normalize_return_mode(return_mode)
    file_path: Optional[str] = None
    if normalized_mode == "file":
        if output_path is None:
            raise ValueError("`output_path` must be provided when return_mode is 'file'.")
        file_path = os.fspath(output_path)

    config = PaddingEliminationConfig.create(sparse_embedding_input_names, enable)
    result = PaddingElimination(config).apply(to_ir_model(model))
    logger.debug("eliminate_padding: modified=%s stats=%s", result.modified, result.stats)

    if normalized_mode == "proto":
        result.model = ir_to_onnx(result.model)
    elif normalized_mode == "file":
        assert file_path is not None
        result.model = save_model(result.model, file_path)
    return result


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="onnx_unpad",
        description="Eliminate padding tokens from an ONNX model with a sparse embedding input.",
    )
    p.add_argument("--input", required=True, help="Input .onnx file")
    p.add_argument("--output", default="model.unpad.onnx", help="Output .onnx file")
    p.add_argument(
        "--sparse-input",
        dest="sparse_inputs",
        action="append",
        default=None,
        help="Graph input holding padded token ids (repeatable)",
    )
    p.add_argument(
        "--inspect-only",
        action="store_true",
        default=False,
        help="Only patch activation-inspection hooks; do not eliminate padding",
    )
    p.add_argument(
        "--config",
        default=None,
        help="pyproject.toml with a [tool.onnx_unpad.padding_elimination] section",
    )
    return p


def run_command_line(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    config = load_config(args.config).with_overrides(
        sparse_embedding_input_names=args.sparse_inputs,
        enable=False if args.inspect_only else None,
    )
    result = eliminate_padding(
        args.input,
        config.sparse_embedding_input_names,
        enable=config.enable,
        return_mode="file",
        output_path=args.output,
    )
    logger.info(
        "%s -> %s (modified=%s, handled inputs=%d, handled outputs=%d, expanded inputs=%d)",
        args.input,
        args.output,
        result.modified,
        result.stats.handled_input_count,
        result.stats.handled_output_count,
        result.stats.expanded_input_count,
    )
    return 0


def main(argv=None) -> int:
    """Console entry point: configure logging, then run the command line."""
    configure_logging()
    return run_command_line(argv)
