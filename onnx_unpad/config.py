# onnx_unpad/config.py

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

try:
    import tomllib  # Python 3.11+
except ImportError:
    import toml as tomllib  # type: ignore


@dataclass(frozen=True)
class PaddingEliminationConfig:
    """
    Settings of one padding-elimination run.

    ``sparse_embedding_input_names`` lists the graph inputs that may be treated
    as padded token ids. With ``enable=False`` nothing is eliminated; only the
    activation-inspection hooks are patched to receive the valid token index.
    """

    sparse_embedding_input_names: FrozenSet[str] = field(default_factory=frozenset)
    enable: bool = True

    @classmethod
    def create(cls, sparse_embedding_input_names: Iterable[str] = (), enable: bool = True):
        return cls(frozenset(sparse_embedding_input_names), bool(enable))

    def with_overrides(
        self,
        sparse_embedding_input_names: Optional[Iterable[str]] = None,
        enable: Optional[bool] = None,
    ) -> "PaddingEliminationConfig":
        names = self.sparse_embedding_input_names
        if sparse_embedding_input_names is not None:
            names = frozenset(sparse_embedding_input_names)
        return PaddingEliminationConfig(
            names, self.enable if enable is None else bool(enable)
        )


def _read_pyproject(pyproject_path: str) -> dict:
    read_mode = "rb" if getattr(tomllib, "__name__", "") == "tomllib" else "r"
    with open(pyproject_path, read_mode) as f:
        return tomllib.load(f)


def load_config(pyproject_path: Optional[str] = None) -> PaddingEliminationConfig:
    """Read ``[tool.onnx_unpad.padding_elimination]``; a missing file or section gives the defaults."""
    if pyproject_path is None:
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        pyproject_path = os.path.join(base_dir, "pyproject.toml")
    if not os.path.exists(pyproject_path):
        return PaddingEliminationConfig()
    section = (
        _read_pyproject(pyproject_path)
        .get("tool", {})
        .get("onnx_unpad", {})
        .get("padding_elimination", {})
    )
    return PaddingEliminationConfig.create(
        section.get("sparse_embedding_input_names", ()),
        section.get("enable", True),
    )
