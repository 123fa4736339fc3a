# onnx_unpad/__init__.py

from onnx_unpad.user_interface import (  # noqa: F401
    eliminate_padding,
)
from onnx_unpad.config import PaddingEliminationConfig, load_config  # noqa: F401
from onnx_unpad.errors import PaddingEliminationError  # noqa: F401
from onnx_unpad.padding.padding_elimination import (  # noqa: F401
    PaddingElimination,
    PaddingEliminationResult,
    PaddingEliminationStats,
)
