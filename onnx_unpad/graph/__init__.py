# file: onnx_unpad/graph/__init__.py

from onnx_unpad.graph.ir_surgery import GraphEditor  # noqa: F401
from onnx_unpad.graph.name_generator import UniqueNameGenerator  # noqa: F401
