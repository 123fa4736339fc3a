# file: onnx_unpad/padding/__init__.py
