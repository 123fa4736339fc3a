# file: onnx_unpad/errors.py


class PaddingEliminationError(RuntimeError):
    """The graph broke an invariant the padding elimination pass relies on.

    Raised for malformed inputs (missing hook attributes, symbolic trailing dims
    on a region value, nodes failing schema validation) and for traversal states
    that can only come from a logic defect. Never used for "pass not applicable".
    """
