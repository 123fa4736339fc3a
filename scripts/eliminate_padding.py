#!/usr/bin/env python3
# scripts/eliminate_padding.py

"""Run padding elimination on an ONNX file.

    python scripts/eliminate_padding.py --input model.onnx --output model.unpad.onnx \
        --sparse-input input_ids
"""

from __future__ import annotations

import sys

from onnx_unpad.user_interface import main


if __name__ == "__main__":
    sys.exit(main())
