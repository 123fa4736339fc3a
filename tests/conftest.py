import logging
import os
import sys

import pytest

# graph_builders.py lives next to this file; make it importable from tests/padding and tests/graph too
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


@pytest.fixture(autouse=True)
def _debug_logging(caplog):
    # run every test with the pass's debug logging enabled so the log calls are exercised
    caplog.set_level(logging.DEBUG, logger="onnx_unpad")
    yield
