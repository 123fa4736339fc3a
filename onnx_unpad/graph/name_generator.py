# file: onnx_unpad/graph/name_generator.py
import logging
from collections import defaultdict
from typing import Iterable

logger = logging.getLogger("onnx_unpad.graph.name_generator")


class UniqueNameGenerator:
    """Hands out names that do not collide with anything already in the graph."""

    def __init__(self, taken: Iterable[str] = ()):
        self._counters = defaultdict(int)
        self._taken = {name for name in taken if name}

    def get(self, base_name: str = "node", context="default") -> str:
        context_and_base_name = context + "_" + base_name
        while True:
            count = self._counters[context_and_base_name]
            self._counters[context_and_base_name] += 1
            name = f"{base_name}_{count}"
            if name not in self._taken:
                break
        self._taken.add(name)
        logger.debug("Generated name: %s", name)
        return name
