import logging
import os
import atexit

try:
    import tomllib  # Python 3.11+
except ImportError:
    import toml as tomllib  # type: ignore


def configure_logging(pyproject_path=None):
    """Configures logging based on pyproject.toml [tool.onnx_unpad.logging]."""
    config = {}
    if pyproject_path is None:
        base_dir = os.path.dirname(os.path.abspath(__file__))
        pyproject_path = os.path.join(base_dir, "pyproject.toml")
    if os.path.exists(pyproject_path):
        read_mode = "rb" if getattr(tomllib, "__name__", "") == "tomllib" else "r"
        with open(pyproject_path, read_mode) as f:
            config = (
                tomllib.load(f).get("tool", {}).get("onnx_unpad", {}).get("logging", {})
            )

    default_level = config.get("default_level", "INFO").upper()
    log_format = config.get("format", "%(levelname)s:%(name)s:%(message)s")
    specific_levels = config.get("levels", {})

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, default_level, logging.INFO))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(log_format))
    root_logger.addHandler(console_handler)

    # per-logger overrides, e.g. "onnx_unpad.padding.op_rules" = "DEBUG"
    for logger_name, lvl in specific_levels.items():
        logging.getLogger(logger_name).setLevel(getattr(logging, lvl.upper(), logging.INFO))
        root_logger.debug("Set level %s on logger: %s", lvl.upper(), logger_name)

    atexit.register(lambda: setattr(logging, "raiseExceptions", False))
