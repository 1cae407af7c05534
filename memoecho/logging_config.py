"""
Logging configuration for memo-echo.

Suppress verbose library output by default for better UX.
"""

import os
import sys
import warnings

# Set environment variables BEFORE model imports to suppress warnings early
if not os.environ.get("MEMOECHO_VERBOSE"):
    os.environ["HF_HUB_DISABLE_PROGRESS_BARS"] = "1"
    os.environ["TRANSFORMERS_VERBOSITY"] = "error"
    os.environ["TOKENIZERS_PARALLELISM"] = "false"
    os.environ["HF_HUB_DISABLE_TELEMETRY"] = "1"
    os.environ["ANONYMIZED_TELEMETRY"] = "False"


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    This silences:
    - HuggingFace transformers progress bars
    - ChromaDB and HTTP client chatter
    - Library warnings (deprecation, etc.)

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        os.environ["HF_HUB_DISABLE_PROGRESS_BARS"] = "1"
        os.environ["TRANSFORMERS_VERBOSITY"] = "error"
        os.environ["TOKENIZERS_PARALLELISM"] = "false"

        warnings.filterwarnings("ignore")

        import logging
        for name in ("transformers", "sentence_transformers", "chromadb", "httpx", "urllib3"):
            logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    import logging

    warnings.filterwarnings("default")

    os.environ.pop("HF_HUB_DISABLE_PROGRESS_BARS", None)
    os.environ.pop("TRANSFORMERS_VERBOSITY", None)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("memoecho", "sentence_transformers", "chromadb"):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a store.

    Writes to {store_path}/memo-echo-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    import logging
    from logging.handlers import RotatingFileHandler
    from pathlib import Path

    log_path = Path(store_path) / "memo-echo-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    app_logger = logging.getLogger("memoecho")
    app_logger.addHandler(handler)
    if app_logger.level == logging.NOTSET or app_logger.level > logging.INFO:
        app_logger.setLevel(logging.INFO)

    return handler
