"""Fallback channel for the pipeline's own failures.

Records go to a dedicated non-propagating logger with its own stderr
handler, so nothing the pipeline says about itself re-enters capture.
"""

import logging
import sys
import threading
from contextlib import contextmanager

INTERNAL_LOGGER_NAME = "error_pipeline.internal"

_local = threading.local()


def get_internal_logger() -> logging.Logger:
    logger = logging.getLogger(INTERNAL_LOGGER_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] error-pipeline: %(message)s")
        )
        logger.addHandler(handler)
        logger.propagate = False
    return logger


@contextmanager
def pipeline_guard():
    """Yield True on first entry for this thread, False when already inside the pipeline."""
    if getattr(_local, "active", False):
        yield False
        return
    _local.active = True
    try:
        yield True
    finally:
        _local.active = False
