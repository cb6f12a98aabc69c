"""Utilities for logging.

Authors: Ayush Baid, John Lambert
"""

import logging
import socket
import sys
from datetime import datetime, timezone
from logging import LoggerAdapter

from dask import distributed

LOGGER_NAME = "reconcompare"

# Resolved lazily on the first log call: the dask worker context does not exist at import time.
_WORKER_ID_CACHE: str | None = None


def _detect_worker_id() -> str:
    """Returns "hostname(port)" inside a dask worker, "hostname-main" otherwise."""
    hostname = socket.gethostname()
    try:
        worker = distributed.get_worker()
    except (ImportError, ValueError, AttributeError):
        return f"{hostname}-main"
    port = worker.address.split(":")[-1]
    return f"{hostname}({port})"


def get_worker_id() -> str:
    """Returns the cached worker identity of the current process."""
    global _WORKER_ID_CACHE
    if _WORKER_ID_CACHE is None:
        _WORKER_ID_CACHE = _detect_worker_id()
    return _WORKER_ID_CACHE


class WorkerAwareAdapter(LoggerAdapter):
    """LoggerAdapter which injects the worker identity into every LogRecord as `worker_id`."""

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        extra["worker_id"] = get_worker_id()
        return msg, kwargs


class UTCFormatter(logging.Formatter):
    """Formatter with UTC timestamps."""

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return dt.strftime(datefmt or "%Y-%m-%d %H:%M:%S")


def get_logger() -> LoggerAdapter:
    """Get the package logger.

    Log format:
        "2025-10-28 00:00:45 [hostname-main] [align.py] INFO: message"

    Returns:
        Logger adapter wrapping the shared package logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        fmt = "%(asctime)s [%(worker_id)s] [%(filename)s] %(levelname)s: %(message)s"
        handler.setFormatter(UTCFormatter(fmt, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)

    return WorkerAwareAdapter(logger)
