"""Utility functions for Ecolysis.

General-purpose helpers: hashing, timing.
"""

from __future__ import annotations

import hashlib
import logging
import time
from contextlib import contextmanager
from typing import Generator


def text_sha256(text: str) -> str:
    """SHA-256 hex digest of a text string (e.g. a YAML scenario dump)."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


@contextmanager
def timer(logger: logging.Logger, label: str) -> Generator[None, None, None]:
    """Context-manager timer. Logs elapsed wall time at INFO on exit."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        logger.info("[%s] %.3fs", label, elapsed)
