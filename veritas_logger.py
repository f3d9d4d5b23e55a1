"""
Veritas Liveness - Structured Audit Logger
==========================================
Append-only JSONL audit trail: one JSON object per line, each stamped
with wall-clock `timestamp`. Warnings also go to the console logger.

get_logger(None) returns a logger that only writes to the console, so
callers never need to check whether auditing is enabled.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Optional

import numpy as np

from veritas_utils_core import setup_logger


def _json_default(obj):
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if hasattr(obj, "value"):       # Enum
        return obj.value
    return str(obj)


class AuditLogger:
    """JSONL audit writer. Safe to call from several threads."""

    def __init__(self, path: Optional[str] = None, console: Optional[logging.Logger] = None):
        self.path = path
        self.console = console or setup_logger('VeritasAudit')
        self._lock = threading.Lock()
        self._fh = None
        if path:
            os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
            self._fh = open(path, 'a', encoding='utf-8')

    @property
    def enabled(self) -> bool:
        return self._fh is not None

    def log(self, event: dict) -> None:
        if self._fh is None:
            return
        record = {"timestamp": time.time(), **event}
        line = json.dumps(record, default=_json_default)
        with self._lock:
            if self._fh is not None:
                self._fh.write(line + "\n")
                self._fh.flush()

    def log_frame(self, entry: dict) -> None:
        self.log({"event": "frame", **entry})

    def warn(self, message: str) -> None:
        self.console.warning(message)
        self.log({"event": "warning", "message": message})

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None


def get_logger(path: Optional[str] = None, console: Optional[logging.Logger] = None) -> AuditLogger:
    """Audit logger writing to `path`, or console-only when `path` is None."""
    return AuditLogger(path, console)
