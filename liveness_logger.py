"""
FaceMesh Liveness - Structured Audit Logger
===========================================
Appends detector lifecycle events and per-frame summaries to a JSONL file
for offline analysis of a capture session.

Key Features:
  - JSONL (Newline Delimited JSON) format, one entry per line
  - Thread-safe: streaming callbacks log from MediaPipe's thread
  - Levels: SYSTEM, AUDIT, WARN, ERROR
  - NumPy scalars/arrays serialized transparently
"""

import json
import logging
import os
import sys
import threading
import time
from typing import Any, Dict, Optional

import numpy as np

from liveness_types import ResultBundle

_log = logging.getLogger("LivenessAudit")

AUDIT_FILENAME = "liveness_audit.jsonl"


def _size(data: Optional[bytes]) -> Optional[int]:
    return len(data) if data is not None else None


class LivenessJSONEncoder(json.JSONEncoder):
    """Handles NumPy types for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        return super().default(obj)


class AuditLogger:
    """JSONL audit trail for one detector session."""

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, AUDIT_FILENAME)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "event": "session_start",
            "python_version": sys.version,
            "platform": sys.platform,
        }, level="SYSTEM")

    @property
    def closed(self) -> bool:
        return self._file.closed

    def _write(self, entry: Dict[str, Any]) -> None:
        line = json.dumps(entry, cls=LivenessJSONEncoder) + "\n"
        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append log entry."""
        self._write({
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        })

    def log_frame(self, bundle: ResultBundle):
        """Summary of one ResultBundle (sizes only, never pixel data)."""
        features = bundle.face_features
        self.log({
            "timestamp_ms": bundle.timestamp_ms,
            "inference_time_ms": bundle.inference_time_ms,
            "image_size": [bundle.image_width, bundle.image_height],
            "faces": len(bundle.landmarks),
            "preview_bytes": _size(bundle.preview_artifact),
            "tensor_bytes": _size(bundle.tensor_artifact),
            "ear_avg": features.ear_avg if features is not None else None,
            "mar": features.mar if features is not None else None,
            "error": bundle.error,
        }, level="AUDIT", event="frame_processed")

    def warn(self, message: str, context: Optional[Dict] = None):
        """Log structured warning."""
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="detector_warning")

    def error(self, message: str, exception: Optional[BaseException] = None):
        """Log structured error with exception details."""
        _log.error(message)
        err_details = repr(exception) if exception is not None else None
        self.log({"message": message, "exception": err_details}, level="ERROR", event="detector_error")

    def close(self):
        """Clean shutdown."""
        self.log({"message": "Audit logger shutting down"}, level="SYSTEM", event="session_end")
        with self._lock:
            if not self._file.closed:
                self._file.close()


_loggers: Dict[str, AuditLogger] = {}
_loggers_lock = threading.Lock()


def get_logger(log_dir: str = "logs") -> AuditLogger:
    """Shared AuditLogger per directory (re-opened if it was closed)."""
    key = os.path.abspath(log_dir)
    with _loggers_lock:
        logger = _loggers.get(key)
        if logger is None or logger.closed:
            logger = AuditLogger(log_dir)
            _loggers[key] = logger
        return logger


def close_logger(log_dir: str = "logs") -> None:
    """Close and forget the shared AuditLogger for a directory, if any."""
    key = os.path.abspath(log_dir)
    with _loggers_lock:
        logger = _loggers.pop(key, None)
    if logger is not None:
        logger.close()
