"""
carecompanion/core/logger.py — JSONL structured event log.

One JSON object per line in ``<log dir>/care_{date}.jsonl``, a new file per
UTC day. WARN and above are mirrored to the ``carecompanion.events`` stdlib
logger (stderr). The directory comes from ``CARECOMPANION_LOG_DIR`` (default
``./logs``) or :func:`set_log_dir`.

Usage::

    from carecompanion.core.logger import get_logger
    _log = get_logger()
    _log.info("conversation", "activated", {"language": "en"})
    _log.perf("alerts", "delivered", 42.0, {"contacts": 2})
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Optional

_stdlib = logging.getLogger("carecompanion.events")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.propagate = False

#: Levels copied to stderr, with their stdlib equivalent.
_MIRRORED = {"WARN": logging.WARNING, "ERROR": logging.ERROR, "CRITICAL": logging.CRITICAL}

_LOG_DIR = Path(os.environ.get("CARECOMPANION_LOG_DIR", "logs"))

_instance: Optional["CareLogger"] = None
_instance_lock = threading.Lock()


class CareLogger:
    """
    Process-wide JSONL event log. Obtain it with :func:`get_logger`.

    Each entry carries ``timestamp_iso`` (UTC), ``level``, ``phase`` (the
    subsystem), ``event`` and ``data``; PERF entries add ``latency_ms``.
    The file is opened lazily and a ``system/startup`` entry heads every
    file this process opens.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._file: Optional[IO[str]] = None
        self._date = ""

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("WARN", phase, event, data)

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("ERROR", phase, event, data)

    def critical(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("CRITICAL", phase, event, data)

    def perf(self, phase: str, event: str, latency_ms: float, data: Optional[dict] = None) -> None:
        """Record how long *event* took, in milliseconds."""
        self._write("PERF", phase, event, data, latency_ms)

    def close(self) -> None:
        """Close the current file; the next entry reopens one."""
        with self._lock:
            if self._file is not None:
                self._file.close()
            self._file = None
            self._date = ""

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
    ) -> None:
        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)

        with self._lock:
            self._ensure_file(now)
            self._file.write(json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str) + "\n")

        if level in _MIRRORED:
            _stdlib.log(_MIRRORED[level], "[%s] %s | %s", phase, event, data or {})

    def _ensure_file(self, now: datetime) -> None:
        # Caller holds self._lock.
        today = now.strftime("%Y-%m-%d")
        if self._file is not None and today == self._date:
            return
        if self._file is not None:
            self._file.close()
        _LOG_DIR.mkdir(parents=True, exist_ok=True)
        self._file = open(_LOG_DIR / f"care_{today}.jsonl", "a", encoding="utf-8", buffering=1)  # noqa: SIM115
        self._date = today
        startup = {
            "timestamp_iso": now.isoformat(),
            "level": "INFO",
            "phase": "system",
            "event": "startup",
            "data": {"pid": os.getpid(), "python_version": sys.version.split()[0]},
        }
        self._file.write(json.dumps(startup, separators=(",", ":")) + "\n")


def set_log_dir(path: Path | str) -> None:
    """Write subsequent entries under *path*."""
    global _LOG_DIR
    _LOG_DIR = Path(path)
    if _instance is not None:
        _instance.close()


def get_logger() -> CareLogger:
    """Return the process-wide :class:`CareLogger`."""
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = CareLogger()
    return _instance
