"""
Event emission for the tile-dedistort CLI.

Progress operations and phase boundaries are written as JSON lines to
stdout and an optional log file.
"""

import json
import sys
import threading
from datetime import datetime, timezone
from typing import Any

from dedistort_backend.progress import Broadcaster, ProgressOperation


def json_dumps_canonical(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def emit(event: dict, log_fp=None, stream=None) -> None:
    """Emit event as JSON line to stdout and optional log file."""
    line = json_dumps_canonical(event)
    out = stream if stream is not None else sys.stdout
    out.write(line + "\n")
    out.flush()
    if log_fp is not None:
        log_fp.write(line + "\n")
        log_fp.flush()


def phase_start(run_id: str, log_fp, phase_name: str, extra: dict[str, Any] | None = None) -> None:
    """Emit phase_start event."""
    ev: dict[str, Any] = {
        "type": "phase_start",
        "run_id": run_id,
        "phase_name": phase_name,
        "ts": datetime.now(timezone.utc).isoformat(),
    }
    if extra:
        ev.update(extra)
    emit(ev, log_fp)


def phase_end(
    run_id: str,
    log_fp,
    phase_name: str,
    status: str,
    extra: dict[str, Any] | None = None,
) -> None:
    """Emit phase_end event."""
    ev: dict[str, Any] = {
        "type": "phase_end",
        "run_id": run_id,
        "phase_name": phase_name,
        "ts": datetime.now(timezone.utc).isoformat(),
        "status": status,
    }
    if extra:
        ev.update(extra)
    emit(ev, log_fp)


class EventBroadcaster(Broadcaster):
    """Broadcaster writing progress operations as ``progress`` events.

    Updates of the same operation are throttled to steps of ``min_delta``
    so that per-row progress does not flood the output.
    """

    def __init__(self, run_id: str, log_fp=None, stream=None, min_delta: float = 0.05):
        self.run_id = run_id
        self.log_fp = log_fp
        self.stream = stream
        self.min_delta = min_delta
        self._last: dict[str, float] = {}
        self._lock = threading.Lock()

    def broadcast(self, operation: ProgressOperation) -> None:
        done = operation.progress >= 1.0
        with self._lock:
            last = self._last.get(operation.id)
            if last is not None and not done and operation.progress - last < self.min_delta:
                return
            self._last[operation.id] = operation.progress
        ev: dict[str, Any] = {
            "type": "progress",
            "run_id": self.run_id,
            "operation": operation.id,
            "parent": operation.parent.id if operation.parent is not None else None,
            "task": operation.task,
            "progress": round(float(operation.progress), 4),
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        if operation.message:
            ev["message"] = operation.message
        emit(ev, self.log_fp, self.stream)
