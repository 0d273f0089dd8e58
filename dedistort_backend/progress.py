"""
Hierarchical progress reporting.

A ``ProgressOperation`` is immutable: ``update`` and ``complete`` return new
operations sharing the same id, so they can be broadcast from worker threads
without synchronisation. Stages create child operations for nested work.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressOperation:
    id: str
    task: str
    progress: float = 0.0
    message: Optional[str] = None
    parent: Optional["ProgressOperation"] = None

    @classmethod
    def root(cls, task: str) -> "ProgressOperation":
        return cls(id=uuid.uuid4().hex, task=task)

    def update(self, fraction: float, message: Optional[str] = None) -> "ProgressOperation":
        fraction = min(1.0, max(0.0, float(fraction)))
        return replace(self, progress=fraction, message=message if message is not None else self.message)

    def complete(self) -> "ProgressOperation":
        return replace(self, progress=1.0)

    def create_child(self, task: str) -> "ProgressOperation":
        return ProgressOperation(id=uuid.uuid4().hex, task=task, parent=self)


class Broadcaster:
    """Receiver of progress operations."""

    def broadcast(self, operation: ProgressOperation) -> None:
        raise NotImplementedError


class NoOpBroadcaster(Broadcaster):
    def broadcast(self, operation: ProgressOperation) -> None:
        pass


class LoggingBroadcaster(Broadcaster):
    def broadcast(self, operation: ProgressOperation) -> None:
        logger.debug(f"{operation.task}: {operation.progress * 100:.1f}%")


class ProgressCounter:
    """Thread-safe counter reporting ``count / total`` on an operation."""

    def __init__(self, broadcaster: Broadcaster, operation: ProgressOperation, total: int):
        self._broadcaster = broadcaster
        self._operation = operation
        self._total = max(1, int(total))
        self._count = 0
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        with self._lock:
            self._count += amount
            count = self._count
        self._broadcaster.broadcast(self._operation.update(count / self._total))
        return count

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def complete(self) -> None:
        self._broadcaster.broadcast(self._operation.complete())
