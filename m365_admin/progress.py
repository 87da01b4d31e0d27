"""Progress observers for provisioning runs."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, List, Optional, Protocol

from .models import ProvisioningProgress


class ProgressObserver(Protocol):
    def on_progress(self, progress: ProvisioningProgress) -> None: ...


class CallbackObserver:
    """Adapts a plain callable to the observer interface."""

    def __init__(self, callback: Callable[[ProvisioningProgress], None]) -> None:
        self._callback = callback

    def on_progress(self, progress: ProvisioningProgress) -> None:
        self._callback(progress)


class LoggingProgressObserver:
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)

    def on_progress(self, progress: ProvisioningProgress) -> None:
        self._logger.info(
            "Provisioning progress: %s/%s (%s%%) - %s succeeded, %s failed",
            progress.processed,
            progress.total,
            progress.percentage,
            progress.successful,
            progress.failed,
        )


class ProgressRecorder:
    """Keeps every snapshot it receives; safe to read from another thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[ProvisioningProgress] = []

    def on_progress(self, progress: ProvisioningProgress) -> None:
        with self._lock:
            self._events.append(progress)

    @property
    def events(self) -> List[ProvisioningProgress]:
        with self._lock:
            return list(self._events)

    @property
    def latest(self) -> Optional[ProvisioningProgress]:
        with self._lock:
            return self._events[-1] if self._events else None


def notify(observers: Iterable[ProgressObserver], progress: ProvisioningProgress) -> None:
    for observer in observers:
        observer.on_progress(progress)


__all__ = [
    "CallbackObserver",
    "LoggingProgressObserver",
    "ProgressObserver",
    "ProgressRecorder",
    "notify",
]
