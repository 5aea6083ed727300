"""Metrics recorder decorator that logs controller state transitions."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Optional, Protocol

TRANSITION_MESSAGE = "controller state transition"


class _MetricsRecorder(Protocol):
    def set_mode(self, mode: str) -> None: ...

    def set_state(self, state: str) -> None: ...

    def set_target(self, target: float) -> None: ...

    def observe_oci_p95(self, value: float, fetched_at: Optional[datetime]) -> None: ...

    def observe_host_cpu(self, utilisation: float) -> None: ...


class LoggingRecorder:
    """Forwards every signal to a delegate and logs state changes."""

    def __init__(self, logger: logging.Logger, delegate: _MetricsRecorder) -> None:
        self._logger = logger
        self._delegate = delegate
        self._lock = threading.Lock()
        self._last_state = ""

    def set_mode(self, mode: str) -> None:
        """Forward the mode label."""
        self._delegate.set_mode(mode)

    def set_state(self, state: str) -> None:
        """Forward the trimmed state and log it when it changed."""
        trimmed = state.strip()
        self._delegate.set_state(trimmed)

        with self._lock:
            previous = self._last_state
            if trimmed != previous:
                self._logger.info(TRANSITION_MESSAGE, extra={"from": previous, "to": trimmed})
                self._last_state = trimmed

    def set_target(self, target: float) -> None:
        """Forward the duty-cycle target."""
        self._delegate.set_target(target)

    def observe_oci_p95(self, value: float, fetched_at: Optional[datetime]) -> None:
        """Forward an OCI P95 observation."""
        self._delegate.observe_oci_p95(value, fetched_at)

    def observe_host_cpu(self, utilisation: float) -> None:
        """Forward a host CPU observation."""
        self._delegate.observe_host_cpu(utilisation)


def new_logging_recorder(logger, delegate):
    """Wrap ``delegate`` with transition logging; without both, return ``delegate``."""
    if logger is None or delegate is None:
        return delegate
    return LoggingRecorder(logger, delegate)