"""OpenMetrics exporter for controller and estimator signals."""

from __future__ import annotations

import io
import math
import threading
from datetime import datetime, timedelta
from typing import BinaryIO, Callable, Iterable, List, Optional, Tuple

CONTENT_TYPE = "application/openmetrics-text; version=1.0.0; charset=utf-8"

_MILLISECONDS_PER_SECOND = 1000.0
_HUNDRED_PERCENT = 100.0


def _finite_or_zero(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def _label(value: str) -> str:
    trimmed = value.strip()
    return trimmed or "unknown"


class Exporter:
    """Tracks shaper metrics and serves them as OpenMetrics text (WSGI app)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._shaper_target = 0.0
        self._shaper_mode = ""
        self._shaper_state = ""
        self._oci_p95 = 0.0
        self._oci_last_success: Optional[datetime] = None
        self._duty_cycle_millis = 0.0
        self._worker_count = 0.0
        self._host_cpu_percent = 0.0

    def set_mode(self, mode: str) -> None:
        """Record the controller mode label."""
        label = _label(mode)
        with self._lock:
            self._shaper_mode = label

    def set_state(self, state: str) -> None:
        """Record the controller state label."""
        label = _label(state)
        with self._lock:
            self._shaper_state = label

    def set_target(self, target: float) -> None:
        """Store the duty-cycle target ratio, clamped to [0, 1]."""
        clamped = max(0.0, min(1.0, _finite_or_zero(target)))
        with self._lock:
            self._shaper_target = clamped

    def observe_oci_p95(self, value: float, fetched_at: Optional[datetime] = None) -> None:
        """Record the latest OCI P95 ratio and when it was fetched."""
        value = max(_finite_or_zero(value), 0.0)
        with self._lock:
            self._oci_p95 = value
            if fetched_at is not None:
                self._oci_last_success = fetched_at

    def set_duty_cycle(self, duration: timedelta) -> None:
        """Store the worker duty-cycle quantum."""
        millis = _finite_or_zero(duration.total_seconds() * _MILLISECONDS_PER_SECOND)
        with self._lock:
            self._duty_cycle_millis = max(millis, 0.0)

    def set_worker_count(self, count: int) -> None:
        """Record the number of active workers."""
        with self._lock:
            self._worker_count = float(max(count, 0))

    def observe_host_cpu(self, utilisation: float) -> None:
        """Record host CPU utilisation (a ratio) as a percentage."""
        utilisation = max(_finite_or_zero(utilisation), 0.0)
        percent = min(utilisation * _HUNDRED_PERCENT, _HUNDRED_PERCENT)
        with self._lock:
            self._host_cpu_percent = percent

    def _lines(self) -> List[str]:
        with self._lock:
            epoch = (
                float(math.floor(self._oci_last_success.timestamp()))
                if self._oci_last_success is not None
                else 0.0
            )
            target = self._shaper_target
            mode = self._shaper_mode
            state = self._shaper_state
            p95 = self._oci_p95
            duty = self._duty_cycle_millis
            workers = self._worker_count
            host = self._host_cpu_percent

        return [
            "# HELP shaper_target_ratio Target duty cycle ratio assigned to worker pool.\n",
            "# TYPE shaper_target_ratio gauge\n",
            f"shaper_target_ratio {target:.6f}\n",
            "# HELP shaper_mode Controller operating mode (value set to 1 for the active mode).\n",
            "# TYPE shaper_mode gauge\n",
            f'shaper_mode{{mode="{mode}"}} 1\n',
            "# HELP shaper_state Controller state machine output "
            "(value set to 1 for the active state).\n",
            "# TYPE shaper_state gauge\n",
            f'shaper_state{{state="{state}"}} 1\n',
            "# HELP oci_p95 Last observed OCI CPU P95 ratio.\n",
            "# TYPE oci_p95 gauge\n",
            f"oci_p95 {p95:.6f}\n",
            "# HELP oci_last_success_epoch Unix epoch seconds of the last successful "
            "OCI metrics query.\n",
            "# TYPE oci_last_success_epoch counter\n",
            f"oci_last_success_epoch {epoch:.0f}\n",
            "# HELP duty_cycle_ms Duty cycle quantum configured for workers (milliseconds).\n",
            "# TYPE duty_cycle_ms gauge\n",
            f"duty_cycle_ms {duty:.3f}\n",
            "# HELP worker_count Number of worker goroutines consuming CPU.\n",
            "# TYPE worker_count gauge\n",
            f"worker_count {workers:.0f}\n",
            "# HELP host_cpu_percent Last recorded host CPU utilisation percentage.\n",
            "# TYPE host_cpu_percent gauge\n",
            f"host_cpu_percent {host:.2f}\n",
            "# EOF\n",
        ]

    def write_to(self, dst: BinaryIO) -> int:
        """Write the current snapshot to a binary stream; return bytes written."""
        if dst is None:
            raise ValueError("metrics writer is None")

        total = 0
        for line in self._lines():
            data = line.encode("utf-8")
            try:
                written = dst.write(data)
            except OSError as exc:
                raise OSError(f"write metrics: {exc}") from exc
            total += len(data) if written is None else written
        return total

    def render(self) -> bytes:
        """Return the current snapshot encoded as OpenMetrics text."""
        buffer = io.BytesIO()
        self.write_to(buffer)
        return buffer.getvalue()

    def __call__(
        self,
        environ: dict,
        start_response: Callable[[str, List[Tuple[str, str]]], object],
    ) -> Iterable[bytes]:
        try:
            body = self.render()
        except OSError as exc:
            message = f"{exc}\n".encode("utf-8")
            start_response(
                "500 Internal Server Error",
                [
                    ("Content-Type", "text/plain; charset=utf-8"),
                    ("Content-Length", str(len(message))),
                ],
            )
            return [message]

        start_response(
            "200 OK",
            [("Content-Type", CONTENT_TYPE), ("Content-Length", str(len(body)))],
        )
        return [body]