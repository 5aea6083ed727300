"""Host CPU utilisation sampling from cumulative /proc/stat jiffy counters."""

from __future__ import annotations

import threading
from concurrent.futures import CancelledError
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional, Protocol

DEFAULT_INTERVAL = 1.0
DEFAULT_PROC_STAT = "/proc/stat"

_MINIMUM_CPU_FIELDS = 5
_IDLE_FIELD_INDEX = 3
_IOWAIT_FIELD_INDEX = 4
_UINT64_MAX = 2**64 - 1


class SamplerAlreadyStartedError(RuntimeError):
    """Raised into the stream when a sampler is run a second time."""


class UnexpectedProcStatFormatError(ValueError):
    """The first line of /proc/stat is not the aggregate cpu line."""


class ProcStatTooShortError(ValueError):
    """The aggregate cpu line carries too few counters."""


@dataclass(frozen=True)
class Snapshot:
    """Cumulative idle and total jiffy counters at a point in time."""

    idle: int = 0
    total: int = 0


@dataclass(frozen=True)
class Observation:
    """A host CPU utilisation reading; utilisation is a ratio in [0, 1]."""

    timestamp: datetime
    utilisation: float = 0.0
    busy_jiffies: int = 0
    total_jiffies: int = 0
    error: Optional[Exception] = None


class Source(Protocol):
    """Anything able to return cumulative CPU jiffy counters."""

    def snapshot(self, stop: Optional[threading.Event] = None) -> Snapshot: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _wrap(context: str, exc: Exception) -> Exception:
    wrapped = RuntimeError(f"{context}: {exc}")
    wrapped.__cause__ = exc
    return wrapped


def _parse_counter(index: int, field: str) -> int:
    if not (field.isascii() and field.isdigit()):
        raise ValueError(f"parse field {index}: invalid syntax {field!r}")
    value = int(field)
    if value > _UINT64_MAX:
        raise ValueError(f"parse field {index}: value out of range {field!r}")
    return value


def parse_cpu_stat(stream: Iterable[str]) -> Snapshot:
    """Parse the aggregate cpu line at the top of /proc/stat content."""
    first = next(iter(stream), None)
    if first is None:
        raise EOFError("no cpu line in /proc/stat")

    line = first.rstrip("\r\n")
    if not line.startswith("cpu "):
        raise UnexpectedProcStatFormatError(f"unexpected /proc/stat format: {line!r}")

    fields = line.split()
    if len(fields) < _MINIMUM_CPU_FIELDS:
        raise ProcStatTooShortError(f"/proc/stat cpu line too short: {line!r}")

    total = 0
    idle = 0
    for index, field in enumerate(fields[1:]):
        value = _parse_counter(index + 1, field)
        total += value
        if index in (_IDLE_FIELD_INDEX, _IOWAIT_FIELD_INDEX):
            idle += value

    return Snapshot(idle=idle, total=total)


@dataclass(frozen=True)
class FileSource:
    """Reads CPU counters from a /proc/stat style file."""

    path: str = ""

    def snapshot(self, stop: Optional[threading.Event] = None) -> Snapshot:
        """Read and parse the configured file."""
        if stop is not None and stop.is_set():
            raise CancelledError("file source context: cancelled")

        path = self.path or DEFAULT_PROC_STAT
        with open(path, encoding="ascii") as handle:
            return parse_cpu_stat(handle)


def _diff_counter(previous: int, current: int) -> int:
    # A counter that went backwards has wrapped; treat it as no progress.
    return current - previous if current >= previous else 0


def build_observation(timestamp: datetime, previous: Snapshot, current: Snapshot) -> Observation:
    """Derive utilisation from the delta between two snapshots."""
    total_delta = _diff_counter(previous.total, current.total)
    idle_delta = _diff_counter(previous.idle, current.idle)
    busy_delta = 0
    utilisation = 0.0

    if total_delta > 0 and idle_delta <= total_delta:
        busy_delta = total_delta - idle_delta
        utilisation = min(max(busy_delta / total_delta, 0.0), 1.0)

    return Observation(
        timestamp=timestamp,
        utilisation=utilisation,
        busy_jiffies=busy_delta,
        total_jiffies=total_delta,
    )


class Sampler:
    """Periodically samples a source and yields utilisation observations."""

    def __init__(
        self,
        source: Optional[Source] = None,
        interval: float = DEFAULT_INTERVAL,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._source: Source = source if source is not None else FileSource()
        self._interval = interval if interval > 0 else DEFAULT_INTERVAL
        self._now = now or _utc_now
        self._started = False
        self._lock = threading.Lock()

    def run(self, stop: Optional[threading.Event] = None) -> Iterator[Observation]:
        """Start sampling; the stream ends once ``stop`` is set.

        Failures are delivered as observations carrying an ``error``.
        """
        with self._lock:
            already_started = self._started
            self._started = True

        if already_started:
            return iter((self._error(SamplerAlreadyStartedError("sampler already started")),))

        return self._sample(stop if stop is not None else threading.Event())

    def _error(self, exc: Exception) -> Observation:
        return Observation(timestamp=self._now(), error=exc)

    def _sample(self, stop: threading.Event) -> Iterator[Observation]:
        try:
            last = self._source.snapshot(stop)
        except Exception as exc:  # noqa: BLE001 - published to the consumer
            yield self._error(_wrap("initial snapshot", exc))
            return

        while not stop.wait(self._interval):
            try:
                current = self._source.snapshot(stop)
            except Exception as exc:  # noqa: BLE001 - published to the consumer
                yield self._error(_wrap("sample snapshot", exc))
                continue

            observation = build_observation(self._now(), last, current)
            last = current
            yield observation