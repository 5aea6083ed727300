"""Adaptive control loop driving the duty-cycle target from OCI and host feedback."""

from __future__ import annotations

import threading
from concurrent.futures import CancelledError
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Protocol, Tuple

from .sampler import Observation

_DEFAULT_MODE_LABEL = "normal"
_HOST_LOAD_SMOOTHING = 5
_SUPPRESS_RESUME_SCALE = 0.8


class State(str, Enum):
    """Controller operating state."""

    NORMAL = "normal"
    FALLBACK = "fallback"
    SUPPRESSED = "suppressed"

    def __str__(self) -> str:
        return self.value


class InvalidConfigError(ValueError):
    """The controller thresholds are not internally consistent."""


class _MetricsClient(Protocol):
    def query_p95_cpu(self, resource_id: str) -> float: ...


class _DutyCycler(Protocol):
    def set_target(self, target: float) -> None: ...


class _Estimator(Protocol):
    def run(self, stop: Optional[threading.Event] = None) -> Iterable[Observation]: ...


class _MetricsRecorder(Protocol):
    def set_mode(self, mode: str) -> None: ...

    def set_state(self, state: str) -> None: ...

    def set_target(self, target: float) -> None: ...

    def observe_oci_p95(self, value: float, fetched_at: Optional[datetime]) -> None: ...

    def observe_host_cpu(self, utilisation: float) -> None: ...


@dataclass
class Config:
    """Controller thresholds; intervals are in seconds, zero values mean default."""

    resource_id: str = ""
    mode: str = _DEFAULT_MODE_LABEL
    target_start: float = 0.25
    target_min: float = 0.22
    target_max: float = 0.40
    step_up: float = 0.02
    step_down: float = 0.01
    fallback_target: float = 0.25
    goal_low: float = 0.23
    goal_high: float = 0.30
    interval: float = 3600.0
    relaxed_interval: float = 6 * 3600.0
    relaxed_threshold: float = 0.28
    suppress_threshold: float = 0.85
    suppress_resume: float = 0.70


def default_config() -> Config:
    """Return the default controller configuration."""
    return Config()


def _clamp(value: float, lower: float, upper: float) -> float:
    if value < lower:
        return lower
    if value > upper:
        return upper
    return value


def _ensure_duration(value: float, fallback: float) -> float:
    return fallback if value <= 0 else value


def _ensure_float(value: float, fallback: float) -> float:
    return fallback if value == 0 else value


_FLOAT_FIELDS = (
    "target_start",
    "target_min",
    "target_max",
    "step_up",
    "step_down",
    "fallback_target",
    "goal_low",
    "goal_high",
    "relaxed_threshold",
    "suppress_threshold",
    "suppress_resume",
)


def _coerce_config(cfg: Config) -> Tuple[Config, str]:
    defaults = Config()
    changes = {
        name: _ensure_float(getattr(cfg, name), getattr(defaults, name)) for name in _FLOAT_FIELDS
    }
    changes["interval"] = _ensure_duration(cfg.interval, defaults.interval)
    changes["relaxed_interval"] = _ensure_duration(
        cfg.relaxed_interval, defaults.relaxed_interval
    )

    threshold = _clamp(changes["suppress_threshold"], 0.0, 1.0)
    resume = _clamp(changes["suppress_resume"], 0.0, 1.0)
    if resume >= threshold and threshold > 0:
        resume = max(threshold * _SUPPRESS_RESUME_SCALE, 0.0)
    changes["suppress_threshold"] = threshold
    changes["suppress_resume"] = resume

    mode = cfg.mode.strip() or _DEFAULT_MODE_LABEL
    return replace(cfg, **changes), mode


def _validate(cfg: Config) -> None:
    thresholds = (
        ("controller.targetStart", cfg.target_start),
        ("controller.targetMin", cfg.target_min),
        ("controller.targetMax", cfg.target_max),
        ("controller.fallbackTarget", cfg.fallback_target),
        ("controller.goalLow", cfg.goal_low),
        ("controller.goalHigh", cfg.goal_high),
    )
    for name, value in thresholds:
        if cfg.suppress_threshold <= value:
            raise InvalidConfigError(
                f"controller.suppressThreshold ({cfg.suppress_threshold:.2f}) "
                f"must be greater than {name} ({value:.2f})"
            )
        if cfg.suppress_resume <= value:
            raise InvalidConfigError(
                f"controller.suppressResume ({cfg.suppress_resume:.2f}) "
                f"must be greater than {name} ({value:.2f})"
            )


def validate_config(cfg: Config) -> None:
    """Raise InvalidConfigError when the thresholds are inconsistent."""
    normalized, _ = _coerce_config(cfg)
    _validate(normalized)


class AdaptiveController:
    """Normal/fallback/suppressed state machine steering the shaper target."""

    def __init__(
        self,
        cfg: Config,
        metrics: _MetricsClient,
        estimator: Optional[_Estimator],
        shaper: _DutyCycler,
        recorder: Optional[_MetricsRecorder] = None,
    ) -> None:
        if metrics is None:
            raise ValueError("adapt: metrics client is required")
        if shaper is None:
            raise ValueError("adapt: duty cycler is required")

        normalized, mode = _coerce_config(cfg)
        _validate(normalized)

        self._cfg = normalized
        self._metrics = metrics
        self._estimator = estimator
        self._shaper = shaper
        self._recorder = recorder

        self._lock = threading.Lock()
        self._state = State.FALLBACK
        self._slow_state = State.FALLBACK
        self._suppressed = False
        self._target = normalized.fallback_target
        self._desired = normalized.fallback_target
        self._last_p95 = 0.0
        self._last_error: Optional[Exception] = None
        self._last_est_error: Optional[Exception] = None
        self._host_load = 0.0
        self._interval = normalized.interval
        self._mode = mode

        shaper.set_target(normalized.fallback_target)
        if recorder is not None:
            recorder.set_mode(mode)
            recorder.set_state(str(self._state))
            recorder.set_target(self._target)

    def run(self, stop: Optional[threading.Event] = None) -> None:
        """Run the control loop until ``stop`` is set, then raise CancelledError."""
        stop = stop if stop is not None else threading.Event()

        if self._estimator is not None:
            consumer = threading.Thread(
                target=self._consume_estimator, args=(stop,), daemon=True
            )
            consumer.start()

        with self._lock:
            interval = self._interval

        while not stop.wait(interval):
            next_interval = self.step()
            if next_interval <= 0:
                next_interval = self._cfg.interval
            with self._lock:
                self._interval = next_interval
            interval = next_interval

        raise CancelledError("adaptive controller run: cancelled")

    def _consume_estimator(self, stop: threading.Event) -> None:
        for observation in self._estimator.run(stop):
            if stop.is_set():
                return
            self.handle_observation(observation)

    def state(self) -> State:
        """Return the current controller state."""
        with self._lock:
            return self._state

    def target(self) -> float:
        """Return the shaper target tracked by the controller."""
        with self._lock:
            return self._target

    def last_error(self) -> Optional[Exception]:
        """Return the most recent OCI metrics error, if any."""
        with self._lock:
            return self._last_error

    def last_p95(self) -> float:
        """Return the last successful OCI P95 value."""
        with self._lock:
            return self._last_p95

    def last_estimator_error(self) -> Optional[Exception]:
        """Return the last error reported by the fast estimator."""
        with self._lock:
            return self._last_est_error

    def mode(self) -> str:
        """Return the configured mode label."""
        with self._lock:
            return self._mode

    def handle_observation(self, observation: Observation) -> None:
        """Apply a host utilisation observation from the fast estimator."""
        with self._lock:
            if observation.error is not None:
                self._last_est_error = observation.error
                self._update_effective_state()
                return

            self._last_est_error = None
            if self._cfg.suppress_threshold <= 0:
                return

            utilisation = _clamp(observation.utilisation, 0.0, 1.0)
            if self._recorder is not None:
                self._recorder.observe_host_cpu(utilisation)

            self._update_host_load(utilisation)
            previously_suppressed = self._transition_suppression()
            self._apply_suppression_targets(previously_suppressed)
            self._update_effective_state()

    def _update_host_load(self, utilisation: float) -> None:
        if self._host_load == 0:
            self._host_load = utilisation
            return
        self._host_load += (utilisation - self._host_load) / _HOST_LOAD_SMOOTHING

    def _transition_suppression(self) -> bool:
        previous = self._suppressed
        if not self._suppressed and self._host_load >= self._cfg.suppress_threshold:
            self._suppressed = True
        elif self._suppressed and self._host_load <= self._cfg.suppress_resume:
            self._suppressed = False
        return previous

    def _apply_suppression_targets(self, previously_suppressed: bool) -> None:
        if self._suppressed:
            self._apply_target(0.0)
        elif previously_suppressed:
            restore = self._desired or self._cfg.target_start
            self._apply_target(_clamp(restore, self._cfg.target_min, self._cfg.target_max))

    def step(self) -> float:
        """Run one slow-loop iteration; return the interval until the next one."""
        cfg = self._cfg
        try:
            p95 = self._metrics.query_p95_cpu(cfg.resource_id)
        except Exception as exc:  # noqa: BLE001 - any failure means fallback
            with self._lock:
                self._slow_state = State.FALLBACK
                self._last_error = exc
                fallback = _clamp(cfg.fallback_target, cfg.target_min, cfg.target_max)
                self._desired = fallback
                if not self._suppressed:
                    self._apply_target(fallback)
                self._update_effective_state()
            return cfg.interval

        with self._lock:
            self._slow_state = State.NORMAL
            self._last_error = None
            self._last_p95 = p95
            if self._recorder is not None:
                self._recorder.observe_oci_p95(p95, datetime.now(timezone.utc))

            next_target = self._desired if self._suppressed else self._target
            if next_target == 0:
                next_target = cfg.target_start

            if p95 < cfg.goal_low:
                next_target += cfg.step_up
            elif p95 > cfg.goal_high:
                next_target -= cfg.step_down

            next_target = _clamp(next_target, cfg.target_min, cfg.target_max)
            self._desired = next_target
            if not self._suppressed:
                self._apply_target(next_target)
            self._update_effective_state()

        if p95 >= cfg.relaxed_threshold:
            return cfg.relaxed_interval
        return cfg.interval

    def _apply_target(self, target: float) -> None:
        self._target = target
        self._shaper.set_target(target)
        if self._recorder is not None:
            self._recorder.set_target(target)

    def _update_effective_state(self) -> None:
        self._state = State.SUPPRESSED if self._suppressed else self._slow_state
        if self._recorder is not None:
            self._recorder.set_state(str(self._state))


class NoopController:
    """A controller that does no shaping and always reports a normal state."""

    def __init__(self, mode: str = "noop") -> None:
        self._mode = mode.strip() or "noop"
        self._state = State.NORMAL
        self._last_error: Optional[Exception] = None
        self._last_estimator_error: Optional[Exception] = None

    def run(self, stop: Optional[threading.Event] = None) -> None:
        """Return at once, raising the recorded error if there is one."""
        if self._last_error is not None:
            raise self._last_error

    def mode(self) -> str:
        """Return the mode label."""
        return self._mode

    def state(self) -> State:
        """Report the controller state, which stays normal."""
        return self._state

    def last_error(self) -> Optional[Exception]:
        """Return the recorded metrics error; a no-op controller has none."""
        return self._last_error

    def last_estimator_error(self) -> Optional[Exception]:
        """Return the recorded estimator error; a no-op controller has none."""
        return self._last_estimator_error


def new_noop_controller(mode: str) -> NoopController:
    """Build a no-op controller; a blank mode becomes ``noop``."""
    return NoopController(mode)