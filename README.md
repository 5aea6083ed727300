# cpushaper

`cpushaper` is a library for keeping a compute instance's CPU utilisation
inside a chosen band. An adaptive controller reads a slow P95 CPU signal from
a metrics client you supply and moves a duty-cycle target up or down. A fast
host sampler built on `/proc/stat` can pull the target to zero while the host
is busy. The controller's signals can be published as OpenMetrics text, and
its health as a JSON document.

The package uses only the standard library and needs Python 3.10 or later.

## Modules

- `cpushaper.controller`: the adaptive state machine.
  - `AdaptiveController(cfg, metrics, estimator, shaper, recorder=None)`.
    `metrics` needs a `query_p95_cpu(resource_id)` method. `shaper` needs
    `set_target(target)`. `estimator` may be `None` or any object whose
    `run(stop)` yields `sampler.Observation` values. `recorder` is optional
    and receives `set_mode`, `set_state`, `set_target`, `observe_oci_p95` and
    `observe_host_cpu` calls. The `Exporter` below fits this role.
  - `step()` runs one slow-loop iteration and returns the number of seconds
    until the next one. `handle_observation(observation)` applies one host
    reading. `run(stop)` loops until the `threading.Event` `stop` is set, then
    raises `concurrent.futures.CancelledError`.
  - `state()`, `target()`, `last_p95()`, `last_error()`,
    `last_estimator_error()` and `mode()` read the controller's current values.
  - `State` has the members `NORMAL`, `FALLBACK` and `SUPPRESSED`. `Config`
    holds the thresholds; intervals are in seconds and zero values fall back
    to the defaults. `default_config()` returns the defaults.
    `validate_config(cfg)` raises `InvalidConfigError` when the thresholds are
    inconsistent.
  - `NoopController` and `new_noop_controller(mode)` give a controller that
    does nothing and always reports `State.NORMAL`. A blank mode becomes
    `"noop"`.
- `cpushaper.sampler`: host CPU sampling.
  - `parse_cpu_stat(lines)` reads the aggregate `cpu` line into a `Snapshot`.
    Idle time counts both the idle and the iowait counters.
  - `FileSource(path)` reads `/proc/stat` by default.
  - `build_observation(timestamp, previous, current)` turns two snapshots into
    an `Observation`. A counter that went backwards counts as no progress.
  - `Sampler(source, interval, now)` yields observations from `run(stop)`.
    Failures arrive as observations whose `error` is set. Running the same
    sampler a second time yields a single `SamplerAlreadyStartedError`
    observation.
- `cpushaper.exporter`: `Exporter` records the controller signals and renders
  them as OpenMetrics text with `render()` or `write_to(binary_stream)`.
  Exporter values are clamped as follows. The target is kept in 0 to 1; host
  CPU is stored as a percentage capped at 100; negative, NaN and infinite
  inputs become 0; blank mode or state labels become `unknown`. An `Exporter`
  instance is also a WSGI application.
- `cpushaper.status`: `StatusHandler(controller)` is a WSGI application that
  returns `{"state", "ociError", "estimatorError"}` as JSON. Without a
  controller it answers 503. `snapshot()` returns the same data as a
  `Snapshot`.
- `cpushaper.imds`: `new_client(transport=None, *, base_url, max_attempts,
  backoff)` builds an `HTTPClient` for the instance metadata service. The
  client offers `region()`, `canonical_region()`, `instance_id()`,
  `compartment_id()` and `shape_config()`, the last returning a
  `ShapeConfig`. Requests are retried after transport errors and after status
  408, 429 and 5xx (501 excepted). The default is 3 attempts, 0.2 s apart.
  Failures raise `IMDSError`.
- `cpushaper.monitoring`: `new_monitoring_client(endpoint)` returns a
  `MonitoringClient`. Its `query_p95_cpu(resource_id)` sends
  `GET endpoint?resource=<id>` and reads `{"value": ...}` from the response.
  A 204 response raises `NoMetricsDataError`; other failures raise
  `MonitoringError`. The client works as the controller's metrics source.
- `cpushaper.recorder`: `new_logging_recorder(logger, delegate)` wraps a
  recorder. Every call is forwarded to the delegate, and each change of state
  is logged at INFO level as `controller state transition`, with `from` and
  `to` passed in `extra`.
- `cpushaper.alarmguard`: checks for the Always Free P95 guardrail alarm.
  - `parse_config(args)` reads the flags `-compartment`,
    `-metric-compartment`, `-instance`, `-region`, `-timeout`,
    `-require-destinations`, `-expected-pending` and `-expected-resolution`
    into a `GuardConfig`. Missing or invalid values raise `ConfigError`.
  - `query_matches`, `summary_matches` and `detail_matches` test an alarm
    against the guardrail requirements.
  - `find_guardrail(client, cfg)` pages through the active alarms. `client`
    must supply `list_alarms(...)`, which returns an `AlarmPage`, and
    `get_alarm(alarm_id)`, which returns an `Alarm`.
- `cpushaper.buildinfo`: `current()` returns the version, commit and build
  date as an `Info`.

## Examples

Compute utilisation from `/proc/stat` data:

```python
import io
from datetime import datetime, timezone

from cpushaper.sampler import Snapshot, build_observation, parse_cpu_stat

snap = parse_cpu_stat(io.StringIO("cpu  1 2 3 4 5 6 7 8 9 10\n"))
print(snap.idle, snap.total)  # 9 55

obs = build_observation(
    datetime.now(timezone.utc),
    Snapshot(idle=40, total=100),
    Snapshot(idle=50, total=140),
)
print(obs.utilisation)  # 0.75
```

Drive the controller one step at a time:

```python
from cpushaper.controller import AdaptiveController, default_config


class Metrics:
    def query_p95_cpu(self, resource_id):
        return 0.20


class Shaper:
    def set_target(self, target):
        self.target = target


controller = AdaptiveController(default_config(), Metrics(), None, Shaper())
print(controller.state())                # fallback
print(controller.step())                 # 3600.0
print(controller.state())                # normal
print(round(controller.target(), 2))     # 0.27
```

Render metrics:

```python
from cpushaper.exporter import Exporter

exporter = Exporter()
exporter.set_mode("enforce")
exporter.set_state("normal")
exporter.set_target(0.25)
exporter.observe_host_cpu(0.42)
print(exporter.render().decode())
```

Check a controller configuration:

```python
from cpushaper.controller import InvalidConfigError, default_config, validate_config

cfg = default_config()
validate_config(cfg)  # the defaults are consistent

cfg.suppress_threshold = 0.20
try:
    validate_config(cfg)
except InvalidConfigError as exc:
    print(exc)
```

Check whether an alarm query is a valid guardrail for an instance:

```python
from cpushaper.alarmguard import query_matches

query = (
    'CpuUtilization[1m]{resourceId="ocid1.instance.oc1..example"}'
    ".window(7d).percentile(0.95) < 20"
)
print(query_matches(query, "ocid1.instance.oc1..example"))  # True
```

## Controller defaults

| Setting            | Default |
|--------------------|---------|
| start target       | 0.25    |
| target range       | 0.22 to 0.40 |
| step up / down     | 0.02 / 0.01 |
| fallback target    | 0.25    |
| goal band (P95)    | 0.23 to 0.30 |
| interval           | 3600 s  |
| relaxed interval   | 21600 s, used once P95 reaches 0.28 |
| suppress / resume  | 0.85 / 0.70 smoothed host utilisation |

## What the package does not do

- It has no command-line program and installs no scripts. Everything here is
  used as a library.
- It does not generate CPU load itself. The worker pool that follows the
  target is the `shaper` object you pass to `AdaptiveController`.
- It has no client for the cloud provider's own Monitoring API. The
  controller's metrics source is whatever object you pass, such as
  `MonitoringClient`. `find_guardrail` likewise expects you to supply the
  alarm-listing client.
- It runs no HTTP server. `Exporter` and `StatusHandler` are WSGI
  applications, and must be mounted in a WSGI server such as
  `wsgiref.simple_server` to be reached over HTTP.