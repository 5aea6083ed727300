"""Verification that an Always Free P95 guardrail alarm protects an instance."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

LIFECYCLE_ACTIVE = "ACTIVE"
DEFAULT_TIMEOUT = 60.0
DEFAULT_PENDING_DURATION = "PT1H"
DEFAULT_RESOLUTION = "1m"
LIST_PAGE_LIMIT = 1000

_NAMESPACE = "oci_computeagent"


class ConfigError(ValueError):
    """The command-line configuration is missing or invalid."""


@dataclass
class GuardConfig:
    """What the guardrail alarm is expected to look like; timeout in seconds."""

    compartment_id: str = ""
    metric_compartment_id: str = ""
    instance_id: str = ""
    region: str = ""
    require_destinations: bool = True
    timeout: float = DEFAULT_TIMEOUT
    expected_pending: str = DEFAULT_PENDING_DURATION
    expected_resolution: str = DEFAULT_RESOLUTION

    def validate(self) -> None:
        """Raise ConfigError when a required setting is missing or invalid."""
        if not self.compartment_id:
            raise ConfigError("compartment OCID is required")
        if not self.instance_id:
            raise ConfigError("instance OCID is required")
        if not self.region:
            raise ConfigError("region is required")
        if self.timeout <= 0:
            raise ConfigError("timeout must be greater than zero")


@dataclass(frozen=True)
class AlarmSummary:
    """An alarm as returned by the alarm listing."""

    id: Optional[str] = None
    lifecycle_state: str = ""
    is_enabled: Optional[bool] = None
    namespace: Optional[str] = None
    destinations: Sequence[str] = field(default_factory=tuple)
    query: Optional[str] = None


@dataclass(frozen=True)
class Alarm:
    """The detailed view of a single alarm."""

    namespace: Optional[str] = None
    query: Optional[str] = None
    metric_compartment_id: Optional[str] = None
    pending_duration: Optional[str] = None
    resolution: Optional[str] = None


@dataclass(frozen=True)
class AlarmPage:
    """One page of alarm summaries and the token of the next page, if any."""

    items: Sequence[AlarmSummary] = field(default_factory=tuple)
    next_page: Optional[str] = None


class _MonitoringClient(Protocol):
    def list_alarms(
        self,
        *,
        compartment_id: str,
        lifecycle_state: str,
        limit: int,
        page: Optional[str],
    ) -> AlarmPage: ...

    def get_alarm(self, alarm_id: Optional[str]) -> Alarm: ...


_DURATION_UNITS: Dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _parse_duration(text: str) -> float:
    """Parse a duration such as ``45s`` or ``1h30m`` into seconds."""
    body = text
    sign = 1.0
    if body[:1] in ("+", "-"):
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return 0.0
    if not body:
        raise ValueError(f"invalid duration {text!r}")

    total = 0.0
    position = 0
    while position < len(body):
        match = _DURATION_PART.match(body, position)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    return sign * total


_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean value {text!r}")


_STRING_FLAGS = {
    "compartment": "compartment_id",
    "metric-compartment": "metric_compartment_id",
    "instance": "instance_id",
    "region": "region",
    "expected-pending": "expected_pending",
    "expected-resolution": "expected_resolution",
}


def _parse_flags(args: Sequence[str], cfg: GuardConfig) -> None:
    remaining: List[str] = list(args)
    while remaining:
        arg = remaining[0]
        if len(arg) < 2 or not arg.startswith("-"):
            return
        if arg == "--":
            return
        remaining.pop(0)

        name = arg[2:] if arg.startswith("--") else arg[1:]
        if not name or name.startswith("-") or name.startswith("="):
            raise ConfigError(f"parse flags: bad flag syntax: {arg}")

        value: Optional[str] = None
        if "=" in name:
            name, value = name.split("=", 1)

        if name in ("h", "help"):
            raise ConfigError("parse flags: help requested")

        if name == "require-destinations":
            try:
                cfg.require_destinations = True if value is None else _parse_bool(value)
            except ValueError as exc:
                raise ConfigError(f"parse flags: invalid value for -{name}: {exc}") from exc
            continue

        if name not in _STRING_FLAGS and name != "timeout":
            raise ConfigError(f"parse flags: flag provided but not defined: -{name}")

        if value is None:
            if not remaining:
                raise ConfigError(f"parse flags: flag needs an argument: -{name}")
            value = remaining.pop(0)

        if name == "timeout":
            try:
                cfg.timeout = _parse_duration(value)
            except ValueError as exc:
                raise ConfigError(f"parse flags: invalid value for -{name}: {exc}") from exc
        else:
            setattr(cfg, _STRING_FLAGS[name], value)


def parse_config(args: Sequence[str]) -> GuardConfig:
    """Parse command-line flags into a validated GuardConfig."""
    cfg = GuardConfig()
    _parse_flags(args, cfg)
    cfg.validate()
    return cfg


def query_matches(query: Optional[str], instance_id: str) -> bool:
    """Report whether an MQL query is the P95 guardrail for the instance."""
    if not query:
        return False

    normalized = query.replace(" ", "").replace("\n", "").lower()
    expected_resource = f'resourceid="{instance_id.lower()}"'

    return all(
        fragment in normalized
        for fragment in (
            "cpuutilization[1m]{",
            expected_resource,
            ".window(7d).",
            ".percentile(0.95)",
            "<20",
        )
    )


def _namespace_matches(namespace: Optional[str]) -> bool:
    return (namespace or "").lower() == _NAMESPACE


def _optional_namespace_matches(namespace: Optional[str]) -> bool:
    return namespace is None or _namespace_matches(namespace)


def _metric_compartment_matches(actual: Optional[str], expected: str) -> bool:
    return not expected or (actual or "") == expected


def _equal_fold_matches(actual: Optional[str], expected: str) -> bool:
    if not expected:
        return True
    if actual is None:
        return False
    return actual.casefold() == expected.casefold()


def summary_matches(summary: AlarmSummary, cfg: GuardConfig) -> bool:
    """Check the listing view of an alarm against the guardrail requirements."""
    if summary.lifecycle_state != LIFECYCLE_ACTIVE:
        return False
    if not summary.is_enabled:
        return False
    if cfg.require_destinations and not summary.destinations:
        return False
    if not _namespace_matches(summary.namespace):
        return False
    return query_matches(summary.query, cfg.instance_id)


def detail_matches(summary: AlarmSummary, detail: Alarm, cfg: GuardConfig) -> bool:
    """Check the detailed view of an alarm against the guardrail requirements."""
    if not _optional_namespace_matches(detail.namespace):
        return False

    query = detail.query or summary.query or ""
    if not query_matches(query, cfg.instance_id):
        return False
    if not _metric_compartment_matches(detail.metric_compartment_id, cfg.metric_compartment_id):
        return False
    if not _equal_fold_matches(detail.pending_duration, cfg.expected_pending):
        return False
    return _equal_fold_matches(detail.resolution, cfg.expected_resolution)


def find_guardrail(client: _MonitoringClient, cfg: GuardConfig) -> bool:
    """Page through active alarms and report whether a matching guardrail exists."""
    page: Optional[str] = None
    while True:
        try:
            response = client.list_alarms(
                compartment_id=cfg.compartment_id,
                lifecycle_state=LIFECYCLE_ACTIVE,
                limit=LIST_PAGE_LIMIT,
                page=page,
            )
        except Exception as exc:
            raise RuntimeError(f"list alarms: {exc}") from exc

        for summary in response.items:
            if not summary_matches(summary, cfg):
                continue
            try:
                detail = client.get_alarm(summary.id)
            except Exception as exc:
                raise RuntimeError(f"get alarm {summary.id or ''}: {exc}") from exc
            if detail_matches(summary, detail, cfg):
                return True

        if not response.next_page:
            return False
        page = response.next_page