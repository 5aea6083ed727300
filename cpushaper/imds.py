"""Client for the OCI Instance Metadata Service (IMDSv2)."""

from __future__ import annotations

import http.client
import json
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

DEFAULT_ENDPOINT = "http://169.254.169.254/opc/v2"
METADATA_AUTHORIZATION = "Bearer Oracle"
DEFAULT_TIMEOUT = 2.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF = 0.2

_IO_ERRORS = (OSError, http.client.HTTPException)


class IMDSError(Exception):
    """A metadata request failed."""

    def __init__(self, message: str, *, status: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class Response(Protocol):
    """The part of an HTTP response the client relies on."""

    def read(self) -> bytes: ...

    def close(self) -> None: ...


Transport = Callable[[urllib.request.Request], Any]


class _UrllibTransport:
    """Sends requests with urllib, returning error responses instead of raising."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def __call__(self, request: urllib.request.Request) -> Any:
        try:
            return self._opener.open(request, timeout=self._timeout)
        except urllib.error.HTTPError as exc:
            return exc


def _field(data: Mapping[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    if value is None:
        return kind()
    if isinstance(value, bool):
        raise ValueError(f"field {key!r}: cannot use bool as {kind.__name__}")
    if kind is float and isinstance(value, (int, float)):
        return float(value)
    if kind is int and isinstance(value, int):
        return value
    if kind is str and isinstance(value, str):
        return value
    raise ValueError(f"field {key!r}: cannot use {type(value).__name__} as {kind.__name__}")


@dataclass(frozen=True)
class ShapeConfig:
    """Compute shape metadata exported by IMDSv2."""

    ocpus: float = 0.0
    memory_in_gbs: float = 0.0
    baseline_ocpu_utilization: str = ""
    baseline_ocpus: float = 0.0
    threads_per_core: int = 0
    networking_bandwidth_in_gbps: float = 0.0
    max_vnic_attachments: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ShapeConfig":
        """Build a shape config from the decoded JSON document."""
        return cls(
            ocpus=_field(data, "ocpus", float),
            memory_in_gbs=_field(data, "memoryInGBs", float),
            baseline_ocpu_utilization=_field(data, "baselineOcpuUtilization", str),
            baseline_ocpus=_field(data, "baselineOcpus", float),
            threads_per_core=_field(data, "threadsPerCore", int),
            networking_bandwidth_in_gbps=_field(data, "networkingBandwidthInGbps", float),
            max_vnic_attachments=_field(data, "maxVnicAttachments", int),
        )


def _is_retryable(status: int) -> bool:
    if status in (408, 429):
        return True
    return status >= 500 and status != 501


def _status_of(response: Any) -> int:
    status = getattr(response, "status", None)
    if status is None:
        status = getattr(response, "code")
    return int(status)


class HTTPClient:
    """Issues metadata requests against the IMDSv2 service with retries."""

    def __init__(
        self,
        transport: Transport,
        base_url: str = DEFAULT_ENDPOINT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: float = DEFAULT_BACKOFF,
    ) -> None:
        self._transport = transport
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max_attempts
        self._backoff = backoff

    def region(self, stop: Optional[threading.Event] = None) -> str:
        """Return the region of the running instance."""
        return self._get_text("region", stop)

    def canonical_region(self, stop: Optional[threading.Event] = None) -> str:
        """Return the canonical region name of the running instance."""
        info = self._get_json("regionInfo", stop)
        try:
            name = _field(info, "canonicalRegionName", str)
        except ValueError as exc:
            raise IMDSError(f"decode regionInfo response: {exc}") from exc
        return name.strip()

    def instance_id(self, stop: Optional[threading.Event] = None) -> str:
        """Return the OCID of the running instance."""
        return self._get_text("id", stop)

    def compartment_id(self, stop: Optional[threading.Event] = None) -> str:
        """Return the compartment OCID of the running instance."""
        return self._get_text("compartmentId", stop)

    def shape_config(self, stop: Optional[threading.Event] = None) -> ShapeConfig:
        """Return the compute shape attributes of the instance."""
        data = self._get_json("shape-config", stop)
        try:
            return ShapeConfig.from_dict(data)
        except ValueError as exc:
            raise IMDSError(f"decode shape-config response: {exc}") from exc

    def _get_text(self, resource: str, stop: Optional[threading.Event]) -> str:
        return self._fetch(resource, stop).decode("utf-8", errors="replace").strip()

    def _get_json(self, resource: str, stop: Optional[threading.Event]) -> Mapping[str, Any]:
        payload = self._fetch(resource, stop)
        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise IMDSError(f"decode {resource} response: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise IMDSError(
                f"decode {resource} response: expected an object, got {type(data).__name__}"
            )
        return data

    def _fetch(self, resource: str, stop: Optional[threading.Event]) -> bytes:
        stop = stop if stop is not None else threading.Event()
        last: Optional[IMDSError] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                return self._try_fetch(resource, stop)
            except IMDSError as exc:
                if not exc.retryable:
                    raise
                last = exc

            if attempt == self._max_attempts:
                break
            if stop.wait(self._backoff):
                raise IMDSError(
                    f"retry wait for {resource}: context done while waiting to retry"
                ) from last

        if last is None:
            raise IMDSError(f"exhausted retry budget: {resource}")
        raise IMDSError(f"exhausted retry budget: {last}", status=last.status) from last

    def _try_fetch(self, resource: str, stop: threading.Event) -> bytes:
        request = urllib.request.Request(
            self._resource_url(resource),
            headers={"Authorization": METADATA_AUTHORIZATION},
            method="GET",
        )
        if stop.is_set():
            raise IMDSError(f"request execution failed: {resource}: cancelled")

        try:
            response = self._transport(request)
        except _IO_ERRORS as exc:
            if stop.is_set():
                raise IMDSError(f"request execution failed: {resource}: cancelled") from exc
            raise IMDSError(
                f"request execution failed: {resource}: {exc}", retryable=True
            ) from exc

        body = b""
        read_error: Optional[BaseException] = None
        close_error: Optional[BaseException] = None
        try:
            body = response.read()
        except _IO_ERRORS as exc:
            read_error = exc
        try:
            response.close()
        except _IO_ERRORS as exc:
            close_error = exc

        if read_error is not None:
            message = f"read {resource} response: {read_error}"
            if close_error is not None:
                message += f"\nclose response body: {close_error}"
            raise IMDSError(message) from read_error
        if close_error is not None:
            raise IMDSError(f"close {resource} response body: {close_error}") from close_error

        status = _status_of(response)
        if status == 200:
            return body

        if not _is_retryable(status):
            text = body.decode("utf-8", errors="replace").strip()
            raise IMDSError(
                f"unexpected status code: {resource} (status {status}, body {text})",
                status=status,
            )
        raise IMDSError(
            f"retryable status code: {resource} (status {status})",
            status=status,
            retryable=True,
        )

    def _resource_url(self, resource: str) -> str:
        trimmed = resource[1:] if resource.startswith("/") else resource
        return f"{self._base_url.rstrip('/')}/instance/{trimmed}"


def new_client(
    transport: Optional[Transport] = None,
    *,
    base_url: str = "",
    max_attempts: int = 0,
    backoff: float = 0.0,
) -> HTTPClient:
    """Build a metadata client; blank or non-positive options keep their defaults."""
    trimmed = base_url.strip()
    return HTTPClient(
        transport if transport is not None else _UrllibTransport(),
        base_url=trimmed or DEFAULT_ENDPOINT,
        max_attempts=max_attempts if max_attempts > 0 else DEFAULT_MAX_ATTEMPTS,
        backoff=backoff if backoff > 0 else DEFAULT_BACKOFF,
    )