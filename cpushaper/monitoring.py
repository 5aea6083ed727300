"""HTTP-backed P95 CPU metrics client used against test monitoring endpoints."""

from __future__ import annotations

import contextlib
import http.client
import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

MONITORING_ENDPOINT_ENV = "OCI_CPU_SHAPER_E2E_MONITORING_ENDPOINT"
DEFAULT_TIMEOUT = 2.0

_RESPONSE_BODY_LIMIT = 512
_IO_ERRORS = (OSError, http.client.HTTPException)


class NoMetricsDataError(LookupError):
    """The monitoring backend returned no datapoints."""


class MonitoringError(RuntimeError):
    """A monitoring query failed."""


def _with_resource(endpoint: str, resource_id: str) -> str:
    parts = urllib.parse.urlsplit(endpoint)
    query = urllib.parse.urlencode({"resource": resource_id})
    return urllib.parse.urlunsplit(parts._replace(query=query))


def _status_of(response: Any) -> int:
    status = getattr(response, "status", None)
    if status is None:
        status = getattr(response, "code")
    return int(status)


class MonitoringClient:
    """Queries a monitoring endpoint returning ``{"value": <p95>}`` documents."""

    def __init__(self, endpoint: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._endpoint = endpoint
        self._timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def query_p95_cpu(self, resource_id: str) -> float:
        """Return the P95 CPU value the endpoint reports for ``resource_id``."""
        request = urllib.request.Request(
            _with_resource(self._endpoint, resource_id), method="GET"
        )
        try:
            response = self._opener.open(request, timeout=self._timeout)
        except urllib.error.HTTPError as exc:
            response = exc
        except _IO_ERRORS as exc:
            raise MonitoringError(f"monitoring client: execute request: {exc}") from exc

        with contextlib.closing(response):
            status = _status_of(response)
            if status == 204:
                raise NoMetricsDataError("no metrics data")

            if status != 200:
                try:
                    body = response.read(_RESPONSE_BODY_LIMIT)
                except _IO_ERRORS:
                    body = b""
                if not body:
                    raise MonitoringError(f"monitoring client: unexpected status: {status}")
                text = body.decode("utf-8", errors="replace").strip()
                raise MonitoringError(f"monitoring client: response body: {text}")

            try:
                raw = response.read()
            except _IO_ERRORS as exc:
                raise MonitoringError(f"monitoring client: decode payload: {exc}") from exc

        return _decode_value(raw)


def _decode_value(raw: bytes) -> float:
    try:
        text = raw.decode("utf-8").lstrip()
        payload, _ = json.JSONDecoder().raw_decode(text)
    except ValueError as exc:
        raise MonitoringError(f"monitoring client: decode payload: {exc}") from exc

    if payload is None:
        return 0.0
    if not isinstance(payload, dict):
        raise MonitoringError(
            f"monitoring client: decode payload: expected an object, got {type(payload).__name__}"
        )

    value = payload.get("value")
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MonitoringError(
            f"monitoring client: decode payload: value is {type(value).__name__}, not a number"
        )
    return float(value)


def new_monitoring_client(endpoint: str) -> MonitoringClient:
    """Build a client for ``endpoint``; a blank endpoint is rejected."""
    trimmed = endpoint.strip()
    if not trimmed:
        raise ValueError("monitoring client: endpoint is required")
    return MonitoringClient(trimmed)