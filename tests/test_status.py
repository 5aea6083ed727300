import json

import pytest

from cpushaper.controller import NoopController, State
from cpushaper.status import Snapshot, StatusHandler


class StubController:
    def __init__(self, state, oci_error=None, est_error=None):
        self._state = state
        self._oci_error = oci_error
        self._est_error = est_error

    def state(self):
        return self._state

    def last_error(self):
        return self._oci_error

    def last_estimator_error(self):
        return self._est_error


def call_app(app):
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app({"REQUEST_METHOD": "GET", "PATH_INFO": "/healthz"}, start_response))
    return captured["status"], captured["headers"], body


def test_handler_returns_snapshot():
    controller = StubController(
        State.FALLBACK,
        RuntimeError("metrics unavailable"),
        RuntimeError("estimator stalled"),
    )
    status, headers, body = call_app(StatusHandler(controller))

    assert status.startswith("200")
    assert headers["Content-Type"] == "application/json"
    document = json.loads(body)
    assert document == {
        "state": "fallback",
        "ociError": "metrics unavailable",
        "estimatorError": "estimator stalled",
    }


def test_handler_without_controller_returns_service_unavailable():
    status, headers, body = call_app(StatusHandler(None))

    assert status.startswith("503")
    assert body == b"controller unavailable\n"
    assert headers["Content-Type"].startswith("text/plain")


def test_snapshot_without_errors_has_empty_strings():
    snapshot = StatusHandler(NoopController("noop")).snapshot()

    assert snapshot == Snapshot(state="normal", last_oci_error="", estimator_error="")


def test_snapshot_without_controller_raises():
    with pytest.raises(RuntimeError, match="controller unavailable"):
        StatusHandler(None).snapshot()


def test_snapshot_json_uses_wire_field_names():
    encoded = Snapshot(state="suppressed", last_oci_error="boom").to_json()

    assert encoded == b'{"state":"suppressed","ociError":"boom","estimatorError":""}'