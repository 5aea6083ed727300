import logging
from datetime import datetime, timezone

import pytest

from cpushaper.recorder import LoggingRecorder, new_logging_recorder

LOGGER_NAME = "cpushaper.tests.recorder"


class RecordingDelegate:
    def __init__(self):
        self.mode = ""
        self.state = ""
        self.target = 0.0
        self.oci_p95 = 0.0
        self.host_cpu = 0.0
        self.oci_p95_count = 0

    def set_mode(self, mode):
        self.mode = mode

    def set_state(self, state):
        self.state = state

    def set_target(self, target):
        self.target = target

    def observe_oci_p95(self, value, fetched_at):
        self.oci_p95 = value
        self.oci_p95_count += 1

    def observe_host_cpu(self, utilisation):
        self.host_cpu = utilisation


@pytest.fixture
def logger(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    return logging.getLogger(LOGGER_NAME)


def transitions(caplog):
    return [
        record
        for record in caplog.records
        if record.name == LOGGER_NAME and record.getMessage() == "controller state transition"
    ]


def test_returns_delegate_when_inputs_missing(logger):
    delegate = RecordingDelegate()

    assert new_logging_recorder(None, None) is None
    assert new_logging_recorder(logger, None) is None
    assert new_logging_recorder(None, delegate) is delegate


def test_wraps_when_both_given(logger, caplog):
    delegate = RecordingDelegate()
    recorder = new_logging_recorder(logger, delegate)

    assert isinstance(recorder, LoggingRecorder)
    assert recorder is not delegate

    recorder.set_target(0.5)
    recorder.set_state("normal")

    assert delegate.target == 0.5
    assert delegate.state == "normal"
    assert len(transitions(caplog)) == 1


def test_forwards_calls_and_logs_transitions(logger, caplog):
    delegate = RecordingDelegate()
    recorder = new_logging_recorder(logger, delegate)

    recorder.set_mode("observe")
    recorder.set_state(" fallback ")
    recorder.set_target(0.37)
    recorder.observe_oci_p95(0.42, datetime.fromtimestamp(100, timezone.utc))
    recorder.observe_host_cpu(0.55)

    assert delegate.mode == "observe"
    assert delegate.state == "fallback"
    assert delegate.target == 0.37
    assert delegate.oci_p95 == 0.42
    assert delegate.host_cpu == 0.55

    entries = transitions(caplog)
    assert len(entries) == 1
    assert getattr(entries[0], "from") == ""
    assert getattr(entries[0], "to") == "fallback"

    recorder.set_state("fallback")
    assert len(transitions(caplog)) == 1

    recorder = new_logging_recorder(logger, delegate)
    recorder.set_state("normal")
    assert len(transitions(caplog)) == 2
    assert getattr(transitions(caplog)[1], "to") == "normal"

    recorder.observe_host_cpu(0.66)
    recorder.observe_oci_p95(0.67, datetime.fromtimestamp(200, timezone.utc))

    assert delegate.oci_p95_count == 2
    assert delegate.host_cpu == 0.66


def test_transition_logs_previous_state(logger, caplog):
    recorder = new_logging_recorder(logger, RecordingDelegate())

    recorder.set_state("normal")
    recorder.set_state("suppressed")

    entries = transitions(caplog)
    assert [(getattr(e, "from"), getattr(e, "to")) for e in entries] == [
        ("", "normal"),
        ("normal", "suppressed"),
    ]