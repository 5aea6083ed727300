import io
import math
from datetime import datetime, timedelta, timezone

import pytest

from cpushaper.exporter import CONTENT_TYPE, Exporter

OPEN_METRICS_CONTENT_TYPE = "application/openmetrics-text; version=1.0.0; charset=utf-8"


class FailingWriter:
    def write(self, data):
        raise OSError("failing writer")


def test_render_produces_open_metrics():
    exporter = Exporter()
    exporter.set_mode(" dry-run ")
    exporter.set_state(" fallback ")
    exporter.set_target(0.275)
    exporter.observe_oci_p95(0.33, datetime.fromtimestamp(1_700_001_234, tz=timezone.utc))
    exporter.set_duty_cycle(timedelta(microseconds=1500))
    exporter.set_worker_count(4)
    exporter.observe_host_cpu(0.6789)

    expected = "\n".join(
        [
            "# HELP shaper_target_ratio Target duty cycle ratio assigned to worker pool.",
            "# TYPE shaper_target_ratio gauge",
            "shaper_target_ratio 0.275000",
            "# HELP shaper_mode Controller operating mode (value set to 1 for the active mode).",
            "# TYPE shaper_mode gauge",
            'shaper_mode{mode="dry-run"} 1',
            "# HELP shaper_state Controller state machine output "
            "(value set to 1 for the active state).",
            "# TYPE shaper_state gauge",
            'shaper_state{state="fallback"} 1',
            "# HELP oci_p95 Last observed OCI CPU P95 ratio.",
            "# TYPE oci_p95 gauge",
            "oci_p95 0.330000",
            "# HELP oci_last_success_epoch Unix epoch seconds of the last successful "
            "OCI metrics query.",
            "# TYPE oci_last_success_epoch counter",
            "oci_last_success_epoch 1700001234",
            "# HELP duty_cycle_ms Duty cycle quantum configured for workers (milliseconds).",
            "# TYPE duty_cycle_ms gauge",
            "duty_cycle_ms 1.500",
            "# HELP worker_count Number of worker goroutines consuming CPU.",
            "# TYPE worker_count gauge",
            "worker_count 4",
            "# HELP host_cpu_percent Last recorded host CPU utilisation percentage.",
            "# TYPE host_cpu_percent gauge",
            "host_cpu_percent 67.89",
            "# EOF",
            "",
        ]
    )

    assert exporter.render().decode("utf-8") == expected


def test_wsgi_call_writes_content_type():
    exporter = Exporter()
    exporter.set_mode("noop")
    exporter.set_state("normal")
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(exporter({"REQUEST_METHOD": "GET", "PATH_INFO": "/metrics"}, start_response))

    assert captured["status"] == "200 OK"
    assert captured["headers"]["Content-Type"] == OPEN_METRICS_CONTENT_TYPE
    assert CONTENT_TYPE == OPEN_METRICS_CONTENT_TYPE
    assert body == exporter.render()
    assert captured["headers"]["Content-Length"] == str(len(body))


def test_write_to_propagates_writer_errors():
    exporter = Exporter()
    exporter.set_mode("noop")

    with pytest.raises(OSError, match="write metrics"):
        exporter.write_to(FailingWriter())


def test_write_to_rejects_missing_writer():
    with pytest.raises(ValueError, match="writer is None"):
        Exporter().write_to(None)


def test_write_to_reports_bytes_written():
    exporter = Exporter()
    exporter.set_mode("noop")
    buffer = io.BytesIO()

    written = exporter.write_to(buffer)

    assert written == len(buffer.getvalue())
    assert buffer.getvalue() == exporter.render()


def test_guards_against_invalid_inputs():
    exporter = Exporter()
    exporter.set_mode("")
    exporter.set_state(" ")
    exporter.set_target(math.nan)
    exporter.observe_oci_p95(-10, None)
    exporter.set_duty_cycle(timedelta(seconds=-1))
    exporter.set_worker_count(-5)
    exporter.observe_host_cpu(math.inf)

    output = exporter.render().decode("utf-8")

    assert 'shaper_mode{mode="unknown"} 1' in output
    assert 'shaper_state{state="unknown"} 1' in output
    assert "shaper_target_ratio 0.000000" in output
    assert "worker_count 0" in output
    assert "oci_p95 0.000000" in output
    assert "duty_cycle_ms 0.000" in output
    assert "oci_last_success_epoch 0" in output


@pytest.mark.parametrize(
    "utilisation, expected",
    [(-0.5, "0.00"), (math.nan, "0.00"), (math.inf, "0.00"), (1.75, "100.00")],
)
def test_observe_host_cpu_clamps_out_of_range_values(utilisation, expected):
    exporter = Exporter()
    exporter.observe_host_cpu(utilisation)

    assert f"host_cpu_percent {expected}\n" in exporter.render().decode("utf-8")


def test_target_is_clamped_to_unit_range():
    exporter = Exporter()
    exporter.set_target(1.5)

    assert "shaper_target_ratio 1.000000" in exporter.render().decode("utf-8")


def test_missing_fetch_time_keeps_last_success():
    exporter = Exporter()
    exporter.observe_oci_p95(0.2, datetime.fromtimestamp(1_000, tz=timezone.utc))
    exporter.observe_oci_p95(0.4, None)

    output = exporter.render().decode("utf-8")

    assert "oci_last_success_epoch 1000\n" in output
    assert "oci_p95 0.400000\n" in output