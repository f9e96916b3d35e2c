"""
Tests for log redaction, run context and the metrics collector.
"""

import json
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from monitoring.logging import (
    ConsoleFormatter,
    JSONFormatter,
    LoggingContext,
    get_run_context,
    redact_sensitive_data,
    redact_string,
)
from monitoring.metrics import MetricsCollector


def make_record(message, **extra):
    record = logging.LogRecord("orchestrator", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRedaction:
    """Secrets must never reach log output."""

    def test_named_secret_values(self):
        assert redact_string("randomness=12345") == "randomness=[REDACTED]"
        assert "hunter2" not in redact_string('{"password": "hunter2"}')

    def test_bearer_token(self):
        assert redact_string("Authorization: Bearer abc.def") == "Authorization: Bearer [REDACTED]"

    def test_ciphertext_blob(self):
        assert redact_string("stored ENC:1:QUJDRA==") == "stored ENC:1:[REDACTED]"

    def test_wallet_signature(self):
        assert redact_string("sig 0x" + "ab" * 65) == "sig [REDACTED_SIGNATURE]"

    def test_wallet_address_shortened(self):
        address = "0x1234" + "0" * 32 + "abcd"
        assert redact_string(address) == "0x1234...abcd"

    def test_email_partially_redacted(self):
        assert redact_string("user@example.com") == "user[...]@example.com"

    def test_sensitive_fields_replaced(self):
        data = {"attrs": {"followers": 10}, "snapshot_id": "s1",
                "nested": [{"randomness": "42", "provider": "github"}]}
        redacted = redact_sensitive_data(data)
        assert redacted["attrs"] == "[REDACTED]"
        assert redacted["snapshot_id"] == "s1"
        assert redacted["nested"][0] == {"randomness": "[REDACTED]", "provider": "github"}

    def test_max_depth(self):
        data = current = {}
        for _ in range(15):
            current["child"] = {}
            current = current["child"]
        assert "[MAX_DEPTH_EXCEEDED]" in json.dumps(redact_sensitive_data(data))


class TestFormatters:
    """Tests for JSON and console formatters."""

    def test_json_formatter_redacts_message_and_extras(self):
        record = make_record("key derived with signature=0xdeadbeef", attributes={"kyc_level": 2})
        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert "0xdeadbeef" not in entry["message"]
        assert entry["attributes"] == "[REDACTED]"

    def test_json_formatter_redacts_sensitive_extra_names(self):
        record = make_record("normalized", attrs={"followers": 340}, provider="github")
        entry = json.loads(JSONFormatter().format(record))

        assert entry["attrs"] == "[REDACTED]"
        assert entry["provider"] == "github"

    def test_json_formatter_includes_run_context(self):
        with LoggingContext(run_id="run-1", provider="github"):
            entry = json.loads(JSONFormatter().format(make_record("capturing")))
        assert entry["context"] == {"run_id": "run-1", "provider": "github"}

    def test_console_formatter_redacts(self):
        output = ConsoleFormatter().format(make_record("token=abc123"))
        assert "abc123" not in output

    def test_console_formatter_redacts_sensitive_extra_names(self):
        output = ConsoleFormatter().format(make_record("normalized", attributes={"kyc_level": 2}))
        assert "kyc_level" not in output
        assert "attributes=[REDACTED]" in output


class TestLoggingContext:
    """Tests for LoggingContext."""

    def test_restores_previous_context(self):
        with LoggingContext(run_id="outer"):
            with LoggingContext(provider="github"):
                assert get_run_context() == {"run_id": "outer", "provider": "github"}
            assert get_run_context() == {"run_id": "outer"}
        assert get_run_context() == {}


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_counters_by_label(self):
        collector = MetricsCollector()
        collector.increment("runs_total", labels={"outcome": "success"})
        collector.increment("runs_total", labels={"outcome": "success"})
        collector.increment("runs_total", labels={"outcome": "busy"})

        assert collector.get_counter("runs_total", labels={"outcome": "success"}) == 2
        assert collector.get_counter("runs_total", labels={"outcome": "aborted"}) == 0

    def test_gauges(self):
        collector = MetricsCollector()
        collector.increment_gauge("runs_in_flight")
        collector.increment_gauge("runs_in_flight")
        collector.decrement_gauge("runs_in_flight")
        assert collector.get_gauge("runs_in_flight") == 1.0
        collector.set_gauge("runs_in_flight", 0)
        assert collector.get_gauge("runs_in_flight") == 0

    def test_histogram_buckets_are_cumulative(self):
        collector = MetricsCollector()
        collector.timing("capture_duration_ms", 75)
        collector.timing("capture_duration_ms", 400)

        histogram = collector.get_histogram("capture_duration_ms")
        buckets = dict(histogram.buckets())
        assert histogram.count == 2
        assert buckets["50"] == 0
        assert buckets["100"] == 1
        assert buckets["500"] == 2
        assert buckets["+Inf"] == 2

    def test_timer_records_observation(self):
        collector = MetricsCollector()
        with collector.timer("persist_ms"):
            pass
        assert collector.get_histogram("persist_ms").count == 1

    def test_prometheus_export(self):
        collector = MetricsCollector()
        collector.increment("capture_fallback_total", labels={"provider": "github"})
        collector.timing("capture_duration_ms", 10)

        text = collector.to_prometheus()

        assert 'zktls_capture_fallback_total{provider="github"} 1' in text
        assert '# TYPE zktls_capture_duration_ms histogram' in text
        assert 'zktls_capture_duration_ms_bucket{le="+Inf"} 1' in text

    def test_reset(self):
        collector = MetricsCollector()
        collector.increment("x")
        collector.reset()
        assert collector.get_all()["counters"] == {}
