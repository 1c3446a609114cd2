"""
Tests for monitoring (src/monitoring/)

Tests cover:
- Redaction of deposit secrets and addresses
- Operation context and formatters
- Metrics: counters, gauges, histograms, Prometheus export
"""

import json
import logging
import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from monitoring import LoggingContext, MetricsCollector, configure_logging, redact_sensitive_data
from monitoring.logging import (
    ConsoleFormatter,
    JSONFormatter,
    clear_log_context,
    get_log_context,
    redact_string,
    set_log_context,
)

ADDRESS = "0x" + "1234" + "ab" * 16 + "5678"


def make_record(msg, level=logging.INFO, **extra):
    record = logging.LogRecord("privacy_pool", level, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ============================================================
# Redaction
# ============================================================

class TestRedaction:
    """Tests for redact_sensitive_data and redact_string."""

    def test_secret_fields(self):
        data = {
            "secret": "123",
            "nullifierSeed": "456",
            "out-secret": "789",
            "leaf_index": 4,
            "nested": {"encryption_key": "k", "pool": "0.1"},
        }
        redacted = redact_sensitive_data(data)

        assert redacted["secret"] == "[REDACTED]"
        assert redacted["nullifierSeed"] == "[REDACTED]"
        assert redacted["out-secret"] == "[REDACTED]"
        assert redacted["leaf_index"] == 4
        assert redacted["nested"] == {"encryption_key": "[REDACTED]", "pool": "0.1"}

    def test_lists(self):
        assert redact_sensitive_data([{"secret": 1}, 2]) == [{"secret": "[REDACTED]"}, 2]

    def test_inline_values(self):
        text = redact_string("loaded note secret=98765 nullifier_seed: 4321")
        assert "98765" not in text
        assert "4321" not in text

    def test_bearer_token(self):
        assert redact_string("Authorization: Bearer abc.def") == "Authorization: Bearer [REDACTED]"

    def test_address_shortened(self):
        assert redact_string(f"recipient {ADDRESS}") == "recipient 0x1234...5678"

    def test_max_depth(self):
        assert redact_sensitive_data({"a": {"b": 1}}, max_depth=0) == {"a": "[MAX_DEPTH_EXCEEDED]"}


# ============================================================
# Context and formatters
# ============================================================

class TestLogContext:
    """Tests for LoggingContext and the context helpers."""

    def teardown_method(self):
        clear_log_context()

    def test_context_manager_restores(self):
        set_log_context(pool="0.1")
        with LoggingContext(deposit_id="dep_1"):
            assert get_log_context() == {"pool": "0.1", "deposit_id": "dep_1"}
        assert get_log_context() == {"pool": "0.1"}

    def test_threads_do_not_share_context(self):
        seen = {}

        def worker():
            seen["context"] = get_log_context()

        with LoggingContext(deposit_id="dep_1"):
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()

        assert seen["context"] == {}


class TestFormatters:
    """Tests for JSONFormatter and ConsoleFormatter."""

    def teardown_method(self):
        clear_log_context()

    def test_json_output(self):
        record = make_record("Deposit confirmed", leaf_index=3, secret="42")
        with LoggingContext(deposit_id="dep_1"):
            entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["message"] == "Deposit confirmed"
        assert entry["context"] == {"deposit_id": "dep_1"}
        assert entry["leaf_index"] == 3
        assert entry["secret"] == "[REDACTED]"
        assert "location" not in entry

    def test_json_warning_has_location(self):
        entry = json.loads(JSONFormatter().format(make_record("slow", level=logging.WARNING)))
        assert entry["location"]["line"] == 10

    def test_console_output(self):
        output = ConsoleFormatter().format(make_record(f"sent to {ADDRESS}", leaf_index=3))

        assert "[privacy_pool]" in output
        assert "0x1234...5678" in output
        assert "leaf_index=3" in output

    def test_configure_logging(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        log_file = tmp_path / "wallet.log"
        try:
            configure_logging("debug", json_output=True, log_file=str(log_file))

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 2
            assert all(isinstance(h.formatter, JSONFormatter) for h in root.handlers)
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


# ============================================================
# Metrics
# ============================================================

class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_counters_with_labels(self):
        metrics = MetricsCollector()
        metrics.increment("deposits_total")
        metrics.increment("deposits_total", 2)
        metrics.increment("proof_failures_total", labels={"circuit": "withdrawal"})

        assert metrics.get_counter("deposits_total") == 3
        assert metrics.get_counter("proof_failures_total", labels={"circuit": "withdrawal"}) == 1
        assert metrics.get_counter("proof_failures_total", labels={"circuit": "transfer"}) == 0

    def test_gauges(self):
        metrics = MetricsCollector()
        metrics.set_gauge("pending_spends", 2)
        assert metrics.get_gauge("pending_spends") == 2
        assert metrics.get_gauge("unknown") == 0.0

    def test_histogram(self):
        metrics = MetricsCollector()
        metrics.timing("proof_generation_ms", 20)
        metrics.timing("proof_generation_ms", 400)

        hist = metrics.get_histogram("proof_generation_ms")
        assert hist.count == 2
        assert hist.average == 210
        assert hist.buckets[1].count == 1
        assert hist.buckets[-1].count == 2

    def test_timer(self):
        metrics = MetricsCollector()
        with metrics.timer("verify_ms", labels={"circuit": "transfer"}):
            pass
        assert metrics.get_histogram("verify_ms", labels={"circuit": "transfer"}).count == 1

    def test_concurrent_increments(self):
        metrics = MetricsCollector()

        def worker():
            for _ in range(1000):
                metrics.increment("deposits_total")

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert metrics.get_counter("deposits_total") == 4000

    def test_get_all(self):
        metrics = MetricsCollector()
        metrics.increment("deposits_total")
        metrics.increment("withdrawals_total", labels={"pool": "a"})
        metrics.timing("proof_generation_ms", 5)

        data = metrics.get_all()
        assert data["counters"]["deposits_total"] == 1
        assert data["counters"]["withdrawals_total"] == {'pool="a"': 1}
        assert data["histograms"]["proof_generation_ms"]["_total"]["count"] == 1

    def test_prometheus_export(self):
        metrics = MetricsCollector(namespace="wallet")
        metrics.increment("deposits_total", labels={"pool": "a"})
        metrics.timing("proof_generation_ms", 5)

        text = metrics.to_prometheus()
        assert "# TYPE wallet_deposits_total counter" in text
        assert 'wallet_deposits_total{pool="a"} 1' in text
        assert 'wallet_proof_generation_ms_bucket{le="+Inf"} 1' in text
        assert "wallet_proof_generation_ms_count 1" in text

    def test_reset(self):
        metrics = MetricsCollector()
        metrics.increment("deposits_total")
        metrics.reset()
        assert metrics.get_all()["counters"] == {}
