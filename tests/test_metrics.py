"""Tests for shellquest.metrics module."""

import pytest
from prometheus_client import REGISTRY

from shellquest.metrics import get_metrics_collector, reset_metrics_collector


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.fixture
def collector():
    """A fresh collector; the underlying Prometheus metrics are process-wide."""
    reset_metrics_collector()
    yield get_metrics_collector()
    reset_metrics_collector()


class TestMetricsCollector:
    """Tests for the Prometheus collector."""

    def test_record_command_results(self, collector):
        """Exit codes map to ok, error and not_found."""
        ok = sample("shellquest_commands_total", command="ls", result="ok")
        missing = sample("shellquest_commands_total", command="other", result="not_found")
        collector.record_command("ls", 0)
        collector.record_command("frobnicate", 127)
        assert sample("shellquest_commands_total", command="ls", result="ok") == ok + 1
        assert sample("shellquest_commands_total", command="other", result="not_found") == missing + 1

    def test_sudo_and_destructive(self, collector):
        """Sudo checks and confirmations are labelled."""
        failures = sample("shellquest_sudo_attempts_total", result="failure")
        cancelled = sample("shellquest_destructive_prompts_total", level="critical", outcome="cancelled")
        collector.record_sudo_attempt(False)
        collector.record_destructive_prompt("critical", "cancelled")
        assert sample("shellquest_sudo_attempts_total", result="failure") == failures + 1
        assert sample("shellquest_destructive_prompts_total", level="critical", outcome="cancelled") == cancelled + 1

    def test_sessions(self, collector):
        """Active sessions go up and down; extra ends are ignored."""
        collector.record_session_start()
        assert collector.active_sessions == 1
        collector.record_session_end(12.5)
        collector.record_session_end(3.0)
        assert collector.active_sessions == 0

    def test_get_metrics(self, collector):
        """The exposition output names shellquest metrics."""
        collector.record_hint(2)
        output = collector.get_metrics()
        assert isinstance(output, bytes)
        assert b"shellquest_hints_revealed_total" in output
        assert b"shellquest_uptime_seconds" in output
        assert collector.get_content_type().startswith("text/plain")

    def test_singleton(self, collector):
        """get_metrics_collector reuses one instance."""
        assert get_metrics_collector() is collector
