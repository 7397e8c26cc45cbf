"""Prometheus metrics exporter for shellquest.

This module provides Prometheus-compatible metrics for watching how learners
move through the training shell.

Metrics exposed:
- Commands executed (by command and exit class)
- Sudo authentications (success / failure)
- Destructive-command confirmations (by level and outcome)
- Tasks, missions and adventures completed
- Hints revealed (by level)
- Validator errors
- Active sessions and session duration
- Exercise resets
"""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from .command_handler import Command, known_command_names

logger = logging.getLogger(__name__)

# =============================================================================
# Metric Definitions
# =============================================================================

# Command metrics
commands_total = Counter(
    "shellquest_commands_total",
    "Commands run in training sessions",
    ["command", "result"],  # result: ok, error, not_found
)

sudo_attempts = Counter(
    "shellquest_sudo_attempts_total",
    "Sudo password checks",
    ["result"],  # success, failure
)

destructive_prompts = Counter(
    "shellquest_destructive_prompts_total",
    "Destructive-command confirmations",
    ["level", "outcome"],  # outcome: prompted, confirmed, cancelled
)

# Progression metrics
tasks_completed = Counter(
    "shellquest_tasks_completed_total",
    "Tasks completed by learners",
)

missions_completed = Counter(
    "shellquest_missions_completed_total",
    "Missions completed by learners",
)

adventures_completed = Counter(
    "shellquest_adventures_completed_total",
    "Adventures finished by learners",
)

hints_revealed = Counter(
    "shellquest_hints_revealed_total",
    "Hints revealed",
    ["level"],
)

validator_errors = Counter(
    "shellquest_validator_errors_total",
    "Validators that raised while checking a task",
    ["validator"],
)

# Session metrics
sessions_active = Gauge(
    "shellquest_sessions_active",
    "Currently active training sessions",
)

session_duration = Histogram(
    "shellquest_session_duration_seconds",
    "Training session duration in seconds",
    buckets=[60, 300, 600, 1800, 3600, 7200],
)

exercise_resets = Counter(
    "shellquest_exercise_resets_total",
    "Full exercise resets",
)

# System health metrics
system_info = Info(
    "shellquest_system",
    "shellquest system information",
)

uptime_seconds = Gauge(
    "shellquest_uptime_seconds",
    "Process uptime in seconds",
)


# =============================================================================
# Metrics Collector Class
# =============================================================================


class MetricsCollector:
    """Records shellquest activity into the Prometheus metrics above."""

    def __init__(self):
        self._lock = Lock()
        self._start_time = time.time()
        self._known_commands = frozenset(known_command_names())
        self._active = 0

        system_info.info({"version": "0.1.0", "commands": str(len(Command))})

        logger.info("Prometheus metrics collector initialized")

    # -------------------------------------------------------------------------
    # Command Metrics
    # -------------------------------------------------------------------------

    def record_command(self, command: str, exit_code: int):
        """Record a command execution.

        Args:
            command: argv[0] of the command line
            exit_code: Exit code the command produced
        """
        name = command if command in self._known_commands else "other"
        if exit_code == 0:
            result = "ok"
        elif exit_code == 127:
            result = "not_found"
        else:
            result = "error"
        commands_total.labels(command=name, result=result).inc()
        logger.debug("Command recorded: %s -> %s", name, result)

    def record_sudo_attempt(self, success: bool):
        sudo_attempts.labels(result="success" if success else "failure").inc()

    def record_destructive_prompt(self, level: str, outcome: str):
        """Record a destructive-command confirmation step.

        Args:
            level: 'warning', 'danger' or 'critical'
            outcome: 'prompted', 'confirmed' or 'cancelled'
        """
        destructive_prompts.labels(level=level, outcome=outcome).inc()

    # -------------------------------------------------------------------------
    # Progression Metrics
    # -------------------------------------------------------------------------

    def record_task_completed(self):
        tasks_completed.inc()

    def record_mission_completed(self):
        missions_completed.inc()

    def record_adventure_completed(self):
        adventures_completed.inc()

    def record_hint(self, level: int):
        hints_revealed.labels(level=str(level)).inc()

    def record_validator_error(self, validator: str):
        validator_errors.labels(validator=validator).inc()

    # -------------------------------------------------------------------------
    # Session Metrics
    # -------------------------------------------------------------------------

    def record_session_start(self):
        """Record the start of a training session."""
        with self._lock:
            self._active += 1
        sessions_active.inc()
        logger.debug("Training session started (active: %d)", self._active)

    def record_session_end(self, duration_seconds: float):
        """Record the end of a training session.

        Args:
            duration_seconds: Session duration in seconds
        """
        with self._lock:
            if self._active == 0:
                return
            self._active -= 1
        sessions_active.dec()
        session_duration.observe(duration_seconds)
        logger.debug("Session ended: duration=%.1fs", duration_seconds)

    def record_reset(self):
        exercise_resets.inc()

    @property
    def active_sessions(self) -> int:
        return self._active

    # -------------------------------------------------------------------------
    # System Metrics
    # -------------------------------------------------------------------------

    def update_uptime(self):
        """Refresh shellquest_uptime_seconds."""
        uptime_seconds.set(time.time() - self._start_time)

    def get_metrics(self) -> bytes:
        """Generate Prometheus metrics in text format."""
        self.update_uptime()
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


# =============================================================================
# Global Metrics Instance
# =============================================================================

_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics_collector():
    """Drop the shared collector so the next call builds a new one."""
    global _metrics_collector
    _metrics_collector = None


# =============================================================================
# HTTP Server for Metrics Endpoint
# =============================================================================


def start_metrics_server(port: int = 9100, host: str = "0.0.0.0"):
    """Serve /metrics and /health from a background thread.

    Args:
        port: Port to listen on
        host: Host address to bind to
    """
    from http.server import BaseHTTPRequestHandler, HTTPServer
    from threading import Thread

    collector = get_metrics_collector()

    class MetricsHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path == "/metrics":
                self.send_response(200)
                self.send_header("Content-Type", collector.get_content_type())
                self.end_headers()
                self.wfile.write(collector.get_metrics())
            elif self.path == "/health":
                self.send_response(200)
                self.send_header("Content-Type", "text/plain")
                self.end_headers()
                self.wfile.write(b"OK\n")
            else:
                self.send_response(404)
                self.end_headers()
                self.wfile.write(b"Not Found\n")

        def log_message(self, format, *args):
            logger.debug("metrics http: " + format, *args)

    server = HTTPServer((host, port), MetricsHandler)

    def serve():
        logger.info("Metrics server started on http://%s:%d/metrics", host, port)
        server.serve_forever()

    thread = Thread(target=serve, daemon=True, name="MetricsServer")
    thread.start()

    return server
