# jobdriver/metrics.py
"""
Prometheus instrumentation for the driver process.

All collectors are module-level singletons registered on the default
registry. Components call the small helpers below rather than touching the
collectors directly, so label sets stay consistent.
"""

from __future__ import annotations

import logging
from typing import Dict

from prometheus_client import Counter, Gauge, start_http_server

LOG = logging.getLogger("jobdriver.metrics")

CHILDREN = Gauge("jobdriver_children", "Live worker processes per job and status", ["job", "status"])
QUEUE_DEPTH = Gauge("jobdriver_queue_depth", "Queued jobs reported by the broker", ["job"])
FORKS = Counter("jobdriver_forks_total", "Worker processes forked", ["job", "result"])
TERMINATES = Counter("jobdriver_terminates_total", "Terminate signals sent to idle workers", ["job"])
REAPED = Counter("jobdriver_reaped_total", "Worker processes reaped after exit", ["job"])
BROKER_ERRORS = Counter("jobdriver_broker_errors_total", "Failed broker status queries", ["job"])
UNKNOWN_JOBS = Counter("jobdriver_unknown_jobs_total", "Broker functions without a registered job", ["function"])
POLL_SECONDS = Gauge("jobdriver_poll_seconds", "Duration of the last observer cycle")
CONSOLE_COMMANDS = Counter("jobdriver_console_commands_total", "Console commands executed", ["command", "result"])

_server_started = False

def start_metrics_server(port: int, addr: str = "0.0.0.0") -> bool:
    """Expose /metrics over HTTP once per process."""
    global _server_started
    if _server_started or port <= 0:
        return False
    start_http_server(port, addr=addr)
    _server_started = True
    LOG.info("Prometheus metrics exported on %s:%d", addr, port)
    return True

def observe_children(job: str, counts: Dict[str, int]):
    for status, n in counts.items():
        CHILDREN.labels(job=job, status=status).set(n)

def observe_queue_depth(job: str, depth: int):
    QUEUE_DEPTH.labels(job=job).set(depth)

def count_console_command(command: str, ok: bool):
    # command must come from the closed command set (or "unknown")
    CONSOLE_COMMANDS.labels(command=command, result="ok" if ok else "err").inc()

__all__ = [
    "CHILDREN", "QUEUE_DEPTH", "FORKS", "TERMINATES", "REAPED", "BROKER_ERRORS",
    "UNKNOWN_JOBS", "POLL_SECONDS", "CONSOLE_COMMANDS",
    "start_metrics_server", "observe_children", "observe_queue_depth", "count_console_command",
]
