"""
jobdriver pytest configuration
------------------------------

Centralized fixtures and fakes for all tests.

Features:
 - FakeSpawner: records fork/kill requests, never creates real processes
 - FakeBroker: scripted BrokerStatusClient (statuses, failures, hangs)
 - Driver fixture wired to both fakes with the console disabled
 - Auto-clean JOBDRIVER_* environment variables
 - Logging config to keep CI output clean
"""

import os
import asyncio
import logging
import itertools
import pytest

from jobdriver.config import DriverSettings
from jobdriver.driver import Driver
from jobdriver.errors import BrokerError, SpawnError
from jobdriver.job import JobMethod, JobSpec
from jobdriver.queue.base import BrokerStatus, WorkerState
from jobdriver.spawner import ChildExit
from jobdriver.worker import Worker

# -----------------------------------------------------------------------------
# Logging setup for tests
# -----------------------------------------------------------------------------
LOG = logging.getLogger("jobdriver.tests")
LOG.setLevel(logging.WARNING)

# -----------------------------------------------------------------------------
# Global environment sanitization
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """
    Remove JOBDRIVER_* variables so a developer's shell can't change defaults.
    """
    for var in list(os.environ):
        if var.startswith("JOBDRIVER_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TZ", "UTC")
    yield

@pytest.fixture(autouse=True, scope="session")
def silence_external_lib_logs():
    """
    Reduce log noise from asyncio and redis during test runs.
    """
    logging.getLogger("asyncio").setLevel(logging.ERROR)
    logging.getLogger("redis").setLevel(logging.WARNING)
    yield

# -----------------------------------------------------------------------------
# Sample worker
# -----------------------------------------------------------------------------
class EchoWorker(Worker):
    def echo(self, job, payload):
        return payload

    def upper(self, job, payload):
        return str(payload).upper()

def make_spec(name="echo", min_processes=1, max_processes=3, functions=None, worker=None):
    """JobSpec with one method per function name, all served by EchoWorker.echo."""
    worker = worker or EchoWorker()
    functions = functions or [name]
    methods = [JobMethod(name=fn, body=EchoWorker.echo) for fn in functions]
    return JobSpec(name=name, min_processes=min_processes, max_processes=max_processes, methods=methods, worker=worker)

# -----------------------------------------------------------------------------
# FakeSpawner
# -----------------------------------------------------------------------------
class FakeSpawner:
    """
    Records spawn/kill requests. Exits are scripted with exit(pid, ...) and
    handed out by the next reap() call.
    """

    def __init__(self, first_pid=1000):
        self._pids = itertools.count(first_pid)
        self.spawned = []
        self.targets = {}
        self.killed = []
        self.gone = set()
        self.fail_spawn = False
        self._exits = []

    def spawn(self, target):
        if self.fail_spawn:
            raise SpawnError("fork failed: [Errno 11] Resource temporarily unavailable")
        pid = next(self._pids)
        self.spawned.append(pid)
        self.targets[pid] = target
        return pid

    def kill(self, pid, sig):
        self.killed.append((pid, sig))
        return pid not in self.gone

    def exit(self, pid, exitcode=0, signal=None):
        self._exits.append(ChildExit(pid=pid, exitcode=None if signal else exitcode, signal=signal))

    def exit_killed(self):
        """Every killed pid exits with the signal it was sent."""
        for pid, sig in self.killed:
            if not any(e.pid == pid for e in self._exits):
                self.exit(pid, signal=int(sig))

    def reap(self):
        exits, self._exits = self._exits, []
        return exits

# -----------------------------------------------------------------------------
# FakeBroker
# -----------------------------------------------------------------------------
class FakeBroker:
    """
    Scripted BrokerStatusClient.
      - set(name, queue_depth=..., workers={pid: status}) scripts a job status
      - fail(name) makes status() raise BrokerError
      - hang(name) makes status() block until cancelled
    """

    def __init__(self):
        self.statuses = {}
        self.failing = set()
        self.hanging = set()
        self.functions = []
        self.calls = []
        self.forgotten = []
        self.closed = False

    def set(self, name, queue_depth=0, free=0, running=0, workers=None, since=None):
        states = {
            pid: WorkerState(status=status, since=since if since is not None else 0.0, host="test")
            for pid, status in (workers or {}).items()
        }
        self.statuses[name] = BrokerStatus(name=name, queue_depth=queue_depth, free=free, running=running, workers=states)

    def fail(self, name):
        self.failing.add(name)

    def hang(self, name):
        self.hanging.add(name)

    async def status(self, name, functions):
        self.calls.append(name)
        if name in self.hanging:
            await asyncio.sleep(3600)
        if name in self.failing:
            raise BrokerError(f"connection refused for {name}")
        return self.statuses.get(name, BrokerStatus(name=name))

    async def function_status(self, function):
        return BrokerStatus(name=function, queue_depth=7)

    async def list_functions(self):
        return list(self.functions)

    async def forget_worker(self, job, pid):
        self.forgotten.append((job, pid))

    async def close(self):
        self.closed = True

# -----------------------------------------------------------------------------
# Driver fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def fake_spawner():
    return FakeSpawner()

@pytest.fixture
def fake_broker():
    return FakeBroker()

@pytest.fixture
def settings():
    return DriverSettings(
        console_port=0,
        interval=0.05,
        broker_timeout=0.2,
        graceful_timeout=0.3,
        max_idle_time=0,
    )

@pytest.fixture
def driver(settings, fake_broker, fake_spawner):
    """
    Driver wired to the fakes. Nothing is started; tests drive components directly.
    """
    return Driver(settings, broker=fake_broker, spawner=fake_spawner)
