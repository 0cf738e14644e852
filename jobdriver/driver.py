# jobdriver/driver.py
"""
Driver: top-level orchestrator of the worker pools.

Owns the Job registry and is the only component that forks, signals or reaps
worker processes. run() wires together:
  - the reaper task (SIGCHLD wake-up + 1s fallback tick)
  - the Observer polling loop
  - the management Console (unless console_port == 0)
  - the Prometheus exporter (when metrics_port > 0)

Usage:
    driver = Driver(DriverSettings.from_env())
    driver.add_jobs(Loader(["myapp.workers"]).load())
    asyncio.run(driver.run())
"""

from __future__ import annotations

import signal
import asyncio
import logging
import functools
import dataclasses
from typing import Any, Callable, Dict, Iterable, List, Optional

from jobdriver.config import DriverSettings
from jobdriver.console import Console
from jobdriver.errors import BrokerError, ConfigurationError, DriverError, SpawnError
from jobdriver.job import TERMINATING, Job, JobSpec
from jobdriver.metrics import FORKS, REAPED, TERMINATES, start_metrics_server
from jobdriver.observer import Observer
from jobdriver.queue.redis_queue import RedisBroker, RedisQueueConfig, RedisWorkerClient
from jobdriver.spawner import ChildExit, ForkSpawner
from jobdriver.utils.logger import StructuredLoggerAdapter
from jobdriver.utils.time_utils import monotonic_ts
from jobdriver.worker import run_child

LOG = logging.getLogger("jobdriver.driver")
LAD = StructuredLoggerAdapter(LOG, {"component": "driver"})

REAP_TICK = 1.0
SHUTDOWN_POLL = 0.1
KILL_WAIT = 5.0

class Driver:
    def __init__(
        self,
        settings: Optional[DriverSettings] = None,
        broker: Any = None,
        spawner: Any = None,
        unknown_job_callback: Optional[Callable[..., Any]] = None,
        worker_client_factory: Optional[Callable[[str, int], Any]] = None,
    ):
        self.settings = settings or DriverSettings()
        self.queue_config = RedisQueueConfig(
            servers=list(self.settings.server),
            namespace=self.settings.namespace,
            result_ttl=self.settings.result_ttl,
            socket_timeout=self.settings.broker_timeout,
        )
        self.broker = broker if broker is not None else RedisBroker(self.queue_config)
        self.spawner = spawner if spawner is not None else ForkSpawner()
        self.unknown_job_callback = unknown_job_callback or self.settings.unknown_job_callback
        self._worker_client_factory = worker_client_factory

        self._jobs: Dict[str, Job] = {}
        self._pids: Dict[int, str] = {}
        self._started = False
        self._shutting_down = False
        self._stop_event = asyncio.Event()
        self._sigchld = asyncio.Event()
        self._shutdown_task: Optional[asyncio.Future] = None
        self._tasks: List[asyncio.Task] = []
        self._signals: List[int] = []

        self.observer: Optional[Observer] = None
        self.console: Optional[Console] = None

    # -------------------------
    # Registry
    # -------------------------
    def add_job(self, spec: JobSpec) -> Job:
        """
        Register a JobSpec. Specs with the same name are merged (same bounds
        required); re-adding an identical spec is a no-op.
        """
        if self._started:
            raise ConfigurationError(f"cannot register job {spec.name} after the driver started")
        if not spec.name:
            raise ConfigurationError("job spec without a name")
        if spec.min_processes is None or spec.max_processes is None:
            raise ConfigurationError(f"job {spec.name}: min_processes and max_processes are required")
        if not spec.methods:
            raise ConfigurationError(f"job {spec.name} has no methods")

        methods = [
            dataclasses.replace(m, worker=spec.worker) if m.worker is None and spec.worker is not None else m
            for m in spec.methods
        ]
        for m in methods:
            owner = self._function_owner(m.name)
            if owner is not None and owner.name != spec.name:
                raise ConfigurationError(f"function {m.name} is already served by job {owner.name}")

        job = self._jobs.get(spec.name)
        if job is None:
            job = Job(spec.name, spec.min_processes, spec.max_processes)
            for m in methods:
                job.add_method(m)
            self._jobs[spec.name] = job
            LAD.info("Registered job %s (min=%d max=%d)", job.name, job.min_childs, job.max_childs, extra={"job": job.name})
            return job

        if (job.min_childs, job.max_childs) != (spec.min_processes, spec.max_processes):
            raise ConfigurationError(
                f"job {spec.name}: conflicting bounds {spec.min_processes}/{spec.max_processes}, "
                f"already registered with {job.min_childs}/{job.max_childs}"
            )
        for m in methods:
            for existing in job.methods:
                if existing.name == m.name and not existing.same_as(m):
                    raise ConfigurationError(f"job {job.name}: method {m.name} registered twice with different bodies")
        added = sum(1 for m in methods if job.add_method(m))
        if added:
            LAD.info("Merged %d method(s) into job %s", added, job.name, extra={"job": job.name})
        return job

    def add_jobs(self, specs: Iterable[JobSpec]) -> List[Job]:
        return [self.add_job(spec) for spec in specs]

    def _function_owner(self, function: str) -> Optional[Job]:
        for job in self._jobs.values():
            if function in job.functions:
                return job
        return None

    def get_job(self, name: str) -> Optional[Job]:
        return self._jobs.get(name)

    def has_job(self, name: str) -> bool:
        return name in self._jobs

    def get_jobs(self) -> List[Job]:
        return [self._jobs[name] for name in sorted(self._jobs)]

    @property
    def pids(self) -> Dict[int, str]:
        """pid -> job name for every child not yet reaped."""
        return dict(self._pids)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # -------------------------
    # Process control
    # -------------------------
    def _client_factory(self, job_name: str) -> Callable[[int], Any]:
        if self._worker_client_factory is not None:
            return functools.partial(self._worker_client_factory, job_name)
        return functools.partial(RedisWorkerClient, self.queue_config, job_name)

    def _close_inherited(self):
        """Runs first in every forked child: drop the parent's sockets."""
        if self.console is not None:
            self.console.close_inherited_sockets()
        close = getattr(self.broker, "close_inherited_sockets", None)
        if close is not None:
            close()

    async def request_fork(self, name: str, count: int = 1) -> List[int]:
        """Fork `count` children for job `name`; returns the new pids."""
        job = self._jobs.get(name)
        if job is None:
            LOG.warning("Fork requested for unknown job %s", name)
            return []
        if self._shutting_down:
            LOG.debug("Fork for %s refused: shutting down", name)
            return []
        pids: List[int] = []
        # spawn and registration happen under one lock hold so the reaper
        # never sees a pid that is not registered yet
        async with job.lock:
            for _ in range(count):
                target = functools.partial(
                    run_child, job.name, list(job.methods), self._client_factory(job.name), self.settings.poll_timeout,
                    after_fork=self._close_inherited,
                )
                try:
                    pid = self.spawner.spawn(target)
                except SpawnError as e:
                    FORKS.labels(job=name, result="error").inc()
                    LAD.error("Fork for job %s failed: %s", name, e, extra={"job": name})
                    break
                job.add_child(pid)
                self._pids[pid] = name
                pids.append(pid)
                FORKS.labels(job=name, result="ok").inc()
                LAD.info("Forked worker %d for job %s", pid, name, extra={"job": name})
        return pids

    async def terminate_idle(self, name: str, count: int = 1, idle_for: float = 0.0) -> List[int]:
        """
        SIGTERM up to `count` children idle longer than `idle_for`, oldest idle
        first, never taking the job below min_childs. Returns the signalled pids.
        """
        job = self._jobs.get(name)
        if job is None:
            LOG.warning("Terminate requested for unknown job %s", name)
            return []
        victims: List[int] = []
        async with job.lock:
            spare = len(job.active_childs()) - job.min_childs
            for handle in job.idle_candidates(idle_for)[:max(0, min(count, spare))]:
                idle = handle.idle_for()
                try:
                    delivered = self.spawner.kill(handle.pid, signal.SIGTERM)
                except OSError as e:
                    LAD.error("Could not signal worker %d of %s: %s", handle.pid, name, e, extra={"job": name})
                    continue
                if not delivered:
                    LOG.debug("Worker %d of %s already gone", handle.pid, name)
                job.mark_terminating(handle.pid)
                victims.append(handle.pid)
                TERMINATES.labels(job=name).inc()
                LAD.info(
                    "Terminating idle worker %d of %s (idle %.1fs)", handle.pid, name, idle, extra={"job": name}
                )
        return victims

    async def reap(self) -> List[ChildExit]:
        """Collect exited children and drop their handles."""
        exits = self.spawner.reap()
        for ex in exits:
            name = self._pids.pop(ex.pid, None)
            if name is None:
                LOG.debug("Reaped unknown pid %d (%s)", ex.pid, ex.describe())
                continue
            job = self._jobs[name]
            async with job.lock:
                handle = job.remove_child(ex.pid)
            REAPED.labels(job=name).inc()
            expected = self._shutting_down or (handle is not None and handle.status == TERMINATING)
            clean = ex.exitcode == 0 or (ex.signal == signal.SIGTERM and expected)
            if clean:
                LAD.info("Worker %d of %s exited (%s)", ex.pid, name, ex.describe(), extra={"job": name})
            else:
                LAD.warning("Worker %d of %s died unexpectedly (%s)", ex.pid, name, ex.describe(), extra={"job": name})
            await self._forget_worker(name, ex.pid)
        return exits

    async def _forget_worker(self, name: str, pid: int):
        forget = getattr(self.broker, "forget_worker", None)
        if forget is None:
            return
        try:
            await asyncio.wait_for(forget(name, pid), timeout=self.settings.broker_timeout)
        except (asyncio.TimeoutError, BrokerError) as e:
            LOG.debug("Could not clear telemetry of worker %d (%s): %r", pid, name, e)

    async def _reaper_loop(self):
        while True:
            try:
                await asyncio.wait_for(self._sigchld.wait(), timeout=REAP_TICK)
            except asyncio.TimeoutError:
                pass
            self._sigchld.clear()
            try:
                await self.reap()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOG.exception("Reaper pass failed")

    # -------------------------
    # Lifecycle
    # -------------------------
    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, functools.partial(self.request_shutdown, signal.Signals(sig).name))
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                LOG.debug("Signal handler for %s not installed", sig)
        try:
            loop.add_signal_handler(signal.SIGCHLD, self._sigchld.set)
            self._signals.append(signal.SIGCHLD)
        except (NotImplementedError, RuntimeError, ValueError):
            LOG.debug("SIGCHLD handler not installed; relying on the reap tick")

    def _remove_signal_handlers(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals = []

    async def run(self):
        """Start every component and block until shutdown completes."""
        if self._started:
            raise DriverError("driver is already running")
        if not self._jobs:
            raise ConfigurationError("no jobs registered")
        self._started = True
        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)

        if self.settings.metrics_port > 0:
            start_metrics_server(self.settings.metrics_port)

        self.observer = Observer(
            self,
            self.broker,
            interval=self.settings.interval,
            max_idle_time=self.settings.max_idle_time,
            broker_timeout=self.settings.broker_timeout,
            unknown_job_callback=self.unknown_job_callback,
        )
        self._tasks = [
            asyncio.create_task(self._reaper_loop(), name="jobdriver-reaper"),
            asyncio.create_task(self.observer.run(), name="jobdriver-observer"),
        ]
        try:
            if self.settings.console_port > 0:
                self.console = Console(self, self.settings.console_port, host=self.settings.console_host)
                await self.console.start()
            LAD.info(
                "Driver running %d job(s): %s", len(self._jobs), ", ".join(sorted(self._jobs)),
            )
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    def request_shutdown(self, reason: str = "shutdown"):
        """Synchronous; safe to call from a signal handler."""
        if not self._stop_event.is_set():
            LOG.info("Shutdown requested (%s)", reason)
        self._stop_event.set()

    async def shutdown(self):
        """Stop everything; concurrent or repeated calls wait for the first one."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self):
        self._shutting_down = True
        self._stop_event.set()
        if self.observer is not None:
            self.observer.stop()
        LOG.info("Shutting down %d worker(s)", len(self._pids))

        for job in self.get_jobs():
            async with job.lock:
                for pid in list(job.childs):
                    try:
                        self.spawner.kill(pid, signal.SIGTERM)
                    except OSError as e:
                        LOG.error("Could not signal worker %d: %s", pid, e)
                    job.mark_terminating(pid)

        await self._reap_until_empty(self.settings.graceful_timeout)
        if self._pids:
            LOG.warning("Graceful timeout reached; killing %d worker(s)", len(self._pids))
            for pid in list(self._pids):
                try:
                    self.spawner.kill(pid, signal.SIGKILL)
                except OSError as e:
                    LOG.error("Could not kill worker %d: %s", pid, e)
            await self._reap_until_empty(KILL_WAIT)
            if self._pids:
                LOG.error("Workers still alive after SIGKILL: %s", sorted(self._pids))

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                LOG.exception("Background task %s failed", task.get_name())
        self._tasks = []

        if self.console is not None:
            await self.console.stop()
        try:
            await self.broker.close()
        except BrokerError as e:
            LOG.warning("Broker close failed: %s", e)
        self._remove_signal_handlers()
        LOG.info("Driver shutdown complete")

    async def _reap_until_empty(self, timeout: float):
        deadline = monotonic_ts() + timeout
        while True:
            await self.reap()
            if not self._pids or monotonic_ts() >= deadline:
                return
            await asyncio.sleep(SHUTDOWN_POLL)

__all__ = ["Driver"]
