# jobdriver/observer.py
"""
Observer: the polling / decision loop.

Every `interval` seconds each Job is evaluated (in name order, concurrently):
  1) query the broker for its status (bounded by `broker_timeout`)
  2) under the Job lock: apply worker telemetry, snapshot bounds and children
  3) outside the lock: decide and ask the Driver to fork or terminate

Decision rules, first match wins:
  - fewer active children than min_childs   -> fork the difference
  - queued work and live < max_childs       -> fork one
  - an idle child older than max_idle_time
    and active > min_childs                 -> terminate one (oldest idle)
  - otherwise                               -> nothing

"active" excludes children already told to terminate; "live" counts every
child not yet reaped, and no fork takes "live" above max_childs. The loop is
eventually consistent: a skipped or noisy cycle is corrected by the next one.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from jobdriver.errors import BrokerError
from jobdriver.job import Job
from jobdriver.queue.base import BrokerStatus
from jobdriver.metrics import BROKER_ERRORS, POLL_SECONDS, UNKNOWN_JOBS, observe_children, observe_queue_depth
from jobdriver.utils.time_utils import format_duration, monotonic_ts, now_ts
from jobdriver.utils.tracing import trace_span

LOG = logging.getLogger("jobdriver.observer")

# decision actions
NOOP = "noop"
FORK = "fork"
TERMINATE = "terminate"
SKIP = "skip"

# consecutive failures logged at WARNING before switching to ERROR
FAILURE_ESCALATION = 3

@dataclass(frozen=True)
class Decision:
    action: str
    count: int = 0

def decide(
    active: int, min_childs: int, max_childs: int, queue_depth: int, idle_victims: int, live: Optional[int] = None,
) -> Decision:
    """
    Pure scaling rule over one consistent snapshot of a Job.

    `live` counts every unreaped child, terminating ones included (defaults to
    `active`). Forks never take `live` above max_childs.
    """
    if live is None:
        live = active
    headroom = max_childs - live
    if active < min_childs and headroom > 0:
        return Decision(FORK, min(min_childs - active, headroom))
    if queue_depth > 0 and headroom > 0:
        return Decision(FORK, 1)
    if idle_victims > 0 and active > min_childs:
        return Decision(TERMINATE, 1)
    return Decision(NOOP)

class Observer:
    def __init__(
        self,
        driver: Any,
        broker: Any,
        interval: float = 5.0,
        max_idle_time: float = 0.0,
        broker_timeout: float = 2.0,
        unknown_job_callback: Optional[Callable[..., Any]] = None,
    ):
        self.driver = driver
        self.broker = broker
        self.interval = float(interval)
        self.max_idle_time = float(max_idle_time)
        self.broker_timeout = float(broker_timeout)
        self.unknown_job_callback = unknown_job_callback
        self.cycles = 0
        self._failures: Dict[str, int] = {}
        self._reported_unknown: Set[str] = set()
        self._stop_event = asyncio.Event()

    def stop(self):
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def failures(self, name: str) -> int:
        return self._failures.get(name, 0)

    # -------------------------
    # Loop
    # -------------------------
    async def run(self):
        LOG.info(
            "Observer started (interval=%s max_idle_time=%s)",
            format_duration(self.interval), format_duration(self.max_idle_time) if self.max_idle_time > 0 else "off",
        )
        while not self._stop_event.is_set():
            start = monotonic_ts()
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOG.exception("Observer cycle failed")
            elapsed = monotonic_ts() - start
            POLL_SECONDS.set(elapsed)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, self.interval - elapsed))
            except asyncio.TimeoutError:
                pass
        LOG.info("Observer loop exiting after %d cycles", self.cycles)

    @trace_span("jobdriver.observer.poll")
    async def poll_once(self) -> Dict[str, Decision]:
        """One poll cycle over every Job; returns the decision taken per job name."""
        jobs = self.driver.get_jobs()
        results = await asyncio.gather(*(self.evaluate(job) for job in jobs), return_exceptions=True)
        decisions: Dict[str, Decision] = {}
        for job, res in zip(jobs, results):
            if isinstance(res, BaseException):
                LOG.error("Evaluation of job %s failed: %r", job.name, res)
                decisions[job.name] = Decision(SKIP)
            else:
                decisions[job.name] = res
        await self.report_unknown(jobs)
        self.cycles += 1
        return decisions

    # -------------------------
    # Per-job evaluation
    # -------------------------
    async def query(self, job: Job) -> Optional[BrokerStatus]:
        try:
            status = await asyncio.wait_for(self.broker.status(job.name, job.functions), timeout=self.broker_timeout)
        except asyncio.TimeoutError:
            self._record_failure(job.name, f"timed out after {self.broker_timeout:.1f}s")
            return None
        except BrokerError as e:
            self._record_failure(job.name, str(e))
            return None
        self._record_success(job.name)
        return status

    def _record_failure(self, name: str, reason: str):
        n = self._failures.get(name, 0) + 1
        self._failures[name] = n
        BROKER_ERRORS.labels(job=name).inc()
        if n >= FAILURE_ESCALATION:
            LOG.error("Broker status for %s failed %d times in a row: %s", name, n, reason)
        else:
            LOG.warning("Broker status for %s failed: %s; skipping this cycle", name, reason)

    def _record_success(self, name: str):
        n = self._failures.pop(name, 0)
        if n:
            LOG.info("Broker status for %s recovered after %d failed cycles", name, n)

    async def evaluate(self, job: Job) -> Decision:
        status = await self.query(job)
        if status is None:
            return Decision(SKIP)
        observe_queue_depth(job.name, status.queue_depth)

        now = now_ts()
        async with job.lock:
            for pid, state in status.workers.items():
                job.apply_worker_state(pid, state.status, state.since)
            min_childs, max_childs = job.min_childs, job.max_childs
            active = len(job.active_childs())
            live = len(job.childs)
            victims = len(job.idle_candidates(self.max_idle_time, now)) if self.max_idle_time > 0 else 0
            observe_children(job.name, job.status_counts())

        decision = decide(active, min_childs, max_childs, status.queue_depth, victims, live=live)
        if decision.action == FORK:
            LOG.debug(
                "%s: active=%d live=%d min=%d max=%d queue=%d -> fork %d",
                job.name, active, live, min_childs, max_childs, status.queue_depth, decision.count,
            )
            await self.driver.request_fork(job.name, decision.count)
        elif decision.action == TERMINATE:
            LOG.debug("%s: active=%d min=%d idle victims=%d -> terminate 1", job.name, active, min_childs, victims)
            await self.driver.terminate_idle(job.name, decision.count, self.max_idle_time)
        return decision

    # -------------------------
    # Unknown functions
    # -------------------------
    async def report_unknown(self, jobs: List[Job]) -> List[str]:
        """Report broker functions no registered Job serves; advisory only."""
        known = {fn for job in jobs for fn in job.functions}
        try:
            functions = await asyncio.wait_for(self.broker.list_functions(), timeout=self.broker_timeout)
        except (asyncio.TimeoutError, BrokerError) as e:
            LOG.debug("Could not list broker functions: %r", e)
            return []
        unknown = [fn for fn in functions if fn not in known]
        for fn in unknown:
            UNKNOWN_JOBS.labels(function=fn).inc()
            if fn not in self._reported_unknown:
                self._reported_unknown.add(fn)
                LOG.warning("Broker function %s has no registered job", fn)
            if self.unknown_job_callback is None:
                continue
            try:
                status = await asyncio.wait_for(self.broker.function_status(fn), timeout=self.broker_timeout)
            except (asyncio.TimeoutError, BrokerError) as e:
                LOG.debug("Status of unknown function %s unavailable: %r", fn, e)
                continue
            await self._call_unknown(status)
        return unknown

    async def _call_unknown(self, status: BrokerStatus):
        try:
            rv = self.unknown_job_callback(self.driver, status)
            if inspect.isawaitable(rv):
                await rv
        except Exception:
            LOG.exception("unknown_job_callback failed for %s", status.name)

__all__ = ["Observer", "Decision", "decide", "NOOP", "FORK", "TERMINATE", "SKIP"]
