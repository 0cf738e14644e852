# jobdriver/worker.py
"""
Worker side of jobdriver.

 - Worker: base class application workers subclass; methods decorated with
   @job become broker functions (see jobdriver.loader)
 - ChildRuntime: the loop a forked child runs for one Job: claim, decode,
   invoke, encode, report, repeat until SIGTERM
 - run_child: fork target built by the Driver

Children are plain synchronous processes: no event loop survives the fork.
"""

from __future__ import annotations

import os
import time
import signal
import logging
import traceback
from typing import Any, Callable, Dict, List, Optional, Sequence

from jobdriver.errors import BrokerError
from jobdriver.job import BUSY, IDLE, JobMethod
from jobdriver.queue.base import ClaimedJob
from jobdriver.utils.tracing import get_tracer

LOG = logging.getLogger("jobdriver.worker")
TRACER = get_tracer("jobdriver.worker")

# -------------------------
# Worker base class
# -------------------------
class Worker:
    """
    Base class for application workers.

    Hooks (all optional to override):
      - prefix(): prepended to every function/job name of this worker
      - begin(job, workload) / end(job, workload): run around every job
      - on_exception(job, exc): called when a job body raises
    """

    def prefix(self) -> str:
        cls = type(self)
        return f"{cls.__module__}.{cls.__name__}."

    def begin(self, job: ClaimedJob, workload: Any):
        pass

    def end(self, job: ClaimedJob, workload: Any):
        pass

    def on_exception(self, job: ClaimedJob, exc: BaseException):
        pass

# -------------------------
# Child runtime
# -------------------------
class ChildRuntime:
    """
    Job loop of one worker process.

    `client` is a RedisWorkerClient (or anything with the same claim /
    complete / fail / set_state / unregister / close methods).
    """

    def __init__(self, job_name: str, methods: Sequence[JobMethod], client: Any, poll_timeout: float = 1.0):
        if not methods:
            raise ValueError(f"job {job_name} has no methods")
        self.job_name = job_name
        self.methods: Dict[str, JobMethod] = {m.name: m for m in methods}
        self.client = client
        self.poll_timeout = float(poll_timeout)
        self.processed = 0
        self.failed = 0
        self._running = False

    @property
    def functions(self) -> List[str]:
        return list(self.methods)

    def stop(self, *_args):
        self._running = False

    def install_signal_handlers(self):
        # the parent installed asyncio handlers before forking; undo them here
        try:
            signal.set_wakeup_fd(-1)
        except (ValueError, OSError):
            pass
        signal.signal(signal.SIGTERM, self.stop)
        signal.signal(signal.SIGINT, signal.SIG_IGN)
        signal.signal(signal.SIGCHLD, signal.SIG_DFL)
        for sig in (signal.SIGHUP, signal.SIGUSR1, signal.SIGUSR2):
            signal.signal(sig, signal.SIG_DFL)

    def _set_state(self, status: str):
        try:
            self.client.set_state(status)
        except BrokerError as e:
            LOG.warning("Worker %d could not publish state %s: %s", os.getpid(), status, e)

    def run(self) -> int:
        self._running = True
        LOG.info("Worker %d started for job %s (functions: %s)", os.getpid(), self.job_name, ", ".join(self.functions))
        self._set_state(IDLE)
        try:
            while self._running:
                try:
                    self.run_once()
                except BrokerError as e:
                    LOG.warning("Worker %d broker error: %s; retrying in %.1fs", os.getpid(), e, self.poll_timeout)
                    if self._running:
                        time.sleep(self.poll_timeout)
        finally:
            try:
                self.client.unregister()
            except BrokerError as e:
                LOG.warning("Worker %d could not unregister: %s", os.getpid(), e)
            self.client.close()
            LOG.info("Worker %d for job %s exiting (processed=%d failed=%d)", os.getpid(), self.job_name, self.processed, self.failed)
        return 0

    def run_once(self) -> bool:
        """Claim and process at most one job; returns True if one was processed."""
        claimed = self.client.claim(self.functions, self.poll_timeout)
        if claimed is None:
            return False
        self._set_state(BUSY)
        try:
            self.process(claimed)
        finally:
            self._set_state(IDLE)
        return True

    def process(self, claimed: ClaimedJob) -> Dict[str, Any]:
        attrs = {"jobdriver.job": self.job_name, "jobdriver.function": claimed.function, "jobdriver.job_id": claimed.id}
        with TRACER.start_as_current_span("jobdriver.worker.process", attributes=attrs) as span:
            outcome = self._process(claimed)
            span.set_attribute("jobdriver.status", outcome["status"])
            return outcome

    def _process(self, claimed: ClaimedJob) -> Dict[str, Any]:
        method = self.methods.get(claimed.function)
        if method is None:
            # claimed from a key we listen on, so this is a corrupted envelope
            self.failed += 1
            self.client.fail(claimed, f"no method registered for {claimed.function}")
            return {"status": "fail"}
        worker = method.worker
        try:
            _call_hook(worker, "begin", claimed, claimed.workload)
            payload = method.decode(claimed.workload) if method.decode else claimed.workload
            result = method.invoke(claimed, payload)
            if method.encode:
                result = method.encode(result)
        except Exception as exc:
            self.failed += 1
            LOG.error("Job %s (%s) failed: %s", claimed.id, claimed.function, exc)
            LOG.debug("%s", traceback.format_exc())
            try:
                _call_hook(worker, "on_exception", claimed, exc)
            except Exception:
                LOG.exception("on_exception hook failed for %s", claimed.function)
            self.client.fail(claimed, f"{type(exc).__name__}: {exc}")
            return {"status": "fail", "error": str(exc)}
        finally:
            try:
                _call_hook(worker, "end", claimed, claimed.workload)
            except Exception:
                LOG.exception("end hook failed for %s", claimed.function)
        self.processed += 1
        self.client.complete(claimed, result)
        return {"status": "complete", "result": result}

def _call_hook(worker: Any, name: str, *args):
    hook = getattr(worker, name, None) if worker is not None else None
    if callable(hook):
        hook(*args)

# -------------------------
# Fork target
# -------------------------
def run_child(
    job_name: str,
    methods: Sequence[JobMethod],
    client_factory: Callable[[int], Any],
    poll_timeout: float = 1.0,
    after_fork: Optional[Callable[[], Any]] = None,
) -> int:
    """
    Entry point executed inside a freshly forked child. `after_fork` runs first
    and releases what the child inherited from the driver process.
    """
    if after_fork is not None:
        after_fork()
    runtime = ChildRuntime(job_name, methods, client_factory(os.getpid()), poll_timeout=poll_timeout)
    runtime.install_signal_handlers()
    return runtime.run()

__all__ = ["Worker", "ChildRuntime", "run_child"]
