# jobdriver/job.py
"""
Job registry records.

A Job is one unit of scaling policy: a name, a pair of process bounds and the
set of live children currently serving its methods. Jobs hold no behaviour
beyond validated mutation; the Driver forks/reaps, the Observer updates child
status from broker telemetry and the Console retunes the bounds. All three
serialize through `Job.lock`.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from jobdriver.errors import ConfigurationError
from jobdriver.utils.time_utils import now_ts

# child statuses
STARTING = "starting"
IDLE = "idle"
BUSY = "busy"
TERMINATING = "terminating"

CHILD_STATUSES = (STARTING, IDLE, BUSY, TERMINATING)

# -------------------------
# Specs (Loader output)
# -------------------------
@dataclass
class JobMethod:
    """
    One function registered with the broker.
      - name: broker function name
      - body: callable invoked as body(worker, job_handle, payload)
      - decode / encode: optional payload hooks
      - worker: object passed as `self` to body; filled from JobSpec.worker on registration
    """
    name: str
    body: Callable[..., Any]
    decode: Optional[Callable[[Any], Any]] = None
    encode: Optional[Callable[[Any], Any]] = None
    worker: Any = None

    def invoke(self, handle: Any, payload: Any) -> Any:
        if inspect.ismethod(self.body):
            return self.body(handle, payload)
        return self.body(self.worker, handle, payload)

    def same_as(self, other: "JobMethod") -> bool:
        return (
            self.name == other.name
            and self.body == other.body
            and self.decode == other.decode
            and self.encode == other.encode
        )

@dataclass
class JobSpec:
    name: str
    min_processes: Optional[int]
    max_processes: Optional[int]
    methods: List[JobMethod] = field(default_factory=list)
    worker: Any = None

# -------------------------
# Child handle
# -------------------------
@dataclass
class ChildHandle:
    pid: int
    started_at: float
    status: str = STARTING
    idle_since: Optional[float] = None

    def idle_for(self, now: Optional[float] = None) -> float:
        if self.status != IDLE or self.idle_since is None:
            return 0.0
        return max(0.0, (now if now is not None else now_ts()) - self.idle_since)

    def copy(self) -> "ChildHandle":
        return ChildHandle(pid=self.pid, started_at=self.started_at, status=self.status, idle_since=self.idle_since)

# -------------------------
# Job
# -------------------------
def _check_bound(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{what} must be >= 0")
    if value < 0:
        raise ValueError(f"{what} must be >= 0")
    return value

class Job:
    """Scaling bounds and live children of one registered job name."""

    def __init__(self, name: str, min_childs: int, max_childs: int, methods: Optional[Sequence[JobMethod]] = None):
        if not name:
            raise ConfigurationError("job name must not be empty")
        try:
            min_childs = _check_bound(min_childs, "min_processes")
            max_childs = _check_bound(max_childs, "max_processes")
        except ValueError as e:
            raise ConfigurationError(f"job {name}: {e}") from None
        if min_childs > max_childs:
            raise ConfigurationError(f"job {name}: min_processes ({min_childs}) must not exceed max_processes ({max_childs})")
        self.name = name
        self._min_childs = min_childs
        self._max_childs = max_childs
        self.methods: List[JobMethod] = list(methods or [])
        self.childs: Dict[int, ChildHandle] = {}
        self.lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<Job {self.name} min={self._min_childs} max={self._max_childs} childs={len(self.childs)}>"

    # bounds
    @property
    def min_childs(self) -> int:
        return self._min_childs

    @property
    def max_childs(self) -> int:
        return self._max_childs

    def set_min_childs(self, value: int):
        value = _check_bound(value, "min_childs")
        if value > self._max_childs:
            raise ValueError("min_childs must be smaller than max_childs")
        self._min_childs = value

    def set_max_childs(self, value: int):
        value = _check_bound(value, "max_childs")
        if value < self._min_childs:
            raise ValueError("max_childs must be greater than min_childs")
        self._max_childs = value

    # methods
    @property
    def functions(self) -> List[str]:
        return [m.name for m in self.methods]

    def add_method(self, method: JobMethod) -> bool:
        """Register a method; returns False if an identical one is already present."""
        for existing in self.methods:
            if existing.name == method.name:
                if existing.same_as(method):
                    return False
                raise ConfigurationError(f"job {self.name}: method {method.name} registered twice with different bodies")
        self.methods.append(method)
        return True

    # children
    def count_childs(self) -> int:
        return len(self.childs)

    def active_childs(self) -> List[ChildHandle]:
        return [c for c in self.childs.values() if c.status != TERMINATING]

    def add_child(self, pid: int, started_at: Optional[float] = None) -> ChildHandle:
        handle = ChildHandle(pid=pid, started_at=started_at if started_at is not None else now_ts())
        self.childs[pid] = handle
        return handle

    def remove_child(self, pid: int) -> Optional[ChildHandle]:
        return self.childs.pop(pid, None)

    def mark_terminating(self, pid: int) -> bool:
        handle = self.childs.get(pid)
        if handle is None:
            return False
        handle.status = TERMINATING
        return True

    def apply_worker_state(self, pid: int, status: str, since: Optional[float] = None) -> bool:
        """
        Apply a telemetry-observed status. Terminating children and unknown pids
        are left alone. Returns True when the handle changed.
        """
        handle = self.childs.get(pid)
        if handle is None or handle.status == TERMINATING:
            return False
        if status not in (IDLE, BUSY):
            return False
        if status == IDLE:
            if handle.status != IDLE:
                handle.status = IDLE
                handle.idle_since = since if since is not None else now_ts()
                return True
            if since is not None and handle.idle_since != since:
                # worker reported a fresh idle period (finished a job between polls)
                handle.idle_since = since
                return True
            return False
        if handle.status != BUSY:
            handle.status = BUSY
            handle.idle_since = None
            return True
        return False

    def idle_candidates(self, idle_for: float, now: Optional[float] = None) -> List[ChildHandle]:
        """Idle children idle longer than `idle_for`, oldest-idle first (ties: started_at, pid)."""
        now = now if now is not None else now_ts()
        found = [c for c in self.childs.values() if c.status == IDLE and c.idle_since is not None and now - c.idle_since > idle_for]
        found.sort(key=lambda c: (c.idle_since, c.started_at, c.pid))
        return found

    def status_counts(self) -> Dict[str, int]:
        counts = {s: 0 for s in CHILD_STATUSES}
        for c in self.childs.values():
            counts[c.status] = counts.get(c.status, 0) + 1
        return counts

    def status_line(self) -> str:
        return f"{self.name}\t{self._min_childs}\t{self._max_childs}\t{len(self.childs)}"

__all__ = [
    "Job", "JobSpec", "JobMethod", "ChildHandle",
    "STARTING", "IDLE", "BUSY", "TERMINATING", "CHILD_STATUSES",
]
