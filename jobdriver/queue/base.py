# jobdriver/queue/base.py
"""
Broker-facing types.

BrokerStatus is the per-poll snapshot the Observer consumes; BrokerStatusClient
is the capability it polls. A broker adapter only has to satisfy the protocol
below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

@dataclass(frozen=True)
class WorkerState:
    """Self-reported state of one worker process."""
    status: str
    since: float
    host: Optional[str] = None

@dataclass(frozen=True)
class BrokerStatus:
    name: str
    queue_depth: int = 0
    free: int = 0
    running: int = 0
    workers: Mapping[int, WorkerState] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "queue_depth": self.queue_depth, "free": self.free, "running": self.running}

@dataclass
class ClaimedJob:
    """A job envelope claimed by a worker process."""
    id: str
    function: str
    workload: Any
    submitted_at: Optional[float] = None
    server: Optional[str] = None

class BrokerStatusClient(Protocol):
    async def status(self, name: str, functions: Sequence[str]) -> BrokerStatus:
        ...

    async def function_status(self, function: str) -> BrokerStatus:
        ...

    async def list_functions(self) -> List[str]:
        ...

    async def close(self) -> None:
        ...

__all__ = ["WorkerState", "BrokerStatus", "ClaimedJob", "BrokerStatusClient"]
