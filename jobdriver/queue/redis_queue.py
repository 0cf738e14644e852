# jobdriver/queue/redis_queue.py
"""
jobdriver Redis broker adapter

Redis is the queue server; this module is only a client of it. Three roles:
 - RedisBroker (async, parent process): per-job status snapshots for the
   Observer, function discovery for unknown-job reporting, job submission and
   result retrieval for producers / the CLI
 - RedisWorkerClient (sync, forked children): claim jobs with BRPOP, report
   completion/failure, publish idle/busy telemetry
 - key layout helpers shared by both

Key layout (namespace `ns`):
    {ns}:queue:{function}   list of JSON envelopes {id, function, workload, submitted_at}
    {ns}:functions          set of every function name ever submitted
    {ns}:workers:{job}      hash "{host}:{pid}" -> JSON {status, since, host}  (primary server only)
    {ns}:result:{id}        list holding one JSON result, expires after result_ttl

Several servers may be configured. Queue depths are summed across all of
them; worker telemetry lives on the primary (first) server.
"""

from __future__ import annotations

import os
import json
import asyncio
import time
import uuid
import socket
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import redis
import redis.asyncio as redis_async
from redis.exceptions import RedisError

from jobdriver.errors import BrokerError
from jobdriver.queue.base import BrokerStatus, ClaimedJob, WorkerState
from jobdriver.utils.time_utils import now_ts

LOG = logging.getLogger("jobdriver.queue.redis")

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_NAMESPACE = "jobdriver"
DEFAULT_RESULT_TTL = 3600
RESULT_POLL_INTERVAL = 0.1

# -------------------------
# Config dataclass
# -------------------------
@dataclass
class RedisQueueConfig:
    servers: List[str] = field(default_factory=lambda: [DEFAULT_REDIS_URL])
    namespace: str = DEFAULT_NAMESPACE
    result_ttl: int = DEFAULT_RESULT_TTL
    socket_timeout: Optional[float] = None

    def __post_init__(self):
        if not self.servers:
            raise ValueError("at least one broker server is required")

# -------------------------
# Key helpers
# -------------------------
def queue_key(ns: str, function: str) -> str:
    return f"{ns}:queue:{function}"

def functions_key(ns: str) -> str:
    return f"{ns}:functions"

def workers_key(ns: str, job: str) -> str:
    return f"{ns}:workers:{job}"

def result_key(ns: str, job_id: str) -> str:
    return f"{ns}:result:{job_id}"

def worker_field(host: str, pid: int) -> str:
    return f"{host}:{pid}"

def _hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "localhost"

def parse_worker_hash(raw: Dict[str, str], host: str) -> Tuple[int, int, Dict[int, WorkerState]]:
    """
    Turn a workers hash into (free, running, {pid: WorkerState}) where the pid
    map only covers workers on `host`. Malformed entries are skipped.
    """
    free = running = 0
    local: Dict[int, WorkerState] = {}
    for fld, value in raw.items():
        try:
            entry = json.loads(value)
            status = entry["status"]
            since = float(entry.get("since") or 0.0)
        except (ValueError, KeyError, TypeError):
            LOG.debug("Skipping malformed worker entry %s=%r", fld, value)
            continue
        if status == "idle":
            free += 1
        elif status == "busy":
            running += 1
        whost, _, pid = fld.rpartition(":")
        if whost == host and pid.isdigit():
            local[int(pid)] = WorkerState(status=status, since=since, host=whost)
    return free, running, local

# -------------------------
# Async broker (parent)
# -------------------------
class RedisBroker:
    """
    Async Redis client used by the driver process.
    Implements BrokerStatusClient plus submit/fetch_result helpers.
    """

    def __init__(self, config: Optional[RedisQueueConfig] = None, clients: Optional[Sequence[Any]] = None):
        self.config = config or RedisQueueConfig()
        self.ns = self.config.namespace
        self.host = _hostname()
        self._clients: List[Any] = list(clients) if clients is not None else []

    @classmethod
    def from_urls(cls, servers: Iterable[str], namespace: str = DEFAULT_NAMESPACE, result_ttl: int = DEFAULT_RESULT_TTL) -> "RedisBroker":
        return cls(RedisQueueConfig(servers=list(servers), namespace=namespace, result_ttl=result_ttl))

    def _ensure_clients(self) -> List[Any]:
        if not self._clients:
            self._clients = [
                redis_async.from_url(url, decode_responses=True, socket_timeout=self.config.socket_timeout)
                for url in self.config.servers
            ]
            LOG.info("Broker clients created for %s", ", ".join(self.config.servers))
        return self._clients

    @property
    def primary(self):
        return self._ensure_clients()[0]

    def close_inherited_sockets(self):
        """
        Close this process's copies of the pooled connection sockets. Called in
        a freshly forked child, which talks to Redis through its own sync client.
        The client objects stay referenced so no finalizer runs against the
        parent's event loop.
        """
        for client in self._clients:
            pool = getattr(client, "connection_pool", None)
            conns = list(getattr(pool, "_available_connections", ())) + list(getattr(pool, "_in_use_connections", ()))
            for conn in conns:
                writer = getattr(conn, "_writer", None)
                sock = writer.get_extra_info("socket") if writer is not None else None
                if sock is None:
                    continue
                try:
                    os.close(sock.fileno())
                except OSError as e:
                    LOG.debug("Inherited broker socket already closed: %s", e)

    async def close(self):
        for client in self._clients:
            try:
                await client.aclose()
            except (RedisError, OSError):
                LOG.exception("Redis client close failed")
        self._clients = []

    # -------------------------
    # Status (Observer)
    # -------------------------
    async def status(self, name: str, functions: Sequence[str]) -> BrokerStatus:
        try:
            depth = 0
            for client in self._ensure_clients():
                for fn in functions:
                    depth += int(await client.llen(queue_key(self.ns, fn)))
            raw = await self.primary.hgetall(workers_key(self.ns, name))
        except (RedisError, OSError) as e:
            raise BrokerError(f"status query for {name} failed: {e}") from e
        free, running, local = parse_worker_hash(raw or {}, self.host)
        return BrokerStatus(name=name, queue_depth=depth, free=free, running=running, workers=local)

    async def function_status(self, function: str) -> BrokerStatus:
        try:
            depth = 0
            for client in self._ensure_clients():
                depth += int(await client.llen(queue_key(self.ns, function)))
        except (RedisError, OSError) as e:
            raise BrokerError(f"status query for {function} failed: {e}") from e
        return BrokerStatus(name=function, queue_depth=depth)

    async def list_functions(self) -> List[str]:
        names = set()
        try:
            for client in self._ensure_clients():
                names.update(await client.smembers(functions_key(self.ns)))
        except (RedisError, OSError) as e:
            raise BrokerError(f"function listing failed: {e}") from e
        return sorted(names)

    async def forget_worker(self, job: str, pid: int):
        """Drop telemetry of a reaped child (crashed children never unregister themselves)."""
        try:
            await self.primary.hdel(workers_key(self.ns, job), worker_field(self.host, pid))
        except (RedisError, OSError) as e:
            raise BrokerError(f"forget_worker {job}/{pid} failed: {e}") from e

    # -------------------------
    # Producer helpers
    # -------------------------
    async def submit(self, function: str, workload: Any, server_index: int = 0) -> str:
        """LPUSH a job envelope; returns the job id."""
        job_id = uuid.uuid4().hex
        envelope = {"id": job_id, "function": function, "workload": workload, "submitted_at": now_ts()}
        clients = self._ensure_clients()
        client = clients[server_index % len(clients)]
        try:
            await client.sadd(functions_key(self.ns), function)
            await client.lpush(queue_key(self.ns, function), json.dumps(envelope))
        except (RedisError, OSError) as e:
            raise BrokerError(f"submit to {function} failed: {e}") from e
        LOG.debug("Submitted job %s to %s", job_id, function)
        return job_id

    async def fetch_result(self, job_id: str, timeout: float = 0) -> Optional[Dict[str, Any]]:
        """
        Wait up to `timeout` seconds (0 = don't block) for a job result.
        The result stays readable until it expires.
        """
        key = result_key(self.ns, job_id)
        deadline = time.monotonic() + timeout
        try:
            while True:
                for client in self._ensure_clients():
                    raw = await client.lindex(key, 0)
                    if raw is not None:
                        return json.loads(raw)
                if time.monotonic() >= deadline:
                    return None
                await asyncio.sleep(RESULT_POLL_INTERVAL)
        except (RedisError, OSError) as e:
            raise BrokerError(f"fetch_result {job_id} failed: {e}") from e

    async def health(self) -> Dict[str, Any]:
        res: Dict[str, Any] = {"servers": {}, "namespace": self.ns}
        for url, client in zip(self.config.servers, self._ensure_clients()):
            try:
                res["servers"][url] = bool(await client.ping())
            except (RedisError, OSError):
                LOG.exception("Redis ping failed for %s", url)
                res["servers"][url] = False
        res["ok"] = all(res["servers"].values())
        return res

# -------------------------
# Sync worker client (child)
# -------------------------
class RedisWorkerClient:
    """
    Blocking client used inside a forked worker process. Never created in the
    parent: redis connections must not be shared across fork.
    """

    def __init__(self, config: RedisQueueConfig, job_name: str, pid: int, clients: Optional[Sequence[Any]] = None):
        self.config = config
        self.ns = config.namespace
        self.job_name = job_name
        self.pid = pid
        self.host = _hostname()
        self._clients: List[Any] = list(clients) if clients is not None else []
        self._next = 0

    def _ensure_clients(self) -> List[Any]:
        if not self._clients:
            self._clients = [redis.Redis.from_url(url, decode_responses=True) for url in self.config.servers]
        return self._clients

    @property
    def primary(self):
        return self._ensure_clients()[0]

    def close(self):
        for client in self._clients:
            try:
                client.close()
            except (RedisError, OSError):
                LOG.debug("Redis client close failed", exc_info=True)
        self._clients = []

    # telemetry
    def set_state(self, status: str):
        entry = {"status": status, "since": now_ts(), "host": self.host}
        try:
            self.primary.hset(workers_key(self.ns, self.job_name), worker_field(self.host, self.pid), json.dumps(entry))
        except (RedisError, OSError) as e:
            raise BrokerError(f"telemetry update failed: {e}") from e

    def unregister(self):
        try:
            self.primary.hdel(workers_key(self.ns, self.job_name), worker_field(self.host, self.pid))
        except (RedisError, OSError) as e:
            raise BrokerError(f"unregister failed: {e}") from e

    # work
    def claim(self, functions: Sequence[str], timeout: float) -> Optional[ClaimedJob]:
        """
        BRPOP the next envelope for any of `functions`. Servers are visited
        round-robin, splitting `timeout` between them.
        """
        clients = self._ensure_clients()
        keys = [queue_key(self.ns, fn) for fn in functions]
        per_server = max(0.1, float(timeout) / len(clients))
        for _ in range(len(clients)):
            idx = self._next % len(clients)
            self._next += 1
            try:
                res = clients[idx].brpop(keys, timeout=per_server)
            except (RedisError, OSError) as e:
                raise BrokerError(f"claim on {self.config.servers[idx]} failed: {e}") from e
            if not res:
                continue
            _key, raw = res
            try:
                env = json.loads(raw)
                return ClaimedJob(
                    id=env["id"],
                    function=env["function"],
                    workload=env.get("workload"),
                    submitted_at=env.get("submitted_at"),
                    server=self.config.servers[idx],
                )
            except (ValueError, KeyError, TypeError):
                LOG.error("Dropping malformed job envelope from %s: %r", _key, raw)
        return None

    def _store_result(self, job: ClaimedJob, payload: Dict[str, Any]):
        clients = self._ensure_clients()
        client = clients[0]
        if job.server in self.config.servers:
            client = clients[self.config.servers.index(job.server)]
        key = result_key(self.ns, job.id)
        try:
            pipe = client.pipeline()
            pipe.delete(key)
            pipe.lpush(key, json.dumps(payload, default=str))
            pipe.expire(key, int(self.config.result_ttl))
            pipe.execute()
        except (RedisError, OSError) as e:
            raise BrokerError(f"result for {job.id} could not be stored: {e}") from e

    def complete(self, job: ClaimedJob, result: Any):
        self._store_result(job, {"id": job.id, "status": "complete", "result": result, "finished_at": now_ts()})

    def fail(self, job: ClaimedJob, error: str):
        self._store_result(job, {"id": job.id, "status": "fail", "error": error, "finished_at": now_ts()})

__all__ = [
    "RedisQueueConfig",
    "RedisBroker",
    "RedisWorkerClient",
    "parse_worker_hash",
    "queue_key",
    "functions_key",
    "workers_key",
    "result_key",
    "worker_field",
]
