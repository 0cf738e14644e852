# jobdriver/loader.py
"""
Turn application workers into JobSpec lists.

    from jobdriver.loader import job
    from jobdriver.worker import Worker

    class Images(Worker):
        @job(min_processes=1, max_processes=4, decode=json.loads, encode=json.dumps)
        def resize(self, job, payload):
            ...

    specs = Loader(["myapp.workers"]).load()

Function names are `worker.prefix() + (name or method name)`. Methods sharing
a `process_group` are served by the same processes: their Job is named
`worker.prefix() + process_group` and their bounds must agree (the Driver
rejects conflicting bounds).
"""

from __future__ import annotations

import inspect
import logging
import pkgutil
import importlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from jobdriver.errors import ConfigurationError
from jobdriver.job import JobMethod, JobSpec
from jobdriver.worker import Worker

LOG = logging.getLogger("jobdriver.loader")

_ATTR = "_jobdriver_job"

@dataclass(frozen=True)
class JobAttributes:
    name: Optional[str] = None
    min_processes: int = 1
    max_processes: int = 1
    decode: Optional[Callable[[Any], Any]] = None
    encode: Optional[Callable[[Any], Any]] = None
    process_group: Optional[str] = None

def job(
    name: Optional[str] = None,
    min_processes: int = 1,
    max_processes: int = 1,
    decode: Optional[Callable[[Any], Any]] = None,
    encode: Optional[Callable[[Any], Any]] = None,
    process_group: Optional[str] = None,
):
    """Mark a Worker method as a broker function."""
    attrs = JobAttributes(name, min_processes, max_processes, decode, encode, process_group)

    def decorator(fn):
        setattr(fn, _ATTR, attrs)
        return fn
    return decorator

def load_worker(worker: Any) -> List[JobSpec]:
    """Build JobSpecs from the @job methods of one worker instance."""
    prefix = worker.prefix() if hasattr(worker, "prefix") else ""
    groups: Dict[str, JobSpec] = {}
    specs: List[JobSpec] = []
    for attr_name, fn in inspect.getmembers(type(worker), predicate=inspect.isfunction):
        attrs = getattr(fn, _ATTR, None)
        if attrs is None:
            continue
        function = prefix + (attrs.name or attr_name)
        method = JobMethod(name=function, body=fn, decode=attrs.decode, encode=attrs.encode, worker=worker)
        if attrs.process_group:
            job_name = prefix + attrs.process_group
            spec = groups.get(job_name)
            if spec is None:
                spec = groups[job_name] = JobSpec(job_name, attrs.min_processes, attrs.max_processes, [], worker)
                specs.append(spec)
            elif (spec.min_processes, spec.max_processes) != (attrs.min_processes, attrs.max_processes):
                raise ConfigurationError(
                    f"process group {job_name}: {attr_name} declares {attrs.min_processes}/{attrs.max_processes}, "
                    f"group has {spec.min_processes}/{spec.max_processes}"
                )
            spec.methods.append(method)
        else:
            specs.append(JobSpec(function, attrs.min_processes, attrs.max_processes, [method], worker))
    return specs

class Loader:
    """
    Import `namespaces` (modules or packages, walked recursively), instantiate
    every concrete Worker subclass defined there and collect its JobSpecs.
    """

    def __init__(self, namespaces: Iterable[str], worker_base: type = Worker):
        self.namespaces = list(namespaces)
        self.worker_base = worker_base

    def _modules(self) -> List[Any]:
        modules = []
        for ns in self.namespaces:
            try:
                mod = importlib.import_module(ns)
            except ImportError as e:
                raise ConfigurationError(f"cannot import worker namespace {ns}: {e}") from e
            modules.append(mod)
            if hasattr(mod, "__path__"):
                for info in pkgutil.walk_packages(mod.__path__, prefix=mod.__name__ + "."):
                    try:
                        modules.append(importlib.import_module(info.name))
                    except ImportError as e:
                        raise ConfigurationError(f"cannot import worker module {info.name}: {e}") from e
        return modules

    def worker_classes(self) -> List[type]:
        seen = []
        for mod in self._modules():
            for _, cls in inspect.getmembers(mod, inspect.isclass):
                if cls is self.worker_base or not issubclass(cls, self.worker_base):
                    continue
                if cls.__module__ != mod.__name__ or inspect.isabstract(cls) or cls in seen:
                    continue
                seen.append(cls)
        return seen

    def load(self) -> List[JobSpec]:
        specs: List[JobSpec] = []
        for cls in self.worker_classes():
            found = load_worker(cls())
            LOG.info("Loaded %d job(s) from %s.%s", len(found), cls.__module__, cls.__name__)
            specs.extend(found)
        if not specs:
            LOG.warning("No jobs found in %s", ", ".join(self.namespaces))
        return specs

__all__ = ["job", "load_worker", "Loader", "JobAttributes"]
