# jobdriver/utils/tracing.py
"""
OpenTelemetry helpers.

Spans are always created through the OpenTelemetry API; until init_tracing()
installs an SDK provider they are no-ops. Forked children inherit the
provider of the parent (the SDK's batch processor restarts its export thread
after fork).

Usage:
    from jobdriver.utils.tracing import init_tracing, get_tracer, trace_span
    init_tracing(exporter="console")

    @trace_span("jobdriver.observer.poll")
    async def poll_once(...): ...
"""

from __future__ import annotations

import asyncio
import logging
import functools
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider, sampling
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode

LOG = logging.getLogger("jobdriver.utils.tracing")

EXPORTERS = ("none", "console")

_TRACER_PROVIDER: Optional[TracerProvider] = None

def init_tracing(service_name: str = "jobdriver", exporter: str = "none", sample_ratio: float = 1.0) -> bool:
    """
    Install an SDK tracer provider. exporter="none" keeps the API no-op.
    Returns True when a provider was installed.
    """
    global _TRACER_PROVIDER
    if exporter not in EXPORTERS:
        raise ValueError(f"unknown tracing exporter {exporter!r}; expected one of {', '.join(EXPORTERS)}")
    if exporter == "none":
        return False
    if _TRACER_PROVIDER is not None:
        return False
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=sampling.ParentBased(sampling.TraceIdRatioBased(sample_ratio)),
    )
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    _TRACER_PROVIDER = provider
    LOG.info("Tracing enabled: exporter=%s sample_ratio=%.2f", exporter, sample_ratio)
    return True

def shutdown_tracing():
    global _TRACER_PROVIDER
    if _TRACER_PROVIDER is None:
        return
    _TRACER_PROVIDER.shutdown()
    _TRACER_PROVIDER = None

def get_tracer(name: Optional[str] = None) -> trace.Tracer:
    return trace.get_tracer(name or "jobdriver")

def _record_error(span, exc: BaseException):
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc)))

def trace_span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """Decorator opening a span around a sync or async function."""
    def _decor(fn: Callable):
        tracer = get_tracer(getattr(fn, "__module__", None))

        if asyncio.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def _wrapped(*args, **kwargs):
                with tracer.start_as_current_span(name, attributes=attributes, record_exception=False) as span:
                    try:
                        return await fn(*args, **kwargs)
                    except Exception as e:
                        _record_error(span, e)
                        raise
            return _wrapped

        @functools.wraps(fn)
        def _wrapped(*args, **kwargs):
            with tracer.start_as_current_span(name, attributes=attributes, record_exception=False) as span:
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise
        return _wrapped
    return _decor

__all__ = ["init_tracing", "shutdown_tracing", "get_tracer", "trace_span", "EXPORTERS"]
