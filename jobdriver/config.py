# jobdriver/config.py
"""
Driver settings.

Settings come from three layers, later ones winning:
  1) defaults below
  2) JOBDRIVER_* environment variables (a .env file is loaded first if present)
  3) explicit overrides (CLI flags)

Durations accept plain seconds or strings such as "30s", "5m", "1h30m".
`server` accepts a comma-separated list; bare "host:port" entries are taken
as redis URLs.
"""

from __future__ import annotations

import os
import importlib
import logging
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from jobdriver.errors import ConfigurationError
from jobdriver.utils.time_utils import parse_duration
from jobdriver.utils.tracing import EXPORTERS

LOG = logging.getLogger("jobdriver.config")

ENV_PREFIX = "JOBDRIVER_"

DEFAULT_CONSOLE_PORT = 47300

def _resolve_import_path(path: str) -> Any:
    """Import "package.module:attr" (or "package.module.attr")."""
    if ":" in path:
        mod_name, _, attr = path.partition(":")
    else:
        mod_name, _, attr = path.rpartition(".")
    if not mod_name or not attr:
        raise ValueError(f"invalid import path {path!r}; expected 'module:attribute'")
    module = importlib.import_module(mod_name)
    obj = module
    for part in attr.split("."):
        obj = getattr(obj, part)
    return obj

class DriverSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True, validate_assignment=True)

    server: List[str] = Field(default_factory=lambda: ["redis://localhost:6379/0"], description="Broker addresses")
    namespace: str = Field("jobdriver", description="Key prefix used on the broker")
    interval: float = Field(5.0, gt=0, description="Observer poll period (seconds)")
    max_idle_time: float = Field(0.0, ge=0, description="Idle seconds before a child above min is terminated; 0 disables")
    console_host: str = Field("0.0.0.0")
    console_port: int = Field(DEFAULT_CONSOLE_PORT, ge=0, le=65535, description="0 disables the console")
    broker_timeout: float = Field(2.0, gt=0, description="Per-job broker query timeout (seconds)")
    graceful_timeout: float = Field(10.0, ge=0, description="Shutdown grace period before SIGKILL")
    poll_timeout: float = Field(1.0, gt=0, description="Child BRPOP block time (seconds)")
    result_ttl: int = Field(3600, gt=0)
    metrics_port: int = Field(0, ge=0, le=65535, description="Prometheus exporter port; 0 disables")
    loglevel: str = Field("INFO")
    logfile: Optional[str] = None
    log_json: bool = False
    tracing: str = Field("none", description="Span exporter: none or console")
    tracing_sample_ratio: float = Field(1.0, ge=0, le=1)
    unknown_job_callback: Optional[Callable[..., Any]] = None

    @field_validator("server", mode="before")
    @classmethod
    def _split_servers(cls, v):
        if isinstance(v, str):
            v = [s for s in (p.strip() for p in v.split(",")) if s]
        if not v:
            raise ValueError("at least one broker server is required")
        out = []
        for s in v:
            s = str(s).strip()
            out.append(s if "://" in s else f"redis://{s}")
        return out

    @field_validator("interval", "max_idle_time", "broker_timeout", "graceful_timeout", "poll_timeout", mode="before")
    @classmethod
    def _durations(cls, v):
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("loglevel")
    @classmethod
    def _loglevel(cls, v: str) -> str:
        v = v.upper()
        if not isinstance(getattr(logging, v, None), int):
            raise ValueError(f"unknown log level {v!r}")
        return v

    @field_validator("tracing")
    @classmethod
    def _tracing(cls, v: str) -> str:
        v = v.lower()
        if v not in EXPORTERS:
            raise ValueError(f"unknown tracing exporter {v!r}")
        return v

    @field_validator("unknown_job_callback", mode="before")
    @classmethod
    def _callback(cls, v):
        if v is None or v == "":
            return None
        if isinstance(v, str):
            try:
                v = _resolve_import_path(v)
            except (ImportError, AttributeError) as e:
                raise ValueError(f"cannot import unknown_job_callback {v!r}: {e}") from e
        if not callable(v):
            raise ValueError("unknown_job_callback must be callable")
        return v

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None, dotenv: bool = True, **overrides) -> "DriverSettings":
        """
        Build settings from JOBDRIVER_* variables plus overrides. Overrides whose
        value is None are ignored so argparse defaults don't mask the environment.
        """
        if env is None:
            if dotenv and load_dotenv():
                LOG.debug("Loaded settings from .env")
            env = dict(os.environ)
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in env and env[key] != "":
                values[name] = env[key]
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"invalid settings: {e}") from e

__all__ = ["DriverSettings", "DEFAULT_CONSOLE_PORT", "ENV_PREFIX"]
