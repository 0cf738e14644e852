# jobdriver/main.py
"""
Command line entry point.

    jobdriver run myapp.workers --console-port 47300 --max-idle-time 5m
    jobdriver submit myapp.workers.images.Images.resize '{"w": 64}' --json --wait 10
    jobdriver broker-status

Settings not given on the command line come from JOBDRIVER_* environment
variables (and a .env file), see jobdriver.config.
"""

from __future__ import annotations

import sys
import json
import asyncio
import logging
import argparse
from typing import Any, Dict, List, Optional

from jobdriver.config import DriverSettings
from jobdriver.driver import Driver
from jobdriver.errors import BrokerError, ConfigurationError
from jobdriver.loader import Loader
from jobdriver.queue.redis_queue import RedisBroker, RedisQueueConfig
from jobdriver.utils.logger import configure_logging
from jobdriver.utils.tracing import EXPORTERS, init_tracing, shutdown_tracing

LOG = logging.getLogger("jobdriver.main")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

# -------------------------
# CLI
# -------------------------
def _build_cli() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="jobdriver", description="Autoscaling worker pools for a Redis job queue")
    p.add_argument("--server", help="comma separated broker URLs (JOBDRIVER_SERVER)")
    p.add_argument("--namespace", help="broker key prefix (JOBDRIVER_NAMESPACE)")
    p.add_argument("--loglevel", help="log level (JOBDRIVER_LOGLEVEL)")
    p.add_argument("--logfile", help="rotating JSON log file (JOBDRIVER_LOGFILE)")
    p.add_argument("--log-json", action="store_true", default=None, help="JSON logs on stdout")
    sub = p.add_subparsers(dest="cmd")

    run = sub.add_parser("run", help="load workers and run the driver")
    run.add_argument("namespaces", nargs="+", help="modules or packages containing Worker classes")
    run.add_argument("--interval", help="observer poll period, e.g. 5 or 5s")
    run.add_argument("--max-idle-time", help="idle time before an extra worker is stopped; 0 disables")
    run.add_argument("--console-host")
    run.add_argument("--console-port", type=int, help="0 disables the console")
    run.add_argument("--metrics-port", type=int, help="Prometheus exporter port; 0 disables")
    run.add_argument("--broker-timeout")
    run.add_argument("--graceful-timeout")
    run.add_argument("--unknown-job-callback", help="module:attribute of a callback(driver, status)")
    run.add_argument("--tracing", choices=EXPORTERS, help="span exporter (JOBDRIVER_TRACING)")

    submit = sub.add_parser("submit", help="queue one job")
    submit.add_argument("function")
    submit.add_argument("workload")
    submit.add_argument("--json", action="store_true", help="parse WORKLOAD as JSON")
    submit.add_argument("--wait", type=float, default=None, metavar="SECONDS", help="wait for the result")

    sub.add_parser("broker-status", help="print queue depth of every known function")
    return p

def _settings(args: argparse.Namespace) -> DriverSettings:
    overrides: Dict[str, Any] = {
        "server": args.server,
        "namespace": args.namespace,
        "loglevel": args.loglevel,
        "logfile": args.logfile,
        "log_json": args.log_json,
    }
    for name in (
        "interval", "max_idle_time", "console_host", "console_port", "metrics_port",
        "broker_timeout", "graceful_timeout", "unknown_job_callback", "tracing",
    ):
        overrides[name] = getattr(args, name, None)
    return DriverSettings.from_env(**overrides)

def _broker(settings: DriverSettings) -> RedisBroker:
    return RedisBroker(RedisQueueConfig(
        servers=list(settings.server),
        namespace=settings.namespace,
        result_ttl=settings.result_ttl,
        socket_timeout=settings.broker_timeout,
    ))

# -------------------------
# Commands
# -------------------------
async def _run(settings: DriverSettings, namespaces: List[str]) -> int:
    driver = Driver(settings)
    driver.add_jobs(Loader(namespaces).load())
    init_tracing(exporter=settings.tracing, sample_ratio=settings.tracing_sample_ratio)
    try:
        await driver.run()
    finally:
        shutdown_tracing()
    return EXIT_OK

async def _submit(settings: DriverSettings, function: str, workload: Any, wait: Optional[float]) -> int:
    broker = _broker(settings)
    try:
        job_id = await broker.submit(function, workload)
        print(job_id)
        if wait is None:
            return EXIT_OK
        result = await broker.fetch_result(job_id, timeout=wait)
        if result is None:
            print(f"no result for {job_id} within {wait:.1f}s", file=sys.stderr)
            return EXIT_FAILURE
        print(json.dumps(result, indent=2))
        return EXIT_OK if result.get("status") == "complete" else EXIT_FAILURE
    finally:
        await broker.close()

async def _broker_status(settings: DriverSettings) -> int:
    broker = _broker(settings)
    try:
        health = await broker.health()
        functions = []
        for fn in await broker.list_functions():
            functions.append((await broker.function_status(fn)).as_dict())
        print(json.dumps({"health": health, "functions": functions}, indent=2))
        return EXIT_OK if health.get("ok") else EXIT_FAILURE
    finally:
        await broker.close()

def main_cli(argv: Optional[List[str]] = None) -> int:
    parser = _build_cli()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return EXIT_CONFIG
    try:
        settings = _settings(args)
        configure_logging(settings.loglevel, logfile=settings.logfile, json_format=settings.log_json)
        if args.cmd == "run":
            return asyncio.run(_run(settings, args.namespaces))
        if args.cmd == "submit":
            workload: Any = args.workload
            if args.json:
                try:
                    workload = json.loads(args.workload)
                except ValueError as e:
                    raise ConfigurationError(f"WORKLOAD is not valid JSON: {e}") from e
            return asyncio.run(_submit(settings, args.function, workload, args.wait))
        return asyncio.run(_broker_status(settings))
    except ConfigurationError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except BrokerError as e:
        print(f"broker error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_FAILURE

def main():
    sys.exit(main_cli())

__all__ = ["main_cli", "main"]

if __name__ == "__main__":
    main()
