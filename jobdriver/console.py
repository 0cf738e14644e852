# jobdriver/console.py
"""
Management console: a line-oriented TCP server for inspecting and retuning
Job bounds at runtime.

    $ telnet localhost 47300
    status
    images.Resize.resize    1       4       2
    mail.Sender.send        0       2       0
    .
    set_max_childs mail.Sender.send 6
    OK
    .
    set_min_childs ghost 1
    ERR invalid_job_name: ghost
    quit

Successful commands answer zero or more lines followed by a single ".".
Failures answer one `ERR <token>: <message>` line. The console only ever
touches Job bounds; the Observer converges the pools on its next cycle.
"""

from __future__ import annotations

import os
import re
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from jobdriver.errors import ConsoleError
from jobdriver.metrics import count_console_command

LOG = logging.getLogger("jobdriver.console")

DEFAULT_LINE_LIMIT = 4096
_UINT = re.compile(r"[0-9]+")

Handler = Callable[[List[str]], Awaitable[List[str]]]

class Console:
    """
    TCP console bound to a Driver. The driver reference is non-owning: the
    Driver creates the console, starts it from run() and stops it during
    shutdown.
    """

    def __init__(self, driver: Any, port: int, host: str = "0.0.0.0", limit: int = DEFAULT_LINE_LIMIT):
        self.driver = driver
        self.host = host
        self.port = port
        self.limit = limit
        self._server: Optional[asyncio.AbstractServer] = None
        self._clients: set = set()
        # closed command set
        self._commands: Dict[str, Handler] = {
            "status": self._status,
            "set_min_childs": self._set_min_childs,
            "set_max_childs": self._set_max_childs,
        }

    @property
    def commands(self) -> List[str]:
        return sorted(self._commands)

    # -------------------------
    # Lifecycle
    # -------------------------
    async def start(self):
        self._server = await asyncio.start_server(self.handle_client, self.host, self.port, limit=self.limit)
        sockets = self._server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        LOG.info("Console listening on %s:%d", self.host, self.port)

    async def stop(self):
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._clients):
            writer.close()
        await self._server.wait_closed()
        self._server = None
        LOG.info("Console stopped")

    @property
    def running(self) -> bool:
        return self._server is not None

    def close_inherited_sockets(self):
        """
        Close this process's copies of the listening and client sockets.
        Called in a freshly forked child so the port is released as soon as the
        parent stops the console; the socket objects stay referenced and unused.
        """
        socks = list(self._server.sockets) if self._server is not None else []
        socks.extend(w.get_extra_info("socket") for w in self._clients)
        for sock in socks:
            if sock is None:
                continue
            try:
                os.close(sock.fileno())
            except OSError as e:
                LOG.debug("Inherited console socket already closed: %s", e)

    # -------------------------
    # Connections
    # -------------------------
    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info("peername")
        LOG.debug("Console client connected: %s", peer)
        self._clients.add(writer)
        try:
            while True:
                try:
                    raw = await reader.readline()
                except ValueError:
                    # StreamReader drops the oversized buffer; the stream position is lost
                    writer.write(b"ERR invalid_command: line too long\n")
                    await writer.drain()
                    break
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                if line.split()[0] == "quit":
                    break
                out = await self.execute(line)
                writer.write("".join(f"{x}\n" for x in out).encode("utf-8"))
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            LOG.debug("Console client %s went away", peer)
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            LOG.debug("Console client disconnected: %s", peer)

    async def execute(self, line: str) -> List[str]:
        """Run one command line and return the response lines (framing included)."""
        parts = line.split()
        if not parts:
            return []
        command, args = parts[0], parts[1:]
        handler = self._commands.get(command)
        if handler is None:
            count_console_command("unknown", False)
            return [f"ERR unknown_command: {command}"]
        try:
            result = await handler(args)
        except ConsoleError as e:
            count_console_command(command, False)
            return [e.render()]
        except Exception:
            LOG.exception("Console command %r failed", line)
            count_console_command(command, False)
            return ["ERR internal_error: command failed"]
        count_console_command(command, True)
        return result + ["."]

    # -------------------------
    # Commands
    # -------------------------
    def _job(self, args: List[str]):
        name = args[0] if args else ""
        job = self.driver.get_job(name)
        if job is None:
            raise ConsoleError("invalid_job_name", name)
        return job

    @staticmethod
    def _value(args: List[str], what: str) -> int:
        raw = args[1] if len(args) > 1 else ""
        if not _UINT.fullmatch(raw):
            raise ConsoleError("invalid_value", f"{what} must be >= 0")
        return int(raw)

    async def _status(self, args: List[str]) -> List[str]:
        return [job.status_line() for job in self.driver.get_jobs()]

    async def _set_min_childs(self, args: List[str]) -> List[str]:
        job = self._job(args)
        value = self._value(args, "min_childs")
        async with job.lock:
            try:
                job.set_min_childs(value)
            except ValueError as e:
                raise ConsoleError("invalid_value", str(e)) from None
        LOG.info("Console: %s min_childs -> %d", job.name, value)
        return ["OK"]

    async def _set_max_childs(self, args: List[str]) -> List[str]:
        job = self._job(args)
        value = self._value(args, "max_childs")
        async with job.lock:
            try:
                job.set_max_childs(value)
            except ValueError as e:
                raise ConsoleError("invalid_value", str(e)) from None
        LOG.info("Console: %s max_childs -> %d", job.name, value)
        return ["OK"]

__all__ = ["Console", "DEFAULT_LINE_LIMIT"]
