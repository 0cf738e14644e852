# jobdriver/spawner.py
"""
Host-OS process control for the driver.

ForkSpawner is the only place that calls fork/kill/waitpid. The Driver owns
the single instance; tests swap in a fake with the same three methods:

    spawn(target) -> pid        fork; the child runs target() and _exits
    kill(pid, sig) -> bool      False when the process is already gone
    reap() -> [ChildExit]       non-blocking collection of exited children
"""

from __future__ import annotations

import os
import sys
import errno
import signal
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from jobdriver.errors import SpawnError

LOG = logging.getLogger("jobdriver.spawner")

@dataclass(frozen=True)
class ChildExit:
    pid: int
    exitcode: Optional[int] = None
    signal: Optional[int] = None

    def describe(self) -> str:
        if self.signal is not None:
            try:
                return f"killed by {signal.Signals(self.signal).name}"
            except ValueError:
                return f"killed by signal {self.signal}"
        return f"exit code {self.exitcode}"

def _flush_std_streams():
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass

class ForkSpawner:
    """fork()-based spawner; children share the parent's loaded code copy-on-write."""

    def spawn(self, target: Callable[[], Any]) -> int:
        _flush_std_streams()
        try:
            pid = os.fork()
        except OSError as e:
            raise SpawnError(f"fork failed: {e}") from e
        if pid != 0:
            return pid

        # child: never return into the parent's event loop
        code = 1
        try:
            # the wakeup fd is the parent loop's self-pipe; signals sent to this
            # child must not be delivered there
            signal.set_wakeup_fd(-1)
            rv = target()
            code = rv if isinstance(rv, int) else 0
        except SystemExit as e:
            code = e.code if isinstance(e.code, int) else (0 if e.code is None else 1)
        except BaseException:
            LOG.exception("Worker process %d crashed", os.getpid())
            code = 1
        finally:
            logging.shutdown()
            _flush_std_streams()
            os._exit(code)

    def kill(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        try:
            os.kill(pid, sig)
            return True
        except OSError as e:
            if e.errno == errno.ESRCH:
                return False
            raise

    def reap(self) -> List[ChildExit]:
        exits: List[ChildExit] = []
        while True:
            try:
                pid, status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                break
            if not pid:
                break
            if os.WIFSIGNALED(status):
                exits.append(ChildExit(pid=pid, signal=os.WTERMSIG(status)))
            else:
                exits.append(ChildExit(pid=pid, exitcode=os.waitstatus_to_exitcode(status)))
        return exits

__all__ = ["ChildExit", "ForkSpawner"]
