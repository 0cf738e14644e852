# jobdriver/errors.py
"""
Exception types shared across jobdriver components.

Validation problems raised from the console are ConsoleError instances and are
rendered to the client as a single `ERR <token>: <message>` line. Everything
raised during registration is a ConfigurationError and is fatal at startup.
"""

from __future__ import annotations


class DriverError(Exception):
    """Base class for all jobdriver errors."""


class ConfigurationError(DriverError):
    """Invalid job specification or settings; raised before run() starts."""


class BrokerError(DriverError):
    """Transient broker failure (timeout, refused connection, protocol error)."""


class SpawnError(DriverError):
    """A worker process could not be created."""


class ConsoleError(DriverError):
    """
    A console command failed validation.
      - token: machine-stable error token (e.g. "invalid_value")
      - message: human readable detail
    """

    def __init__(self, token: str, message: str):
        super().__init__(f"{token}: {message}")
        self.token = token
        self.message = message

    def render(self) -> str:
        return f"ERR {self.token}: {self.message}"


__all__ = ["DriverError", "ConfigurationError", "BrokerError", "SpawnError", "ConsoleError"]
