"""
Error taxonomy for the fleet hardening engine.

Process-scoped errors (ConfigError) abort a run before any host work starts.
Every other error is host-scoped and only affects the host it was raised for.
"""

from typing import List, Optional


class HardeningError(Exception):
    """Base class for all errors raised by the engine."""


class ConfigError(HardeningError):
    """Malformed configuration, inventory, task definition or template."""


class HostConnectionError(HardeningError):
    """A host could not be reached or rejected the credentials."""

    def __init__(self, host_id: str, message: str):
        super().__init__(f"{host_id}: {message}")
        self.host_id = host_id


class ExecutionError(HardeningError):
    """A command could not be completed on a remote host."""

    def __init__(self, message: str, exit_code: Optional[int] = None,
                 stderr: Optional[str] = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class TemplateError(HardeningError):
    """A report template referenced data that does not exist."""


class RunCancelled(HardeningError):
    """The run was cancelled while a host was being processed."""

    def __init__(self, results: Optional[List] = None):
        super().__init__("run cancelled")
        self.results = list(results or [])
