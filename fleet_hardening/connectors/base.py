"""
Base connector interface for remote execution.

Defines the session contract every transport implements: command
execution, file transfer and guaranteed release of resources.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..core.exceptions import ExecutionError
from ..core.models import HostDescriptor, OSFamily

logger = logging.getLogger(__name__)


def ps_quote(value: str) -> str:
    """Quote ``value`` as a PowerShell single-quoted literal."""
    return "'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class CommandResult:
    """Result of a command run through a session."""
    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class Session(ABC):
    """
    An open execution channel to one host.

    Sessions are context managers; leaving the ``with`` block closes the
    session whether or not an error was raised. ``close`` may be called
    from another thread to abort an in-flight command.
    """

    #: Shell dialect commands are written in, used by actions.
    shell = "posix"

    def __init__(self, host: HostDescriptor, command_timeout: Optional[float] = None):
        """
        Initialize a session.

        Args:
            host: Host this session talks to
            command_timeout: Default per-command timeout in seconds
        """
        self.host = host
        self.command_timeout = command_timeout
        self._closed = threading.Event()
        self._close_lock = threading.Lock()

    @property
    def os_family(self) -> OSFamily:
        return self.host.os_family

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def run(self, command: str, stdin: Optional[str] = None,
            timeout: Optional[float] = None) -> CommandResult:
        """
        Execute a command on the host.

        Args:
            command: Command line in the session's shell dialect
            stdin: Text fed to the command's standard input
            timeout: Seconds before the command is abandoned

        Returns:
            CommandResult: Exit code and captured output

        Raises:
            ExecutionError: If the session is closed or the transport fails
        """
        if self.closed:
            raise ExecutionError(f"session to {self.host.id} is closed")
        effective_timeout = timeout if timeout is not None else self.command_timeout
        logger.debug("host=%s run: %s", self.host.id, command)
        result = self._run(command, stdin, effective_timeout)
        if self.closed:
            raise ExecutionError(f"session to {self.host.id} closed during command")
        return result

    @abstractmethod
    def _run(self, command: str, stdin: Optional[str],
             timeout: Optional[float]) -> CommandResult:
        """Transport specific command execution."""

    @abstractmethod
    def read_file(self, path: str) -> Optional[str]:
        """
        Read a text file from the host.

        Returns:
            Optional[str]: File contents, None if the file does not exist
        """

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """
        Replace a text file on the host.

        Raises:
            ExecutionError: If the file could not be written
        """

    def check(self, command: str, stdin: Optional[str] = None) -> CommandResult:
        """Run ``command`` and raise ExecutionError on a non-zero exit."""
        result = self.run(command, stdin=stdin)
        if not result.success:
            detail = (result.stderr or result.stdout).strip()
            raise ExecutionError(
                f"'{command}' exited {result.exit_code}: {detail}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
        self._release()

    def _release(self) -> None:
        """Transport specific cleanup, called once."""

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class Connector(ABC):
    """Opens sessions to hosts of one transport type."""

    def __init__(self, command_timeout: Optional[float] = None):
        self.command_timeout = command_timeout

    @abstractmethod
    def connect(self, host: HostDescriptor) -> Session:
        """
        Open a session to ``host``.

        Raises:
            HostConnectionError: If the host is unreachable or rejects auth
        """
