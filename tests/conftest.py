"""
Test fixtures and utilities for the fleet hardening test suite.

Provides an in-memory session and connector that stand in for real
hosts, plus common host descriptors and task helpers.
"""

import base64
import re
import threading
from typing import Callable, Dict, List, Optional, Tuple, Union
from unittest.mock import MagicMock

import pytest
from winrm.exceptions import WinRMError, WinRMOperationTimeoutError

from fleet_hardening.connectors.base import CommandResult, Connector, Session
from fleet_hardening.core.exceptions import ExecutionError, HostConnectionError
from fleet_hardening.core.models import ConnectionParams, ConnectionType, HostDescriptor, OSFamily
from fleet_hardening.tasks.model import HandlerDefinition, TaskDefinition


Response = Union[Tuple[int, str, str], Callable[[str, Optional[str]], Tuple[int, str, str]]]


class FakeSession(Session):
    """
    Session backed by an in-memory filesystem and canned command output.

    Responses are matched with ``re.search`` against the command line; the
    most recently registered match wins. Unmatched commands succeed with no
    output.
    """

    def __init__(self, host: HostDescriptor, shell: str = "posix",
                 files: Optional[Dict[str, str]] = None):
        super().__init__(host)
        self.shell = shell
        self.files: Dict[str, str] = dict(files or {})
        self.commands: List[str] = []
        self.writes: List[str] = []
        self._responses: List[Tuple[str, Response]] = []

    def on(self, pattern: str, exit_code: int = 0, stdout: str = "", stderr: str = "",
           handler: Optional[Callable] = None) -> "FakeSession":
        """Register the response for commands matching ``pattern``."""
        self._responses.append((pattern, handler or (exit_code, stdout, stderr)))
        return self

    def ran(self, pattern: str) -> List[str]:
        """Commands run so far that match ``pattern``."""
        return [c for c in self.commands if re.search(pattern, c)]

    def _run(self, command: str, stdin: Optional[str], timeout: Optional[float]) -> CommandResult:
        self.commands.append(command)
        for pattern, response in reversed(self._responses):
            if re.search(pattern, command):
                if callable(response):
                    response = response(command, stdin)
                exit_code, stdout, stderr = response
                return CommandResult(command, exit_code, stdout, stderr)
        return CommandResult(command, 0, "", "")

    def read_file(self, path: str) -> Optional[str]:
        if self.closed:
            raise ExecutionError(f"session to {self.host.id} is closed")
        return self.files.get(path)

    def write_file(self, path: str, content: str) -> None:
        if self.closed:
            raise ExecutionError(f"session to {self.host.id} is closed")
        self.writes.append(path)
        self.files[path] = content


class FakeConnector(Connector):
    """Hands out pre-built FakeSessions keyed by host id."""

    def __init__(self, sessions: Optional[Dict[str, FakeSession]] = None,
                 unreachable: Tuple[str, ...] = ()):
        super().__init__()
        self.sessions: Dict[str, FakeSession] = dict(sessions or {})
        self.unreachable = set(unreachable)
        self.connected: List[str] = []
        self._lock = threading.Lock()

    def connect(self, host: HostDescriptor) -> Session:
        if host.id in self.unreachable:
            raise HostConnectionError(host.id, "connection refused")
        with self._lock:
            self.connected.append(host.id)
        session = self.sessions[host.id]
        # A reconnect reuses the same in-memory host state.
        session._closed.clear()
        return session


class FakeWinRMProtocol:
    """
    Stand-in for ``winrm.protocol.Protocol``.

    Scripts are decoded from ``-EncodedCommand`` and answered by regex like
    FakeSession. A command registered with ``hang=True`` keeps polling
    without output until ``cleanup_command`` terminates it.
    """

    def __init__(self):
        self.scripts: List[str] = []
        self.closed_shells: List[str] = []
        self.terminated = threading.Event()
        self.hanging = threading.Event()
        self.transport = MagicMock()
        self._responses: List[Tuple[str, Optional[Tuple[int, bytes, bytes]]]] = []
        self._commands: Dict[str, Optional[Tuple[int, bytes, bytes]]] = {}
        self._lock = threading.Lock()

    def on(self, pattern: str, status_code: int = 0, stdout: bytes = b"", stderr: bytes = b"",
           hang: bool = False) -> "FakeWinRMProtocol":
        self._responses.append((pattern, None if hang else (status_code, stdout, stderr)))
        return self

    def open_shell(self) -> str:
        return f"shell-{len(self.scripts) + 1}"

    def run_command(self, shell_id: str, command: str, arguments: List[str]) -> str:
        script = base64.b64decode(arguments[-1]).decode("utf-16-le")
        with self._lock:
            self.scripts.append(script)
            command_id = f"command-{len(self.scripts)}"
        response = (0, b"", b"")
        for pattern, candidate in reversed(self._responses):
            if re.search(pattern, script):
                response = candidate
                break
        self._commands[command_id] = response
        return command_id

    def get_command_output_raw(self, shell_id: str, command_id: str):
        response = self._commands[command_id]
        if response is not None:
            status_code, stdout, stderr = response
            return stdout, stderr, status_code, True
        self.hanging.set()
        if self.terminated.wait(0.05):
            raise WinRMError("The command has been terminated")
        raise WinRMOperationTimeoutError()

    def cleanup_command(self, shell_id: str, command_id: str) -> None:
        if self._commands.get(command_id, ()) is None:
            self.terminated.set()

    def close_shell(self, shell_id: str) -> None:
        self.closed_shells.append(shell_id)


def winrm_client(protocol: Optional[FakeWinRMProtocol] = None) -> MagicMock:
    """A ``winrm.Session`` double exposing ``protocol``."""
    client = MagicMock()
    client.protocol = protocol or FakeWinRMProtocol()
    return client


OS_RELEASE = """NAME="Ubuntu"
VERSION="22.04.4 LTS (Jammy Jellyfish)"
ID=ubuntu
VERSION_ID="22.04"
PRETTY_NAME="Ubuntu 22.04.4 LTS"
"""

SSHD_CONFIG = """# SSH Configuration
Port 22
#PermitRootLogin prohibit-password
PasswordAuthentication yes
PubkeyAuthentication yes

Match User backup
    PasswordAuthentication yes
"""

WINDOWS_OS_JSON = '{"Caption":"Microsoft Windows Server 2022 Standard","Version":"10.0.20348","BuildNumber":"20348"}'


def make_host(host_id: str, os_family: OSFamily = OSFamily.LINUX,
              connection: ConnectionType = ConnectionType.SSH) -> HostDescriptor:
    """Helper function to create host descriptors."""
    return HostDescriptor(
        id=host_id,
        os_family=os_family,
        connection=ConnectionParams(type=connection, address=f"{host_id}.example.com"),
    )


def linux_session(host: HostDescriptor) -> FakeSession:
    """A Linux host answering every fact probe."""
    session = FakeSession(host, files={
        "/etc/os-release": OS_RELEASE,
        "/etc/ssh/sshd_config": SSHD_CONFIG,
    })
    session.on(r"^uname -r$", stdout="5.15.0-105-generic\n")
    session.on(r"^hostname$", stdout=f"{host.id}\n")
    session.on(r"^systemctl is-active ssh$", stdout="active\n")
    return session


def windows_session(host: HostDescriptor) -> FakeSession:
    """A Windows host answering every fact probe."""
    session = FakeSession(host, shell="powershell")
    session.on(r"Win32_OperatingSystem", stdout=WINDOWS_OS_JSON + "\r\n")
    session.on(r"COMPUTERNAME", stdout=host.id.upper() + "\r\n")
    session.on(r"Get-Service -Name 'WinRM'", stdout="Running\r\n")
    return session


def command_task(name: str, apply_command: str = "true", check_command: Optional[str] = None,
                 **fields) -> TaskDefinition:
    """Helper function to create command tasks."""
    action = {"type": "command", "apply_command": apply_command}
    if check_command:
        action["check_command"] = check_command
    return TaskDefinition.model_validate({"name": name, "action": action, **fields})


def command_handler(name: str, apply_command: str = "true") -> HandlerDefinition:
    """Helper function to create command handlers."""
    return HandlerDefinition.model_validate(
        {"name": name, "action": {"type": "command", "apply_command": apply_command}}
    )


@pytest.fixture
def linux_host():
    """Create a Linux host descriptor."""
    return make_host("web1")


@pytest.fixture
def windows_host():
    """Create a Windows host descriptor."""
    return make_host("win1", OSFamily.WINDOWS, ConnectionType.WINRM)


@pytest.fixture
def linux(linux_host):
    """Create a fake Linux session."""
    return linux_session(linux_host)


@pytest.fixture
def windows(windows_host):
    """Create a fake Windows session."""
    return windows_session(windows_host)
