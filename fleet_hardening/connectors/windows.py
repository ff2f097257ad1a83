"""
Windows connector backed by WinRM.

Every command is a PowerShell script run in its own WinRM shell through
``pywinrm``'s protocol layer. The shell and command ids are kept while the
command runs so that closing the session from another thread terminates the
remote command. File transfer travels base64-encoded inside the script so
no second channel is needed.
"""

import base64
import logging
import threading
import time
from typing import List, Optional

import requests
import winrm
from winrm.exceptions import WinRMError, WinRMOperationTimeoutError
from winrm.protocol import Protocol

from ..core.exceptions import ExecutionError, HostConnectionError
from ..core.models import HostDescriptor
from .base import CommandResult, Connector, Session, ps_quote

logger = logging.getLogger(__name__)

MISSING_FILE_STATUS = 100

DEFAULT_HTTP_PORT = 5985
DEFAULT_HTTPS_PORT = 5986

# Upper bound for one receive poll, so timeouts and cancellation are noticed.
POLL_SECONDS = 10

TRANSPORT_ERRORS = (WinRMError, requests.exceptions.RequestException)


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def encode_command(script: str) -> str:
    """Encode a script for ``powershell -EncodedCommand``."""
    # Progress records would otherwise arrive on stderr as CLIXML.
    script = "$ProgressPreference = 'SilentlyContinue'\n" + script
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


class WinRMSession(Session):
    """Runs PowerShell on a Windows host over WinRM."""

    shell = "powershell"

    def __init__(self, host: HostDescriptor, command_timeout: Optional[float] = None,
                 client: Optional[winrm.Session] = None):
        super().__init__(host, command_timeout)
        self._client = client or self._open_client()
        self._lock = threading.Lock()
        self._shell_id: Optional[str] = None
        self._command_id: Optional[str] = None

    @property
    def protocol(self) -> Protocol:
        return self._client.protocol

    def endpoint(self) -> str:
        params = self.host.connection
        port = params.port or DEFAULT_HTTP_PORT
        scheme = "https" if port == DEFAULT_HTTPS_PORT else "http"
        return f"{scheme}://{self.host.address}:{port}/wsman"

    def _open_client(self) -> winrm.Session:
        params = self.host.connection
        poll = POLL_SECONDS
        if self.command_timeout:
            poll = max(1, min(poll, int(self.command_timeout)))
        return winrm.Session(
            self.endpoint(),
            auth=(params.user or "", params.password or ""),
            transport=params.transport,
            server_cert_validation="ignore",
            # pywinrm requires the read timeout to exceed the operation timeout.
            operation_timeout_sec=poll,
            read_timeout_sec=poll + 10,
        )

    def _run(self, command: str, stdin: Optional[str],
             timeout: Optional[float]) -> CommandResult:
        script = command
        if stdin is not None:
            script = (
                "$stdin = [Text.Encoding]::UTF8.GetString("
                f"[Convert]::FromBase64String('{_b64(stdin)}'))\n"
                f"$stdin | & {{ {command} }}"
            )
        deadline = time.monotonic() + timeout if timeout else None
        stdout: List[bytes] = []
        stderr: List[bytes] = []

        try:
            shell_id = self.protocol.open_shell()
            with self._lock:
                self._shell_id = shell_id
            if self.closed:
                raise ExecutionError(f"session to {self.host.id} closed during command")

            command_id = self.protocol.run_command(
                shell_id, "powershell",
                ["-NoProfile", "-NonInteractive", "-EncodedCommand", encode_command(script)],
            )
            with self._lock:
                self._command_id = command_id

            while True:
                try:
                    out, err, status_code, done = self.protocol.get_command_output_raw(shell_id, command_id)
                except WinRMOperationTimeoutError:
                    # No output within one poll, the command is still running.
                    out, err, done = b"", b"", False
                stdout.append(out)
                stderr.append(err)
                if done:
                    break
                if self.closed:
                    raise ExecutionError(f"session to {self.host.id} closed during command")
                if deadline is not None and time.monotonic() >= deadline:
                    raise ExecutionError(f"'{command}' timed out after {timeout} seconds")
        except TRANSPORT_ERRORS as e:
            if self.closed:
                raise ExecutionError(f"session to {self.host.id} closed during command")
            raise ExecutionError(f"winrm transport to {self.host.id} failed: {e}")
        finally:
            self._cleanup()

        return CommandResult(
            command,
            status_code,
            b"".join(stdout).decode("utf-8", errors="replace"),
            b"".join(stderr).decode("utf-8", errors="replace"),
        )

    def _cleanup(self) -> None:
        """Terminate the running command and close its shell, once."""
        with self._lock:
            shell_id, command_id = self._shell_id, self._command_id
            self._shell_id = self._command_id = None
        if shell_id is None:
            return
        try:
            if command_id is not None:
                self.protocol.cleanup_command(shell_id, command_id)
            self.protocol.close_shell(shell_id)
        except TRANSPORT_ERRORS as e:
            logger.debug("host=%s winrm shell cleanup failed: %s", self.host.id, e)

    def _release(self) -> None:
        self._cleanup()
        self.protocol.transport.close_session()

    def read_file(self, path: str) -> Optional[str]:
        script = (
            f"$p = {ps_quote(path)}\n"
            f"if (-not (Test-Path -LiteralPath $p)) {{ exit {MISSING_FILE_STATUS} }}\n"
            "[Convert]::ToBase64String([IO.File]::ReadAllBytes($p))"
        )
        result = self.run(script)
        if result.exit_code == MISSING_FILE_STATUS:
            return None
        if not result.success:
            raise ExecutionError(f"cannot read {path}: {result.stderr.strip()}",
                                 exit_code=result.exit_code, stderr=result.stderr)
        return base64.b64decode(result.stdout.strip()).decode("utf-8")

    def write_file(self, path: str, content: str) -> None:
        script = (
            f"$p = {ps_quote(path)}\n"
            "$dir = Split-Path -Parent $p\n"
            "if ($dir) { New-Item -ItemType Directory -Force -Path $dir | Out-Null }\n"
            f"[IO.File]::WriteAllBytes($p, [Convert]::FromBase64String('{_b64(content)}'))"
        )
        self.check(script)


class WinRMConnector(Connector):
    """Connector for hosts with ``connection: winrm``."""

    def connect(self, host: HostDescriptor) -> Session:
        try:
            session = WinRMSession(host, self.command_timeout)
        except TRANSPORT_ERRORS as e:
            raise HostConnectionError(host.id, f"winrm: {e}")
        try:
            probe = session.run("$PSVersionTable.PSVersion.Major")
        except ExecutionError as e:
            session.close()
            raise HostConnectionError(host.id, str(e))
        if not probe.success:
            session.close()
            raise HostConnectionError(host.id, probe.stderr.strip() or "winrm probe failed")
        logger.debug("host=%s winrm session established (PowerShell %s)",
                     host.id, probe.stdout.strip())
        return session
