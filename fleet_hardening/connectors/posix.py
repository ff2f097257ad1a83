"""
POSIX connectors: the local machine and hosts reached over OpenSSH.

Commands are run with ``/bin/sh -c`` locally and handed to the remote login
shell over ssh. The OpenSSH client is used in BatchMode so that a missing key
or unknown host fails fast instead of prompting.
"""

import logging
import os
import posixpath
import shlex
import subprocess
import threading
from typing import List, Optional, Sequence

from ..core.exceptions import ExecutionError, HostConnectionError
from ..core.models import HostDescriptor
from .base import CommandResult, Connector, Session

logger = logging.getLogger(__name__)

# Exit status a read probe uses to say "no such file".
MISSING_FILE_STATUS = 100

# The OpenSSH client reserves 255 for its own errors.
SSH_TRANSPORT_STATUS = 255


class PosixSession(Session):
    """Session whose commands run as a local child process."""

    def __init__(self, host: HostDescriptor, command_timeout: Optional[float] = None):
        super().__init__(host, command_timeout)
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None

    def _argv(self, command: str) -> List[str]:
        raise NotImplementedError

    def _run(self, command: str, stdin: Optional[str],
             timeout: Optional[float]) -> CommandResult:
        argv = self._argv(command)
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise ExecutionError(f"cannot start {argv[0]}: {e}")

        with self._lock:
            self._proc = proc
        if self.closed:
            proc.kill()

        try:
            stdout, stderr = proc.communicate(stdin, timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            raise ExecutionError(f"'{command}' timed out after {timeout} seconds")
        finally:
            with self._lock:
                self._proc = None

        return CommandResult(command, proc.returncode, stdout, stderr)

    def _release(self) -> None:
        with self._lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            logger.debug("host=%s killing in-flight command", self.host.id)
            proc.kill()

    def read_file(self, path: str) -> Optional[str]:
        quoted = shlex.quote(path)
        result = self.run(f"[ -e {quoted} ] || exit {MISSING_FILE_STATUS}; cat -- {quoted}")
        if result.exit_code == MISSING_FILE_STATUS:
            return None
        if not result.success:
            raise ExecutionError(
                f"cannot read {path}: {result.stderr.strip()}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result.stdout

    def write_file(self, path: str, content: str) -> None:
        quoted = shlex.quote(path)
        parent = shlex.quote(posixpath.dirname(path) or ".")
        self.check(f"mkdir -p {parent} && cat > {quoted}", stdin=content)


class LocalSession(PosixSession):
    """Runs commands on the controller itself."""

    def _argv(self, command: str) -> List[str]:
        return ["/bin/sh", "-c", command]


class SSHSession(PosixSession):
    """Runs commands on a remote host through the OpenSSH client."""

    def __init__(self, host: HostDescriptor, command_timeout: Optional[float] = None,
                 ssh_options: Sequence[str] = ()):
        super().__init__(host, command_timeout)
        self.ssh_options = list(ssh_options)

    def base_argv(self) -> List[str]:
        params = self.host.connection
        argv = ["ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=10"]
        if params.port:
            argv += ["-p", str(params.port)]
        if params.key_file:
            argv += ["-i", os.path.expanduser(params.key_file)]
        for option in self.ssh_options + list(params.options):
            argv += shlex.split(option)
        target = f"{params.user}@{self.host.address}" if params.user else self.host.address
        argv.append(target)
        return argv

    def _argv(self, command: str) -> List[str]:
        return self.base_argv() + [command]

    def _run(self, command: str, stdin: Optional[str],
             timeout: Optional[float]) -> CommandResult:
        result = super()._run(command, stdin, timeout)
        if result.exit_code == SSH_TRANSPORT_STATUS:
            raise ExecutionError(
                f"ssh transport to {self.host.id} failed: {result.stderr.strip()}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result


class LocalConnector(Connector):
    """Connector for hosts with ``connection: local``."""

    def connect(self, host: HostDescriptor) -> Session:
        return LocalSession(host, self.command_timeout)


class SSHConnector(Connector):
    """Connector for hosts reached over ssh."""

    def __init__(self, command_timeout: Optional[float] = None,
                 ssh_options: Sequence[str] = (), probe_timeout: float = 30):
        super().__init__(command_timeout)
        self.ssh_options = list(ssh_options)
        self.probe_timeout = probe_timeout

    def connect(self, host: HostDescriptor) -> Session:
        session = SSHSession(host, self.command_timeout, self.ssh_options)
        try:
            probe = session.run("true", timeout=self.probe_timeout)
        except ExecutionError as e:
            session.close()
            raise HostConnectionError(host.id, str(e))
        if not probe.success:
            session.close()
            raise HostConnectionError(
                host.id, probe.stderr.strip() or f"probe exited {probe.exit_code}"
            )
        logger.debug("host=%s ssh session established", host.id)
        return session
