"""
Fact gathering over an open session.

Collects the OS family, distribution, version, kernel, hostname and the
status of a fixed set of services. Each probe is independent: a failing
probe records the sentinel ``"unknown"`` for its keys instead of failing
the whole gather.
"""

import json
import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from ..connectors.base import Session, ps_quote
from ..core.exceptions import ExecutionError
from ..core.models import UNKNOWN, FactValue, HostDescriptor, HostFacts, OSFamily, service_fact_key

logger = logging.getLogger(__name__)

BASE_FACT_KEYS = ("hostname", "os_family", "os_distribution", "os_version", "kernel_version")

DEFAULT_SERVICE_PROBES: Dict[OSFamily, List[str]] = {
    OSFamily.LINUX: ["ssh"],
    OSFamily.WINDOWS: ["WinRM"],
    OSFamily.OTHER: [],
}


class ProbeError(Exception):
    """A probe produced output that could not be interpreted."""


def parse_os_release(content: str) -> Dict[str, str]:
    """Parse /etc/os-release content into a dictionary."""
    os_info = {}
    for line in content.splitlines():
        line = line.strip()
        if '=' in line and not line.startswith('#'):
            key, value = line.split('=', 1)
            # Remove quotes from value
            os_info[key] = value.strip('"\'')
    return os_info


def _systemd_state(output: str) -> str:
    state = output.strip().splitlines()
    return state[0] if state else UNKNOWN


class FactGatherer:
    """
    Gathers facts for a host.

    The probe set depends on the session's OS family: POSIX probes read
    ``/etc/os-release`` and ask systemd, Windows probes ask CIM and the
    service controller through PowerShell.
    """

    def __init__(self, service_probes: Optional[Mapping[OSFamily, Iterable[str]]] = None):
        """
        Initialize the gatherer.

        Args:
            service_probes: Services whose status is recorded, per OS family
        """
        probes = dict(DEFAULT_SERVICE_PROBES)
        if service_probes:
            probes.update({OSFamily.parse(k): list(v) for k, v in service_probes.items()})
        self.service_probes = probes

    def fact_keys(self, os_family: OSFamily) -> List[str]:
        """Every key a gather for ``os_family`` is guaranteed to produce."""
        keys = list(BASE_FACT_KEYS)
        keys.extend(service_fact_key(s) for s in self.service_probes.get(os_family, []))
        return keys

    def gather(self, session: Session, host: Optional[HostDescriptor] = None) -> HostFacts:
        """
        Collect facts for the host behind ``session``.

        Args:
            session: Open session to the host
            host: Host descriptor, defaults to the session's host

        Returns:
            HostFacts: One value for every declared key
        """
        host = host or session.host
        os_family = host.os_family
        facts: Dict[str, FactValue] = {key: UNKNOWN for key in self.fact_keys(os_family)}
        facts["os_family"] = os_family.value

        if session.shell == "powershell":
            probes = self._windows_probes(session, os_family)
        else:
            probes = self._posix_probes(session, os_family)

        for name, keys, probe in probes:
            try:
                facts.update(probe())
            except (ExecutionError, ProbeError, ValueError) as e:
                logger.warning("host=%s fact probe %s failed: %s", host.id, name, e)
                for key in keys:
                    facts[key] = UNKNOWN

        return HostFacts(host_id=host.id, facts=facts)

    # POSIX probes -----------------------------------------------------------

    def _posix_probes(self, session: Session, os_family: OSFamily) -> List:
        probes = [
            ("os-release", ["os_distribution", "os_version"], lambda: self._posix_release(session)),
            ("kernel", ["kernel_version"], lambda: self._single_line(session, "uname -r", "kernel_version")),
            ("hostname", ["hostname"], lambda: self._single_line(session, "hostname", "hostname")),
        ]
        for service in self.service_probes.get(os_family, []):
            probes.append(self._service_probe(session, service, self._posix_service))
        return probes

    @staticmethod
    def _posix_release(session: Session) -> Dict[str, FactValue]:
        content = session.read_file("/etc/os-release")
        if content is None:
            raise ProbeError("/etc/os-release not found")
        os_info = parse_os_release(content)
        if "NAME" not in os_info and "ID" not in os_info:
            raise ProbeError("/etc/os-release has no NAME or ID")
        return {
            "os_distribution": os_info.get("NAME", os_info.get("ID", UNKNOWN)),
            "os_version": os_info.get("VERSION_ID", os_info.get("VERSION", UNKNOWN)),
        }

    @staticmethod
    def _posix_service(session: Session, service: str) -> str:
        # is-active exits non-zero for inactive units, the state is on stdout.
        result = session.run(f"systemctl is-active {service}")
        state = _systemd_state(result.stdout)
        if state == UNKNOWN and not result.success:
            raise ProbeError(result.stderr.strip() or "no state reported")
        return state

    # Windows probes ---------------------------------------------------------

    def _windows_probes(self, session: Session, os_family: OSFamily) -> List:
        probes = [
            ("os", ["os_distribution", "os_version", "kernel_version"], lambda: self._windows_os(session)),
            ("hostname", ["hostname"], lambda: self._single_line(session, "$env:COMPUTERNAME", "hostname")),
        ]
        for service in self.service_probes.get(os_family, []):
            probes.append(self._service_probe(session, service, self._windows_service))
        return probes

    @staticmethod
    def _windows_os(session: Session) -> Dict[str, FactValue]:
        result = session.check(
            "Get-CimInstance Win32_OperatingSystem | "
            "Select-Object Caption,Version,BuildNumber | ConvertTo-Json -Compress"
        )
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProbeError(f"unparseable OS information: {e}")
        return {
            "os_distribution": str(data.get("Caption") or UNKNOWN).strip(),
            "os_version": str(data.get("Version") or UNKNOWN),
            "kernel_version": str(data.get("BuildNumber") or UNKNOWN),
        }

    @staticmethod
    def _windows_service(session: Session, service: str) -> str:
        result = session.check(f"(Get-Service -Name {ps_quote(service)} -ErrorAction Stop).Status")
        status = result.stdout.strip()
        if not status:
            raise ProbeError("empty service status")
        return status.lower()

    # Shared helpers ---------------------------------------------------------

    @staticmethod
    def _single_line(session: Session, command: str, key: str) -> Dict[str, FactValue]:
        value = session.check(command).stdout.strip()
        if not value:
            raise ProbeError(f"'{command}' produced no output")
        return {key: value.splitlines()[0]}

    @staticmethod
    def _service_probe(session: Session, service: str,
                       probe: Callable[[Session, str], str]):
        key = service_fact_key(service)
        return (f"service:{service}", [key], lambda: {key: probe(session, service)})
