"""
Data models for the fleet hardening engine using Pydantic for validation.
"""

import re
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


UNKNOWN = "unknown"

FactValue = Union[bool, int, float, str]


class OSFamily(str, Enum):
    """Operating system families a host can belong to."""
    LINUX = "Linux"
    WINDOWS = "Windows"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: Any) -> "OSFamily":
        """Case-insensitive lookup, unknown names map to OTHER."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return cls.OTHER


class ConnectionType(str, Enum):
    """Transports a host can be reached over."""
    LOCAL = "local"
    SSH = "ssh"
    WINRM = "winrm"


class Role(str, Enum):
    """What a run does with each host."""
    REPORT = "report"
    HARDEN = "harden"


class TaskOutcome(str, Enum):
    """Terminal state of a single task on a single host."""
    CHANGED = "changed"
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


class HostStatus(str, Enum):
    """Terminal state of a host within a run."""
    SUCCESS = "success"
    FAILED = "failed"
    UNREACHABLE = "unreachable"
    CANCELLED = "cancelled"


class ExitCode(IntEnum):
    """Process exit codes, one per failure category."""
    OK = 0
    CONFIG_ERROR = 2
    CONNECTION_FAILURE = 3
    TASK_FAILURE = 4
    CANCELLED = 5


class ConnectionParams(BaseModel):
    """How to reach a host."""
    model_config = ConfigDict(frozen=True)

    type: ConnectionType = Field(ConnectionType.SSH, description="Transport used for the host")
    address: Optional[str] = Field(None, description="DNS name or IP, defaults to the host id")
    port: Optional[int] = Field(None, description="Transport port, transport default if unset")
    user: Optional[str] = None
    password: Optional[str] = Field(None, repr=False)
    key_file: Optional[str] = Field(None, description="SSH private key path")
    transport: str = Field("ntlm", description="WinRM authentication transport")
    options: List[str] = Field(default_factory=list, description="Extra transport options")


class HostDescriptor(BaseModel):
    """A host as supplied by the inventory. Immutable once loaded."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique host identifier")
    os_family: OSFamily = OSFamily.OTHER
    connection: ConnectionParams = Field(default_factory=ConnectionParams)
    groups: List[str] = Field(default_factory=list)

    @property
    def address(self) -> str:
        return self.connection.address or self.id


class HostFacts(BaseModel):
    """Facts observed on a host before any task runs."""
    model_config = ConfigDict(frozen=True)

    host_id: str
    facts: Dict[str, FactValue] = Field(default_factory=dict)

    def get(self, key: str, default: Any = UNKNOWN) -> Any:
        return self.facts.get(key, default)

    def __getitem__(self, key: str) -> FactValue:
        return self.facts[key]

    def __contains__(self, key: object) -> bool:
        return key in self.facts

    @property
    def os_family(self) -> OSFamily:
        return OSFamily.parse(self.facts.get("os_family"))

    @property
    def service_status(self) -> Dict[str, str]:
        """Service probe results keyed by service name, sorted."""
        prefix = "service_"
        return {
            key[len(prefix):]: str(value)
            for key, value in sorted(self.facts.items())
            if key.startswith(prefix)
        }


def service_fact_key(service_name: str) -> str:
    """Fact key holding the status of ``service_name``."""
    return "service_" + re.sub(r"[^0-9a-z]+", "_", service_name.lower()).strip("_")


class TaskResult(BaseModel):
    """Outcome of one task (or handler) on one host. Never mutated."""
    model_config = ConfigDict(frozen=True)

    task: str
    host_id: str
    outcome: TaskOutcome
    message: str = ""
    attempts: int = 0
    warning: bool = False
    handler: bool = False


class HostRunResult(BaseModel):
    """Everything a run produced for a single host."""
    host_id: str
    os_family: OSFamily = OSFamily.OTHER
    status: HostStatus
    facts: Dict[str, FactValue] = Field(default_factory=dict)
    results: List[TaskResult] = Field(default_factory=list)
    message: Optional[str] = None
    report_path: Optional[Path] = None

    def count(self, outcome: TaskOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)


class RunSummary(BaseModel):
    """Per-host results of a whole run, in inventory order."""
    role: Role
    hosts: Dict[str, HostRunResult] = Field(default_factory=dict)

    def add(self, result: HostRunResult) -> None:
        """Insert the result for one host, keyed by its id."""
        self.hosts[result.host_id] = result

    def with_status(self, status: HostStatus) -> List[HostRunResult]:
        return [h for h in self.hosts.values() if h.status == status]

    @property
    def success(self) -> bool:
        return all(h.status == HostStatus.SUCCESS for h in self.hosts.values())

    @property
    def exit_code(self) -> ExitCode:
        """
        Exit code for the run.

        Cancelled outranks task failure, which outranks connectivity failure.
        """
        statuses = {h.status for h in self.hosts.values()}
        if HostStatus.CANCELLED in statuses:
            return ExitCode.CANCELLED
        if HostStatus.FAILED in statuses:
            return ExitCode.TASK_FAILURE
        if HostStatus.UNREACHABLE in statuses:
            return ExitCode.CONNECTION_FAILURE
        return ExitCode.OK


class ReportData(BaseModel):
    """Data rendered into one host report."""
    model_config = ConfigDict(frozen=True)

    host_id: str
    os_family: OSFamily
    os_distribution: str = UNKNOWN
    os_version: str = UNKNOWN
    hostname: str = UNKNOWN
    kernel_version: str = UNKNOWN
    service_status: Dict[str, str] = Field(default_factory=dict)
    task_results: List[TaskResult] = Field(default_factory=list)
    changed: int = 0
    ok: int = 0
    skipped: int = 0
    failed: int = 0

    @field_validator("service_status")
    @classmethod
    def sort_services(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Keep service ordering stable so rendering is reproducible."""
        return dict(sorted(v.items()))
