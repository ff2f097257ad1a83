"""
Apply-actions available to task and handler definitions.

Every action is a Pydantic model tagged by its ``type`` field. The set of
actions is closed: task files are validated against the ``Action`` union
when they are loaded, so an unknown type is a configuration error rather
than a runtime lookup failure.

Each action answers two questions against an open session:

* ``check`` - is the host already in the desired state?
* ``apply`` - bring the host into the desired state.
"""

import re
import shlex
from typing import Annotated, ClassVar, Dict, List, Literal, NamedTuple, Optional, Tuple, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..connectors.base import Session, ps_quote
from ..core.exceptions import ExecutionError


POSIX = "posix"
POWERSHELL = "powershell"


class CheckResult(NamedTuple):
    """Result of an idempotency check."""
    satisfied: bool
    detail: str


class BaseAction(BaseModel):
    """Shared surface of every action."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    #: Shell dialects the action can drive.
    shells: ClassVar[Tuple[str, ...]] = (POSIX,)

    def supports(self, session: Session) -> bool:
        return session.shell in self.shells

    def check(self, session: Session) -> CheckResult:
        """
        Inspect the host without changing it.

        Args:
            session: Open session to the host

        Returns:
            CheckResult: Whether the desired state already holds

        Raises:
            ExecutionError: If the current state cannot be determined
        """
        raise NotImplementedError

    def apply(self, session: Session) -> str:
        """
        Change the host so that the desired state holds.

        Returns:
            str: Human-readable description of what changed

        Raises:
            ExecutionError: If any command fails
        """
        raise NotImplementedError


# Generic -------------------------------------------------------------------


class CommandAction(BaseAction):
    """Run ``apply_command`` unless ``check_command`` exits 0."""
    type: Literal["command"]
    check_command: Optional[str] = Field(None, description="Exit 0 means already satisfied")
    apply_command: str

    shells: ClassVar[Tuple[str, ...]] = (POSIX, POWERSHELL)

    def check(self, session: Session) -> CheckResult:
        if not self.check_command:
            return CheckResult(False, "no check command")
        result = session.run(self.check_command)
        if result.success:
            return CheckResult(True, "check command succeeded")
        return CheckResult(False, f"check command exited {result.exit_code}")

    def apply(self, session: Session) -> str:
        session.check(self.apply_command)
        return "command applied"


# Linux ---------------------------------------------------------------------


class PackageAction(BaseAction):
    """Ensure Debian packages are installed or removed."""
    type: Literal["package"]
    names: List[str] = Field(..., min_length=1)
    state: Literal["present", "absent"] = "present"

    @field_validator("names", mode="before")
    @classmethod
    def split_names(cls, v):
        return [v] if isinstance(v, str) else v

    def _installed(self, session: Session, name: str) -> bool:
        result = session.run(f"dpkg-query -W -f='${{Status}}' {shlex.quote(name)}")
        return result.success and "install ok installed" in result.stdout

    def _pending(self, session: Session) -> List[str]:
        want_installed = self.state == "present"
        return [n for n in self.names if self._installed(session, n) != want_installed]

    def check(self, session: Session) -> CheckResult:
        pending = self._pending(session)
        if not pending:
            return CheckResult(True, f"packages {self.state}")
        return CheckResult(False, f"pending: {', '.join(pending)}")

    def apply(self, session: Session) -> str:
        pending = self._pending(session)
        verb, done = ("install", "installed") if self.state == "present" else ("remove", "removed")
        packages = " ".join(shlex.quote(n) for n in pending)
        session.check(f"DEBIAN_FRONTEND=noninteractive apt-get {verb} -y {packages}")
        return f"{done} {', '.join(pending)}"


class AptUpgradeAction(BaseAction):
    """Refresh the package cache and install pending upgrades."""
    type: Literal["apt_upgrade"]
    dist_upgrade: bool = False

    @property
    def _verb(self) -> str:
        return "dist-upgrade" if self.dist_upgrade else "upgrade"

    def check(self, session: Session) -> CheckResult:
        # Simulating against stale package lists would report nothing pending.
        session.check("apt-get update -q")
        result = session.check(f"apt-get -s {self._verb}")
        pending = [line for line in result.stdout.splitlines() if line.startswith("Inst ")]
        if not pending:
            return CheckResult(True, "no upgrades pending")
        return CheckResult(False, f"{len(pending)} upgrades pending")

    def apply(self, session: Session) -> str:
        session.check(
            "DEBIAN_FRONTEND=noninteractive apt-get -y "
            f"-o Dpkg::Options::=--force-confold {self._verb}"
        )
        return "packages upgraded"


UFW_POLICY = {"DROP": "deny", "ACCEPT": "allow", "REJECT": "reject"}


class UfwAction(BaseAction):
    """Configure the uncomplicated firewall."""
    type: Literal["ufw"]
    state: Optional[Literal["enabled", "disabled"]] = None
    default_incoming: Optional[Literal["deny", "allow", "reject"]] = None
    default_outgoing: Optional[Literal["deny", "allow", "reject"]] = None
    allow: List[str] = Field(default_factory=list, description="Rules such as 'OpenSSH' or '22/tcp'")

    def _current(self, session: Session) -> Dict[str, object]:
        status = session.check("ufw status").stdout
        active = bool(re.search(r"^Status:\s*active", status, re.MULTILINE))
        defaults = session.read_file("/etc/default/ufw") or ""
        policies = dict(re.findall(r'^DEFAULT_(INPUT|OUTPUT)_POLICY="?(\w+)"?', defaults, re.MULTILINE))
        added = session.check("ufw show added").stdout
        rules = set(re.findall(r"^ufw allow (\S+)\s*$", added, re.MULTILINE))
        return {
            "active": active,
            "incoming": UFW_POLICY.get(policies.get("INPUT", ""), None),
            "outgoing": UFW_POLICY.get(policies.get("OUTPUT", ""), None),
            "rules": rules,
        }

    def _commands(self, session: Session) -> List[str]:
        current = self._current(session)
        commands = [f"ufw allow {shlex.quote(rule)}"
                    for rule in self.allow if rule not in current["rules"]]
        if self.default_incoming and current["incoming"] != self.default_incoming:
            commands.append(f"ufw default {self.default_incoming} incoming")
        if self.default_outgoing and current["outgoing"] != self.default_outgoing:
            commands.append(f"ufw default {self.default_outgoing} outgoing")
        # Rules go in before enabling so an ssh session is never locked out.
        if self.state == "enabled" and not current["active"]:
            commands.append("ufw --force enable")
        elif self.state == "disabled" and current["active"]:
            commands.append("ufw disable")
        return commands

    def check(self, session: Session) -> CheckResult:
        commands = self._commands(session)
        if not commands:
            return CheckResult(True, "firewall configured")
        return CheckResult(False, f"{len(commands)} firewall changes pending")

    def apply(self, session: Session) -> str:
        commands = self._commands(session)
        for command in commands:
            session.check(command)
        return "; ".join(commands)


def _join_lines(lines: List[str], original: str) -> str:
    text = "\n".join(lines)
    if lines and (original.endswith("\n") or not original):
        text += "\n"
    return text


def render_settings(content: str, settings: Dict[str, str], separator: str = " ") -> str:
    """
    Rewrite keyword/value settings in an sshd_config style file.

    The first active occurrence of each keyword before any ``Match`` block
    is set to the desired value and later active duplicates are dropped.
    Missing keywords replace a commented-out example when there is one,
    otherwise they are inserted ahead of the first ``Match`` block.
    Rendering an already rendered file returns it unchanged.
    """
    lines = content.splitlines()
    for key, value in settings.items():
        desired = f"{key}{separator}{value}"
        active = re.compile(rf"^\s*{re.escape(key)}(\s|=)", re.IGNORECASE)
        commented = re.compile(rf"^\s*#\s*{re.escape(key)}(\s|=)", re.IGNORECASE)
        match_start = next(
            (i for i, line in enumerate(lines) if re.match(r"^\s*Match\s", line, re.IGNORECASE)),
            len(lines),
        )
        hits = [i for i in range(match_start) if active.match(lines[i])]
        if hits:
            lines[hits[0]] = desired
            for i in reversed(hits[1:]):
                del lines[i]
            continue
        examples = [i for i in range(match_start) if commented.match(lines[i])]
        if examples:
            lines[examples[0]] = desired
        else:
            lines.insert(match_start, desired)
    return _join_lines(lines, content)


class ConfigSettingsAction(BaseAction):
    """Set keyword/value pairs in a configuration file such as sshd_config."""
    type: Literal["config_settings"]
    path: str
    settings: Dict[str, str] = Field(..., min_length=1)
    separator: str = " "
    create: bool = False

    @field_validator("settings", mode="before")
    @classmethod
    def stringify(cls, v):
        if isinstance(v, dict):
            return {str(k): _yaml_scalar(val) for k, val in v.items()}
        return v

    def _read(self, session: Session) -> str:
        content = session.read_file(self.path)
        if content is None:
            if not self.create:
                raise ExecutionError(f"{self.path} does not exist")
            return ""
        return content

    def check(self, session: Session) -> CheckResult:
        content = self._read(session)
        if render_settings(content, self.settings, self.separator) == content:
            return CheckResult(True, f"{self.path} up to date")
        return CheckResult(False, f"{self.path} needs changes")

    def apply(self, session: Session) -> str:
        content = self._read(session)
        session.write_file(self.path, render_settings(content, self.settings, self.separator))
        return f"updated {', '.join(self.settings)} in {self.path}"


def _yaml_scalar(value) -> str:
    # YAML turns "no"/"yes" into booleans, config files want the words back.
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def render_line(content: str, line: str, regexp: Optional[str] = None,
                state: str = "present") -> str:
    """
    Ensure ``line`` is present in (or absent from) ``content``.

    With ``regexp`` the last matching line is replaced; without it the
    exact line is looked up.
    """
    lines = content.splitlines()
    pattern = re.compile(regexp) if regexp else None

    def matches(candidate: str) -> bool:
        return bool(pattern.search(candidate)) if pattern else candidate == line

    if state == "absent":
        return _join_lines([c for c in lines if not matches(c)], content)

    hits = [i for i, c in enumerate(lines) if matches(c)]
    if hits:
        lines[hits[-1]] = line
    elif line not in lines:
        lines.append(line)
    return _join_lines(lines, content)


class LineInFileAction(BaseAction):
    """Ensure a single line is present in or absent from a text file."""
    type: Literal["line_in_file"]
    path: str
    line: str = ""
    regexp: Optional[str] = None
    state: Literal["present", "absent"] = "present"
    create: bool = False

    @field_validator("regexp")
    @classmethod
    def valid_regexp(cls, v):
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid regexp {v!r}: {e}")
        return v

    def _read(self, session: Session) -> str:
        content = session.read_file(self.path)
        if content is None:
            if not self.create and self.state == "present":
                raise ExecutionError(f"{self.path} does not exist")
            return ""
        return content

    def check(self, session: Session) -> CheckResult:
        content = self._read(session)
        if render_line(content, self.line, self.regexp, self.state) == content:
            return CheckResult(True, f"{self.path} up to date")
        return CheckResult(False, f"{self.path} needs changes")

    def apply(self, session: Session) -> str:
        content = self._read(session)
        session.write_file(self.path, render_line(content, self.line, self.regexp, self.state))
        return f"line {self.state} in {self.path}"


class ServiceAction(BaseAction):
    """Manage a systemd service."""
    type: Literal["service"]
    name: str
    state: Optional[Literal["started", "stopped", "restarted"]] = None
    enabled: Optional[bool] = None

    def _status(self, session: Session) -> Tuple[bool, bool]:
        unit = shlex.quote(self.name)
        active = session.run(f"systemctl is-active {unit}").stdout.strip() == "active"
        enabled = session.run(f"systemctl is-enabled {unit}").stdout.strip() == "enabled"
        return active, enabled

    def _commands(self, session: Session) -> List[str]:
        unit = shlex.quote(self.name)
        active, enabled = self._status(session)
        commands = []
        if self.state == "restarted":
            commands.append(f"systemctl restart {unit}")
        elif self.state == "started" and not active:
            commands.append(f"systemctl start {unit}")
        elif self.state == "stopped" and active:
            commands.append(f"systemctl stop {unit}")
        if self.enabled is not None and self.enabled != enabled:
            commands.append(f"systemctl {'enable' if self.enabled else 'disable'} {unit}")
        return commands

    def check(self, session: Session) -> CheckResult:
        if self.state == "restarted":
            return CheckResult(False, "restart requested")
        commands = self._commands(session)
        if not commands:
            return CheckResult(True, f"{self.name} in desired state")
        return CheckResult(False, f"{self.name} needs changes")

    def apply(self, session: Session) -> str:
        commands = self._commands(session)
        for command in commands:
            session.check(command)
        return "; ".join(commands)


# Windows -------------------------------------------------------------------


class WinUserAction(BaseAction):
    """Enable or disable a local Windows account."""
    type: Literal["win_user"]
    name: str
    account_disabled: bool = True

    shells: ClassVar[Tuple[str, ...]] = (POWERSHELL,)

    def _enabled(self, session: Session) -> bool:
        result = session.check(f"(Get-LocalUser -Name {ps_quote(self.name)} -ErrorAction Stop).Enabled")
        return result.stdout.strip().lower() == "true"

    def check(self, session: Session) -> CheckResult:
        enabled = self._enabled(session)
        if enabled != self.account_disabled:
            return CheckResult(True, f"{self.name} {'enabled' if enabled else 'disabled'}")
        return CheckResult(False, f"{self.name} is {'enabled' if enabled else 'disabled'}")

    def apply(self, session: Session) -> str:
        verb = "Disable" if self.account_disabled else "Enable"
        session.check(f"{verb}-LocalUser -Name {ps_quote(self.name)}")
        return f"{verb.lower()}d {self.name}"


class WinFirewallAction(BaseAction):
    """Enable or disable Windows Firewall profiles."""
    type: Literal["win_firewall"]
    profiles: List[Literal["Domain", "Private", "Public"]] = Field(
        default_factory=lambda: ["Domain", "Private", "Public"], min_length=1
    )
    state: Literal["enabled", "disabled"] = "enabled"

    shells: ClassVar[Tuple[str, ...]] = (POWERSHELL,)

    def _pending(self, session: Session) -> List[str]:
        result = session.check(
            f"Get-NetFirewallProfile -Profile {','.join(self.profiles)} | "
            "ForEach-Object { \"$($_.Name)=$($_.Enabled)\" }"
        )
        current = dict(
            line.strip().split("=", 1) for line in result.stdout.splitlines() if "=" in line
        )
        want = "true" if self.state == "enabled" else "false"
        return [p for p in self.profiles if current.get(p, "").lower() != want]

    def check(self, session: Session) -> CheckResult:
        pending = self._pending(session)
        if not pending:
            return CheckResult(True, f"profiles {self.state}")
        return CheckResult(False, f"pending: {', '.join(pending)}")

    def apply(self, session: Session) -> str:
        pending = self._pending(session)
        flag = "True" if self.state == "enabled" else "False"
        session.check(f"Set-NetFirewallProfile -Profile {','.join(pending)} -Enabled {flag}")
        return f"{self.state} {', '.join(pending)}"


class WinRegistryAction(BaseAction):
    """Set a registry value."""
    type: Literal["win_registry"]
    path: str = Field(..., description=r"e.g. HKLM:\SYSTEM\CurrentControlSet\...")
    name: str
    data: Union[int, str]
    value_type: Literal["dword", "qword", "string"] = "dword"

    shells: ClassVar[Tuple[str, ...]] = (POWERSHELL,)

    PROPERTY_TYPES: ClassVar[Dict[str, str]] = {"dword": "DWord", "qword": "QWord", "string": "String"}

    def check(self, session: Session) -> CheckResult:
        result = session.run(
            f"(Get-ItemProperty -LiteralPath {ps_quote(self.path)} -Name {ps_quote(self.name)} "
            f"-ErrorAction Stop).{ps_quote(self.name)}"
        )
        current = result.stdout.strip() if result.success else None
        if current == str(self.data):
            return CheckResult(True, f"{self.name}={current}")
        return CheckResult(False, f"{self.name}={current if current is not None else 'absent'}")

    def apply(self, session: Session) -> str:
        value = str(self.data) if self.value_type != "string" else ps_quote(str(self.data))
        session.check(
            f"if (-not (Test-Path -LiteralPath {ps_quote(self.path)})) "
            f"{{ New-Item -Path {ps_quote(self.path)} -Force | Out-Null }}; "
            f"New-ItemProperty -LiteralPath {ps_quote(self.path)} -Name {ps_quote(self.name)} "
            f"-Value {value} -PropertyType {self.PROPERTY_TYPES[self.value_type]} -Force | Out-Null"
        )
        return f"set {self.name}={self.data}"


NET_ACCOUNTS_FIELDS = {
    "min_length": ("Minimum password length", "minpwlen"),
    "max_age_days": ("Maximum password age (days)", "maxpwage"),
    "min_age_days": ("Minimum password age (days)", "minpwage"),
    "history": ("Length of password history maintained", "uniquepw"),
    "lockout_threshold": ("Lockout threshold", "lockoutthreshold"),
}


def parse_net_accounts(output: str) -> Dict[str, Optional[int]]:
    """Parse ``net accounts`` output into the policy fields it reports."""
    values: Dict[str, Optional[int]] = {}
    for line in output.splitlines():
        if ":" not in line:
            continue
        label, _, raw = line.rpartition(":")
        label = label.strip()
        raw = raw.strip()
        for field, (expected_label, _) in NET_ACCOUNTS_FIELDS.items():
            if label == expected_label:
                if raw.isdigit():
                    values[field] = int(raw)
                elif raw in ("None", "Never"):
                    values[field] = 0
                elif raw == "Unlimited":
                    values[field] = None
    return values


class WinPasswordPolicyAction(BaseAction):
    """Enforce the local account password policy via ``net accounts``."""
    type: Literal["win_password_policy"]
    min_length: Optional[int] = Field(None, ge=0, le=14)
    max_age_days: Optional[int] = Field(None, ge=1, le=999)
    min_age_days: Optional[int] = Field(None, ge=0, le=998)
    history: Optional[int] = Field(None, ge=0, le=24)
    lockout_threshold: Optional[int] = Field(None, ge=0, le=999)

    shells: ClassVar[Tuple[str, ...]] = (POWERSHELL,)

    def _pending(self, session: Session) -> Dict[str, int]:
        current = parse_net_accounts(session.check("net accounts").stdout)
        pending = {}
        for field in NET_ACCOUNTS_FIELDS:
            desired = getattr(self, field)
            if desired is not None and current.get(field, -1) != desired:
                pending[field] = desired
        return pending

    def check(self, session: Session) -> CheckResult:
        pending = self._pending(session)
        if not pending:
            return CheckResult(True, "password policy compliant")
        return CheckResult(False, f"pending: {', '.join(sorted(pending))}")

    def apply(self, session: Session) -> str:
        pending = self._pending(session)
        switches = " ".join(
            f"/{NET_ACCOUNTS_FIELDS[field][1]}:{value}" for field, value in pending.items()
        )
        session.check(f"net accounts {switches}")
        return f"set {', '.join(sorted(pending))}"


WIN_START_TYPES = {"auto": "Automatic", "manual": "Manual", "disabled": "Disabled"}


class WinServiceAction(BaseAction):
    """Manage a Windows service."""
    type: Literal["win_service"]
    name: str
    state: Optional[Literal["running", "stopped", "restarted"]] = None
    start_mode: Optional[Literal["auto", "manual", "disabled"]] = None

    shells: ClassVar[Tuple[str, ...]] = (POWERSHELL,)

    def _commands(self, session: Session) -> List[str]:
        name = ps_quote(self.name)
        result = session.check(
            f"$s = Get-Service -Name {name} -ErrorAction Stop; \"$($s.Status)|$($s.StartType)\""
        )
        status, _, start_type = result.stdout.strip().partition("|")
        commands = []
        if self.state == "restarted":
            commands.append(f"Restart-Service -Name {name} -Force")
        elif self.state == "running" and status != "Running":
            commands.append(f"Start-Service -Name {name}")
        elif self.state == "stopped" and status != "Stopped":
            commands.append(f"Stop-Service -Name {name} -Force")
        if self.start_mode and start_type != WIN_START_TYPES[self.start_mode]:
            commands.append(
                f"Set-Service -Name {name} -StartupType {WIN_START_TYPES[self.start_mode]}"
            )
        return commands

    def check(self, session: Session) -> CheckResult:
        if self.state == "restarted":
            return CheckResult(False, "restart requested")
        commands = self._commands(session)
        if not commands:
            return CheckResult(True, f"{self.name} in desired state")
        return CheckResult(False, f"{self.name} needs changes")

    def apply(self, session: Session) -> str:
        commands = self._commands(session)
        for command in commands:
            session.check(command)
        return "; ".join(commands)


Action = Annotated[
    Union[
        CommandAction,
        PackageAction,
        AptUpgradeAction,
        UfwAction,
        ConfigSettingsAction,
        LineInFileAction,
        ServiceAction,
        WinUserAction,
        WinFirewallAction,
        WinRegistryAction,
        WinPasswordPolicyAction,
        WinServiceAction,
    ],
    Field(discriminator="type"),
]

ACTION_TYPES = {
    get_args(cls.model_fields["type"].annotation)[0]: cls
    for cls in (
        CommandAction, PackageAction, AptUpgradeAction, UfwAction, ConfigSettingsAction,
        LineInFileAction, ServiceAction, WinUserAction, WinFirewallAction, WinRegistryAction,
        WinPasswordPolicyAction, WinServiceAction,
    )
}
