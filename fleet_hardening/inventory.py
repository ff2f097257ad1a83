"""
YAML inventory loader.

The inventory is a mapping of group name to ``vars`` (connection defaults
shared by the group) and ``hosts`` (host id to per-host settings)::

    linux:
      vars: {user: ubuntu}
      hosts:
        web1: {address: 10.0.0.5}
    windows:
      vars: {user: Administrator, password: secret}
      hosts:
        win1: {address: 10.0.0.9}

The ``linux`` and ``windows`` groups imply their OS family; any other group
sets ``vars.os_family``.
"""

import fnmatch
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml
from pydantic import ValidationError

from .connectors.factory import DEFAULT_CONNECTION
from .core.exceptions import ConfigError
from .core.models import ConnectionParams, ConnectionType, HostDescriptor, OSFamily
from .tasks.loader import format_validation_error

logger = logging.getLogger(__name__)

CONNECTION_KEYS = {"address", "port", "user", "password", "key_file", "transport", "options"}
HOST_KEYS = CONNECTION_KEYS | {"connection", "os_family"}

GROUP_FAMILIES = {"linux": OSFamily.LINUX, "windows": OSFamily.WINDOWS}


class Inventory:
    """Hosts of a run, in inventory order."""

    def __init__(self, hosts: Iterable[HostDescriptor]):
        self.hosts: List[HostDescriptor] = list(hosts)

    def __iter__(self):
        return iter(self.hosts)

    def __len__(self) -> int:
        return len(self.hosts)

    def get(self, host_id: str) -> Optional[HostDescriptor]:
        for host in self.hosts:
            if host.id == host_id:
                return host
        return None

    def limit(self, patterns: Optional[Union[str, Iterable[str]]]) -> List[HostDescriptor]:
        """
        Hosts whose id or one of whose groups matches a pattern.

        Args:
            patterns: fnmatch patterns, as a list or comma-separated string

        Returns:
            List[HostDescriptor]: Matching hosts in inventory order, all if no patterns
        """
        if not patterns:
            return list(self.hosts)
        if isinstance(patterns, str):
            patterns = patterns.split(",")
        patterns = [p.strip() for p in patterns if p.strip()]
        if not patterns:
            return list(self.hosts)
        return [
            host for host in self.hosts
            if any(fnmatch.fnmatch(name, p) for p in patterns for name in [host.id, *host.groups])
        ]


def load_inventory(path: Union[str, Path]) -> Inventory:
    """
    Load an inventory file.

    Args:
        path: YAML inventory file

    Returns:
        Inventory: Validated host descriptors

    Raises:
        ConfigError: If the file is unreadable or describes invalid hosts
    """
    path = Path(path).expanduser()
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read inventory {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in inventory {path}: {e}")

    if not isinstance(data, dict) or not data:
        raise ConfigError(f"{path}: inventory must map group names to hosts")

    return parse_inventory(data, source=str(path))


def parse_inventory(data: Dict, source: str = "inventory") -> Inventory:
    """Build host descriptors from an already parsed inventory mapping."""
    settings: Dict[str, Dict] = {}
    families: Dict[str, OSFamily] = {}
    groups: Dict[str, List[str]] = {}

    for group_name, group in data.items():
        group_name = str(group_name)
        group = group or {}
        if not isinstance(group, dict):
            raise ConfigError(f"{source}: group {group_name!r} must be a mapping")
        unknown = set(group) - {"vars", "hosts"}
        if unknown:
            raise ConfigError(f"{source}: group {group_name!r} has unknown keys: {', '.join(sorted(unknown))}")

        group_vars = dict(group.get("vars") or {})
        _check_keys(group_vars, source, f"group {group_name!r} vars")
        family = GROUP_FAMILIES.get(group_name.lower())
        if "os_family" in group_vars:
            family = OSFamily.parse(group_vars.pop("os_family"))
        family = family or OSFamily.OTHER

        hosts = group.get("hosts") or {}
        if isinstance(hosts, list):
            hosts = {str(h): None for h in hosts}
        if not isinstance(hosts, dict):
            raise ConfigError(f"{source}: hosts of group {group_name!r} must be a mapping")

        for host_id, host_vars in hosts.items():
            host_id = str(host_id)
            host_vars = dict(host_vars or {})
            _check_keys(host_vars, source, f"host {host_id!r}")
            host_family = OSFamily.parse(host_vars.pop("os_family")) if "os_family" in host_vars else family

            if host_id in families and families[host_id] != host_family:
                raise ConfigError(
                    f"{source}: host {host_id!r} is {families[host_id].value} in one group "
                    f"and {host_family.value} in {group_name!r}"
                )
            families[host_id] = host_family
            merged = settings.setdefault(host_id, {})
            merged.update(group_vars)
            merged.update(host_vars)
            groups.setdefault(host_id, [])
            if group_name not in groups[host_id]:
                groups[host_id].append(group_name)

    hosts = [_descriptor(host_id, families[host_id], settings[host_id], groups[host_id], source)
             for host_id in settings]
    logger.debug("Loaded %d hosts from %s", len(hosts), source)
    return Inventory(hosts)


def _check_keys(values: Dict, source: str, where: str) -> None:
    unknown = set(values) - HOST_KEYS
    if unknown:
        raise ConfigError(f"{source}: {where} has unknown keys: {', '.join(sorted(unknown))}")


def _descriptor(host_id: str, family: OSFamily, values: Dict, groups: List[str],
                source: str) -> HostDescriptor:
    values = dict(values)
    connection_type = values.pop("connection", None) or DEFAULT_CONNECTION[family]
    if "key_file" in values and values["key_file"]:
        values["key_file"] = str(Path(values["key_file"]).expanduser())
    try:
        connection = ConnectionParams(type=ConnectionType(connection_type), **values)
        return HostDescriptor(id=host_id, os_family=family, connection=connection, groups=groups)
    except ValidationError as e:
        raise ConfigError(f"{source}: host {host_id!r}: {format_validation_error(e)}")
    except ValueError as e:
        raise ConfigError(f"{source}: host {host_id!r}: {e}")
