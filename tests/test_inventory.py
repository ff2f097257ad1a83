"""
Unit tests for the YAML inventory.
"""

import textwrap

import pytest

from fleet_hardening.core.exceptions import ConfigError
from fleet_hardening.core.models import ConnectionType, OSFamily
from fleet_hardening.inventory import load_inventory, parse_inventory


INVENTORY = """
linux:
  vars:
    user: ubuntu
    key_file: /keys/id_ed25519
  hosts:
    web1:
      address: 10.0.0.5
    web2:
      address: 10.0.0.6
      user: deploy
      port: 2222
windows:
  vars:
    user: Administrator
    password: secret
  hosts:
    win1:
      address: 10.0.0.9
      transport: kerberos
appliances:
  vars:
    os_family: other
  hosts:
    fw1:
      connection: ssh
"""


@pytest.fixture
def inventory(tmp_path):
    path = tmp_path / "inventory.yaml"
    path.write_text(textwrap.dedent(INVENTORY))
    return load_inventory(path)


class TestLoadInventory:
    """Test parsing of the inventory file."""

    def test_hosts_in_file_order(self, inventory):
        assert [h.id for h in inventory] == ["web1", "web2", "win1", "fw1"]

    def test_os_family_from_group(self, inventory):
        assert inventory.get("web1").os_family == OSFamily.LINUX
        assert inventory.get("win1").os_family == OSFamily.WINDOWS
        assert inventory.get("fw1").os_family == OSFamily.OTHER

    def test_default_connection_per_family(self, inventory):
        assert inventory.get("web1").connection.type == ConnectionType.SSH
        assert inventory.get("win1").connection.type == ConnectionType.WINRM

    def test_host_vars_override_group_vars(self, inventory):
        web1 = inventory.get("web1").connection
        web2 = inventory.get("web2").connection
        assert (web1.user, web1.port, web1.key_file) == ("ubuntu", None, "/keys/id_ed25519")
        assert (web2.user, web2.port) == ("deploy", 2222)
        assert inventory.get("win1").connection.transport == "kerberos"
        assert inventory.get("win1").connection.password == "secret"

    def test_unknown_host(self, inventory):
        assert inventory.get("db1") is None

    def test_duplicate_host_merges_groups(self):
        inventory = parse_inventory({
            "linux": {"hosts": {"web1": {"address": "10.0.0.5"}}},
            "webservers": {"vars": {"os_family": "linux", "user": "www"}, "hosts": {"web1": None}},
        })
        host = inventory.get("web1")
        assert len(inventory) == 1
        assert host.groups == ["linux", "webservers"]
        assert host.connection.user == "www"
        assert host.connection.address == "10.0.0.5"

    def test_conflicting_os_family(self):
        with pytest.raises(ConfigError, match="web1"):
            parse_inventory({
                "linux": {"hosts": {"web1": None}},
                "windows": {"hosts": {"web1": None}},
            })

    @pytest.mark.parametrize("data", [
        {"linux": {"hosts": {"web1": {"adress": "10.0.0.5"}}}},
        {"linux": {"children": {}}},
        {"linux": {"hosts": {"web1": {"connection": "telnet"}}}},
        {"linux": {"hosts": {"web1": {"port": "ssh"}}}},
        {"linux": ["web1"]},
    ])
    def test_invalid_inventory(self, data):
        with pytest.raises(ConfigError):
            parse_inventory(data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read inventory"):
            load_inventory(tmp_path / "missing.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(ConfigError):
            load_inventory(path)


class TestLimit:
    """Test host selection by pattern."""

    def test_no_patterns_selects_all(self, inventory):
        assert len(inventory.limit(None)) == 4
        assert len(inventory.limit("")) == 4

    def test_host_patterns(self, inventory):
        assert [h.id for h in inventory.limit("web*")] == ["web1", "web2"]
        assert [h.id for h in inventory.limit("win1,fw1")] == ["win1", "fw1"]

    def test_group_patterns(self, inventory):
        assert [h.id for h in inventory.limit(["windows", "appliances"])] == ["win1", "fw1"]

    def test_no_match(self, inventory):
        assert inventory.limit("db*") == []
