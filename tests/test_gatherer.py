"""
Unit tests for fact gathering.

Tests the POSIX and Windows probe sets and that a failing probe only
blanks its own facts.
"""

from fleet_hardening.core.models import OSFamily
from fleet_hardening.facts.gatherer import FactGatherer, parse_os_release


class TestParseOsRelease:
    """Test /etc/os-release parsing."""

    def test_quotes_and_comments(self):
        content = '# comment\nNAME="Ubuntu"\nVERSION_ID=\'22.04\'\nID=ubuntu\n\n'
        assert parse_os_release(content) == {"NAME": "Ubuntu", "VERSION_ID": "22.04", "ID": "ubuntu"}


class TestLinuxFacts:
    """Test fact gathering over a POSIX session."""

    def test_all_facts_gathered(self, linux, linux_host):
        facts = FactGatherer().gather(linux, linux_host)

        assert facts.host_id == "web1"
        assert facts.facts == {
            "hostname": "web1",
            "os_family": "Linux",
            "os_distribution": "Ubuntu",
            "os_version": "22.04",
            "kernel_version": "5.15.0-105-generic",
            "service_ssh": "active",
        }

    def test_failing_command_records_unknown(self, linux, linux_host):
        """Test one failing probe leaves the other facts intact."""
        linux.on(r"^uname -r$", exit_code=127, stderr="uname: not found")
        del linux.files["/etc/os-release"]

        facts = FactGatherer().gather(linux, linux_host)

        assert facts["kernel_version"] == "unknown"
        assert facts["os_distribution"] == "unknown"
        assert facts["os_version"] == "unknown"
        assert facts["hostname"] == "web1"
        assert facts["service_ssh"] == "active"

    def test_inactive_service(self, linux, linux_host):
        """Test systemd's non-zero exit for inactive units still yields the state."""
        linux.on(r"^systemctl is-active ssh$", exit_code=3, stdout="inactive\n")
        assert FactGatherer().gather(linux, linux_host)["service_ssh"] == "inactive"

    def test_closed_session_gives_unknowns(self, linux, linux_host):
        """Test gathering never raises, even when every probe fails."""
        linux.close()
        facts = FactGatherer().gather(linux, linux_host)
        assert set(facts.facts) == set(FactGatherer().fact_keys(OSFamily.LINUX))
        assert facts["hostname"] == "unknown"
        assert facts["os_family"] == "Linux"

    def test_configured_services(self, linux, linux_host):
        linux.on(r"^systemctl is-active cron$", stdout="active\n")
        gatherer = FactGatherer({"linux": ["ssh", "cron"]})
        facts = gatherer.gather(linux, linux_host)
        assert facts.service_status == {"cron": "active", "ssh": "active"}


class TestWindowsFacts:
    """Test fact gathering over a PowerShell session."""

    def test_all_facts_gathered(self, windows, windows_host):
        facts = FactGatherer().gather(windows, windows_host)

        assert facts.facts == {
            "hostname": "WIN1",
            "os_family": "Windows",
            "os_distribution": "Microsoft Windows Server 2022 Standard",
            "os_version": "10.0.20348",
            "kernel_version": "20348",
            "service_winrm": "running",
        }

    def test_unparseable_os_output(self, windows, windows_host):
        windows.on(r"Win32_OperatingSystem", stdout="Access denied")
        facts = FactGatherer().gather(windows, windows_host)
        assert facts["os_distribution"] == "unknown"
        assert facts["kernel_version"] == "unknown"
        assert facts["hostname"] == "WIN1"

    def test_service_name_quoted(self, windows, windows_host):
        """Test a service name with a quote reaches PowerShell as one literal."""
        facts = FactGatherer({"windows": ["Bob's Service"]}).gather(windows, windows_host)
        assert windows.ran(r"Get-Service -Name 'Bob''s Service' ")
        assert "service_bob_s_service" in facts.facts
