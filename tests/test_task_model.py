"""
Unit tests for task and handler definitions.
"""

import pytest
from pydantic import ValidationError

from fleet_hardening.core.models import OSFamily
from fleet_hardening.tasks.actions import ConfigSettingsAction
from fleet_hardening.tasks.model import FailureMode, FailurePolicy, TaskCatalog, TaskDefinition

from conftest import command_task


class TestFailurePolicy:
    """Test failure policy spellings."""

    @pytest.mark.parametrize("value,mode,retries", [
        ("fatal", FailureMode.FATAL, 0),
        ("ignore", FailureMode.IGNORE, 0),
        ("retry-3", FailureMode.RETRY, 3),
        ({"retry": 2}, FailureMode.RETRY, 2),
        ({"mode": "retry", "retries": 1}, FailureMode.RETRY, 1),
    ])
    def test_accepted_spellings(self, value, mode, retries):
        policy = FailurePolicy.model_validate(value)
        assert policy.mode == mode
        assert policy.retries == retries

    @pytest.mark.parametrize("value", ["retry", "retry-0", "explode", {"retry": -1}])
    def test_rejected_spellings(self, value):
        with pytest.raises(ValidationError):
            FailurePolicy.model_validate(value)

    def test_str(self):
        assert str(FailurePolicy.model_validate("retry-4")) == "retry-4"
        assert str(FailurePolicy()) == "fatal"


class TestTaskDefinition:
    """Test TaskDefinition validation."""

    def test_defaults(self):
        task = command_task("t")
        assert task.failure_policy.mode == FailureMode.FATAL
        assert task.tags == frozenset()
        assert task.notify == []
        assert task.when is None

    def test_action_resolved_at_load(self):
        task = TaskDefinition.model_validate({
            "name": "sshd",
            "action": {"type": "config_settings", "path": "/etc/ssh/sshd_config",
                       "settings": {"PermitRootLogin": "no"}},
        })
        assert isinstance(task.action, ConfigSettingsAction)

    def test_invalid_condition_rejected(self):
        with pytest.raises(ValidationError, match="invalid condition"):
            command_task("t", when="os_family ==")

    def test_string_tags_and_notify(self):
        task = command_task("t", tags="ssh", notify="restart ssh")
        assert task.tags == frozenset({"ssh"})
        assert task.notify == ["restart ssh"]

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            command_task("t", become=True)

    def test_tag_selection(self):
        task = command_task("t", tags=["ssh", "auth"])
        assert task.selected_by(frozenset())
        assert task.selected_by(frozenset({"ssh"}))
        assert not task.selected_by(frozenset({"firewall"}))


class TestTaskCatalog:
    """Test task lookup per OS family."""

    def test_tasks_for_family(self):
        catalog = TaskCatalog(linux=[command_task("l", tags="a")], windows=[command_task("w", tags="b")])
        assert [t.name for t in catalog.tasks_for(OSFamily.LINUX)] == ["l"]
        assert [t.name for t in catalog.tasks_for(OSFamily.WINDOWS)] == ["w"]
        assert catalog.tasks_for(OSFamily.OTHER) == []
        assert catalog.tags == frozenset({"a", "b"})
