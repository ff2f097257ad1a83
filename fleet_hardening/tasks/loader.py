"""
Task loader for hardening task definitions.

Loads the per-OS task lists and their handlers from YAML files and
validates them into a TaskCatalog. Any problem in a task file is a
configuration error raised before a single host is contacted.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from ..core.exceptions import ConfigError
from ..core.models import OSFamily
from .actions import POSIX, POWERSHELL
from .model import HandlerDefinition, TaskCatalog, TaskDefinition

logger = logging.getLogger(__name__)

DEFINITIONS_DIR = Path(__file__).parent / "definitions"

DEFAULT_TASK_FILES = {
    OSFamily.LINUX: DEFINITIONS_DIR / "linux.yaml",
    OSFamily.WINDOWS: DEFINITIONS_DIR / "windows.yaml",
}

# Shell each OS family's task list runs in.
FAMILY_SHELLS = {OSFamily.LINUX: POSIX, OSFamily.WINDOWS: POWERSHELL}


def format_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic error into one line per problem."""
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        problems.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(problems)


class TaskLoader:
    """
    Loads the task catalogue.

    Each OS family has one task file holding a ``tasks`` list and an
    optional ``handlers`` list. Handlers from every file share one
    namespace.
    """

    def __init__(self, task_files: Optional[Dict[Union[OSFamily, str], Union[str, Path]]] = None):
        """
        Initialize task loader.

        Args:
            task_files: Task file per OS family (packaged definitions if None)
        """
        self.task_files: Dict[OSFamily, Path] = dict(DEFAULT_TASK_FILES)
        for family, path in (task_files or {}).items():
            self.task_files[OSFamily.parse(family)] = Path(path).expanduser()

        self._catalog_cache: Optional[TaskCatalog] = None

    def load(self) -> TaskCatalog:
        """
        Load and validate every task file.

        Returns:
            TaskCatalog: Ordered task lists and handlers

        Raises:
            ConfigError: If a file is missing, malformed or inconsistent
        """
        if self._catalog_cache is not None:
            return self._catalog_cache

        tasks: Dict[OSFamily, List[TaskDefinition]] = {}
        handlers: Dict[str, HandlerDefinition] = {}

        for family in (OSFamily.LINUX, OSFamily.WINDOWS):
            path = self.task_files[family]
            family_tasks, family_handlers = self._load_file(path, FAMILY_SHELLS[family])
            for name, handler in family_handlers.items():
                if name in handlers and handlers[name] != handler:
                    raise ConfigError(f"{path}: handler {name!r} conflicts with another task file")
                handlers[name] = handler
            tasks[family] = family_tasks
            logger.debug("Loaded %d %s tasks from %s", len(family_tasks), family.value, path)

        for family, family_tasks in tasks.items():
            for task in family_tasks:
                missing = [n for n in task.notify if n not in handlers]
                if missing:
                    raise ConfigError(
                        f"{self.task_files[family]}: task {task.name!r} notifies "
                        f"undefined handler(s): {', '.join(missing)}"
                    )

        self._catalog_cache = TaskCatalog(
            linux=tasks[OSFamily.LINUX],
            windows=tasks[OSFamily.WINDOWS],
            handlers=handlers,
        )
        return self._catalog_cache

    def reload(self) -> TaskCatalog:
        """Force reload of the task files."""
        self._catalog_cache = None
        return self.load()

    def _load_file(self, path: Path, shell: str) -> Tuple[List[TaskDefinition], Dict[str, HandlerDefinition]]:
        """Parse one task file into tasks and handlers."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read task file {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in task file {path}: {e}")

        if data is None:
            return [], {}
        if isinstance(data, list):
            data = {"tasks": data}
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a mapping with 'tasks' and 'handlers'")
        unknown = set(data) - {"tasks", "handlers"}
        if unknown:
            raise ConfigError(f"{path}: unknown top-level keys: {', '.join(sorted(unknown))}")

        tasks = [self._parse(TaskDefinition, item, path, "tasks", i)
                 for i, item in enumerate(data.get("tasks") or [])]
        handler_list = [self._parse(HandlerDefinition, item, path, "handlers", i)
                        for i, item in enumerate(data.get("handlers") or [])]

        names = set()
        for task in tasks:
            if task.name in names:
                raise ConfigError(f"{path}: duplicate task name {task.name!r}")
            names.add(task.name)

        handlers: Dict[str, HandlerDefinition] = {}
        for handler in handler_list:
            if handler.name in handlers:
                raise ConfigError(f"{path}: duplicate handler {handler.name!r}")
            handlers[handler.name] = handler

        for definition in list(tasks) + handler_list:
            if shell not in definition.action.shells:
                raise ConfigError(
                    f"{path}: {definition.name!r} uses {definition.action.type}, "
                    f"which cannot run in a {shell} session"
                )

        return tasks, handlers

    @staticmethod
    def _parse(model, item, path: Path, section: str, index: int):
        try:
            return model.model_validate(item)
        except ValidationError as e:
            name = item.get("name") if isinstance(item, dict) else None
            label = f"{section}[{index}]" + (f" ({name})" if name else "")
            raise ConfigError(f"{path}: {label}: {format_validation_error(e)}")
