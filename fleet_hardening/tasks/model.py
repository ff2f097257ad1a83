"""
Task and handler definitions.

Definitions are immutable once loaded. Applicability conditions are Jinja2
expressions evaluated against a host's facts and nothing else.
"""

import re
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, FrozenSet, List, Optional

from jinja2 import TemplateSyntaxError
from jinja2.sandbox import ImmutableSandboxedEnvironment
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.models import HostFacts, OSFamily
from .actions import Action


_CONDITION_ENV = ImmutableSandboxedEnvironment()


@lru_cache(maxsize=None)
def compile_condition(expression: str):
    """Compile a ``when`` expression, raising TemplateSyntaxError if invalid."""
    return _CONDITION_ENV.compile_expression(expression)


class FailureMode(str, Enum):
    """What happens when a task fails."""
    FATAL = "fatal"
    IGNORE = "ignore"
    RETRY = "retry"


class FailurePolicy(BaseModel):
    """
    Failure policy of a task.

    Accepts ``"fatal"``, ``"ignore"``, ``"retry-N"`` or ``{"retry": N}``.
    """
    model_config = ConfigDict(frozen=True)

    mode: FailureMode = FailureMode.FATAL
    retries: int = Field(0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def parse_shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            text = data.strip().lower()
            match = re.fullmatch(r"retry-(\d+)", text)
            if match:
                return {"mode": FailureMode.RETRY, "retries": int(match.group(1))}
            return {"mode": text}
        if isinstance(data, dict) and set(data) == {"retry"}:
            return {"mode": FailureMode.RETRY, "retries": data["retry"]}
        return data

    @model_validator(mode="after")
    def retries_need_retry_mode(self) -> "FailurePolicy":
        if self.mode == FailureMode.RETRY and self.retries < 1:
            raise ValueError("retry policy needs at least one retry")
        return self

    def __str__(self) -> str:
        if self.mode == FailureMode.RETRY:
            return f"retry-{self.retries}"
        return self.mode.value


class TaskDefinition(BaseModel):
    """A declarative, idempotent unit of work."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    action: Action
    when: Optional[str] = Field(None, description="Jinja2 expression over host facts")
    tags: FrozenSet[str] = Field(default_factory=frozenset)
    failure_policy: FailurePolicy = Field(default_factory=FailurePolicy)
    notify: List[str] = Field(default_factory=list)

    @field_validator("when")
    @classmethod
    def valid_condition(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            compile_condition(v)
        except TemplateSyntaxError as e:
            raise ValueError(f"invalid condition {v!r}: {e}")
        return v

    @field_validator("tags", "notify", mode="before")
    @classmethod
    def listify(cls, v):
        return [v] if isinstance(v, str) else v

    def is_applicable(self, facts: HostFacts) -> bool:
        """
        Evaluate the ``when`` condition against ``facts``.

        Undefined names evaluate to None, so a condition on a missing fact is
        simply false.
        """
        if not self.when:
            return True
        return bool(compile_condition(self.when)(**facts.facts))

    def selected_by(self, tags: Optional[FrozenSet[str]]) -> bool:
        """Whether the task survives a tag filter (an empty filter keeps all)."""
        return not tags or bool(self.tags & tags)


class HandlerDefinition(BaseModel):
    """A deferred action run at most once per host."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    action: Action


class TaskCatalog(BaseModel):
    """Ordered task lists per OS family plus the handlers they notify."""
    model_config = ConfigDict(frozen=True)

    linux: List[TaskDefinition] = Field(default_factory=list)
    windows: List[TaskDefinition] = Field(default_factory=list)
    handlers: Dict[str, HandlerDefinition] = Field(default_factory=dict)

    def tasks_for(self, os_family: OSFamily) -> List[TaskDefinition]:
        if os_family == OSFamily.LINUX:
            return list(self.linux)
        if os_family == OSFamily.WINDOWS:
            return list(self.windows)
        return []

    @property
    def tags(self) -> FrozenSet[str]:
        return frozenset(t for task in self.linux + self.windows for t in task.tags)
