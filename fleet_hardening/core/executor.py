"""
Task executor.

Runs an ordered task list against one host. Every task moves through
PENDING -> CHECKED -> APPLYING and ends SKIPPED, OK, CHANGED or FAILED.
Handlers notified by changed tasks run once each, after the task list,
in the order they were first notified.
"""

import logging
import threading
from typing import Dict, FrozenSet, Iterable, List, Optional

from jinja2 import TemplateError as JinjaError

from ..connectors.base import Session
from ..tasks.model import FailureMode, HandlerDefinition, TaskDefinition
from .exceptions import ExecutionError, RunCancelled
from .models import HostFacts, TaskOutcome, TaskResult

logger = logging.getLogger(__name__)


SKIPPED_BY_TAGS = "skipped by tag filter"
SKIPPED_BY_CONDITION = "condition not met"
SKIPPED_BY_FAILURE = "skipped due to prior failure"


class TaskExecutor:
    """
    Evaluates tasks for a single host.

    The executor keeps no state between ``execute`` calls, so one instance
    can be shared by every host worker of a run.
    """

    def __init__(self, tasks: Iterable[TaskDefinition],
                 handlers: Optional[Dict[str, HandlerDefinition]] = None,
                 tags: Optional[Iterable[str]] = None,
                 cancel_event: Optional[threading.Event] = None,
                 retry_backoff: float = 1.0):
        """
        Initialize the executor.

        Args:
            tasks: Tasks in declaration order
            handlers: Handlers by name
            tags: Tag filter, None or empty evaluates every task
            cancel_event: Set when the run is cancelled
            retry_backoff: Base delay in seconds between retry attempts
        """
        self.tasks = list(tasks)
        self.handlers = dict(handlers or {})
        self.tags: FrozenSet[str] = frozenset(tags or ())
        self.cancel_event = cancel_event or threading.Event()
        self.retry_backoff = retry_backoff

    def execute(self, session: Session, facts: HostFacts) -> List[TaskResult]:
        """
        Run every task, then the notified handlers.

        Args:
            session: Open session to the host
            facts: Facts gathered for the host

        Returns:
            List[TaskResult]: One result per task, then one per handler run

        Raises:
            RunCancelled: If the run is cancelled; carries the partial results
        """
        host_id = facts.host_id
        results: List[TaskResult] = []
        notified: List[str] = []
        halted = False

        for task in self.tasks:
            if self.cancel_event.is_set():
                raise RunCancelled(results)
            if halted:
                results.append(self._result(task.name, host_id, TaskOutcome.SKIPPED, SKIPPED_BY_FAILURE))
                continue

            try:
                result = self._evaluate(task, session, facts)
            except RunCancelled:
                raise RunCancelled(results)
            logger.info("host=%s task=%r outcome=%s %s",
                        host_id, task.name, result.outcome.value, result.message)
            results.append(result)

            if result.outcome == TaskOutcome.CHANGED:
                for handler in task.notify:
                    if handler not in notified:
                        notified.append(handler)
            elif result.outcome == TaskOutcome.FAILED:
                halted = True

        if halted:
            if notified:
                logger.warning("host=%s skipping handlers %s after fatal failure",
                               host_id, ", ".join(notified))
            return results

        for name in notified:
            if self.cancel_event.is_set():
                raise RunCancelled(results)
            handler = self.handlers.get(name)
            if handler is None:
                result = self._result(name, host_id, TaskOutcome.FAILED,
                                      "undefined handler", handler=True)
            else:
                try:
                    result = self._run_handler(handler, session, host_id)
                except RunCancelled:
                    raise RunCancelled(results)
            logger.info("host=%s handler=%r outcome=%s", host_id, name, result.outcome.value)
            results.append(result)

        return results

    def _evaluate(self, task: TaskDefinition, session: Session, facts: HostFacts) -> TaskResult:
        """Drive one task through its state machine."""
        host_id = facts.host_id

        if not task.selected_by(self.tags):
            return self._result(task.name, host_id, TaskOutcome.SKIPPED, SKIPPED_BY_TAGS)

        try:
            applicable = task.is_applicable(facts)
        except (JinjaError, TypeError, ValueError) as e:
            return self._failed(task, host_id, f"condition error: {e}", attempts=0)
        if not applicable:
            return self._result(task.name, host_id, TaskOutcome.SKIPPED, SKIPPED_BY_CONDITION)

        action = task.action
        if not action.supports(session):
            return self._failed(task, host_id, f"{action.type} cannot run in a {session.shell} session",
                                attempts=0)

        # CHECKED
        try:
            check = action.check(session)
        except ExecutionError as e:
            if self.cancel_event.is_set():
                raise RunCancelled()
            return self._failed(task, host_id, f"check failed: {e}", attempts=0)
        if check.satisfied:
            return self._result(task.name, host_id, TaskOutcome.OK, check.detail)

        # APPLYING
        policy = task.failure_policy
        max_attempts = 1 + (policy.retries if policy.mode == FailureMode.RETRY else 0)
        attempts = 0
        while True:
            attempts += 1
            try:
                detail = action.apply(session)
            except ExecutionError as e:
                if self.cancel_event.is_set():
                    raise RunCancelled()
                if attempts >= max_attempts:
                    return self._failed(task, host_id, str(e), attempts)
                delay = self.retry_backoff * (2 ** (attempts - 1))
                logger.warning("host=%s task=%r attempt %d/%d failed: %s; retrying in %.1fs",
                               host_id, task.name, attempts, max_attempts, e, delay)
                if self.cancel_event.wait(delay):
                    raise RunCancelled()
                continue
            return self._result(task.name, host_id, TaskOutcome.CHANGED, detail, attempts)

    def _failed(self, task: TaskDefinition, host_id: str, message: str, attempts: int) -> TaskResult:
        """Apply the failure policy to a failed task."""
        if task.failure_policy.mode == FailureMode.IGNORE:
            logger.warning("host=%s task=%r failed, ignoring: %s", host_id, task.name, message)
            return self._result(task.name, host_id, TaskOutcome.OK,
                                f"ignored failure: {message}", attempts, warning=True)
        return self._result(task.name, host_id, TaskOutcome.FAILED, message, attempts)

    def _run_handler(self, handler: HandlerDefinition, session: Session, host_id: str) -> TaskResult:
        action = handler.action
        try:
            if not action.supports(session):
                raise ExecutionError(f"{action.type} cannot run in a {session.shell} session")
            check = action.check(session)
            if check.satisfied:
                return self._result(handler.name, host_id, TaskOutcome.OK, check.detail, handler=True)
            detail = action.apply(session)
        except ExecutionError as e:
            if self.cancel_event.is_set():
                raise RunCancelled()
            return self._result(handler.name, host_id, TaskOutcome.FAILED, str(e), 1, handler=True)
        return self._result(handler.name, host_id, TaskOutcome.CHANGED, detail, 1, handler=True)

    @staticmethod
    def _result(name: str, host_id: str, outcome: TaskOutcome, message: str,
                attempts: int = 0, warning: bool = False, handler: bool = False) -> TaskResult:
        return TaskResult(task=name, host_id=host_id, outcome=outcome, message=message,
                          attempts=attempts, warning=warning, handler=handler)
