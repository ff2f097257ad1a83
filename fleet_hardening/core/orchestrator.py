"""
Core orchestrator for fleet hardening runs.

The Orchestrator drives one role (report or harden) across every host of
a run: connect, gather facts, execute the OS family's task list and render
reports. Hosts are processed concurrently and independently; a failure on
one host never changes the outcome of another.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..config import AppConfig
from ..connectors.base import Session
from ..connectors.factory import ConnectorFactory
from ..facts.gatherer import FactGatherer
from ..reporting.generator import ReportRenderer, aggregate, unknown_fields
from ..tasks.loader import TaskLoader
from ..tasks.model import TaskCatalog
from .exceptions import ExecutionError, HostConnectionError, RunCancelled, TemplateError
from .executor import TaskExecutor
from .models import HostDescriptor, HostFacts, HostRunResult, HostStatus, Role, RunSummary, TaskOutcome

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Main orchestrator class for fleet runs.

    Coordinates connectors, fact gathering, task execution and reporting.
    Only two pieces of state are shared between host workers: the results
    of the run and the registry of open sessions used for cancellation.
    """

    def __init__(self, config: Optional[AppConfig] = None,
                 catalog: Optional[TaskCatalog] = None,
                 connector_factory: Optional[ConnectorFactory] = None,
                 gatherer: Optional[FactGatherer] = None,
                 renderer: Optional[ReportRenderer] = None):
        """
        Initialize the orchestrator.

        Args:
            config: Run configuration (defaults if None)
            catalog: Task catalogue (loaded from the configured task files if None)
            connector_factory: Session factory (built from config if None)
            gatherer: Fact gatherer (built from config if None)
            renderer: Report renderer (built from config on first use if None)

        Raises:
            ConfigError: If the task files are invalid
        """
        self.config = config or AppConfig()
        self.catalog = catalog if catalog is not None else TaskLoader(self.config.task_files).load()
        self.connectors = connector_factory or ConnectorFactory(
            command_timeout=self.config.command_timeout,
            ssh_options=self.config.ssh_options,
        )
        self.gatherer = gatherer or FactGatherer(self.config.service_probes)
        self.renderer = renderer

        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def run(self, hosts: Iterable[HostDescriptor], role: Role,
            tags: Optional[Iterable[str]] = None,
            output_dir: Optional[Union[str, Path]] = None,
            timeout: Optional[float] = None,
            fmt: Optional[str] = None,
            on_host_done: Optional[Callable[[HostRunResult], None]] = None) -> RunSummary:
        """
        Run a role against every host.

        Args:
            hosts: Hosts to process, results keep this order
            role: Report or harden
            tags: Tag filter for harden runs
            output_dir: Directory for per-host reports (required for report runs)
            timeout: Seconds after which the run is cancelled
            fmt: Report format, the configured format if None
            on_host_done: Called from the driving thread as each host finishes

        Returns:
            RunSummary: One terminal result per host

        Raises:
            ConfigError: If the report template or format cannot be used
        """
        hosts = list(hosts)
        role = Role(role)
        fmt = fmt or self.config.report_format
        timeout = timeout if timeout is not None else self.config.timeout
        renderer = None
        if output_dir is not None:
            renderer = self._get_renderer()
            renderer.ensure_format(fmt)

        self._cancel_event.clear()
        summary = RunSummary(role=role)
        if not hosts:
            return summary

        logger.info("Starting %s run on %d host(s) with %d worker(s)",
                    role.value, len(hosts), self.config.workers)

        timer = None
        if timeout:
            timer = threading.Timer(timeout, self._timed_out, args=(timeout,))
            timer.daemon = True
            timer.start()

        pool = ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="host")
        futures = {
            pool.submit(self._run_host, host, role, tags, output_dir, fmt, renderer): host
            for host in hosts
        }
        try:
            for future in as_completed(futures):
                if on_host_done:
                    on_host_done(future.result())
        except KeyboardInterrupt:
            logger.warning("Interrupted, cancelling run")
            self.cancel()
            wait(futures)
        finally:
            pool.shutdown(wait=True)
            if timer:
                timer.cancel()

        for future in futures:
            summary.add(future.result())

        logger.info("Run finished: %s", ", ".join(
            f"{len(summary.with_status(s))} {s.value}" for s in HostStatus if summary.with_status(s)
        ))
        return summary

    def cancel(self) -> None:
        """
        Cancel the current run.

        Every in-flight session is closed, which aborts its running command.
        Hosts not yet started end cancelled without being contacted.
        """
        self._cancel_event.set()
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.close()

    def _timed_out(self, timeout: float) -> None:
        logger.error("Run timeout of %ss reached, cancelling", timeout)
        self.cancel()

    def _get_renderer(self) -> ReportRenderer:
        if self.renderer is None:
            self.renderer = ReportRenderer(self.config.template, strict=self.config.strict_templates)
        return self.renderer

    def _run_host(self, host: HostDescriptor, role: Role, tags: Optional[Iterable[str]],
                  output_dir: Optional[Union[str, Path]], fmt: str,
                  renderer: Optional[ReportRenderer]) -> HostRunResult:
        """Process one host. Never raises; every error becomes a host status."""
        result = HostRunResult(host_id=host.id, os_family=host.os_family, status=HostStatus.FAILED)

        if self.cancelled:
            result.status = HostStatus.CANCELLED
            result.message = "cancelled before start"
            return result

        try:
            session = self.connectors.connect(host)
        except HostConnectionError as e:
            logger.error("host=%s unreachable: %s", host.id, e)
            result.status = HostStatus.UNREACHABLE
            result.message = str(e)
            return result
        except Exception as e:
            logger.exception("host=%s cannot open session", host.id)
            result.message = f"unexpected error: {e}"
            return result

        with self._lock:
            self._sessions[host.id] = session
        # cancel() may have missed the session if it ran before registration.
        if self.cancelled:
            session.close()

        try:
            with session:
                facts = self.gatherer.gather(session, host)
                result.facts = dict(facts.facts)
                if self.cancelled:
                    raise RunCancelled()

                if role == Role.HARDEN:
                    result.results = self._harden(session, host, facts, tags)

                if renderer is not None:
                    data = aggregate(facts, result.results)
                    missing = unknown_fields(data)
                    if missing:
                        logger.warning("host=%s facts not gathered: %s", host.id, ", ".join(missing))
                    result.report_path = renderer.write(data, output_dir, fmt)

            failed = result.count(TaskOutcome.FAILED)
            if failed:
                result.message = f"{failed} task(s) failed"
            else:
                result.status = HostStatus.SUCCESS
        except RunCancelled as e:
            result.results = result.results or e.results
            result.status = HostStatus.CANCELLED
            result.message = "cancelled"
        except ExecutionError as e:
            if self.cancelled:
                result.status = HostStatus.CANCELLED
                result.message = "cancelled"
            else:
                logger.error("host=%s execution failed: %s", host.id, e)
                result.message = str(e)
        except TemplateError as e:
            logger.error("host=%s report rendering failed: %s", host.id, e)
            result.message = f"report rendering failed: {e}"
        except OSError as e:
            logger.error("host=%s cannot write report: %s", host.id, e)
            result.message = f"cannot write report: {e}"
        except Exception as e:
            logger.exception("host=%s unexpected error", host.id)
            result.message = f"unexpected error: {e}"
        finally:
            with self._lock:
                self._sessions.pop(host.id, None)

        if result.status == HostStatus.CANCELLED:
            logger.warning("host=%s cancelled", host.id)
        return result

    def _harden(self, session: Session, host: HostDescriptor, facts: HostFacts,
                tags: Optional[Iterable[str]]) -> List:
        tasks = self.catalog.tasks_for(host.os_family)
        if not tasks:
            logger.info("host=%s no tasks for OS family %s", host.id, host.os_family.value)
            return []
        executor = TaskExecutor(
            tasks,
            handlers=self.catalog.handlers,
            tags=tags,
            cancel_event=self._cancel_event,
            retry_backoff=self.config.retry_backoff,
        )
        return executor.execute(session, facts)
