"""
Report generator for per-host fact and hardening results.

Aggregates facts and task results into ReportData and renders it as HTML,
JSON or PDF. Rendering is deterministic: the same ReportData always gives
the same bytes.
"""

import json
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from jinja2 import (
    ChainableUndefined, Environment, FileSystemLoader, StrictUndefined,
    TemplateNotFound, TemplateSyntaxError, UndefinedError, select_autoescape,
)

from ..core.exceptions import ConfigError, TemplateError
from ..core.models import UNKNOWN, HostFacts, ReportData, TaskOutcome, TaskResult

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
DEFAULT_TEMPLATE = "host_report.html.j2"
NOT_AVAILABLE = "N/A"

FORMAT_EXTENSIONS = {"html": "html", "json": "json", "pdf": "pdf"}


class NotAvailableUndefined(ChainableUndefined):
    """Undefined that renders as N/A, used only in lenient mode."""

    def __str__(self) -> str:
        return NOT_AVAILABLE


def aggregate(facts: HostFacts, results: Iterable[TaskResult] = ()) -> ReportData:
    """
    Combine a host's facts and task results into report data.

    Args:
        facts: Facts gathered for the host
        results: Task results in execution order

    Returns:
        ReportData: Immutable report input
    """
    task_results = list(results)
    counts = {outcome: 0 for outcome in TaskOutcome}
    for result in task_results:
        counts[result.outcome] += 1
    return ReportData(
        host_id=facts.host_id,
        os_family=facts.os_family,
        os_distribution=str(facts.get("os_distribution")),
        os_version=str(facts.get("os_version")),
        hostname=str(facts.get("hostname")),
        kernel_version=str(facts.get("kernel_version")),
        service_status=facts.service_status,
        task_results=task_results,
        changed=counts[TaskOutcome.CHANGED],
        ok=counts[TaskOutcome.OK],
        skipped=counts[TaskOutcome.SKIPPED],
        failed=counts[TaskOutcome.FAILED],
    )


def report_filename(host_id: str, fmt: str = "html") -> str:
    """Deterministic, filesystem-safe report file name for a host."""
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", host_id).strip("._") or "host"
    return f"{safe}.{FORMAT_EXTENSIONS[fmt]}"


class ReportRenderer:
    """
    Renders ReportData into documents.

    Templates are Jinja2. In strict mode (the default) a placeholder with
    no matching field raises TemplateError; lenient mode renders it as
    ``N/A`` instead.
    """

    def __init__(self, template_path: Optional[Union[str, Path]] = None, strict: bool = True):
        """
        Initialize the renderer.

        Args:
            template_path: Custom HTML template (packaged template if None)
            strict: Fail on undefined placeholders instead of printing N/A

        Raises:
            ConfigError: If the template cannot be loaded or parsed
        """
        if template_path:
            template_file = Path(template_path)
            search_dir, name = template_file.parent, template_file.name
        else:
            search_dir, name = TEMPLATES_DIR, DEFAULT_TEMPLATE

        self.strict = strict
        self.env = Environment(
            loader=FileSystemLoader(str(search_dir)),
            undefined=StrictUndefined if strict else NotAvailableUndefined,
            autoescape=select_autoescape(["html", "htm", "j2"]),
            keep_trailing_newline=True,
        )
        try:
            self.template = self.env.get_template(name)
        except TemplateNotFound:
            raise ConfigError(f"Report template not found: {search_dir / name}")
        except TemplateSyntaxError as e:
            raise ConfigError(f"Report template {name} line {e.lineno}: {e.message}")

    @staticmethod
    def ensure_format(fmt: str) -> None:
        """
        Verify that documents of ``fmt`` can be produced.

        Raises:
            ConfigError: If the format is unknown or its renderer is not installed
        """
        if fmt.lower() not in FORMAT_EXTENSIONS:
            raise ConfigError(f"Unsupported report format: {fmt}")
        if fmt.lower() == "pdf":
            try:
                import weasyprint
            except (ImportError, OSError) as e:
                raise ConfigError(f"PDF reports need WeasyPrint (pip install fleet-hardening[pdf]): {e}")

    @staticmethod
    def context(data: ReportData) -> Dict:
        """Template context: every ReportData field as a top-level placeholder."""
        context = data.model_dump(mode="json")
        context["report"] = context.copy()
        return context

    def render(self, data: ReportData, fmt: str = "html") -> bytes:
        """
        Render report data.

        Args:
            data: Report input
            fmt: Output format (html, json, pdf)

        Returns:
            bytes: Rendered document

        Raises:
            TemplateError: If the template references undefined data
            ValueError: If the format is not supported
        """
        fmt = fmt.lower()
        if fmt == "json":
            return self._render_json(data)
        if fmt == "html":
            return self._render_html(data)
        if fmt == "pdf":
            return self._render_pdf(data)
        raise ValueError(f"Unsupported report format: {fmt}")

    def write(self, data: ReportData, output_dir: Union[str, Path], fmt: str = "html") -> Path:
        """
        Render and write the report for one host.

        Returns:
            Path: Written file, named after the host id
        """
        content = self.render(data, fmt)
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        output_file = output_dir / report_filename(data.host_id, fmt)
        output_file.write_bytes(content)
        logger.info("host=%s report written to %s", data.host_id, output_file)
        return output_file

    def _render_html(self, data: ReportData) -> bytes:
        try:
            html = self.template.render(**self.context(data))
        except UndefinedError as e:
            raise TemplateError(f"{data.host_id}: {e.message}")
        return html.encode("utf-8")

    @staticmethod
    def _render_json(data: ReportData) -> bytes:
        payload = data.model_dump(mode="json")
        return (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")

    def _render_pdf(self, data: ReportData) -> bytes:
        # WeasyPrint pulls in native libraries, so it is only imported on demand.
        from weasyprint import HTML

        return HTML(string=self._render_html(data).decode("utf-8")).write_pdf()


def unknown_fields(data: ReportData) -> list:
    """Names of report fields whose fact could not be gathered."""
    return [
        name for name in ("os_distribution", "os_version", "hostname", "kernel_version")
        if getattr(data, name) == UNKNOWN
    ]
