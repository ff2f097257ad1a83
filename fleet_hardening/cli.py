"""
Command Line Interface for fleet hardening.

Provides the report and harden roles against an inventory of hosts, and
inspection of the task catalogue.
"""

import logging
import sys
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .config import AppConfig, load_config
from .core.exceptions import ConfigError
from .core.models import ExitCode, HostDescriptor, HostStatus, OSFamily, Role, RunSummary, TaskOutcome
from .core.orchestrator import Orchestrator
from .inventory import load_inventory
from .tasks.loader import TaskLoader


console = Console()

STATUS_COLORS = {
    HostStatus.SUCCESS: "green",
    HostStatus.FAILED: "red",
    HostStatus.UNREACHABLE: "yellow",
    HostStatus.CANCELLED: "magenta",
}


def setup_logging(verbose: bool) -> None:
    """Route log records through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def config_error(e: ConfigError) -> None:
    """Report a configuration problem and exit before any host work."""
    console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
    sys.exit(int(ExitCode.CONFIG_ERROR))


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(dir_okay=False), help="Path to configuration file")
@click.option('--verbose', '-v', is_flag=True, help="Enable verbose output")
@click.option('--workers', '-w', type=click.IntRange(min=1), help="Hosts processed concurrently")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool, workers: Optional[int]):
    """
    Fleet Hardening

    Gathers facts from Linux and Windows hosts, renders per-host reports
    and applies idempotent hardening tasks.
    """
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['workers'] = workers


def _load(ctx, **overrides) -> AppConfig:
    try:
        return load_config(ctx.obj['config_path'], workers=ctx.obj['workers'], **overrides)
    except ConfigError as e:
        config_error(e)


def _select_hosts(inventory_path: str, limit: Optional[str]) -> List[HostDescriptor]:
    try:
        inventory = load_inventory(inventory_path)
    except ConfigError as e:
        config_error(e)
    hosts = inventory.limit(_split(limit))
    if not hosts:
        config_error(ConfigError(f"no hosts in {inventory_path} match {limit!r}"))
    return hosts


def _run(config: AppConfig, hosts: List[HostDescriptor], role: Role, **kwargs) -> RunSummary:
    try:
        orchestrator = Orchestrator(config)
    except ConfigError as e:
        config_error(e)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(f"Running {role.value} on {len(hosts)} host(s)...", total=len(hosts))
        try:
            return orchestrator.run(
                hosts, role,
                on_host_done=lambda _: progress.advance(task),
                **kwargs,
            )
        except ConfigError as e:
            progress.stop()
            config_error(e)


@cli.command()
@click.argument('inventory', type=click.Path(dir_okay=False))
@click.option('--output-dir', '-o', required=True, type=click.Path(file_okay=False),
              help="Directory for per-host reports")
@click.option('--limit', '-l', help="Comma-separated host or group patterns")
@click.option('--format', 'fmt', type=click.Choice(['html', 'json', 'pdf']),
              help="Report format (default from configuration)")
@click.option('--template', type=click.Path(dir_okay=False), help="Custom report template")
@click.option('--lenient', is_flag=True, help="Render missing template fields as N/A")
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), help="Run timeout in seconds")
@click.pass_context
def report(ctx, inventory: str, output_dir: str, limit: Optional[str], fmt: Optional[str],
           template: Optional[str], lenient: bool, timeout: Optional[float]):
    """
    Gather facts and write one report per host.

    Makes no changes to the hosts.
    """
    config = _load(
        ctx,
        template=template,
        report_format=fmt,
        strict_templates=False if lenient else None,
        timeout=timeout,
    )
    hosts = _select_hosts(inventory, limit)

    summary = _run(config, hosts, Role.REPORT, output_dir=output_dir)
    _display_summary(summary)
    sys.exit(int(summary.exit_code))


@cli.command()
@click.argument('inventory', type=click.Path(dir_okay=False))
@click.option('--tags', '-t', help="Comma-separated tags, only matching tasks run")
@click.option('--limit', '-l', help="Comma-separated host or group patterns")
@click.option('--report-dir', type=click.Path(file_okay=False),
              help="Also write a report per host including task results")
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), help="Run timeout in seconds")
@click.option('--yes', '-y', is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def harden(ctx, inventory: str, tags: Optional[str], limit: Optional[str],
           report_dir: Optional[str], timeout: Optional[float], yes: bool):
    """
    Apply the hardening task list to every host.

    Tasks already in the desired state are left untouched.
    """
    config = _load(ctx, timeout=timeout)
    hosts = _select_hosts(inventory, limit)
    tag_list = _split(tags)

    console.print(Panel(
        f"[bold]Hardening {len(hosts)} host(s)[/bold]\n"
        f"Hosts: {', '.join(h.id for h in hosts)}\n"
        f"Tags: {', '.join(tag_list) if tag_list else 'all'}\n"
        f"Reports: {report_dir or 'none'}",
        title="Hardening Run"
    ))

    if not yes:
        console.print(
            "[yellow]Warning: This will make changes to the selected hosts![/yellow]\n"
        )
        if not click.confirm("Do you want to continue?"):
            console.print("Operation cancelled.")
            return

    summary = _run(config, hosts, Role.HARDEN, tags=tag_list, output_dir=report_dir)
    _display_summary(summary)
    sys.exit(int(summary.exit_code))


@cli.group()
def tasks():
    """Inspect the hardening task catalogue."""
    pass


@tasks.command('list')
@click.option('--os', 'os_name', type=click.Choice(['linux', 'windows']), help="Filter by OS family")
@click.option('--tag', help="Filter by tag")
@click.pass_context
def list_tasks(ctx, os_name: Optional[str], tag: Optional[str]):
    """List the tasks and handlers that harden runs apply."""
    config = _load(ctx)
    try:
        catalog = TaskLoader(config.task_files).load()
    except ConfigError as e:
        config_error(e)

    families = [OSFamily.parse(os_name)] if os_name else [OSFamily.LINUX, OSFamily.WINDOWS]

    table = Table(title="Hardening Tasks")
    table.add_column("OS", style="dim")
    table.add_column("#", justify="right")
    table.add_column("Task")
    table.add_column("Action")
    table.add_column("Tags")
    table.add_column("On failure")
    table.add_column("Notify")
    table.add_column("When", max_width=30)

    for family in families:
        for index, task in enumerate(catalog.tasks_for(family), 1):
            if tag and tag not in task.tags:
                continue
            table.add_row(
                family.value,
                str(index),
                task.name,
                task.action.type,
                ", ".join(sorted(task.tags)),
                str(task.failure_policy),
                ", ".join(task.notify),
                task.when or "",
            )

    console.print(table)

    if catalog.handlers and not tag:
        handlers = Table(title="Handlers")
        handlers.add_column("Handler")
        handlers.add_column("Action")
        for name, handler in catalog.handlers.items():
            handlers.add_row(name, handler.action.type)
        console.print(handlers)


def _display_summary(summary: RunSummary):
    """Display the terminal status of every host."""
    table = Table(title=f"{summary.role.value.title()} Summary")
    table.add_column("Host", style="bold")
    table.add_column("OS")
    table.add_column("Status")
    table.add_column("Changed", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Details", max_width=50)

    for host in summary.hosts.values():
        color = STATUS_COLORS[host.status]
        failed = host.count(TaskOutcome.FAILED)
        table.add_row(
            host.host_id,
            host.os_family.value,
            f"[{color}]{host.status.value.upper()}[/{color}]",
            str(host.count(TaskOutcome.CHANGED)),
            str(host.count(TaskOutcome.OK)),
            str(host.count(TaskOutcome.SKIPPED)),
            f"[red]{failed}[/red]" if failed else "0",
            escape(str(host.report_path) if host.report_path and not host.message else (host.message or "")),
        )

    console.print(table)

    if summary.success:
        console.print(f"\n[green]✓ All {len(summary.hosts)} host(s) succeeded[/green]")
    else:
        console.print(f"\n[yellow]⚠ Run completed with issues (exit code {int(summary.exit_code)})[/yellow]")


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
