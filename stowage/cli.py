"""Command Line Interface for stowage."""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.table import Table

from .actions import (
    ActionListener,
    BackupAction,
    BackupOptions,
    CopyAction,
    CopyOptions,
    InitAction,
    InitOptions,
    PruneAction,
    PruneOptions,
    RestoreAction,
    RestoreOptions,
    SnapshotsAction,
    SnapshotsOptions,
)
from .config import DEFAULT_CONFIG_PATH, StowageConfig, load_config, save_config
from .errors import StowageError
from .lease import ScratchSession
from .orchestrator import RunSummary, TaskResult, TaskState
from .retention import RetentionPolicy
from .util import TqdmProgressRenderer, format_duration, format_size, get_logger, setup_logging
from .util.progress import Progress

console = Console()
logger = get_logger(__name__)


def setup_cli_logging(verbose: bool = False, level: Optional[str] = None):
    """Setup logging for CLI."""
    setup_logging(level="DEBUG" if verbose else (level or "INFO"), console=Console(stderr=True))


def _split(values: List[str]) -> Optional[List[str]]:
    """Flatten repeated and comma separated option values."""
    items = [item.strip() for value in values for item in value.split(",") if item.strip()]
    return items or None


def _keep_options(
    keep_last: Optional[int],
    keep_minutely: Optional[int],
    keep_hourly: Optional[int],
    keep_daily: Optional[int],
    keep_weekly: Optional[int],
    keep_monthly: Optional[int],
    keep_yearly: Optional[int],
) -> RetentionPolicy:
    return RetentionPolicy(
        keep_last=keep_last,
        keep_minutely=keep_minutely,
        keep_hourly=keep_hourly,
        keep_daily=keep_daily,
        keep_weekly=keep_weekly,
        keep_monthly=keep_monthly,
        keep_yearly=keep_yearly,
    )


def keep_options(func):
    """Add the ``--keep-*`` retention options to a command."""
    for name in reversed(["last", "minutely", "hourly", "daily", "weekly", "monthly", "yearly"]):
        func = click.option(f"--keep-{name}", type=int, help=f"Keep {name} snapshots")(func)
    return func


def filter_options(func):
    """Add the package and repository selection options to a command."""
    options = [
        click.option("--package", "-p", "packages", multiple=True, help="Package name patterns"),
        click.option("--task", "-t", "tasks", multiple=True, help="Package task name patterns"),
        click.option("--repository", "-r", "repositories", multiple=True, help="Repository name patterns"),
        click.option("--repository-type", "repository_types", multiple=True, help="Repository types"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


class CliListener(ActionListener):
    """Render task states and progress on the terminal."""

    def __init__(self) -> None:
        super().__init__(on_state=self.state, on_progress=self.progress)
        self.renderer = TqdmProgressRenderer()

    def state(self, result: TaskResult) -> None:
        if result.state == TaskState.STARTED:
            logger.info(f"{result.title}...")
        elif result.state in (TaskState.COMPLETED, TaskState.FAILED):
            self.renderer.finish(result.title)
            if result.skipped:
                logger.info(f"{result.title}: skipped ({result.skipped})")

    def progress(self, result: TaskResult, progress: Progress) -> None:
        self.renderer.update(result.title, progress)

    def close(self) -> None:
        self.renderer.close()


def _print_summary(title: str, summary: RunSummary) -> None:
    table = Table(title=title)
    table.add_column("Task", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Duration", style="white")

    for result in summary.results:
        if not result.is_leaf:
            continue
        if result.failed:
            status = f"[red]failed: {result.error}[/red]"
        elif result.skipped:
            status = f"[yellow]skipped: {result.skipped}[/yellow]"
        else:
            status = "[green]ok[/green]"
        table.add_row(result.title, status, format_duration(result.elapsed))

    console.print(table)
    if summary.ok:
        console.print(f"[bold green]Completed in {format_duration(summary.elapsed)}[/bold green]")
    else:
        console.print(f"[bold red]{summary.errors} task(s) failed[/bold red]")


def _run_action(ctx: click.Context, title: str, build) -> None:
    """Run an orchestrated action, print its summary and exit 1 on failures."""
    config: StowageConfig = ctx.obj["config"]
    listener = CliListener()
    try:
        with ScratchSession(config.temp_dir) as session:
            summary = asyncio.run(build(config, session, listener).exec())
    except StowageError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    finally:
        listener.close()

    _print_summary(title, summary)
    if not summary.ok:
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--config", "-c", type=click.Path(path_type=Path), help="Configuration file path")
@click.pass_context
def cli(ctx, verbose: bool, config: Optional[Path]):
    """stowage - backup orchestration over archive, git and restic repositories."""
    setup_cli_logging(verbose)
    ctx.ensure_object(dict)

    try:
        loaded = load_config(config or DEFAULT_CONFIG_PATH)
    except StowageError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if not verbose:
        setup_cli_logging(level=loaded.log_level)
    ctx.obj["config"] = loaded


@cli.command("init")
@click.option("--repository", "-r", "repositories", multiple=True, help="Repository name patterns")
@click.option("--repository-type", "repository_types", multiple=True, help="Repository types")
@click.pass_context
def init_command(ctx, repositories: List[str], repository_types: List[str]):
    """Initialize repositories."""
    options = InitOptions(
        repository_names=_split(repositories),
        repository_types=_split(repository_types),
    )
    _run_action(
        ctx,
        "Init",
        lambda config, session, listener: InitAction(config, options, session, listener=listener),
    )


@cli.command("snapshots")
@click.option("--id", "ids", multiple=True, help="Snapshot id prefixes")
@filter_options
@click.option("--tag", "tags", multiple=True, help="Tag patterns")
@click.option("--hostname", "hostnames", multiple=True, help="Hostname patterns")
@click.option("--group-by", default="package_name,repository_name", show_default=True, help="Grouping fields")
@keep_options
@click.pass_context
def snapshots_command(ctx, ids, packages, tasks, repositories, repository_types, tags, hostnames, group_by, **keep):
    """List snapshots."""
    config: StowageConfig = ctx.obj["config"]
    options = SnapshotsOptions(
        ids=_split(ids),
        package_names=_split(packages),
        package_task_names=_split(tasks),
        repository_names=_split(repositories),
        repository_types=_split(repository_types),
        tags=_split(tags),
        hostnames=_split(hostnames),
        group_by=_split([group_by]) or [],
        keep=_keep_options(**keep),
    )
    try:
        with ScratchSession(config.temp_dir) as session:
            snapshots = asyncio.run(SnapshotsAction(config, options, session).exec())
    except StowageError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if not snapshots:
        console.print("[yellow]No snapshots found[/yellow]")
        return

    table = Table(title="Snapshots")
    table.add_column("ID", style="cyan")
    table.add_column("Date", style="white")
    table.add_column("Package", style="white")
    table.add_column("Task", style="white")
    table.add_column("Repository", style="white")
    table.add_column("Hostname", style="white")
    table.add_column("Tags", style="white")
    table.add_column("Size", style="white")

    for snapshot in snapshots:
        table.add_row(
            snapshot.short_id,
            snapshot.date,
            snapshot.package_name,
            snapshot.package_task_name or "",
            f"{snapshot.repository_name} ({snapshot.repository_type})",
            snapshot.hostname,
            ", ".join(snapshot.tags),
            format_size(snapshot.size),
        )

    console.print(table)


@cli.command("backup")
@filter_options
@click.option("--tag", "tags", multiple=True, help="Tags stored with the snapshot")
@click.option("--date", help="Snapshot date (ISO 8601)")
@click.option("--prune", is_flag=True, help="Prune each package after its backup")
@click.pass_context
def backup_command(ctx, packages, tasks, repositories, repository_types, tags, date, prune):
    """Back up packages into their repositories."""
    options = BackupOptions(
        package_names=_split(packages),
        package_task_names=_split(tasks),
        repository_names=_split(repositories),
        repository_types=_split(repository_types),
        tags=_split(tags) or [],
        date=date,
        prune=prune,
    )
    _run_action(
        ctx,
        "Backup",
        lambda config, session, listener: BackupAction(config, options, session, listener=listener),
    )


@cli.command("restore")
@click.argument("snapshot_id")
@filter_options
@click.option("--tag", "tags", multiple=True, help="Tag patterns")
@click.option("--initial", is_flag=True, help="Restore into the package path instead of its restore path")
@click.pass_context
def restore_command(ctx, snapshot_id, packages, tasks, repositories, repository_types, tags, initial):
    """Restore a snapshot."""
    options = RestoreOptions(
        snapshot_id=snapshot_id,
        package_names=_split(packages),
        package_task_names=_split(tasks),
        repository_names=_split(repositories),
        repository_types=_split(repository_types),
        tags=_split(tags),
        initial=initial,
    )
    _run_action(
        ctx,
        "Restore",
        lambda config, session, listener: RestoreAction(config, options, session, listener=listener),
    )


@cli.command("copy")
@click.argument("repository")
@click.option("--id", "ids", multiple=True, help="Snapshot id prefixes")
@click.option("--package", "-p", "packages", multiple=True, help="Package name patterns")
@click.option("--task", "-t", "tasks", multiple=True, help="Package task name patterns")
@click.option("--last", type=int, help="Copy only the newest snapshots of each package")
@click.option("--mirror", "-m", "mirrors", multiple=True, help="Mirror repository name patterns")
@click.pass_context
def copy_command(ctx, repository, ids, packages, tasks, last, mirrors):
    """Copy snapshots of a repository into its mirrors."""
    options = CopyOptions(
        repository_name=repository,
        ids=_split(ids),
        package_names=_split(packages),
        package_task_names=_split(tasks),
        last=last,
        mirror_names=_split(mirrors),
    )
    _run_action(
        ctx,
        "Copy",
        lambda config, session, listener: CopyAction(config, options, session, listener=listener),
    )


@cli.command("prune")
@click.option("--id", "ids", multiple=True, help="Snapshot id prefixes to prune")
@filter_options
@click.option("--tag", "tags", multiple=True, help="Tag patterns")
@click.option("--hostname", "hostnames", multiple=True, help="Hostname patterns")
@click.option("--group-by", default="package_name,repository_name", show_default=True, help="Grouping fields")
@keep_options
@click.option("--dry-run", is_flag=True, help="Only show what would be pruned")
@click.pass_context
def prune_command(ctx, ids, packages, tasks, repositories, repository_types, tags, hostnames, group_by, dry_run, **keep):
    """Prune snapshots not kept by the retention policy."""
    config: StowageConfig = ctx.obj["config"]
    policy = _keep_options(**keep)
    options = PruneOptions(
        ids=_split(ids),
        package_names=_split(packages),
        package_task_names=_split(tasks),
        repository_names=_split(repositories),
        repository_types=_split(repository_types),
        tags=_split(tags),
        hostnames=_split(hostnames),
        group_by=_split([group_by]) or [],
        keep=policy if policy.has_values() else None,
        dry_run=dry_run,
    )
    try:
        with ScratchSession(config.temp_dir) as session:
            result = asyncio.run(PruneAction(config, options, session).exec())
    except StowageError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    table = Table(title="Prune (dry run)" if dry_run else "Prune")
    table.add_column("ID", style="cyan")
    table.add_column("Date", style="white")
    table.add_column("Package", style="white")
    table.add_column("Repository", style="white")
    table.add_column("Action", style="white")
    table.add_column("Reasons", style="white")

    for entry in result.entries:
        table.add_row(
            entry.snapshot.short_id,
            entry.snapshot.date,
            entry.snapshot.package_name,
            entry.snapshot.repository_name,
            "[green]keep[/green]" if entry.keep else "[red]prune[/red]",
            ", ".join(entry.reasons),
        )

    console.print(table)
    console.print(f"{result.prune} of {result.total} snapshot(s) {'to prune' if dry_run else 'pruned'}")


@cli.command("clean-cache")
@click.pass_context
def clean_cache_command(ctx):
    """Delete leftover scratch data of every run."""
    config: StowageConfig = ctx.obj["config"]
    try:
        freed = ScratchSession.clean_cache(config.temp_dir)
    except OSError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    console.print(f"Freed {format_size(freed)}")


@cli.command("config")
@click.pass_context
def config_command(ctx):
    """Show the resolved configuration."""
    save_config(ctx.obj["config"], sys.stdout)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
