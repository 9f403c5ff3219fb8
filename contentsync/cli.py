from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from contentsync.config import (
    SyncConfig,
    config_path,
    load_config,
    normalize_repo_url,
    parse_mappings,
    save_config,
    validate_config,
)
from contentsync.errors import ContentSyncError
from contentsync.git_client import RepositoryClient
from contentsync.models import FetchReport, FetchStrategy
from contentsync.orchestrator import SyncOrchestrator
from contentsync.status_service import SyncStatus, collect_status
from contentsync.watcher import RepositoryWatcher


app = typer.Typer(help="Sync content folders from a git repository into this project")
console = Console()

CLOUDCANNON_ENV_VARS = (
    "IS_CLOUDCANNON_BUILD",
    "CLOUDCANNON_BUILD",
    "CLOUDCANNON_SITE_ID",
    "CLOUDCANNON_CONFIG_PATH",
    "CLOUDCANNON",
)
DEFAULT_INIT_MAPPING = {"content": {"source": "content", "destination": "src/content"}}


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    if not verbose:
        logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _is_cloudcannon_build() -> bool:
    return any(os.getenv(name) for name in CLOUDCANNON_ENV_VARS)


def _should_skip_for_cloudcannon() -> bool:
    if not _is_cloudcannon_build():
        return False
    if os.getenv("CLOUDCANNON_FORCE_CONTENT_FETCH", "").lower() == "true":
        console.print("CLOUDCANNON_FORCE_CONTENT_FETCH=true detected, proceeding with content fetch")
        return False
    return True


def _print_error(exc: BaseException, *, verbose: bool, prefix: str = "Error") -> None:
    console.print(f"[red]{prefix}:[/red] {exc}")
    if verbose:
        console.print_exception()


def _render_fetch_report(report: FetchReport) -> None:
    if report.strategy is FetchStrategy.LOCAL_ONLY:
        console.print("[yellow]No content repository configured.[/yellow] Running in local-only mode.")
        return
    if report.strategy is FetchStrategy.SKIP:
        console.print("[green]Content is up to date.[/green]")
        return

    install = report.install
    if install is not None:
        table = Table(title=f"Installed ({report.strategy.value})")
        table.add_column("Mapping")
        table.add_column("Destination")
        table.add_column("Files", justify="right")
        table.add_column("Result")
        for result in sorted(install.results, key=lambda r: r.key):
            if not result.success:
                outcome = Text("missing source", style="yellow")
            elif result.cached:
                outcome = Text("unchanged", style="dim")
            else:
                outcome = Text("updated", style="green")
            table.add_row(result.key, str(result.destination_path), str(result.files_written), outcome)
        for error in install.errors:
            table.add_row(getattr(error.item, "key", "?"), "", "", Text(error.message, style="red"))
        console.print(table)

    revision = (report.revision or "unknown")[:8]
    console.print(
        f"[green]Content synced[/green] at {revision} in {report.duration:.2f}s"
        + (" (backup taken)" if report.backup_taken else "")
    )


def _build_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(load_config())


@app.command()
def init(
    repo_url: str,
    branch: str = typer.Option("main", "--branch", help="Branch to sync from."),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing config file."),
) -> None:
    """Write a starter content.config.json in the current directory."""
    root = Path.cwd().resolve()
    target = config_path(root)
    if target.exists() and not overwrite:
        console.print(f"[red]Config already exists:[/red] {target} (use --overwrite to replace)")
        raise typer.Exit(code=1)

    normalized = normalize_repo_url(repo_url)
    if not RepositoryClient.validate_url(normalized):
        console.print(
            f"[red]Invalid repository URL:[/red] {repo_url}. "
            "Expected git@host:org/repo.git or https://host/org/repo.git"
        )
        raise typer.Exit(code=1)

    config = SyncConfig(
        repo_url=normalized,
        project_root=str(root),
        branch=branch,
        content_mapping=parse_mappings(DEFAULT_INIT_MAPPING),
    )
    validate_config(config)
    path = save_config(config, root)

    console.print(f"[green]Initialized contentsync[/green] at {root}")
    console.print(f"Config: {path}")
    if normalized != repo_url.strip():
        console.print(f"Repository URL normalized: {repo_url} -> {normalized}")
    console.print("Edit contentMapping to choose which repository folders to sync.")


def _confirm_update(commit: str):
    return asyncio.to_thread(
        typer.confirm, f"New commit {commit[:8]} available. Apply update now?", default=True
    )


async def _watch_async(orchestrator: SyncOrchestrator, *, force: bool, auto: bool) -> int:
    if force:
        _render_fetch_report(await orchestrator.fetch(force=True))

    confirm = None
    if not auto:
        if sys.stdin.isatty():
            confirm = _confirm_update
        else:
            console.print(
                "[yellow]Non-interactive terminal:[/yellow] new commits will be reported "
                "but not applied. Use --auto to apply them automatically."
            )

    watcher = RepositoryWatcher(orchestrator, auto_apply=auto, confirm=confirm)
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, watcher.stop)
        except (NotImplementedError, RuntimeError):
            pass

    console.print(
        f"Watching for content changes every {watcher.interval:.0f}s. Press Ctrl+C to stop."
    )
    await watcher.run()
    return 0


async def _fetch_async(force: bool, watch: bool, auto: bool, verbose: bool) -> int:
    try:
        orchestrator = _build_orchestrator()
        if watch:
            return await _watch_async(orchestrator, force=force, auto=auto)
        report = await orchestrator.fetch(force=force)
    except KeyboardInterrupt:
        console.print("[yellow]Fetch interrupted.[/yellow] Content may be partially installed.")
        return 130
    except FileNotFoundError as exc:
        _print_error(exc, verbose=verbose)
        return 1
    except ContentSyncError as exc:
        _print_error(exc, verbose=verbose, prefix="Content fetch failed")
        return 1
    except Exception as exc:
        _print_error(exc, verbose=verbose, prefix="Unexpected error")
        return 1

    _render_fetch_report(report)
    return 0


@app.command()
def fetch(
    force: bool = typer.Option(False, "--force", help="Bypass the staleness check and cache."),
    watch: bool = typer.Option(False, "--watch", help="Keep polling the repository for new commits."),
    auto: bool = typer.Option(False, "--auto", help="In watch mode, apply updates without prompting."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging and full tracebacks."),
) -> None:
    """Fetch content from the configured repository."""
    configure_logging(verbose)
    if _should_skip_for_cloudcannon():
        console.print(
            "CloudCannon build detected, skipping content fetch. "
            "Set CLOUDCANNON_FORCE_CONTENT_FETCH=true to fetch anyway."
        )
        raise typer.Exit(code=0)

    try:
        code = asyncio.run(_fetch_async(force, watch, auto, verbose))
    except KeyboardInterrupt:
        code = 130
    raise typer.Exit(code=code)


def _render_status(status: SyncStatus) -> None:
    table = Table(title="Content mappings")
    table.add_column("Mapping")
    table.add_column("Destination")
    table.add_column("State")
    styles = {"complete": "green", "partial": "yellow", "absent": "red"}
    for mapping in status.mappings:
        table.add_row(
            mapping.key,
            mapping.destination,
            Text(mapping.state.value, style=styles[mapping.state.value]),
        )
    console.print(table)

    cache_table = Table(title="Cache")
    cache_table.add_column("Field")
    cache_table.add_column("Value", justify="right")
    cache_table.add_row("Enabled", "yes" if status.cache.enabled else "no")
    cache_table.add_row("Entries (valid/total)", f"{status.cache.valid_entries}/{status.cache.total_entries}")
    cache_table.add_row("Size", f"{status.cache.total_size_bytes} B")
    if status.cache.location:
        cache_table.add_row("Location", status.cache.location)
    console.print(cache_table)

    if status.cached_revision is not None:
        console.print(
            f"Last synced revision: {status.cached_revision.commit_hash[:8]} "
            f"({status.cached_revision.branch})"
        )
    else:
        console.print("[yellow]No synced revision cached.[/yellow]")
    if status.backup is not None:
        console.print(f"Backup: {status.backup.file_count} file(s) in {status.backup.path}")

    for recommendation in status.recommendations:
        console.print(f"[cyan]-[/cyan] {recommendation}")
    if status.is_healthy and not status.recommendations:
        console.print("[green]Content is installed and tracked.[/green]")


async def _status_async() -> int:
    try:
        orchestrator = _build_orchestrator()
        status_result = await collect_status(orchestrator)
    except (FileNotFoundError, ContentSyncError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    _render_status(status_result)
    return 0


@app.command()
def status() -> None:
    """Show installed content, cached revision and cache health."""
    configure_logging()
    raise typer.Exit(code=asyncio.run(_status_async()))


async def _clear_cache_async(namespace: str | None) -> int:
    try:
        orchestrator = _build_orchestrator()
        await orchestrator.initialize()
        cleared = await orchestrator.cache.clear(namespace)
    except (FileNotFoundError, ContentSyncError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    if not cleared:
        console.print("[yellow]Cache could not be cleared (disabled or unavailable).[/yellow]")
        return 1
    scope = f"namespace {namespace!r}" if namespace else "all namespaces"
    console.print(f"[green]Cache cleared[/green] ({scope})")
    return 0


@app.command("clear-cache")
def clear_cache(
    namespace: str | None = typer.Option(None, "--namespace", help="Only clear this namespace."),
) -> None:
    """Remove cached revisions and digests."""
    configure_logging()
    raise typer.Exit(code=asyncio.run(_clear_cache_async(namespace)))
