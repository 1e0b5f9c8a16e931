"""
aiobscura CLI - command-line interface for aiobscura.

Commands for syncing assistant logs into the local database, inspecting
sessions and project statistics, running analytics plugins and checking
the remote collector.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from aiobscura.config import Settings, load_settings
from aiobscura.exceptions import AiobscuraError, ConfigError
from aiobscura.logging_config import setup_logging

app = typer.Typer(
    name="aiobscura",
    help="aiobscura - Observability for AI coding-assistant sessions",
    no_args_is_help=True,
)

console = Console()

ConfigOption = typer.Option(None, "--config", help="Path to a TOML config file")


def _load(config: Optional[Path]) -> Settings:
    try:
        cfg = load_settings(config)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(1)

    # Fallback to basic logging if file logging not permitted
    try:
        setup_logging(context="cli", settings=cfg)
    except PermissionError:
        logging.basicConfig(level=logging.INFO)
    return cfg


def _open_store(cfg: Settings):
    from aiobscura.db.store import Store

    try:
        store = Store.open(cfg.db_path)
    except AiobscuraError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(1)
    store.inactivity_minutes = cfg.analytics.inactivity_minutes
    return store


def _fmt_ts(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


@app.command()
def sync(
    config: Optional[Path] = ConfigOption,
    analyze: bool = typer.Option(
        False, "--analyze", help="Run analytics plugins on sessions that changed"
    ),
    publish: bool = typer.Option(
        False, "--publish", help="Push new messages to the configured collector"
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Hide the progress bar"),
) -> None:
    """
    Sync assistant logs into the database.

    Parses new content from every installed assistant and stores it.
    Refuses to run while a viewer or another sync owns the database.
    """
    from aiobscura.collector.publisher import SyncPublisher
    from aiobscura.parsers.registry import create_all_parsers
    from aiobscura.pipeline.ingestion import IngestCoordinator
    from aiobscura.process_lock import acquire_sync_guard

    cfg = _load(config)

    try:
        guard = acquire_sync_guard(cfg.db_path)
    except AiobscuraError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(1)

    publisher = None
    store = None
    try:
        store = _open_store(cfg)

        if publish:
            publisher = SyncPublisher.from_settings(cfg.collector, store.get_session)
            if publisher is None:
                console.print(
                    "[bold red]Error:[/bold red] collector is not enabled or not "
                    "fully configured"
                )
                raise typer.Exit(1)

        coordinator = IngestCoordinator(
            store,
            parsers=create_all_parsers(cfg),
            on_messages_committed=publisher.queue if publisher else None,
        )

        installed = coordinator.installed_assistants()
        if not installed:
            console.print("[yellow]No installed assistants found[/yellow]")
            raise typer.Exit(0)
        console.print(
            "[bold blue]Syncing:[/bold blue] "
            + ", ".join(p.assistant().display_name for p in installed)
        )

        if quiet:
            result = coordinator.sync_all()
        else:
            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Parsing", total=None)

                def on_progress(index: int, total: int, path: Path) -> None:
                    progress.update(task, completed=index, total=total, description=path.name)

                result = coordinator.sync_all_with_progress(on_progress)

        console.print()
        console.print("[bold]Summary:[/bold]")
        console.print(f"  Files processed: {result.files_processed}")
        console.print(f"  Files skipped: {result.files_skipped}")
        console.print(f"  Sessions created: {result.sessions_created}")
        console.print(f"  Sessions updated: {result.sessions_updated}")
        console.print(f"  Messages inserted: {result.messages_inserted}")
        if result.warnings:
            console.print(f"  [yellow]Warnings: {len(result.warnings)}[/yellow]")
        if result.errors:
            console.print(f"  [red]Errors: {len(result.errors)}[/red]")
        for path, error in result.errors:
            console.print(f"  [red]✗ {escape(str(path))}:[/red] {escape(error)}")

        if analyze:
            _analyze_touched(cfg, store, result)

        if publisher is not None:
            publisher.flush_all()
            stats = publisher.stats
            console.print(
                f"  Published: {stats.events_sent} events "
                f"({stats.events_rejected} rejected, {stats.api_failures} failed calls)"
            )

    finally:
        if publisher is not None:
            publisher.close()
        if store is not None:
            store.close()
        guard.release()


def _analyze_touched(cfg: Settings, store, result) -> None:
    from aiobscura.analytics.engine import MAX_SESSION_MESSAGES, AnalyticsEngine

    engine = AnalyticsEngine.from_settings(cfg)
    session_ids = sorted(
        {r.session_id for r in result.file_results if r.session_id and r.new_messages > 0}
    )
    failures = 0
    for session_id in session_ids:
        session = store.get_session(session_id)
        if session is None:
            continue
        messages = store.get_session_messages(session_id, MAX_SESSION_MESSAGES)
        for run in engine.run_all(session, messages, store):
            if not run.is_success:
                failures += 1
    console.print(
        f"  Analyzed: {len(session_ids)} sessions"
        + (f" [yellow]({failures} plugin failures)[/yellow]" if failures else "")
    )


@app.command()
def sessions(
    config: Optional[Path] = ConfigOption,
    assistant: Optional[str] = typer.Option(
        None, help="Filter by assistant (claude_code, codex)"
    ),
    status: Optional[str] = typer.Option(None, help="Filter by status (active, completed)"),
    project: Optional[str] = typer.Option(None, help="Filter by project id"),
    limit: int = typer.Option(20, help="Maximum number of sessions to list"),
) -> None:
    """List stored sessions, most recent first."""
    from aiobscura.db.store import SessionFilter
    from aiobscura.models.canonical import Assistant, SessionStatus

    cfg = _load(config)

    try:
        session_filter = SessionFilter(
            assistant=Assistant(assistant) if assistant else None,
            status=SessionStatus(status) if status else None,
            project_id=project,
            limit=limit,
        )
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(1)

    store = _open_store(cfg)
    try:
        rows = store.list_sessions(session_filter)
    finally:
        store.close()

    if not rows:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(title=f"Sessions ({len(rows)})")
    table.add_column("ID", no_wrap=True)
    table.add_column("Assistant")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Last activity")
    table.add_column("Model")
    for session in rows:
        table.add_row(
            session.id,
            session.assistant.display_name,
            session.status.value,
            _fmt_ts(session.started_at),
            _fmt_ts(session.last_activity_at),
            session.backing_model_id or "-",
        )
    console.print(table)


@app.command()
def analyze(
    session_id: str = typer.Argument(..., help="Session to analyze"),
    config: Optional[Path] = ConfigOption,
    plugin: Optional[List[str]] = typer.Option(
        None, "--plugin", "-p", help="Run only these plugins (repeatable)"
    ),
) -> None:
    """
    Run analytics plugins on a session.

    Metrics are stored and printed; a failing plugin is reported but does
    not stop the others.
    """
    from aiobscura.analytics.engine import MAX_SESSION_MESSAGES, AnalyticsEngine

    cfg = _load(config)
    store = _open_store(cfg)
    try:
        try:
            session = store.require_session(session_id)
        except AiobscuraError as e:
            console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
            raise typer.Exit(1)

        engine = AnalyticsEngine.from_settings(cfg)
        names = plugin or engine.plugin_names()
        messages = store.get_session_messages(session_id, MAX_SESSION_MESSAGES)

        failed = 0
        for name in names:
            try:
                run = engine.run_plugin(name, session, messages, store)
            except ConfigError as e:
                console.print(f"[red]✗[/red] {escape(str(e))}")
                failed += 1
                continue

            if not run.is_success:
                console.print(f"[red]✗ {name}:[/red] {escape(str(run.error_message))}")
                failed += 1
                continue

            table = Table(title=f"{name} v{run.plugin_version} ({run.duration_ms:.0f}ms)")
            table.add_column("Entity")
            table.add_column("Metric")
            table.add_column("Value")
            for metric in store.get_plugin_metrics(session_id=session_id, plugin_name=name):
                table.add_row(
                    f"{metric.entity_type}:{metric.entity_id}",
                    metric.metric_name,
                    str(metric.metric_value),
                )
            console.print(table)
    finally:
        store.close()

    if failed:
        raise typer.Exit(1)


@app.command()
def stats(
    project_id: str = typer.Argument(..., help="Project id"),
    config: Optional[Path] = ConfigOption,
) -> None:
    """Show aggregated activity for a project."""
    cfg = _load(config)
    store = _open_store(cfg)
    try:
        project_stats = store.get_project_stats(project_id)
    finally:
        store.close()

    if project_stats is None:
        console.print(f"[bold red]Error:[/bold red] Project not found: {project_id}")
        raise typer.Exit(1)

    console.print(f"[bold]{project_stats.name}[/bold] ({project_stats.path})")
    console.print(f"  Sessions: {project_stats.session_count}")
    console.print(f"  Threads: {project_stats.thread_count}")
    console.print(f"  Messages: {project_stats.message_count}")
    console.print(
        f"  Tokens: {project_stats.tokens_total} "
        f"(in {project_stats.tokens_in}, out {project_stats.tokens_out})"
    )
    console.print(f"  Tool calls: {project_stats.tool_call_count}")
    for tool, count in sorted(
        project_stats.tool_call_breakdown.items(), key=lambda item: (-item[1], item[0])
    ):
        console.print(f"    {tool}: {count}")
    console.print(f"  Errors: {project_stats.error_count}")
    console.print(f"  Agents spawned: {project_stats.agents_spawned}")
    console.print(f"  Plans: {project_stats.plans_created}")
    console.print(f"  First activity: {_fmt_ts(project_stats.first_activity)}")
    console.print(f"  Last activity: {_fmt_ts(project_stats.last_activity)}")


@app.command("collector-health")
def collector_health(config: Optional[Path] = ConfigOption) -> None:
    """Check that the configured collector is reachable."""
    from aiobscura.collector.client import CollectorClient

    cfg = _load(config)
    try:
        client = CollectorClient(cfg.collector)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(1)

    async def _check() -> bool:
        async with client:
            return await client.health_check()

    if asyncio.run(_check()):
        console.print(f"[green]✓ Collector reachable:[/green] {client.base_url}")
    else:
        console.print(f"[red]✗ Collector unreachable:[/red] {client.base_url}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
