"""CLI entry point for intentguard."""

from __future__ import annotations

import logging
import threading
from typing import Callable

import typer
from rich import print as rprint
from rich.logging import RichHandler

from intentguard.config import Config, ConfigStore
from intentguard.errors import IntentGuardError
from intentguard.models import AccessType, EndReason, Intention, IntentionApp
from intentguard.services import Services, build_services
from intentguard.session.events import EventLoop
from intentguard.session.manager import SessionListener, SessionManager
from intentguard.storage.db import get_connection
from intentguard.storage.repository import BundleRepository
from intentguard.storage.sessions import SessionStore

app = typer.Typer(help="Keep your computer focused on what you said you would do.")


class _NoTicks:
    def cancel(self) -> None:
        pass


def _no_ticks(interval: float, callback: Callable[[], None]) -> _NoTicks:
    """Scheduler for one-shot commands: the timer never runs."""
    return _NoTicks()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
    )


def _load_config() -> Config:
    config = Config.load()
    issues = config.validate()
    if issues:
        for issue in issues:
            rprint(f"[red]Config error: {issue}[/red]")
        raise typer.Exit(1)
    return config


def _open_services(config: Config, **kwargs) -> Services:
    try:
        return build_services(config, **kwargs)
    except IntentGuardError as e:
        rprint(f"[red]Could not start intentguard: {e}[/red]")
        raise typer.Exit(1)


def _require_db(config: Config) -> None:
    if not config.db_path.exists():
        rprint(f"[red]Database not found at {config.db_path}. Run 'intentguard init' first.[/red]")
        raise typer.Exit(1)


@app.command()
def init() -> None:
    """Write the default config documents and create the database.

    Existing config files are never overwritten.
    """
    config = _load_config()

    created = ConfigStore.from_config(config).write_defaults()
    for path in created:
        rprint(f"Wrote default {path}")
    if not created:
        rprint("Config files already exist, left untouched")

    services = _open_services(config, scheduler=_no_ticks, resume=False)
    try:
        bundles = services.bundles.get_all_bundles()
    finally:
        services.close()

    rprint(f"\n[green bold]intentguard initialized[/green bold] ({config.db_path})")
    rprint(f"  {len(bundles)} bundle(s): {', '.join(b.name for b in bundles)}")
    rprint("\nNext steps:")
    rprint(f"  1. Edit the YAML files in {config.config_dir} to taste")
    rprint("  2. Run [bold]intentguard serve[/bold] to start the browser companion")


class _ConsoleListener(SessionListener):
    def __init__(self, manager: SessionManager) -> None:
        self._manager = manager

    def on_started(self, intention: Intention) -> None:
        remaining = intention.remaining_formatted(self._manager.now())
        rprint(f"Intention: [bold]{intention.text}[/bold] ({remaining} left)")

    def on_warning(self, intention: Intention, remaining_seconds: int) -> None:
        rprint(f"[yellow]{remaining_seconds // 60}m left on {intention.text!r}[/yellow]")

    def on_checkin_required(self, intention: Intention) -> None:
        rprint(f"[yellow]Still working on {intention.text!r}? Type 'continue' or 'end'.[/yellow]")

    def on_ended(self, intention: Intention, reason: EndReason) -> None:
        rprint(f"Ended [bold]{intention.text}[/bold] ({reason.value})")


def _console(manager: SessionManager) -> bool:
    """Answer check-ins from the terminal. Returns True on 'quit', False when stdin closes."""
    rprint("[dim]Commands: continue, end, distract, status, quit[/dim]")
    while True:
        try:
            command = input().strip().lower()
        except EOFError:
            return False

        if command in ("c", "continue"):
            if not manager.acknowledge_checkin():
                rprint("[dim]No active intention[/dim]")
        elif command in ("e", "end"):
            if manager.end_after_checkin() is None:
                rprint("[dim]No active intention[/dim]")
        elif command in ("d", "distract"):
            if manager.choose_distraction() is None:
                rprint("[dim]No active intention[/dim]")
        elif command in ("s", "status"):
            snapshot = manager.snapshot()
            if snapshot is None:
                rprint("[dim]No active intention[/dim]")
            else:
                current = snapshot.intention
                rprint(
                    f"Intention: [bold]{current.text}[/bold] "
                    f"({current.remaining_formatted(manager.now())} left, {manager.state.value})"
                )
        elif command in ("q", "quit"):
            return True
        elif command:
            rprint(f"[yellow]Unknown command: {command}[/yellow]")


@app.command()
def serve(
    start: str = typer.Option(None, "--start", help="Start this intention before serving"),
    minutes: int = typer.Option(None, help="Duration in minutes (default from app.yaml)"),
    unlimited: bool = typer.Option(False, "--unlimited", help="No time limit; periodic check-ins instead"),
    bundle: list[str] = typer.Option(None, "--bundle", "-b", help="Bundle to allow, by name (repeatable)"),
    url: list[str] = typer.Option(None, "--url", "-u", help="URL pattern to allow (repeatable)"),
    allow_app: list[str] = typer.Option(None, "--allow-app", help="App id to allow (repeatable)"),
    strict: bool = typer.Option(False, "--strict", help="Only listed apps, URLs and bundles; no rules or classifier"),
    from_history: bool = typer.Option(False, "--from-history", help="Count --start as picked from history"),
) -> None:
    """Start the loopback companion server, resuming or starting an intention.

    While serving, check-ins are answered on stdin (continue / end / distract).
    """
    from intentguard.server import serve as run_server

    config = _load_config()
    loop = EventLoop()
    services = _open_services(config, scheduler=loop.schedule)
    manager = services.manager
    loop.attach(manager)
    loop.start()
    try:
        snapshot = manager.snapshot()
        if snapshot is not None and not start:
            rprint(f"Resumed intention: [bold]{snapshot.intention.text}[/bold]")
        manager.add_listener(_ConsoleListener(manager))

        if start:
            bundle_ids = []
            for name in bundle or []:
                found = services.bundles.get_bundle_by_name(name)
                if found is None:
                    rprint(f"[red]Unknown bundle: {name}[/red]")
                    raise typer.Exit(1)
                bundle_ids.append(found.id)
            if unlimited:
                duration = None
            else:
                duration = (minutes if minutes is not None else manager.app_config.default_duration_minutes) * 60
            try:
                manager.start_intention(
                    start,
                    duration_seconds=duration,
                    apps=[IntentionApp(app_id, app_id) for app_id in allow_app or []],
                    urls=url or [],
                    bundle_ids=bundle_ids,
                    llm_filtering_enabled=not strict,
                    selected_from_history=from_history,
                )
            except IntentGuardError as e:
                rprint(f"[red]Could not start intention: {e}[/red]")
                raise typer.Exit(1)

        server = threading.Thread(
            target=run_server, args=(manager, config.host, config.port), name="intentguard-http", daemon=True
        )
        server.start()
        if not _console(manager):
            server.join()
    finally:
        loop.stop()
        services.close()


@app.command()
def bundles() -> None:
    """List bundles with their apps and URL patterns."""
    config = _load_config()
    _require_db(config)

    conn = get_connection(config.db_path)
    repo = BundleRepository(conn)
    try:
        all_bundles = repo.get_all_bundles()
        if not all_bundles:
            rprint("[yellow]No bundles yet.[/yellow]")
            return
        for bundle in all_bundles:
            flags = []
            if bundle.allow_all_apps:
                flags.append("all apps")
            if bundle.allow_all_urls:
                flags.append("all URLs")
            suffix = f" [dim]({', '.join(flags)})[/dim]" if flags else ""
            rprint(f"[bold]{bundle.name}[/bold]{suffix}")
            for bundle_app in bundle.apps:
                rprint(f"  app  {bundle_app.name} ({bundle_app.app_id})")
            for pattern in bundle.url_patterns:
                rprint(f"  url  {pattern}")
    finally:
        conn.close()


@app.command()
def history(limit: int = typer.Option(20, help="Number of entries to show")) -> None:
    """Show previously entered intentions, most recently used first."""
    config = _load_config()
    _require_db(config)

    conn = get_connection(config.db_path)
    repo = BundleRepository(conn)
    try:
        items = repo.get_intention_history(limit=limit)
        if not items:
            rprint("[yellow]No intentions recorded yet.[/yellow]")
            return
        for item in items:
            rprint(
                f"  {item.text}  [dim]entered {item.times_entered}x, "
                f"selected {item.times_selected}x, last {item.last_used_at:%Y-%m-%d %H:%M}[/dim]"
            )
    finally:
        conn.close()


@app.command()
def log(
    limit: int = typer.Option(30, help="Number of entries to show"),
    intention_id: int = typer.Option(None, "--intention", help="Only entries for this intention id"),
) -> None:
    """Show recent allow/block decisions."""
    config = _load_config()
    _require_db(config)

    conn = get_connection(config.db_path)
    store = SessionStore(conn)
    try:
        entries = store.get_access_log(intention_id=intention_id, limit=limit)
        if not entries:
            rprint("[yellow]Access log is empty.[/yellow]")
            return
        for entry in entries:
            verdict = "[green]allow[/green]" if entry.was_allowed else "[red]block[/red]"
            detail = entry.allowed_reason.value if entry.allowed_reason else ""
            if entry.added_to_learned:
                detail += " +learned"
            rprint(
                f"  {entry.timestamp:%Y-%m-%d %H:%M:%S}  #{entry.intention_id}  "
                f"{entry.type.value:<3}  {verdict}  {entry.identifier}  [dim]{detail}[/dim]"
            )
    finally:
        conn.close()


@app.command()
def stats() -> None:
    """Show summary counts."""
    config = _load_config()
    _require_db(config)

    conn = get_connection(config.db_path)
    store = SessionStore(conn)
    try:
        s = store.get_stats()
        rprint("[bold]intentguard statistics:[/bold]")
        rprint(f"  Intentions:     {s['total_intentions']} ({s['active_intentions']} active)")
        rprint(f"  Bundles:        {s['total_bundles']}")
        rprint(f"  Access entries: {s['access_entries']} ({s['blocked_entries']} blocked)")
        rprint(f"  Overrides:      {s['overrides']}")
        rprint(f"  Learned rules:  {s['learned_rules']}")
    finally:
        conn.close()


@app.command()
def check(
    target: str = typer.Argument(help="URL, or app id with --app"),
    is_app: bool = typer.Option(False, "--app", help="Treat TARGET as an app id"),
    name: str = typer.Option("", help="Display name (window or page title)"),
) -> None:
    """Show what the active intention would decide for a URL or app.

    Read-only: nothing is logged, and an expired intention is not finalized.
    """
    config = _load_config()
    _require_db(config)

    services = _open_services(config, scheduler=_no_ticks, resume=False)
    try:
        services.manager.resume(finalize_expired=False)
        snapshot = services.manager.snapshot()
        if snapshot is None:
            rprint("[dim]No active intention[/dim]")
        else:
            current = snapshot.intention
            rprint(
                f"Intention: [bold]{current.text}[/bold] "
                f"({current.remaining_formatted(services.manager.now())} left)"
            )

        kind = AccessType.APP if is_app else AccessType.URL
        result = services.manager.evaluate(kind, target, name)
        if result.allowed:
            rprint(f"[green]allowed[/green] ({result.reason.value})")
        else:
            rprint("[red]blocked[/red]")
        if result.message:
            rprint(f"  {result.message}")
    finally:
        services.close()


if __name__ == "__main__":
    app()
