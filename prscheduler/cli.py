"""
PRSCHEDULER CLI — The Interface

  prscheduler list --repo <path> [--mine]          (open PRs)
  prscheduler schedule 12 34 --at "2026-01-31 18:00" (schedule + drive to completion)

Plus utilities:
  - prscheduler status      (check tools, identity, config)
  - prscheduler init <path> (bootstrap .prscheduler in a repo)
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from prscheduler.clock import local_now
from prscheduler.config_loader import SchedulerConfig, load_config, tool_availability
from prscheduler.controller import Controller
from prscheduler.errors import DuplicateScheduleError
from prscheduler.event_bus import SchedulerEvent
from prscheduler.identity import __codename__, __tagline__, __version__, BANNER
from prscheduler.models import ScheduledEntry, Stage, TargetRef

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".prscheduler" / ".env")

app = typer.Typer(
    name="prscheduler",
    help=f"{__codename__} — {__tagline__}\nScheduled GitHub auto-merge.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

_OFFSET = re.compile(r"^\+(\d+)\s*([smhd])$")
_OFFSET_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}
_WHEN_FORMAT = "%Y-%m-%d %H:%M"


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command("list")
def list_prs(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the local checkout"),
    mine: bool = typer.Option(False, "--mine", "-m", help="Only PRs authored by you"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """List open pull requests."""
    _configure_logging(verbose)
    repo = repo.resolve()
    controller = Controller(config=load_config(repo), repo_path=repo)

    async def _load() -> None:
        await controller.refresh_targets()
        if mine:
            await controller.load_identity()

    asyncio.run(_load())

    if controller.last_error:
        console.print(f"[red]Error: {controller.last_error}[/]")
        raise typer.Exit(1)

    targets = controller.filtered_targets(only_mine=mine)
    console.print(_targets_table(targets, only_mine=mine, me=controller.identity.login if controller.identity else None))


@app.command()
def schedule(
    numbers: list[int] = typer.Argument(..., help="PR numbers to schedule"),
    at: str = typer.Option("now", "--at", "-a", help="'now', 'YYYY-MM-DD HH:MM' (local) or an offset like +15m"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the local checkout"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Schedule auto-merge and watch each PR until it merges or is remediated."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    config = load_config(repo)
    try:
        when = parse_when(at, local_now())
    except ValueError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    try:
        entries = asyncio.run(_drive(numbers, when, config, repo))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; in-memory schedule discarded.[/]")
        raise typer.Exit(130)
    if entries is None:
        raise typer.Exit(1)

    console.print(_entries_table(entries))
    if not entries or any(e.stage is not Stage.MERGED for e in entries):
        raise typer.Exit(1)


@app.command()
def status(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the local checkout"),
):
    """Check PRSCHEDULER configuration and readiness."""
    _print_banner()

    repo = repo.resolve()
    config = load_config(repo)

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool, found in tool_availability(config).items():
        s = "[green]✓ Available[/]" if found else "[red]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)

    controller = Controller(config=config, repo_path=repo)
    identity = asyncio.run(controller.load_identity())
    if identity:
        console.print(f"GitHub user: [bold]@{identity.login}[/]")
    else:
        console.print(f"[red]GitHub user unavailable: {controller.last_error}[/]")

    console.print(f"\n[bold]Workflow:[/]")
    console.print(f"  Tick:          {config.clock.tick_seconds:g}s")
    console.print(f"  Check delay:   {config.workflow.check_delay_seconds:g}s")
    timeout = config.workflow.action_timeout_seconds
    console.print(f"  Action limit:  {f'{timeout:g}s' if timeout else 'none'}")
    console.print(f"  Merge method:  {config.github.merge_method}")
    console.print(f"  Repository:    {config.github.repo or '(from checkout)'}")
    console.print(f"  Notifications: {config.notify.backend}")
    if config.audit.log_file:
        console.print(f"  Audit log:     {config.audit.log_file}")


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .prscheduler directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    ps_dir = repo / ".prscheduler"
    ps_dir.mkdir(exist_ok=True)

    config_path = ps_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# PRSCHEDULER repo-level config overrides
# These merge with the built-in defaults.

# github:
#   repo: "owner/name"
#   merge_method: squash

# workflow:
#   check_delay_seconds: 120
#   action_timeout_seconds: 300

# notify:
#   backend: log

# audit:
#   log_file: ".prscheduler/audit.jsonl"
""")

    console.print(f"[green]✅ Initialized PRSCHEDULER in {ps_dir}[/]")
    console.print(f"  Config:  {config_path}")


# ---------------------------------------------------------------------------
# Scheduling run
# ---------------------------------------------------------------------------

async def _drive(
    numbers: list[int],
    when: datetime,
    config: SchedulerConfig,
    repo: Path,
) -> list[ScheduledEntry] | None:
    controller = Controller(config=config, repo_path=repo)
    controller.bus.subscribe(_print_event)

    await controller.refresh_targets()
    if controller.last_error:
        console.print(f"[red]Error: {controller.last_error}[/]")
        return None

    for number in numbers:
        target = controller.find_target(number)
        if target is None:
            console.print(f"[yellow]PR #{number} is not an open pull request, skipping[/]")
            continue
        try:
            controller.schedule(target, when)
        except DuplicateScheduleError as e:
            console.print(f"[yellow]{e}[/]")
            continue
        console.print(f"[cyan]{controller.status}[/]")

    if not controller.registry.pending():
        return controller.registry.entries()

    console.print(Panel(
        f"Watching {len(controller.registry.pending())} PR(s). Ctrl+C to stop.",
        border_style="cyan",
    ))
    await controller.run(stop_when_idle=True)
    return controller.registry.entries()


def parse_when(raw: str, now: datetime) -> datetime:
    """Parse 'now' / '' / 'YYYY-MM-DD HH:MM' (local) / '+N[smhd]' into an aware datetime."""
    text = raw.strip()
    if not text or text.lower() == "now":
        return now

    offset = _OFFSET.match(text.lower())
    if offset:
        amount, unit = offset.groups()
        return now + timedelta(**{_OFFSET_UNITS[unit]: int(amount)})

    try:
        parsed = datetime.strptime(text, _WHEN_FORMAT)
    except ValueError:
        raise ValueError("Invalid time format. Use YYYY-MM-DD HH:MM, 'now' or an offset like +15m.") from None
    return parsed.astimezone()


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_STAGE_COLORS = {
    Stage.MERGED: "green",
    Stage.DONE: "yellow",
    Stage.MERGE_FAILED: "red",
    Stage.CHECK_FAILED: "red",
}


def _targets_table(targets: list[TargetRef], only_mine: bool, me: str | None) -> Table:
    title = f"Open pull requests ({len(targets)})"
    if only_mine and me:
        title += f" by @{me}"
    table = Table(title=title, border_style="cyan")
    table.add_column("#", style="dim")
    table.add_column("Title")
    table.add_column("State")
    table.add_column("Merge state")
    table.add_column("Author")
    for t in targets:
        table.add_row(str(t.number), t.title, t.state, t.merge_state, f"@{t.author}")
    return table


def _entries_table(entries: list[ScheduledEntry]) -> Table:
    table = Table(title="Scheduled merges", border_style="bright_cyan")
    table.add_column("PR")
    table.add_column("At", style="dim")
    table.add_column("Stage")
    table.add_column("Message")
    for e in entries:
        color = _STAGE_COLORS.get(e.stage, "cyan")
        table.add_row(
            f"#{e.number}",
            f"{e.scheduled_at:%Y-%m-%d %H:%M}",
            f"[{color}]{e.stage.label}[/]",
            e.last_message,
        )
    return table


def _print_event(event: SchedulerEvent) -> None:
    if event.event_type == "entry.transition":
        console.print(f"  [dim]#{event.number}[/] {event.payload['to']}: {event.payload['message']}")
    elif event.event_type == "notify":
        console.print(f"  [bold red]🔔 {event.payload.get('title', '')}[/] {event.payload.get('body', '')}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
