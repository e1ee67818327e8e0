"""CLI interface for ralph."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .exceptions import RalphError
from .guardrails import GuardrailStore
from .models import ActivityEntry, ActivityKind, Session, SessionState
from .progress import ProgressTracker
from .session_manager import SessionManager
from .workspace import Workspace

console = Console()

# Windows-compatible symbols (cp1252 doesn't support Unicode checkmarks)
if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
else:
    SYM_OK = "✓"
    SYM_FAIL = "✗"

KIND_STYLES = {
    ActivityKind.STATUS: "bold",
    ActivityKind.SIGNAL: "yellow",
    ActivityKind.FAILURE: "red",
    ActivityKind.ERROR: "red",
    ActivityKind.COMMIT: "green",
    ActivityKind.GUARDRAIL: "magenta",
    ActivityKind.PULL_REQUEST: "cyan",
    ActivityKind.TOOL: "dim",
    ActivityKind.MESSAGE: "dim",
}


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
    )


def load_config(project_path: Path, **cli_overrides) -> dict:
    """Merge .ralph/config.json with explicitly given CLI options."""
    config = Workspace(project_path).load_config_overrides()
    config.update({k: v for k, v in cli_overrides.items() if v is not None})
    return config


def print_activity(entry: ActivityEntry, show_agent_output: bool) -> None:
    if entry.kind in (ActivityKind.MESSAGE, ActivityKind.TOOL) and not show_agent_output:
        return
    style = KIND_STYLES.get(entry.kind, "white")
    stamp = entry.timestamp.strftime("%H:%M:%S")
    console.print(f"[dim]{stamp}[/dim] [{style}]{entry.kind.value:>12}[/{style}] {entry.message}", highlight=False)


def print_session_summary(session: Session) -> None:
    usage = session.token_usage
    stories = session.prd.stories if session.prd else []
    passing = sum(1 for s in stories if s.passes)
    color = {
        SessionState.COMPLETE: "green",
        SessionState.FAILED: "red",
        SessionState.GUTTER: "red",
        SessionState.PAUSED: "yellow",
    }.get(session.status.state, "white")

    lines = [
        f"[bold]Status:[/bold] [{color}]{session.status}[/{color}]",
        f"[bold]Stories:[/bold] {passing}/{len(stories)} passing",
        f"[bold]Iterations:[/bold] {session.current_iteration}/{session.config.max_iterations}",
        f"[bold]Tokens:[/bold] {usage.lifetime_tokens:,} lifetime, {usage.iteration_tokens:,} in current context "
        f"({usage.percentage(session.config.rotate_threshold):.0f}% of rotation threshold)",
    ]
    if session.last_error:
        lines.append(f"[bold]Last error:[/bold] [red]{session.last_error}[/red]")
    if session.pull_request_url:
        lines.append(f"[bold]Pull request:[/bold] {session.pull_request_url}")
    console.print(Panel("\n".join(lines), title=f"Session {session.id[:8]}"))


async def _run_session(project_path: Path, config: dict, show_agent_output: bool) -> Session:
    manager = SessionManager()
    session = await manager.create_session(project_path, config)
    queue = manager.subscribe(session.id)

    async def printer() -> None:
        while True:
            print_activity(await queue.get(), show_agent_output)

    printer_task = asyncio.create_task(printer())

    loop = asyncio.get_running_loop()

    def request_pause() -> None:
        console.print("\n[yellow]Interrupt received, pausing session...[/yellow]")
        loop.create_task(manager.pause_session(session.id))

    try:
        loop.add_signal_handler(signal.SIGINT, request_pause)
    except NotImplementedError:
        pass  # Windows event loops have no signal handlers

    try:
        await manager.start_session(session.id)
        final = await manager.wait_for_session(session.id)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
        # Let the printer drain what is already queued
        await asyncio.sleep(0)
        printer_task.cancel()
        manager.unsubscribe(session.id, queue)
        await manager.shutdown()
    return final


@click.group()
@click.version_option(package_name="ralph-agent")
@click.option('-v', '--verbose', is_flag=True, help='Enable debug logging')
def main(verbose: bool):
    """Ralph - supervisor for autonomous coding-agent sessions."""
    setup_logging(verbose)


@main.command()
@click.argument('project_path', type=click.Path(exists=True, file_okay=False))
@click.option('--model', 'execution_model', default=None, help='Model for story execution')
@click.option('--max-iterations', type=int, default=None, help='Maximum iterations before failing')
@click.option('--warn-threshold', type=int, default=None, help='Tokens at which to ask for a wrap-up')
@click.option('--rotate-threshold', type=int, default=None, help='Tokens at which to rotate context')
@click.option('--branch', 'branch_name', default=None, help='Branch to work on (defaults to the PRD branch)')
@click.option('--open-pr/--no-open-pr', default=None, help='Open a pull request when all stories pass')
@click.option('--show-agent-output', is_flag=True, help='Print agent messages and tool calls')
def run(
    project_path: str,
    execution_model: Optional[str],
    max_iterations: Optional[int],
    warn_threshold: Optional[int],
    rotate_threshold: Optional[int],
    branch_name: Optional[str],
    open_pr: Optional[bool],
    show_agent_output: bool,
):
    """Run a session on a project until its PRD is complete.

    PROJECT_PATH is a git repository containing prd.json.

    Settings come from .ralph/config.json; options given here override them.
    Ctrl+C pauses the session (committing work in progress) and exits.

    \b
    Examples:
        ralph run ./my-project
        ralph run ./my-project --max-iterations 10 --open-pr
    """
    path = Path(project_path).resolve()
    config = load_config(
        path,
        execution_model=execution_model,
        max_iterations=max_iterations,
        warn_threshold=warn_threshold,
        rotate_threshold=rotate_threshold,
        branch_name=branch_name,
        open_pr=open_pr,
    )

    console.print(f"[bold]Project:[/bold] {path}")
    try:
        session = asyncio.run(_run_session(path, config, show_agent_output))
    except RalphError as e:
        console.print(f"[red]{SYM_FAIL} {e}[/red]")
        sys.exit(1)

    print_session_summary(session)
    if session.status.state == SessionState.COMPLETE:
        console.print(f"[green]{SYM_OK} All stories pass[/green]")
    else:
        sys.exit(1)


@main.command()
@click.argument('project_path', type=click.Path(exists=True, file_okay=False))
@click.option('--lines', default=20, help='Progress log lines to show')
def status(project_path: str, lines: int):
    """Show PRD stories and recent progress of a project."""
    workspace = Workspace(project_path)
    try:
        prd = workspace.load_prd()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if prd is None:
        console.print(f"[red]No PRD found at {workspace.prd_file}[/red]")
        return

    table = Table(title=f"PRD: {prd.project} ({prd.branch_name or 'no branch'})")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Priority", justify="right")
    table.add_column("Status")

    next_story = prd.next_story()
    for story in prd.stories:
        if story.passes:
            state = f"[green]{SYM_OK} passes[/green]"
        elif next_story is not None and story.id == next_story.id:
            state = "[yellow]next[/yellow]"
        else:
            state = "pending"
        table.add_row(story.id, story.title, str(story.priority), state)

    console.print(table)

    passing = sum(1 for s in prd.stories if s.passes)
    console.print(f"\n[green]Passing:[/green] {passing}  [white]Remaining:[/white] {len(prd.stories) - passing}")

    recent = ProgressTracker(workspace.progress_file).read_recent(lines).strip()
    if recent:
        console.print(Panel(recent, title="Recent progress"))


@main.command()
@click.argument('project_path', type=click.Path(exists=True, file_okay=False))
def guardrails(project_path: str):
    """List the guardrails recorded for a project."""
    store = GuardrailStore(project_path)
    items = store.load_guardrails()
    if not items:
        console.print("[dim]No guardrails recorded[/dim]")
        return

    table = Table(title="Guardrails")
    table.add_column("#", justify="right")
    table.add_column("Added")
    table.add_column("Title", style="cyan")
    table.add_column("Lesson")
    for i, g in enumerate(items, 1):
        table.add_row(str(i), g.timestamp.strftime("%Y-%m-%d %H:%M"), g.title or "", g.text)
    console.print(table)


@main.command('guardrails-add')
@click.argument('project_path', type=click.Path(exists=True, file_okay=False))
@click.argument('text')
@click.option('--title', default=None, help='Short title (defaults to the first line)')
def guardrails_add(project_path: str, text: str, title: Optional[str]):
    """Record a guardrail by hand."""
    store = GuardrailStore(project_path)
    session = Session(id="manual", project_path=str(Path(project_path).resolve()))
    guardrail = store.append_guardrail(session, text, title)
    console.print(f"[green]{SYM_OK} Added guardrail:[/green] {guardrail.title}")


@main.command()
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to listen on')
def serve(host: str, port: int):
    """Start the HTTP API for managing sessions.

    Provides:
    - REST API at http://host:port/api/sessions
    - WebSocket activity feed at ws://host:port/ws/sessions/{id}
    - API docs at http://host:port/docs

    Example:
        ralph serve --port 8000
    """
    from .api import run_server

    console.print("[bold]Starting Ralph API[/bold]")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print("\nPress Ctrl+C to stop\n")

    try:
        run_server(host=host, port=port)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


if __name__ == '__main__':
    main()
