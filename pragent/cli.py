"""Click CLI interface for pr-agent."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional

import click
from rich.console import Console
from rich.table import Table

from pragent import __version__
from pragent.config import ConfigError, config_manager, get_config
from pragent.core import SessionStore, sync_session_tasks
from pragent.integrations.api import ApiClient, ApiError
from pragent.integrations.plan import PlanError, create_plan, save_plan, update_task_status
from pragent.models import (
    AgentEvent,
    Config,
    Session,
    SessionStatus,
    ShipOutcome,
    ShipResult,
    Task,
    TaskStatus,
)
from pragent.utils.logger import enable_verbose_logging, get_logger
from pragent.utils.rate_limiter import RateLimitExceededError
from pragent.utils.shell import get_current_branch, get_git_root, get_origin_repo
from pragent.workflows.jobs import BackgroundJobRegistry
from pragent.workflows.ship import ShipCallbacks, ShipEngine, ShipError, ShipOptions
from pragent.workflows.state import (
    StateError,
    get_progress,
    restart_session,
    retry_task,
    skip_task,
    transition_session,
)

logger = get_logger(__name__)
console = Console()

EXIT_CODES = {
    ShipOutcome.COMPLETED: 0,
    ShipOutcome.PAUSED: 0,
    ShipOutcome.DETACHED: 0,
    ShipOutcome.PARTIAL_FAILURE: 1,
    ShipOutcome.BLOCKED: 1,
    ShipOutcome.FAILED: 1,
    ShipOutcome.CANCELLED: 130,
}

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "running": "yellow",
    "pending": "white",
    "skipped": "dim",
    "shipping": "yellow",
    "paused": "blue",
    "error": "red",
}


def _styled(value: str) -> str:
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/]" if style else value


def _get_store() -> SessionStore:
    return SessionStore(get_git_root() or Path.cwd())


def _require_session(store: SessionStore) -> Session:
    session = store.load_session()
    if session is None:
        console.print("[red]Error:[/red] No session found. Run [cyan]pr-agent init[/cyan] first.")
        sys.exit(1)
    return session


def _registry(config: Config) -> BackgroundJobRegistry:
    return BackgroundJobRegistry(retention_days=config.ship.job_retention_days)


def _console_callbacks(step_mode: bool = False) -> ShipCallbacks:
    """Callbacks that report engine progress on the console."""

    def on_agent(event: AgentEvent) -> None:
        if event.event_type == "tool_call":
            console.print(f"  [dim]{event.tool or 'tool'}: {event.display or ''}[/dim]")

    async def on_step_pause(task: Task) -> bool:
        return await asyncio.to_thread(
            click.confirm, f"Continue with {task.id}: {task.title}?", default=True
        )

    return ShipCallbacks(
        on_task_start=lambda task: console.print(f"[cyan]▶[/cyan] {task.id}: {task.title}"),
        on_task_complete=lambda task: console.print(f"[green]✓[/green] {task.id} completed"),
        on_task_failed=lambda task, error: console.print(f"[red]✗[/red] {task.id} failed: {error}"),
        on_progress=lambda done, total: console.print(f"[dim]Progress: {done}/{total}[/dim]"),
        on_status=lambda message, phase: console.print(f"[blue]{phase or 'status'}[/blue] {message}"),
        on_agent=on_agent,
        on_step_pause=on_step_pause if step_mode else None,
    )


def _run_engine(
    options: ShipOptions,
    callbacks: ShipCallbacks,
    action: Callable[[ShipEngine], Awaitable[ShipResult]],
    store: Optional[SessionStore] = None,
) -> ShipResult:
    """Run an engine action; Ctrl-C cancels the run instead of killing it."""
    config = get_config()

    async def main() -> ShipResult:
        async with ApiClient(config) as client:
            engine = ShipEngine(
                options,
                client,
                callbacks=callbacks,
                registry=_registry(config),
                store=store,
            )
            loop = asyncio.get_running_loop()
            handler_installed = True
            try:
                loop.add_signal_handler(signal.SIGINT, engine.cancel)
            except NotImplementedError:
                handler_installed = False
                logger.debug("Signal handlers are not supported on this platform")
            try:
                return await action(engine)
            finally:
                if handler_installed:
                    loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(main())


def _print_result(result: ShipResult) -> None:
    """Print the outcome of a ship run and exit with its code."""
    summary = f"{result.completed_tasks}/{result.total_tasks} tasks completed"

    if result.outcome == ShipOutcome.COMPLETED:
        console.print(f"\n[green]✓[/green] Plan shipped ({summary})")
        if result.pr_url:
            console.print(f"  PR: [cyan]{result.pr_url}[/cyan]")
    elif result.outcome == ShipOutcome.PAUSED:
        console.print(f"\n[blue]Paused[/blue] ({summary}). Run [cyan]pr-agent resume[/cyan] to continue.")
    elif result.outcome == ShipOutcome.DETACHED:
        console.print(f"\n[green]✓[/green] Job [cyan]{result.job_id}[/cyan] running in the background")
        console.print("  Follow it with [cyan]pr-agent watch[/cyan]")
    elif result.outcome == ShipOutcome.CANCELLED:
        console.print(f"\n[yellow]Cancelled[/yellow] ({summary}). The remote job may still be running.")
    else:
        console.print(f"\n[red]Error:[/red] {result.error or result.outcome.value} ({summary})")

    sys.exit(EXIT_CODES[result.outcome])


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, version: bool, verbose: bool) -> None:
    """PR Agent - ship multi-task plans as pull requests.

    Tasks from .pr-agent/plan.md are executed by a remote agent; progress is
    tracked in .pr-agent/state.yaml.
    """
    if version:
        click.echo(f"pr-agent version {__version__}")
        sys.exit(0)

    if verbose:
        enable_verbose_logging()

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--repo", help="Repository (owner/name); detected from origin if omitted")
@click.option("--branch", "-b", help="Base branch (default: current branch)")
def init(repo: Optional[str], branch: Optional[str]) -> None:
    """Create a session and a plan template in the current project."""
    try:
        config = get_config()
        user_config_path = config_manager.list_config_files()["user"]
        if user_config_path is None:
            path = config_manager.create_default_config(user_level=True)
            console.print(f"[green]✓[/green] User configuration created: {path}")

        store = _get_store()
        repo = repo or get_origin_repo(store.cwd)
        branch = branch or get_current_branch(store.cwd) or config.defaults.default_branch

        if store.has_session():
            console.print(f"[yellow]Session already exists:[/yellow] {store.session_path}")
        else:
            session = store.create_session(repo=repo, branch=branch)
            console.print(f"[green]✓[/green] Session {session.session_id} created")

        if store.has_plan():
            console.print(f"[yellow]Plan already exists:[/yellow] {store.plan_path}")
        else:
            plan = create_plan(
                repo=repo or "",
                branch=branch,
                context="Describe the overall change here.",
                tasks=[
                    Task(
                        id="US-001",
                        title="First task",
                        priority=1,
                        description="Describe what needs to be done.",
                        acceptance_criteria=["Describe how to verify it"],
                    )
                ],
            )
            save_plan(plan, store.plan_path)
            console.print(f"[green]✓[/green] Plan template written: {store.plan_path}")

        console.print("\n[bold]Next steps:[/bold]")
        console.print(f"1. Edit [cyan]{store.plan_path}[/cyan] to describe your tasks")
        console.print("2. Set a GitHub token: [cyan]pr-agent config set api.github_token <token>[/cyan]")
        console.print("3. Run [cyan]pr-agent ship[/cyan]")

    except (ConfigError, PlanError, OSError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@cli.group()
def config() -> None:
    """Configuration management."""
    pass


@config.command("get")
@click.argument("key")
def config_get(key: str) -> None:
    """Get configuration value by key.

    KEY: Dot-separated configuration key (e.g., 'api.base_url')
    """
    try:
        value = config_manager.get_config_value(key)
        console.print(f"{key}: {value}")
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--project", "-p", is_flag=True, help="Set in project config instead of user config")
def config_set(key: str, value: str, project: bool) -> None:
    """Set configuration value.

    KEY: Dot-separated configuration key (e.g., 'rate_limits.max_retries')
    VALUE: Value to set
    """
    parsed_value: object = value
    if value.lower() in ("true", "false"):
        parsed_value = value.lower() == "true"
    elif value.isdigit():
        parsed_value = int(value)
    else:
        try:
            parsed_value = float(value)
        except ValueError:
            parsed_value = value

    try:
        config_manager.set_config_value(key, parsed_value, user_level=not project)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    config_type = "project" if project else "user"
    console.print(f"[green]✓[/green] {config_type.title()} config updated: {key} = {parsed_value}")


@config.command("show")
@click.option("--section", "-s", help="Show only one section (e.g., 'api', 'rate_limits')")
def config_show(section: Optional[str]) -> None:
    """Show current configuration values."""
    try:
        config_dict = config_manager.get_config().model_dump(mode="json")
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if section:
        if section not in config_dict:
            console.print(f"[red]Error:[/red] Section '{section}' not found in configuration")
            console.print(f"[dim]Available sections: {', '.join(config_dict.keys())}[/dim]")
            sys.exit(1)
        config_dict = {section: config_dict[section]}

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan", min_width=20)
    table.add_column("Value", min_width=30)

    for name, value in config_dict.items():
        if isinstance(value, dict):
            table.add_row(f"[bold cyan]{name}[/bold cyan]", "")
            for key, item in value.items():
                if key == "github_token" and item:
                    item = "********"
                table.add_row(f"{name}.{key}", "[dim]None[/dim]" if item is None else str(item))
        else:
            table.add_row(name, str(value))

    console.print(table)

    console.print("\n[bold]Configuration Sources:[/bold]")
    for config_type, path in config_manager.list_config_files().items():
        if path and path.exists():
            console.print(f"  [green]✓[/green] {config_type}: {path}")
        else:
            console.print(f"  [dim]✗ {config_type}: Not found[/dim]")


@cli.command()
def status() -> None:
    """Show session status, task progress and request budget."""
    store = _get_store()
    session = _require_session(store)

    console.print(f"[bold]Session:[/bold] {session.session_id} ({_styled(session.status.value)})")
    console.print(f"[bold]Plan:[/bold] {session.plan_name or 'N/A'}")
    console.print(f"[bold]Repository:[/bold] {session.repo or 'N/A'} ({session.branch or 'N/A'})")
    if session.execution.job_id:
        console.print(f"[bold]Job:[/bold] {session.execution.job_id}")
    if session.execution.pr_url:
        console.print(f"[bold]PR:[/bold] [cyan]{session.execution.pr_url}[/cyan]")

    if session.tasks:
        table = Table(title="Tasks")
        table.add_column("ID", style="cyan")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Depends on", style="dim")
        for task in session.tasks:
            table.add_row(
                task.id,
                task.title,
                _styled(task.status.value),
                ", ".join(task.dependencies) or "-",
            )
        console.print(table)

    progress = get_progress(session)
    console.print(
        f"\n[bold]Progress:[/bold] {progress.completed}/{progress.total} ({progress.percent}%)"
        f"  failed: {progress.failed}  pending: {progress.pending}  running: {progress.running}"
    )

    try:
        rate_status = asyncio.run(_rate_limit_status(get_config()))
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    if rate_status.enabled:
        console.print(
            f"[bold]Request budget:[/bold] {rate_status.minute_remaining}/min, "
            f"{rate_status.hour_remaining}/hour"
        )
    else:
        console.print("[bold]Request budget:[/bold] [dim]rate limiting disabled[/dim]")


async def _rate_limit_status(config: Config):
    async with ApiClient(config) as client:
        return client.rate_limit_status()


def _ship(
    per_task: bool,
    step: bool,
    auto: bool,
    background: bool,
    repo: Optional[str],
) -> None:
    try:
        config = get_config()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    store = _get_store()
    session = _require_session(store)

    try:
        plan = store.load_plan()
        if plan is not None:
            sync_session_tasks(session, plan)
        if not session.tasks:
            console.print(f"[red]Error:[/red] No tasks to ship. Edit {store.plan_path} first.")
            sys.exit(1)

        if session.status != SessionStatus.PAUSED:
            restart_session(session)
        transition_session(session, SessionStatus.SHIPPING)
        store.save_session(session)

        step_mode = step or (config.ship.step_mode and not auto)
        auto_mode = auto or (config.ship.auto_mode and not step)
        options = ShipOptions(
            cwd=store.cwd,
            repo=repo or session.repo or get_origin_repo(store.cwd),
            branch=session.branch,
            step_mode=step_mode,
            auto_mode=auto_mode,
            background_mode=background,
            single_session=config.ship.single_session and not per_task,
        )
    except (ShipError, StateError, PlanError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    progress = get_progress(session)
    console.print(
        f"[bold]Shipping[/bold] {session.plan_name or 'plan'}: "
        f"{progress.total - progress.completed} of {progress.total} tasks remaining"
    )

    try:
        result = _run_engine(options, _console_callbacks(step_mode), lambda engine: engine.run(), store)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(EXIT_CODES[ShipOutcome.CANCELLED])

    _print_result(result)


@cli.command()
@click.option("--step", is_flag=True, help="Pause for confirmation after each task")
@click.option("--auto", "auto_", is_flag=True, help="Continue past failed tasks")
@click.option("--background", is_flag=True, help="Dispatch and return without following the job")
@click.option("--per-task", is_flag=True, help="Run one remote job per task")
@click.option("--repo", help="Repository (owner/name)")
def ship(step: bool, auto_: bool, background: bool, per_task: bool, repo: Optional[str]) -> None:
    """Execute the plan."""
    if step and auto_:
        console.print("[red]Error:[/red] --step and --auto cannot be combined")
        sys.exit(1)
    _ship(per_task=per_task, step=step, auto=auto_, background=background, repo=repo)


@cli.command()
@click.option("--per-task", is_flag=True, help="Run one remote job per task")
def resume(per_task: bool) -> None:
    """Resume a paused or interrupted session."""
    store = _get_store()
    session = _require_session(store)
    if session.status not in (SessionStatus.PAUSED, SessionStatus.SHIPPING, SessionStatus.ERROR):
        console.print(f"[yellow]Nothing to resume:[/yellow] session is {session.status.value}")
        return
    _ship(per_task=per_task, step=False, auto=False, background=False, repo=None)


@cli.command()
def pause() -> None:
    """Pause a shipping session after the current task."""
    store = _get_store()
    session = _require_session(store)

    if session.status != SessionStatus.SHIPPING:
        console.print(f"[yellow]Session is not shipping[/yellow] ({session.status.value})")
        return

    transition_session(session, SessionStatus.PAUSED)
    store.save_session(session)
    console.print("[green]✓[/green] Session paused. Run [cyan]pr-agent resume[/cyan] to continue.")


@cli.command()
@click.argument("task_id", required=False)
def retry(task_id: Optional[str]) -> None:
    """Reset a failed task (or every failed task) to pending.

    TASK_ID: Task to retry; all failed tasks if omitted
    """
    store = _get_store()
    session = _require_session(store)

    if task_id:
        targets = [task_id]
    else:
        targets = [t.id for t in session.tasks if t.status == TaskStatus.FAILED]
        if not targets:
            console.print("[yellow]No failed tasks to retry.[/yellow]")
            return

    try:
        for target in targets:
            retry_task(session, target)
        store.save_session(session)
        for target in targets:
            update_task_status(store.plan_path, target, TaskStatus.PENDING)
    except (StateError, PlanError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(f"[green]✓[/green] Reset for retry: {', '.join(targets)}")
    console.print("Run [cyan]pr-agent ship[/cyan] to continue.")


@cli.command()
@click.argument("task_id")
def skip(task_id: str) -> None:
    """Mark a pending task as skipped.

    TASK_ID: Task to skip
    """
    store = _get_store()
    session = _require_session(store)

    try:
        skip_task(session, task_id)
        store.save_session(session)
        update_task_status(store.plan_path, task_id, TaskStatus.SKIPPED)
    except (StateError, PlanError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(f"[green]✓[/green] Skipped {task_id}")
    dependents = [t.id for t in session.tasks if task_id in t.dependencies]
    if dependents:
        console.print(f"[yellow]Warning:[/yellow] blocked until the plan changes: {', '.join(dependents)}")


@cli.command()
@click.argument("job_id", required=False)
def watch(job_id: Optional[str]) -> None:
    """Follow a running job and update task progress.

    JOB_ID: Job to follow; defaults to the session's current job
    """
    store = _get_store()
    session = _require_session(store)
    options = ShipOptions(cwd=store.cwd, repo=session.repo, branch=session.branch)

    try:
        result = _run_engine(options, _console_callbacks(), lambda engine: engine.attach(job_id), store)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(EXIT_CODES[ShipOutcome.CANCELLED])

    _print_result(result)


@cli.command()
@click.argument("job_id", required=False)
@click.option("--local", is_flag=True, help="Show jobs started from this machine")
@click.option("--cleanup", is_flag=True, help="Remove local jobs older than the retention window")
@click.option("--status", "status_filter", help="Filter remote jobs by status")
@click.option("--limit", type=int, default=20, show_default=True, help="Maximum remote jobs")
def jobs(job_id: Optional[str], local: bool, cleanup: bool, status_filter: Optional[str], limit: int) -> None:
    """List background jobs, or show one remote job.

    JOB_ID: Remote job to show in detail
    """
    try:
        config = get_config()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    registry = _registry(config)

    if cleanup:
        removed = registry.cleanup()
        console.print(f"[green]✓[/green] Removed {removed} old job(s)")
        if not local:
            return

    if local:
        entries = registry.list()
        if not entries:
            console.print("[yellow]No local jobs found.[/yellow]")
            return

        table = Table(title="Local Jobs")
        table.add_column("Job ID", style="cyan")
        table.add_column("Session", style="dim")
        table.add_column("Repository")
        table.add_column("Status")
        table.add_column("Started", style="dim")
        for job in sorted(entries, key=lambda j: j.started_at, reverse=True):
            table.add_row(
                job.job_id,
                job.session_id,
                job.repo or "N/A",
                _styled(job.status.value),
                job.started_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
        return

    if job_id:
        _show_remote_job(config, job_id)
        return

    async def fetch():
        async with ApiClient(config) as client:
            return await client.list_jobs(status=status_filter, limit=limit)

    try:
        remote_jobs = asyncio.run(fetch())
    except (ApiError, RateLimitExceededError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if not remote_jobs:
        console.print("[yellow]No jobs found.[/yellow]")
        return

    table = Table(title="Recent Jobs")
    table.add_column("Job ID", style="cyan")
    table.add_column("Repository")
    table.add_column("Status")
    table.add_column("PR", style="green")
    table.add_column("Created", style="dim")
    for job in remote_jobs:
        table.add_row(
            job.id,
            job.repo_full_name or "N/A",
            _styled(job.status),
            job.pr_url or "N/A",
            job.created_at.strftime("%Y-%m-%d %H:%M") if job.created_at else "N/A",
        )
    console.print(table)


def _show_remote_job(config: Config, job_id: str) -> None:
    async def fetch():
        async with ApiClient(config) as client:
            return await client.get_job(job_id)

    try:
        job = asyncio.run(fetch())
    except ApiError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(f"[bold]Job:[/bold] {job.id}")
    console.print(f"[bold]Status:[/bold] {_styled(job.status)}")
    console.print(f"[bold]Repository:[/bold] {job.repo_full_name or 'N/A'}")
    if job.pr_url:
        console.print(f"[bold]PR:[/bold] {job.pr_url}")
    if job.files_changed:
        console.print(f"[bold]Files changed:[/bold] {job.files_changed}")
    if job.error_message:
        console.print(f"[red]Error:[/red] {job.error_message}")


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def reset(yes: bool) -> None:
    """Delete the session, plan and logs of this project."""
    store = _get_store()
    if not store.base_dir.exists():
        console.print("[yellow]Nothing to reset.[/yellow]")
        return

    if not yes and not click.confirm(f"Delete {store.base_dir}?", default=False):
        console.print("Aborted.")
        return

    store.reset()
    console.print(f"[green]✓[/green] Removed {store.base_dir}")


if __name__ == "__main__":
    cli()
