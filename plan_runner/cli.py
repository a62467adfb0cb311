"""Command-line interface for Plan Runner."""

import asyncio
import contextlib
import signal
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from .cancellation import REJECTED, STASHED, CancellationToken
from .chat import AnthropicChatService
from .config import ExecutionMode, load_config, model_name, resolve_mode, set_execution_mode
from .errors import InvalidResumeSignal, PlanParseError
from .gates import describe_mode
from .issues import IssueLog
from .logger import format_duration, get_run_summary
from .orchestrator import CANCELLED, FAILED, PAUSED, PlanExecutor, RunOutcome
from .parser import load_plan
from .report import resolve_plan_path
from .store import StateStore

app = typer.Typer(
    name="plan-runner",
    help="Execute phase plans task by task with checkpoints, retries and resume",
    add_completion=False,
)
console = Console()

EXIT_CODES = {CANCELLED: 130, FAILED: 1}


def _resolve(cwd: str, plan: str) -> Path:
    try:
        return resolve_plan_path(cwd, plan)
    except PlanParseError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _executor(cwd: str, mode: Optional[str], model: Optional[str], token: CancellationToken) -> PlanExecutor:
    try:
        execution_mode = resolve_mode(cwd, mode)
    except ValueError:
        console.print(f"[red]Error: unknown mode '{mode}' (use yolo, guided or manual)[/red]")
        raise typer.Exit(1)
    return PlanExecutor(
        cwd=cwd,
        chat=AnthropicChatService(model or model_name()),
        mode=execution_mode,
        token=token,
    )


async def _with_sigint(token: CancellationToken, coro):
    """Run ``coro`` with Ctrl-C mapped onto a cooperative cancel."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by user")
    except (NotImplementedError, RuntimeError):
        pass  # no signal handlers on this platform; KeyboardInterrupt still ends the run
    try:
        return await coro
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)


def _finish(outcome: RunOutcome) -> None:
    if outcome.status == PAUSED:
        console.print(f"\n[yellow]Paused at task {outcome.current_task_index + 1} ({outcome.checkpoint_type})[/yellow]")
    elif outcome.status == CANCELLED:
        console.print("\n[yellow]Cancelled. Send context within 5 minutes to resume:[/yellow] "
                      "[cyan]plan-runner context \"...\"[/cyan]")
    elif outcome.status == FAILED:
        console.print(f"\n[red]Run stopped: {outcome.error}[/red]")
    elif outcome.summary_path:
        console.print(f"\n[green]✓ Summary written to {outcome.summary_path}[/green]")
    raise typer.Exit(EXIT_CODES.get(outcome.status, 0))


def _execute(cwd: str, plan_path: Path, signal_text: Optional[str], mode: Optional[str], model: Optional[str]) -> None:
    token = CancellationToken()
    executor = _executor(cwd, mode, model, token)
    try:
        outcome = asyncio.run(_with_sigint(token, executor.run(str(plan_path), signal_text)))
    except PlanParseError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    except InvalidResumeSignal as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled by user[/yellow]")
        raise typer.Exit(130)
    _finish(outcome)


@app.command("run")
def run_cmd(
    plan: str = typer.Argument(..., help="Plan file or short id (e.g. 04-01)"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="yolo | guided | manual (overrides config)"),
    model: Optional[str] = typer.Option(None, "--model", help="Model name (default: $PLAN_RUNNER_MODEL)"),
) -> None:
    """
    Execute a plan from its saved position (or from the start).

    Example:
        plan-runner run 04-01
        plan-runner run .planning/phases/04-auth/04-01-PLAN.md --mode yolo
    """
    _execute(cwd, _resolve(cwd, plan), None, mode, model)


@app.command("resume")
def resume_cmd(
    plan: str = typer.Argument(..., help="Plan file or short id"),
    signal_text: Optional[str] = typer.Argument(
        None, metavar="SIGNAL", help="approved | issue:<text> | decision:<id> | confirm | skip"
    ),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="yolo | guided | manual (overrides config)"),
    model: Optional[str] = typer.Option(None, "--model", help="Model name (default: $PLAN_RUNNER_MODEL)"),
) -> None:
    """
    Resume a plan paused at a checkpoint.

    Example:
        plan-runner resume 04-01 approved
        plan-runner resume 04-01 decision:jwt
    """
    plan_path = _resolve(cwd, plan)
    if StateStore(cwd).get_execution_state(str(plan_path)) is None:
        console.print("[yellow]No saved progress for this plan; starting from the first task[/yellow]")
    _execute(cwd, plan_path, signal_text, mode, model)


@app.command("context")
def context_cmd(
    text: str = typer.Argument(..., help="Extra instructions for the running or just-cancelled task"),
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan file or short id"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory"),
    model: Optional[str] = typer.Option(None, "--model", help="Model name (default: $PLAN_RUNNER_MODEL)"),
) -> None:
    """
    Send free-text input to a plan run.

    A live run picks it up at its next model turn. A run cancelled in the
    last 5 minutes is resumed with the text added to the paused task.

    Example:
        plan-runner context "use retries=5"
    """
    plan_path = str(_resolve(cwd, plan)) if plan else None
    token = CancellationToken()
    executor = _executor(cwd, None, model, token)
    try:
        route, outcome = asyncio.run(_with_sigint(token, executor.resume_with_context(text, plan_path)))
    except PlanParseError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled by user[/yellow]")
        raise typer.Exit(130)

    if route.action == STASHED:
        console.print(f"[green]✓ Added to the running task of {Path(route.plan_path).name}[/green]")
        raise typer.Exit(0)
    if route.action == REJECTED:
        console.print("[yellow]No running or recently cancelled plan to attach this to[/yellow]")
        console.print("Start one with [cyan]plan-runner run <plan>[/cyan]")
        raise typer.Exit(1)
    _finish(outcome)


@app.command("status")
def status_cmd(
    plan: Optional[str] = typer.Argument(None, help="Plan file or short id (default: all)"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory"),
) -> None:
    """
    Show saved progress of plan runs.

    Example:
        plan-runner status
        plan-runner status 04-01
    """
    store = StateStore(cwd)
    if plan:
        state = store.get_execution_state(str(_resolve(cwd, plan)))
        states = [state] if state else []
    else:
        states = store.list_execution_states()

    console.print(f"[bold]Mode:[/bold] {describe_mode(load_config(cwd).execution_mode)}\n")

    if not states:
        console.print("[yellow]No plan runs in progress[/yellow]")
    for state in states:
        console.print(f"[bold]{state.plan_path}[/bold]")
        try:
            total = len(load_plan(state.plan_path).tasks)
        except PlanParseError:
            total = None
        position = f"task {state.current_task_index + 1}"
        if total is not None:
            position += f" of {total}"
        console.print(f"  Position:  {position}")
        failed = sum(1 for r in state.results if not r.success)
        console.print(f"  Completed: {len(state.completed_task_ids)}, failed: {failed}")
        if state.paused_at_checkpoint:
            console.print(f"  [yellow]Paused at checkpoint ({state.checkpoint_type})[/yellow]")
        if store.get_active_marker(state.plan_path):
            console.print("  [green]Running[/green]")
        cancelled = store.get_cancelled(state.plan_path)
        if cancelled:
            remaining = cancelled.expires_at - store.clock()
            console.print(f"  [yellow]Cancelled; resumable for {format_duration(remaining)}[/yellow]")
        if state.decisions_made:
            decisions = ", ".join(f"task {k}: {v}" for k, v in sorted(state.decisions_made.items()))
            console.print(f"  Decisions: {decisions}")
        console.print(f"  Saved:     {datetime.fromtimestamp(state.saved_at):%Y-%m-%d %H:%M:%S}")
        console.print()

    summary = get_run_summary(cwd)
    if summary:
        console.print("[bold]Last run:[/bold]")
        console.print(f"  Status:     {summary.get('status', 'N/A')}")
        console.print(f"  Duration:   {format_duration(summary.get('duration_seconds', 0))}")
        console.print(f"  Tasks done: {summary.get('tasks_completed', 0)}, failed: {summary.get('tasks_failed', 0)}")
        console.print(f"  Retries:    {summary.get('retries', 0)}, tool calls: {summary.get('tool_calls', 0)}")


@app.command("issues")
def issues_cmd(
    plan: str = typer.Argument(..., help="Plan file or short id"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory"),
) -> None:
    """
    List open issues logged for a plan.

    Example:
        plan-runner issues 04-01
    """
    plan_path = _resolve(cwd, plan)
    try:
        parsed = load_plan(plan_path)
    except PlanParseError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    log = IssueLog(parsed, str(plan_path))
    issues = log.read()
    if not issues:
        console.print("[green]No open issues[/green]")
        raise typer.Exit(0)

    console.print(f"[bold]Open issues ({len(issues)})[/bold] in {log.path}\n")
    for issue in issues:
        severity = escape(f" [{issue.severity}]") if issue.severity else ""
        console.print(f"  [cyan]{issue.id}[/cyan]{severity} {escape(issue.title)}", highlight=False)
        if issue.description:
            console.print(f"    {issue.description}", markup=False)


@app.command("mode")
def mode_cmd(
    mode: Optional[str] = typer.Argument(None, help="yolo | guided | manual"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory"),
) -> None:
    """
    Show or set the execution mode in .planning/config.json.

    Example:
        plan-runner mode
        plan-runner mode yolo
    """
    if mode is None:
        console.print(describe_mode(load_config(cwd).execution_mode))
        return
    try:
        config = set_execution_mode(cwd, ExecutionMode(mode.lower()))
    except ValueError:
        console.print(f"[red]Error: unknown mode '{mode}' (use yolo, guided or manual)[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ {describe_mode(config.execution_mode)}[/green]")


@app.command("clean")
def clean_cmd(
    plan: str = typer.Argument(..., help="Plan file or short id"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """
    Forget saved progress of a plan so the next run starts fresh.

    Example:
        plan-runner clean 04-01 --force
    """
    plan_path = str(_resolve(cwd, plan))
    store = StateStore(cwd)
    if store.get_execution_state(plan_path) is None and store.get_cancelled(plan_path) is None:
        console.print("[yellow]No saved progress for this plan[/yellow]")
        raise typer.Exit(0)

    if not force and not typer.confirm(f"Delete saved progress for {Path(plan_path).name}?"):
        console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(0)

    store.clear_all(plan_path)
    console.print("[green]✓ Cleared saved progress[/green]")


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
