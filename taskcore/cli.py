"""Main CLI entry point for taskcore."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from . import db
from .agents import AgentType
from .config import settings
from .conflicts import ConflictSeverity, ResolutionDecision
from .errors import TaskcoreError
from .events import CoreEvent
from .services import Services, build_services
from .task_queue import AutonomyLevel, Checkpoint, TaskType
from .workflow.base import WorkflowCallbacks

console = Console()

T = TypeVar("T")

STATUS_STYLES = {
    "pending": "dim",
    "queued": "cyan",
    "running": "yellow",
    "waiting_approval": "magenta",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "skipped": "dim",
    "open": "yellow",
    "resolved": "green",
    "dismissed": "dim",
}

SEVERITY_STYLES = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "dim"}


def _styled(value: str, styles: dict[str, str] = STATUS_STYLES) -> str:
    style = styles.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def _run(work: Callable[[Services], Awaitable[T]]) -> T:
    """Run ``work`` against a fresh service graph and tear it down afterwards."""

    async def runner() -> T:
        services = build_services(settings)
        try:
            return await work(services)
        finally:
            await services.aclose()

    try:
        return asyncio.run(runner())
    except TaskcoreError as e:
        raise click.ClickException(str(e)) from e


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root = logging.getLogger("taskcore")
    root.handlers[:] = [handler]
    root.setLevel(level)
    root.propagate = False


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def main(verbose: bool) -> None:
    """Task orchestration core for autonomous development agents.

    Queue agent tasks, gate them behind approvals, arbitrate agent conflicts
    and run multi-agent workflows from a single request.
    """
    _configure_logging(verbose)


@main.command(name="init-db")
def init_db() -> None:
    """Create the database tables (development; use alembic in production)."""

    async def work(services: Services) -> None:
        await services.database.init_db()

    _run(work)
    console.print("[green]Database initialized[/green]")


# =============================================================================
# Tasks
# =============================================================================


@main.command()
@click.argument("project_id")
@click.argument("title")
@click.option("--type", "task_type", required=True, type=click.Choice([t.value for t in TaskType]))
@click.option("--agent", "agent_type", required=True, type=click.Choice([a.value for a in AgentType]))
@click.option(
    "--autonomy",
    default=AutonomyLevel.AUTO.value,
    type=click.Choice([a.value for a in AutonomyLevel]),
    help="How much human oversight the task needs",
)
@click.option("--priority", "-p", type=int, default=None, help="Lower runs first (default 50)")
@click.option("--description", "-d", default=None)
@click.option("--parent", "parent_task_id", default=None, help="Parent task id")
@click.option(
    "--checkpoint",
    "checkpoints",
    multiple=True,
    type=click.Choice([c.value for c in Checkpoint]),
    help="Approval checkpoint (approval_gates only)",
)
@click.option("--depends-on", multiple=True, help="Task id that must complete first")
def enqueue(
    project_id: str,
    title: str,
    task_type: str,
    agent_type: str,
    autonomy: str,
    priority: int | None,
    description: str | None,
    parent_task_id: str | None,
    checkpoints: tuple[str, ...],
    depends_on: tuple[str, ...],
) -> None:
    """Add a task to a project's queue."""

    async def work(services: Services) -> Any:
        return await services.queue.enqueue(
            project_id,
            title,
            task_type=task_type,
            agent_type=agent_type,
            description=description,
            parent_task_id=parent_task_id,
            autonomy_level=autonomy,
            priority=priority,
            checkpoints=list(checkpoints) or None,
            depends_on=list(depends_on),
        )

    task = _run(work)
    console.print(f"[green]Queued[/green] {task.id} [bold]{task.title}[/bold] (priority {task.priority})")


@main.command()
@click.argument("project_id")
@click.option("--status", "status_filter", default=None, help="Filter by status")
def tasks(project_id: str, status_filter: str | None) -> None:
    """List a project's tasks in queue order."""

    async def work(services: Services) -> Any:
        return await services.queue.list_tasks(project_id, status_filter)

    rows = _run(work)
    if not rows:
        console.print("[yellow]No tasks found[/yellow]")
        return

    table = Table(title=f"Tasks: {project_id}")
    table.add_column("ID", style="dim")
    table.add_column("Pri", justify="right")
    table.add_column("Title")
    table.add_column("Type")
    table.add_column("Agent")
    table.add_column("Autonomy")
    table.add_column("Status")
    for t in rows:
        table.add_row(
            t.id[:8],
            str(t.priority),
            t.title,
            t.task_type,
            t.agent_type,
            t.autonomy_level,
            _styled(t.status),
        )
    console.print(table)


@main.command()
@click.argument("task_id")
def show(task_id: str) -> None:
    """Show a task with its gates and status history."""

    async def work(services: Services) -> Any:
        task = await services.queue.get_task(task_id)
        if task is None:
            return None
        gates = await services.queue.get_approvals(task_id)
        async with services.database.session() as session:
            transitions = await db.list_transitions(session, task_id)
        return task, gates, transitions

    found = _run(work)
    if found is None:
        console.print(f"[red]Task not found: {task_id}[/red]")
        return
    task, gates, transitions = found

    console.print(
        Panel(
            f"[bold]{task.title}[/bold]\n\n"
            f"Status: {_styled(task.status)}\n"
            f"Type: {task.task_type}  Agent: {task.agent_type}\n"
            f"Autonomy: {task.autonomy_level}  Checkpoints: {', '.join(task.checkpoints) or '-'}\n"
            f"Priority: {task.priority}  Retries: {task.retry_count}/{task.max_retries}\n"
            f"Created: {task.created_at.strftime('%Y-%m-%d %H:%M')}"
            + (f"\n[red]Error: {task.error_message}[/red]" if task.error_message else ""),
            title=f"Task: {task.id}",
        )
    )

    if gates:
        table = Table(title="Approval gates")
        table.add_column("ID", style="dim")
        table.add_column("Type")
        table.add_column("Checkpoint")
        table.add_column("Status")
        table.add_column("By")
        for g in gates:
            table.add_row(g.id, g.gate_type, g.checkpoint or "-", _styled(g.status), g.approved_by or "")
        console.print(table)

    if transitions:
        console.print("\n[bold]History:[/bold]")
        for tr in transitions:
            console.print(
                f"  {tr.created_at.strftime('%H:%M:%S')} "
                f"{tr.from_status or '-'} -> {_styled(tr.to_status)} {tr.message or ''}"
            )

    if task.output_data and task.output_data.get("result"):
        console.print(Panel(str(task.output_data["result"])[:2000], title="Output"))


@main.command()
@click.argument("task_id")
@click.argument("level", type=click.Choice([a.value for a in AutonomyLevel]))
@click.option("--checkpoint", "checkpoints", multiple=True, type=click.Choice([c.value for c in Checkpoint]))
def autonomy(task_id: str, level: str, checkpoints: tuple[str, ...]) -> None:
    """Change a task's autonomy level."""

    async def work(services: Services) -> Any:
        return await services.queue.update_autonomy(task_id, level, list(checkpoints) or None)

    task = _run(work)
    console.print(f"[green]Task {task.id[:8]} is now {task.autonomy_level}[/green]")


@main.command()
@click.argument("task_id")
@click.option("--purge", is_flag=True, help="Delete the task after cancelling it")
def cancel(task_id: str, purge: bool) -> None:
    """Cancel a task."""

    async def work(services: Services) -> bool:
        cancelled = await services.queue.cancel(task_id)
        if purge:
            await services.queue.purge(task_id)
        return cancelled

    if _run(work):
        console.print(f"[green]Cancelled {task_id}[/green]")
    else:
        console.print(f"[yellow]Task {task_id} already finished; nothing to cancel[/yellow]")


@main.command()
@click.argument("gate_id")
@click.option("--by", "approved_by", default="user")
@click.option("--notes", default=None)
def approve(gate_id: str, approved_by: str, notes: str | None) -> None:
    """Approve a pending approval gate."""

    async def work(services: Services) -> Any:
        return await services.queue.approve(gate_id, approved_by, notes)

    task = _run(work)
    console.print(f"[green]Approved[/green]; task {task.id[:8]} is {_styled(task.status)}")


@main.command()
@click.argument("gate_id")
@click.option("--by", "rejected_by", default="user")
@click.option("--reason", default=None)
def reject(gate_id: str, rejected_by: str, reason: str | None) -> None:
    """Reject a pending approval gate; the task fails."""

    async def work(services: Services) -> Any:
        return await services.queue.reject(gate_id, rejected_by, reason)

    task = _run(work)
    console.print(f"[red]Rejected[/red]; task {task.id[:8]} is {_styled(task.status)}")


@main.command()
@click.argument("task_id", required=False)
@click.option("--project", "project_id", default=None, help="Pending gates across a project")
def approvals(task_id: str | None, project_id: str | None) -> None:
    """List approval gates for a task, or pending gates for a project."""
    if not task_id and not project_id:
        raise click.UsageError("Give a TASK_ID or --project")

    async def work(services: Services) -> Any:
        if task_id:
            return await services.queue.get_approvals(task_id)
        return await services.queue.list_pending_gates(project_id)

    gates = _run(work)
    if not gates:
        console.print("[yellow]No approval gates[/yellow]")
        return
    table = Table(title="Approval gates")
    table.add_column("ID", style="dim")
    table.add_column("Task", style="dim")
    table.add_column("Title")
    table.add_column("Type")
    table.add_column("Checkpoint")
    table.add_column("Status")
    for g in gates:
        table.add_row(g.id, g.task_id[:8], g.title, g.gate_type, g.checkpoint or "-", _styled(g.status))
    console.print(table)


@main.command()
@click.argument("project_id")
@click.option("--poll", "poll_interval_seconds", type=float, default=None, help="Seconds between ticks")
@click.option("--threshold", "auto_approve_threshold", type=int, default=None, help="Auto-approval quality")
@click.option("--max-idle", "max_idle_minutes", type=float, default=None, help="Stop after idle minutes")
@click.option("--no-auto-approve", is_flag=True, help="Leave every gate to a human")
@click.option("--cwd", "-C", type=click.Path(exists=True, path_type=Path), help="Project working directory")
def run(
    project_id: str,
    poll_interval_seconds: float | None,
    auto_approve_threshold: int | None,
    max_idle_minutes: float | None,
    no_auto_approve: bool,
    cwd: Path | None,
) -> None:
    """Run the autonomous executor until it goes idle or Ctrl-C."""

    def print_event(event: CoreEvent) -> None:
        console.print(f"[dim]{event.timestamp.strftime('%H:%M:%S')}[/dim] [cyan]{event.type.value}[/cyan] {event.message}")

    async def work(services: Services) -> Any:
        config = services.autonomous_config(
            project_id,
            project_path=cwd,
            poll_interval_seconds=poll_interval_seconds,
            auto_approve_threshold=auto_approve_threshold,
            max_idle_minutes=max_idle_minutes,
            enable_auto_approval=False if no_auto_approve else None,
        )
        services.bus.add_listener(print_event)
        await services.executor.start_continuous(config)
        try:
            await services.executor.wait_closed()
        except asyncio.CancelledError:
            await services.executor.stop()
            raise
        return services.executor.get_stats()

    try:
        stats = _run(work)
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")
        return
    console.print(
        f"[bold]Done.[/bold] completed={stats.tasks_completed} failed={stats.tasks_failed} "
        f"auto-approved={stats.tasks_auto_approved} manual={stats.tasks_manual_approval}"
    )


# =============================================================================
# Conflicts
# =============================================================================


def _print_conflicts(rows: list[Any]) -> None:
    if not rows:
        console.print("[yellow]No conflicts[/yellow]")
        return
    table = Table(title="Conflicts")
    table.add_column("ID", style="dim")
    table.add_column("Item")
    table.add_column("Type")
    table.add_column("Agents")
    table.add_column("Severity")
    table.add_column("Status")
    for c in rows:
        table.add_row(
            c.id,
            f"{c.item_type}:{c.item_id}",
            c.conflict_type,
            f"{c.agent1} vs {c.agent2}",
            _styled(c.severity, SEVERITY_STYLES),
            _styled(c.status),
        )
    console.print(table)


@main.command()
@click.argument("project_id")
@click.option("--item", "item_id", default=None, help="All conflicts for one item")
def conflicts(project_id: str, item_id: str | None) -> None:
    """List open conflicts for a project (or every conflict on an item)."""

    async def work(services: Services) -> Any:
        if item_id:
            return await services.arbitrator.get_item_conflicts(item_id)
        return await services.arbitrator.get_open_conflicts(project_id)

    _print_conflicts(_run(work))


@main.command()
@click.argument("project_id")
@click.argument("item_id")
@click.argument("agent1", type=click.Choice([a.value for a in AgentType]))
@click.argument("output1", type=click.File("r"))
@click.argument("agent2", type=click.Choice([a.value for a in AgentType]))
@click.argument("output2", type=click.File("r"))
@click.option("--item-type", default="task", type=click.Choice(["story", "task", "roadmap", "code"]))
@click.option("--severity", default=None, type=click.Choice([s.value for s in ConflictSeverity]))
def detect(
    project_id: str,
    item_id: str,
    agent1: str,
    output1: Any,
    agent2: str,
    output2: Any,
    item_type: str,
    severity: str | None,
) -> None:
    """Compare two agent outputs (files, or - for stdin) and record any conflict."""
    text1, text2 = output1.read(), output2.read()

    async def work(services: Services) -> Any:
        return await services.arbitrator.detect_conflict(
            project_id, item_id, item_type, agent1, text1, agent2, text2, severity=severity
        )

    conflict = _run(work)
    if conflict is None:
        console.print("[green]No conflict detected[/green]")
        return
    console.print(
        f"[red]Conflict[/red] {conflict.id}: {conflict.conflict_type} "
        f"({_styled(conflict.severity, SEVERITY_STYLES)})"
    )
    for label, position in (("agent1", conflict.agent1_position), ("agent2", conflict.agent2_position)):
        console.print(f"  [bold]{label}[/bold]: {position.get('stance', '')}")


@main.command()
@click.argument("conflict_id")
@click.argument("decision", type=click.Choice([d.value for d in ResolutionDecision]))
@click.option("--explanation", "-e", required=True)
@click.option("--by", "resolved_by", default="user")
def resolve(conflict_id: str, decision: str, explanation: str, resolved_by: str) -> None:
    """Resolve an open conflict."""

    async def work(services: Services) -> Any:
        return await services.arbitrator.resolve_conflict(conflict_id, decision, explanation, resolved_by)

    _run(work)
    console.print(f"[green]Resolved {conflict_id}: {decision}[/green]")


@main.command()
@click.argument("conflict_id")
@click.option("--reason", default=None)
def dismiss(conflict_id: str, reason: str | None) -> None:
    """Dismiss an open conflict."""

    async def work(services: Services) -> Any:
        return await services.arbitrator.dismiss_conflict(conflict_id, reason)

    _run(work)
    console.print(f"[green]Dismissed {conflict_id}[/green]")


@main.command()
@click.argument("conflict_id")
def suggest(conflict_id: str) -> None:
    """Suggest a resolution from similar past conflicts."""

    async def work(services: Services) -> Any:
        return await services.arbitrator.suggest_resolution(conflict_id)

    suggestion = _run(work)
    if suggestion is None:
        console.print("[yellow]No similar resolved conflicts to learn from[/yellow]")
        return
    console.print(
        Panel(
            f"Decision: [bold]{suggestion.decision.value}[/bold]\n"
            f"Confidence: {suggestion.confidence:.0%}\n"
            f"{suggestion.reasoning}",
            title="Suggested resolution",
        )
    )


# =============================================================================
# Workflows
# =============================================================================


@main.command()
@click.argument("project_id")
@click.argument("message")
@click.option("--session", "session_id", default="cli", help="Chat session id")
@click.option("--yes", "-y", is_flag=True, help="Run without confirmation")
@click.option("--cwd", "-C", type=click.Path(exists=True, path_type=Path), help="Project working directory")
def workflow(project_id: str, message: str, session_id: str, yes: bool, cwd: Path | None) -> None:
    """Turn a free-text request into a multi-agent workflow and run it."""

    async def work(services: Services) -> Any:
        engine = services.workflows
        intent = engine.parse_workflow_intent(message)
        if not intent.is_workflow or intent.parsed is None:
            console.print(f"[yellow]Not a multi-agent request (confidence {intent.confidence}%)[/yellow]")
            return None

        parsed = intent.parsed
        table = Table(title=f"{parsed.workflow_type.value} workflow (confidence {intent.confidence}%)")
        table.add_column("#", justify="right")
        table.add_column("Agent")
        table.add_column("Instruction")
        table.add_column("After")
        for i, task in enumerate(parsed.tasks):
            after = ", ".join(str(d + 1) for d in task.depends_on) or "-"
            table.add_row(str(i + 1), task.agent.value, task.instruction, after)
        console.print(table)
        if not yes and not Confirm.ask("Run this workflow?", console=console):
            return None

        wf = await engine.create_chat_workflow(project_id, session_id, message, parsed)
        callbacks = WorkflowCallbacks(
            on_step_start=lambda i, agent: console.print(f"\n[bold cyan]Step {i + 1}: {agent}[/bold cyan]"),
            on_step_progress=lambda i, chunk: console.print(chunk, end="", markup=False, highlight=False),
            on_error=lambda error, i: console.print(f"\n[red]Step {i + 1} failed: {error}[/red]"),
        )
        results = await engine.execute_chat_workflow(wf.id, cwd or services.settings.project_path, callbacks)
        return wf, results

    outcome = _run(work)
    if outcome is None:
        return
    wf, results = outcome
    console.print()
    for r in results:
        console.print(f"  {r.step_index + 1}. {r.agent}: {_styled(r.status.value)}")
    console.print(f"Workflow {wf.id}: {_styled(wf.status.value)}")


if __name__ == "__main__":
    main()
