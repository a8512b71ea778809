"""CLI for agentplan.

Operator commands over the plan store, the issue tracker and the agent pool.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from agentplan.agent_pool import AgentPool, AgentSlot, SlotCallback
from agentplan.config import AgentPlanConfig
from agentplan.errors import AgentPlanError
from agentplan.health import CHECK_ORDER, get_health
from agentplan.plan_store import PlanStore
from agentplan.state import SyncState
from agentplan.synchronizer import IssueSynchronizer
from agentplan.telemetry import create_metrics, setup_telemetry
from agentplan.tracker import create_tracker

console = Console()

STATUS_STYLES = {
    "pending": "white",
    "in_progress": "yellow",
    "completed": "green",
    "idle": "white",
    "working": "yellow",
    "done": "green",
    "error": "red",
}


def _styled(status: str) -> str:
    color = STATUS_STYLES.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _state_dir(config: AgentPlanConfig) -> Path:
    if config.state_dir.is_absolute():
        return config.state_dir
    return config.project_root / config.state_dir


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {message}")
    sys.exit(1)


@click.group()
@click.version_option(package_name="agentplan")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """agentplan - Plan-driven task orchestration for coding agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    try:
        ctx.obj = AgentPlanConfig.from_env()
    except ValueError as e:
        _fail(str(e))


@cli.command()
@click.option("--phase", "-p", type=int, default=None, help="Only show one phase")
@click.pass_obj
def tasks(config: AgentPlanConfig, phase: int | None) -> None:
    """List tasks from every phase plan."""
    store = PlanStore(config.project_root)
    all_tasks = [t for t in store.get_tasks() if phase is None or t.phase == phase]

    if not all_tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return

    table = Table(title="Tasks")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Owner")
    table.add_column("Criteria", justify="right")

    for task in all_tasks:
        table.add_row(
            task.id,
            task.title,
            _styled(task.status),
            task.owner or "-",
            f"{task.criteria_done}/{task.criteria_total}",
        )

    console.print(table)


@cli.command()
@click.argument("title")
@click.option("--description", "-d", default=None, help="Goal line for the task")
@click.pass_obj
def add(config: AgentPlanConfig, title: str, description: str | None) -> None:
    """Append a task to the active phase plan."""
    store = PlanStore(config.project_root)
    try:
        task = store.create_task(title, description)
    except AgentPlanError as e:
        _fail(str(e))
    console.print(f"Created task [bold]{task.id}[/bold]: {task.title}")


@cli.command()
@click.argument("task_id")
@click.option(
    "--status",
    "-s",
    type=click.Choice(["pending", "in_progress", "completed"]),
    default=None,
    help="New task status",
)
@click.option("--owner", "-o", default=None, help="Owner to record in the marker")
@click.option("--clear-owner", is_flag=True, help="Remove the owner from the marker")
@click.pass_obj
def update(
    config: AgentPlanConfig,
    task_id: str,
    status: str | None,
    owner: str | None,
    clear_owner: bool,
) -> None:
    """Change a task's status or owner."""
    store = PlanStore(config.project_root)
    kwargs: dict = {}
    if owner is not None:
        kwargs["owner"] = owner
    elif clear_owner:
        kwargs["owner"] = None
    try:
        task = store.update_task(task_id, status=status, **kwargs)
    except AgentPlanError as e:
        _fail(str(e))
    owner_text = f" @{task.owner}" if task.owner else ""
    console.print(f"Task {task.id}: {_styled(task.status)}{owner_text}")


@cli.command()
@click.pass_obj
def status(config: AgentPlanConfig) -> None:
    """Show milestones, phases and issues handed to agents."""
    store = PlanStore(config.project_root)
    milestones = store.get_milestones()
    if not milestones:
        console.print(f"[yellow]No roadmap found in {config.project_root}[/yellow]")
        return

    phases = {p.number: p for p in store.get_phases()}
    table = Table(title="Roadmap")
    table.add_column("Milestone")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Tasks", justify="right")

    for milestone in milestones:
        table.add_row(f"[bold]{milestone.name}[/bold]", "", _styled(milestone.status), "")
        for number in milestone.phase_numbers:
            phase = phases.get(number)
            if phase is None:
                continue
            done = sum(1 for t in phase.tasks if t.status == "completed")
            table.add_row(
                "",
                f"{phase.number}: {phase.name}",
                _styled(phase.status),
                f"{done}/{len(phase.tasks)}",
            )
    console.print(table)

    state = SyncState.load(_state_dir(config))
    if state.pending:
        console.print(f"\n[bold]Issues in progress:[/bold] {len(state.pending)}")
        for issue_id, pending in sorted(state.pending.items()):
            console.print(
                f"  #{issue_id} -> task {pending.task_id or '?'} "
                f"(agent {pending.slot_id or '?'}, "
                f"since {pending.started_at:%Y-%m-%d %H:%M})"
            )


@cli.command()
@click.argument("phase", type=int)
@click.pass_obj
def approve(config: AgentPlanConfig, phase: int) -> None:
    """Stamp a phase plan as approved."""
    store = PlanStore(config.project_root)
    plan_path = store.plan_path(phase)
    if plan_path is None or not plan_path.exists():
        _fail(f"No plan document for phase {phase}")

    if store.is_approved(plan_path):
        console.print(f"Phase {phase} plan already approved")
        return

    try:
        store.approve_plan(plan_path)
    except AgentPlanError as e:
        _fail(str(e))
    console.print(f"[green]Approved[/green] {plan_path}")


def _synchronizer(
    config: AgentPlanConfig,
    pool: AgentPool,
    label: str | None = None,
    tracer=None,
) -> IssueSynchronizer:
    try:
        tracker = create_tracker(config)
    except AgentPlanError as e:
        _fail(str(e))
    return IssueSynchronizer(
        tracker,
        PlanStore(config.project_root),
        pool,
        label=label or config.issue_label,
        poll_interval_seconds=config.poll_interval_seconds,
        state_dir=_state_dir(config),
        tracer=tracer,
    )


@cli.command()
@click.option("--label", "-l", default=None, help="Label filter (default: configured label)")
@click.pass_obj
def issues(config: AgentPlanConfig, label: str | None) -> None:
    """List open issues from the tracker."""
    sync = _synchronizer(
        config, AgentPool(size=config.pool_size, command=config.agent_command), label
    )
    found = asyncio.run(sync.refresh_issues())

    if sync.status in ("error", "unavailable"):
        _fail(f"Issue tracker {sync.status}: {sync.last_error}")
    if sync.status == "degraded":
        console.print("[yellow]Label filter failed, showing all open issues[/yellow]")

    if not found:
        console.print("[yellow]No open issues[/yellow]")
        return

    table = Table(title="Open Issues")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Labels")
    table.add_column("Task")

    for issue in found:
        pending = sync.pending.get(issue.id)
        task_id = sync.state.imported.get(issue.id)
        marker = f"{task_id} (agent {pending.slot_id})" if pending else task_id or "-"
        table.add_row(issue.id, issue.title, ", ".join(issue.labels), marker)

    console.print(table)


@cli.command()
@click.option("--check", type=click.Choice(CHECK_ORDER), help="Run single check")
@click.pass_obj
def health(config: AgentPlanConfig, check: str | None) -> None:
    """Check agentplan readiness."""
    checks = [check] if check else None
    report = get_health(config, checks=checks)
    click.echo(json.dumps(report.to_dict(), indent=2))
    sys.exit(0 if report.status == "healthy" else 1)


@cli.command()
@click.option("--once", is_flag=True, help="Single refresh/dispatch, then wait for agents")
@click.option("--no-assign", is_flag=True, help="Only sync issues, never start agents")
@click.pass_obj
def run(config: AgentPlanConfig, once: bool, no_assign: bool) -> None:
    """Sync issues and dispatch them to agents until interrupted."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    pool = AgentPool(
        size=config.pool_size,
        command=config.agent_command,
        sentinel=config.sentinel,
        cwd=str(config.project_root),
    )
    sync = _synchronizer(config, pool, tracer=tracer)
    pool.on_complete = _reporting(sync.handle_completion, "done")
    pool.on_failure = _reporting(sync.handle_failure, "error")

    console.print(
        f"[bold]Syncing[/bold] {config.github_repo or 'current repository'} "
        f"with {pool.size} agent slots"
    )
    try:
        asyncio.run(_run(sync, once=once, auto_assign=not no_assign))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")

    if sync.status not in ("ok", "idle"):
        console.print(f"[yellow]Issue tracker {sync.status}:[/yellow] {sync.last_error}")


def _reporting(
    handler: Callable[[str | None, AgentSlot], Awaitable[None]], outcome: str
) -> SlotCallback:
    """Wrap a synchronizer handler so slot transitions are printed first."""

    async def callback(external_ref: str | None, slot: AgentSlot) -> None:
        task = slot.task
        color = "green" if outcome == "done" else "red"
        issue_text = f" (issue #{external_ref})" if external_ref else ""
        console.print(
            f"Agent {slot.id}: task {task.id if task else '?'} "
            f"[bold {color}]{outcome.upper()}[/bold {color}]{issue_text}"
        )
        await handler(external_ref, slot)

    return callback


async def _run(sync: IssueSynchronizer, once: bool, auto_assign: bool) -> None:
    """Internal async implementation of the sync loop."""
    try:
        if once:
            await sync.reconcile()
            await sync.refresh_issues()
            if auto_assign:
                started = await sync.dispatch_available()
                console.print(f"Started {len(started)} agent(s)")
            await sync.pool.wait_idle()
        else:
            await sync.run(auto_assign=auto_assign)
    finally:
        await sync.pool.shutdown()


def main() -> None:
    """Main entry point for the agentplan CLI."""
    cli()


if __name__ == "__main__":
    main()
