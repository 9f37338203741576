"""Display helpers and formatters for the CLI."""
from __future__ import annotations

from typing import Optional, Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text

from storyloop.models import Phase, Task, TaskStatus
from storyloop.orchestrator import LoopOutcome, LoopResult, PipelineResult, ProjectStatus
from storyloop.records import ExecutionRecord

PHASE_DISPLAY: dict[Phase, tuple[str, str]] = {
    Phase.TASK_CREATION: ("Task Creation", "cyan"),
    Phase.REVIEW_ANALYSIS: ("Review Analysis", "yellow"),
    Phase.TEST_ANALYSIS: ("Test Analysis", "yellow"),
    Phase.EPIC_TESTING: ("Epic Testing", "blue"),
    Phase.INTEGRATION_TESTING: ("Integration Testing", "blue bold"),
    Phase.COMPLETED: ("Completed", "green bold"),
}

STATUS_DISPLAY: dict[TaskStatus, tuple[str, str]] = {
    TaskStatus.PENDING: ("Pending", "dim"),
    TaskStatus.DEVELOPING: ("Developing", "cyan"),
    TaskStatus.REVIEWING: ("Reviewing", "cyan bold"),
    TaskStatus.TESTING: ("Testing", "blue"),
    TaskStatus.COMPLETED: ("Completed", "green"),
    TaskStatus.FAILED: ("Failed", "red bold"),
}

OUTCOME_STYLE: dict[LoopOutcome, str] = {
    LoopOutcome.COMPLETED: "green bold",
    LoopOutcome.PAUSED: "yellow",
    LoopOutcome.BLOCKED: "red bold",
    LoopOutcome.ITERATION_LIMIT: "yellow bold",
}

RECORD_STYLE = {"completed": "green", "failed": "red", "running": "cyan"}


def format_phase(phase: Optional[Phase]) -> Text:
    if phase is None:
        return Text("Not decomposed", style="dim")
    display_name, style = PHASE_DISPLAY.get(phase, (phase.value, "white"))
    return Text(display_name, style=style)


def format_status(status: TaskStatus) -> Text:
    display_name, style = STATUS_DISPLAY.get(status, (status.value, "white"))
    return Text(display_name, style=style)


def tasks_table(tasks: Sequence[Task]) -> Table:
    table = Table(title="Tasks", show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", no_wrap=False)
    table.add_column("Story", justify="center", style="dim")
    table.add_column("Priority", justify="center")
    table.add_column("Status", no_wrap=True)
    for task in tasks:
        table.add_row(
            task.id,
            task.title,
            f"{task.epic_ordinal}.{task.story_ordinal}",
            task.priority.value,
            format_status(task.status),
        )
    return table


def show_status(console: Console, status: ProjectStatus) -> None:
    console.print(f"[bold]{status.project_id}[/bold]  phase: ", format_phase(status.phase))
    flags = []
    if status.active:
        flags.append("[cyan]development active[/cyan]")
    if status.paused:
        flags.append("[yellow]paused[/yellow]")
    if not status.has_requirements:
        flags.append("[dim]no requirements[/dim]")
    if flags:
        console.print("  ".join(flags))
    summary = status.summary
    console.print(
        f"Tasks: {summary.completed_tasks}/{summary.total_tasks} completed, "
        f"{summary.failed_tasks} failed  ({status.record_count} records)"
    )
    if status.tasks:
        console.print()
        console.print(tasks_table(status.tasks))


def history_table(records: Sequence[ExecutionRecord]) -> Table:
    table = Table(title="Execution history", show_header=True, header_style="bold")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Role", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Started", style="dim")
    table.add_column("Detail")
    for record in records:
        detail = ""
        if record.error:
            detail = str(record.error.get("message", ""))[:80]
        elif record.output is not None:
            phase = getattr(record.output, "current_phase", None)
            if phase is not None:
                detail = phase.value
        table.add_row(
            str(record.sequence),
            record.role_id.value,
            Text(record.status.value, style=RECORD_STYLE.get(record.status.value, "white")),
            record.started_at[:19],
            detail,
        )
    return table


def show_loop_result(console: Console, result: LoopResult) -> None:
    style = OUTCOME_STYLE.get(result.outcome, "white")
    console.print(
        f"Development loop [{style}]{result.outcome.value}[/{style}] "
        f"after {result.iterations} iterations"
    )
    summary = result.summary
    console.print(
        f"Tasks: {summary.completed_tasks}/{summary.total_tasks} completed, "
        f"{summary.failed_tasks} failed"
    )
    if result.message:
        console.print(f"[dim]{result.message}[/dim]")


def show_pipeline_result(console: Console, result: PipelineResult) -> None:
    if result.loop is not None:
        show_loop_result(console, result.loop)
    if result.steps_run:
        console.print(f"Steps run: {', '.join(result.steps_run)}")
    if result.steps_skipped:
        console.print(f"[dim]Steps skipped: {', '.join(result.steps_skipped)}[/dim]")
    style = "green bold" if result.status == "completed" else "yellow bold"
    console.print(f"Pipeline [{style}]{result.status}[/{style}]")
