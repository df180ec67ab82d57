"""Rich Formatting Utilities for Job Orchestrator CLI Output"""

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from orchestrator.core.sanitize import to_safe_text_snippet
from orchestrator.jobs.schemas import JobResponse, JobStatsResponse

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "running": "blue",
    "completed": "green",
    "failed": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def _status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_job_panel(job: JobResponse) -> Panel:
    """Create formatted panel for a single job"""
    lines = [
        f"• ID: [cyan]{job.id}[/cyan]",
        f"• Type: [magenta]{job.type}[/magenta]",
        f"• Status: {_status(job.status)}",
        f"• Owner: {job.owner_id}" + (f" / {job.project_ref}" if job.project_ref else ""),
        f"• Attempts: [yellow]{job.attempts}[/yellow]",
    ]
    if job.idempotency_key:
        lines.append(f"• Idempotency key: {job.idempotency_key}")
    if job.next_run_at_ms:
        lines.append(f"• Next run at (ms): {job.next_run_at_ms}")
    if job.locked_by:
        lines.append(f"• Locked by: {job.locked_by}")
    if job.chain_next_type:
        lines.append(f"• Chains to: {job.chain_next_type}")
    if job.depends_on_job_id:
        lines.append(f"• Depends on: {job.depends_on_job_id}")
    if job.result_summary:
        lines.append(f"• Summary: {_safe(job.result_summary)}")
    if job.error:
        lines.append(f"• Error: [red]{_safe(job.error)}[/red]")
    elif job.last_error:
        lines.append(f"• Last error: [yellow]{_safe(job.last_error)}[/yellow]")
    if job.result is not None:
        lines.append(f"\n[dim]{escape(_preview(job.result))}[/dim]")

    return Panel(
        "\n".join(lines),
        title=f"Job {str(job.id)[:8]}",
        border_style=STATUS_STYLES.get(job.status, "white"),
    )


def create_stats_table(stats: JobStatsResponse) -> Table:
    """Create formatted table for job statistics"""
    table = Table(title="Job Statistics", box=box.ROUNDED)

    table.add_column("Metric", justify="left", style="cyan")
    table.add_column("Value", justify="right", style="white")

    table.add_row("Total jobs", str(stats.total_jobs))
    table.add_row("Queue depth", str(stats.queue_depth))
    table.add_row("Failed (last hour)", str(stats.failed_last_hour))
    for status, count in sorted(stats.by_status.items()):
        table.add_row(f"Status: {_status(status)}", str(count))
    for job_type, count in sorted(stats.by_type.items()):
        table.add_row(f"Type: {job_type}", str(count))

    return table


def _preview(value: Any, max_length: int = 200) -> str:
    text = json.dumps(value, default=str)
    return text[:max_length] + "..." if len(text) > max_length else text


def _safe(text: str) -> str:
    return escape(to_safe_text_snippet(text))
