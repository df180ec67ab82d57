"""Job Orchestrator CLI - Main Entry Point"""

from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

# Import command modules
from .commands import jobs, worker
from .utils.db import run_with_database
from .utils.formatting import print_success

console = Console()

# Create main Typer app
app = typer.Typer(
    name="orchestrator",
    help="⚙️ Job Orchestrator - durable background job CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(worker.app, name="worker")


@app.command("init-db")
def init_db():
    """🗄 Create the jobs and usage tables"""

    async def create(database):
        await database.create_all()

    run_with_database(create)
    print_success("Database tables created")


@app.command()
def version():
    """📎 Show version information"""
    from . import __version__

    console.print(Panel(
        f"⚙️ [bold cyan]Job Orchestrator[/bold cyan]\n\n"
        f"• Version: [green]{__version__}[/green]",
        title="Version Info",
        border_style="cyan"
    ))


@app.callback()
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    ⚙️ Job Orchestrator CLI

    Enqueue and inspect jobs, and run workers against the job store.
    """
    if version:
        from . import __version__
        console.print(f"Job Orchestrator CLI v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
