"""Worker Commands - Run the poll loop and maintenance passes"""

import asyncio
import signal

import typer
from rich.console import Console

from orchestrator.config.logging import setup_logging
from orchestrator.config.settings import get_settings
from orchestrator.infra.database import Database
from orchestrator.jobs.reaper import StuckJobReaper
from orchestrator.jobs.store import JobStore
from orchestrator.jobs.worker import build_worker

from ..utils.db import run_with_database
from ..utils.formatting import print_info, print_success

console = Console()
app = typer.Typer(name="worker", help="Job worker commands")


@app.command("run")
def run(
    once: bool = typer.Option(
        False, "--once", help="Exit after the first tick that finds no work"
    ),
):
    """🚀 Run the job worker poll loop"""
    settings = get_settings()
    setup_logging(settings)
    if once:
        settings = settings.model_copy(update={"run_once": True})

    async def main(database: Database) -> None:
        worker = build_worker(settings, database)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, worker.stop)
            except NotImplementedError:
                # Signal handlers are unavailable on this platform
                pass
        await worker.run()

    run_with_database(main)


@app.command("tick")
def tick():
    """⏱ Run a single poll tick"""
    settings = get_settings()

    async def main(database: Database) -> int:
        return await build_worker(settings, database).tick()

    executed = run_with_database(main)
    print_success(f"Tick complete: {executed} job(s) executed")


@app.command("reap")
def reap():
    """🧹 Reset jobs stuck in RUNNING past the timeout"""
    settings = get_settings()

    async def main(database: Database):
        reaper = StuckJobReaper(JobStore(database.SessionLocal), settings)
        return await reaper.reap()

    reset_ids = run_with_database(main)
    if not reset_ids:
        print_info("No stuck jobs found")
        return
    print_success(f"Reset {len(reset_ids)} stuck job(s)")
    for job_id in reset_ids:
        console.print(f"  • [cyan]{job_id}[/cyan]")
