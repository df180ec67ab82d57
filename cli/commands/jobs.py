"""Job Commands - Enqueue, inspect and requeue jobs"""

import json
from typing import Optional
from uuid import UUID

import typer
from pydantic import ValidationError
from rich.console import Console

from orchestrator.infra.database import Database
from orchestrator.jobs.schemas import JobCreate, JobResponse
from orchestrator.jobs.store import JobStore

from ..utils.db import run_with_database
from ..utils.formatting import (
    create_job_panel,
    create_stats_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="jobs", help="Job queue commands")


def _parse_job_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        print_error(f"Invalid job ID: {value}")
        raise typer.Exit(1)


@app.command("enqueue")
def enqueue(
    job_type: str = typer.Argument(..., help="Job type, e.g. echo"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owning user ID"),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project reference"),
    payload: str = typer.Option("{}", "--payload", help="Job payload as JSON"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Idempotency key"),
    chain_next: Optional[str] = typer.Option(
        None, "--chain-next", help="Job type to enqueue after success"
    ),
):
    """➕ Enqueue a new job"""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Invalid payload JSON: {e}")
        raise typer.Exit(1)
    if not isinstance(data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)

    try:
        job_create = JobCreate(
            type=job_type,
            owner_id=owner,
            project_ref=project,
            payload=data,
            idempotency_key=key,
            chain_next_type=chain_next,
        )
    except ValidationError as e:
        print_error(f"Invalid job: {e}")
        raise typer.Exit(1)

    async def create(database: Database):
        job, created = await JobStore(database.SessionLocal).create_job(job_create)
        return JobResponse.model_validate(job), created

    job, created = run_with_database(create)
    if created:
        print_success(f"Job enqueued: {job.id}")
    else:
        print_warning(f"Job already exists for key '{key}': {job.id}")
    console.print(create_job_panel(job))


@app.command("show")
def show(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show a job"""
    parsed = _parse_job_id(job_id)

    async def fetch(database: Database):
        job = await JobStore(database.SessionLocal).get_job(parsed)
        return JobResponse.model_validate(job) if job else None

    job = run_with_database(fetch)
    if job is None:
        print_error(f"Job not found: {job_id}")
        raise typer.Exit(1)
    console.print(create_job_panel(job))


@app.command("stats")
def stats():
    """📊 Show queue statistics"""

    async def fetch(database: Database):
        return await JobStore(database.SessionLocal).get_stats()

    console.print(create_stats_table(run_with_database(fetch)))


@app.command("requeue")
def requeue(
    job_id: str = typer.Argument(..., help="Job ID of a FAILED job"),
    reset_attempts: bool = typer.Option(
        False, "--reset-attempts", help="Reset the attempt counter"
    ),
):
    """🔁 Return a failed job to the queue"""
    parsed = _parse_job_id(job_id)

    async def run(database: Database) -> bool:
        return await JobStore(database.SessionLocal).requeue_failed(
            parsed, reset_attempts=reset_attempts
        )

    if not run_with_database(run):
        print_error(f"Job {job_id} is not FAILED or does not exist")
        raise typer.Exit(1)
    print_success(f"Job requeued: {job_id}")
    if reset_attempts:
        print_info("Attempt counter reset")
