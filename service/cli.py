"""CLI interface for the secure execution service."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from tqdm import tqdm

from execution_core.errors import ExecutionCoreError, JobNotFoundError
from execution_core.schemas import JobStatus
from review.providers import create_reviewer
from sandbox.executor import SecureExecutor
from sandbox.policy import header_env_vars
from service.config import ServiceConfig, load_config
from service.scheduler import JobScheduler

app = typer.Typer(help="Secure two-phase execution CLI")


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to service YAML config"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level (default from config)"),
) -> None:
    """Run requests directly or manage queued jobs."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config


def _build_executor(config: ServiceConfig) -> SecureExecutor:
    return SecureExecutor(settings=config.executor, reviewer=create_reviewer(config.reviewer))


def _build_scheduler(config: ServiceConfig) -> JobScheduler:
    scheduler = JobScheduler(executor=_build_executor(config), settings=config.scheduler)
    scheduler.load()
    return scheduler


def _read_request(request_path: str) -> dict[str, Any]:
    path = Path(request_path)
    if not path.exists():
        typer.secho(f"❌ Request file not found: {request_path}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        typer.secho(f"❌ Request is not valid JSON: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if not isinstance(data, dict):
        typer.secho("❌ Request must be a JSON object", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return data


def _parse_headers(headers: list[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for header in headers:
        name, sep, value = header.partition("=")
        if not sep:
            typer.secho(f"❌ Header must be NAME=VALUE: {name}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        parsed[name.strip()] = value
    return header_env_vars(parsed)


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


async def _wait_with_progress(scheduler: JobScheduler, job_ids: list[str]) -> None:
    pbar = tqdm(total=len(job_ids), desc="⚙️  Jobs", unit="job", ncols=100)

    async def _one(job_id: str) -> None:
        job = await scheduler.wait(job_id)
        pbar.update(1)
        pbar.set_postfix({"last": job.status.value})
        if job.status != JobStatus.COMPLETED:
            tqdm.write(f"  ⚠️  {job_id}: {job.status.value}")

    await scheduler.start()
    try:
        await asyncio.gather(*(_one(job_id) for job_id in job_ids))
    finally:
        pbar.close()
        await scheduler.shutdown()


@app.command()
def execute(
    ctx: typer.Context,
    request_path: str = typer.Argument(..., help="Path to a JSON request body"),
    header: list[str] = typer.Option([], "--header", "-H", help="Credential header NAME=VALUE"),
) -> None:
    """Run one request immediately and print its outcome."""
    config: ServiceConfig = ctx.obj
    request = _read_request(request_path)
    executor = _build_executor(config)
    try:
        outcome = asyncio.run(executor.execute(request, _parse_headers(header)))
    except ExecutionCoreError as e:
        typer.secho(f"❌ {e.kind.value}: {e.message}", fg=typer.colors.RED, err=True)
        if e.stderr:
            typer.echo(e.stderr, err=True)
        raise typer.Exit(1)

    _echo_json(outcome.model_dump(mode="json"))
    if not outcome.success:
        raise typer.Exit(1)


@app.command()
def submit(
    ctx: typer.Context,
    request_path: str = typer.Argument(..., help="Path to a JSON request body"),
    wait: bool = typer.Option(False, "--wait", help="Run the job now and wait for it"),
    header: list[str] = typer.Option([], "--header", "-H", help="Credential header NAME=VALUE"),
) -> None:
    """Queue a request as a job."""
    config: ServiceConfig = ctx.obj
    request = _read_request(request_path)
    header_env = _parse_headers(header)
    if header_env and not wait:
        typer.secho(
            "⚠️  Header credentials are kept in memory only and will not reach a later drain",
            fg=typer.colors.YELLOW,
            err=True,
        )
    scheduler = _build_scheduler(config)
    try:
        job_id = scheduler.submit(request, header_env=header_env)
    except ExecutionCoreError as e:
        typer.secho(f"❌ {e.kind.value}: {e.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    _echo_json(scheduler.submission_receipt(job_id))
    if not wait:
        return
    asyncio.run(_wait_with_progress(scheduler, [job_id]))
    job = scheduler.get(job_id)
    _echo_json(job.to_response())
    if job.status != JobStatus.COMPLETED:
        raise typer.Exit(1)


@app.command()
def drain(ctx: typer.Context) -> None:
    """Run every pending job in the store until none is left."""
    config: ServiceConfig = ctx.obj
    scheduler = _build_scheduler(config)
    pending = [job.id for job in scheduler.list(status=JobStatus.PENDING, limit=10**9).jobs]
    if not pending:
        typer.secho("No pending jobs.", fg=typer.colors.YELLOW)
        return
    typer.secho(f"\n📋 Running {len(pending)} pending job(s)\n", fg=typer.colors.BLUE)
    asyncio.run(_wait_with_progress(scheduler, pending))
    stats = scheduler.stats()
    typer.secho(
        f"\n✅ Done: {stats.completed} completed, {stats.failed} failed, {stats.cancelled} cancelled",
        fg=typer.colors.GREEN,
    )


@app.command("list")
def list_jobs(
    ctx: typer.Context,
    status: Optional[JobStatus] = typer.Option(None, help="Only jobs in this status"),
    limit: int = typer.Option(20, help="Page size"),
    offset: int = typer.Option(0, help="Page offset"),
) -> None:
    """List jobs, newest first."""
    scheduler = _build_scheduler(ctx.obj)
    page = scheduler.list(status=status, limit=limit, offset=offset)
    if not page.jobs:
        typer.secho("No jobs found.", fg=typer.colors.YELLOW)
        return
    typer.secho(f"\n📁 {page.total} job(s):\n", fg=typer.colors.BLUE)
    for job in page.jobs:
        typer.echo(
            f"  {job.id}  {job.status.value:<9}  {job.progress:>3}%  {job.created_at.isoformat()}"
        )
    if page.has_more:
        typer.echo(f"\n  ... more available (use --offset {offset + limit})")


@app.command()
def show(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job ID")) -> None:
    """Show one job."""
    scheduler = _build_scheduler(ctx.obj)
    try:
        _echo_json(scheduler.get(job_id).to_response())
    except JobNotFoundError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


@app.command()
def stats(ctx: typer.Context) -> None:
    """Job counts per status."""
    _echo_json(_build_scheduler(ctx.obj).stats().to_response())


@app.command()
def cancel(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job ID")) -> None:
    """Cancel a pending job."""
    scheduler = _build_scheduler(ctx.obj)
    try:
        job = scheduler.cancel(job_id)
    except JobNotFoundError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.secho(f"✅ {job.id}: {job.status.value}", fg=typer.colors.GREEN)


@app.command()
def delete(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job ID")) -> None:
    """Delete a job and its stored record."""
    scheduler = _build_scheduler(ctx.obj)
    try:
        scheduler.delete(job_id)
    except JobNotFoundError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.secho(f"✅ Deleted {job_id}", fg=typer.colors.GREEN)


@app.command()
def info(ctx: typer.Context) -> None:
    """Show the active security configuration."""
    _echo_json(_build_executor(ctx.obj).info())


if __name__ == "__main__":
    app()
