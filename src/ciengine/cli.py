# cli.py
from __future__ import annotations

import asyncio
import json
import subprocess
import sys
from dataclasses import replace
from typing import List

import click

from ciengine.client import APIClient, APIError
from ciengine.dsl import load_workflow
from ciengine.errors import CIError
from ciengine.git_facts.git import current_branch, head_sha, remote_url
from ciengine.model import JOB_STATUSES, Job
from ciengine.services import build_services
from ciengine.settings import Settings, get_settings
from ciengine.ui.console import Console, get_console, set_console

DEFAULT_API = "http://localhost:8000"


def _fail(exc: BaseException) -> None:
    get_console().print_exception(exc)
    sys.exit(1)


def _fill_from_git(jobs: List[Job], repo: str | None, commit: str | None, branch: str | None) -> List[Job]:
    """Fill repo/commit/branch left empty in the workflow from options or the local checkout."""
    console = get_console()
    out = []
    for j in jobs:
        j_repo = j.repo or repo
        j_commit = j.commit or commit
        j_branch = j.branch or branch
        try:
            if not j_repo:
                j_repo = repo = remote_url("origin")
                console.print_debug(f"Using repository URL from git remote: {j_repo}")
            if not j_commit:
                j_commit = commit = head_sha()
                console.print_debug(f"Using commit: {j_commit}")
            if j_branch is None:
                j_branch = branch = current_branch()
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            console.print_error(
                "Could not read git facts",
                f"Job {j.id!r} has no repo/commit and git could not provide them.",
                details=[str(e)],
                suggestion="Specify them explicitly:\n  ciengine submit <file> --repo <url> --commit <sha>",
            )
            sys.exit(1)
        out.append(replace(j, repo=j_repo, commit=j_commit, branch=j_branch or ""))
    return out


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--api", default=DEFAULT_API, show_default=True, envvar="CIENGINE_API", help="Control plane base URL")
@click.pass_context
def cli(ctx, debug, api):
    """ciengine: prioritized CI job queue, runner and dependency cache."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["client"] = APIClient(api)


# -------------------- Jobs --------------------

@cli.command()
@click.argument("workflow", type=click.Path(exists=True, dir_okay=False))
@click.option("--repo", default=None, help="Repository URL (defaults to git remote origin URL)")
@click.option("--commit", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--branch", default=None, help="Branch name (defaults to current branch)")
@click.option("--priority", default=None, type=click.IntRange(0, 10), help="Override priority for every job")
@click.pass_context
def submit(ctx, workflow, repo, commit, branch, priority):
    """Submit the jobs defined in WORKFLOW (.py or .json)."""
    console = get_console()
    try:
        jobs = load_workflow(workflow)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow}",
            details=[str(e)],
        )
        sys.exit(1)

    jobs = _fill_from_git(jobs, repo, commit, branch)
    if priority is not None:
        jobs = [j.with_priority(priority) for j in jobs]

    client: APIClient = ctx.obj["client"]
    try:
        for j in jobs:
            j.validate()
            job_id = client.submit_job(j)
            console.print_info(f"Submitted {job_id} ({j.repo}@{j.commit[:12]})")
    except (APIError, CIError) as e:
        _fail(e)


@cli.command()
@click.argument("job_id")
@click.pass_context
def status(ctx, job_id):
    """Show one job's status."""
    try:
        record = ctx.obj["client"].get_job_status(job_id)
    except APIError as e:
        _fail(e)
    if record is None:
        get_console().print_error("Job not found", f"No job with id {job_id!r}")
        sys.exit(1)
    get_console().print_status(record)


@cli.command()
@click.option("--status", "status_filter", default=None, type=click.Choice(JOB_STATUSES), help="Only jobs in this status")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print raw JSON")
@click.pass_context
def jobs(ctx, status_filter, as_json):
    """List jobs."""
    try:
        records = ctx.obj["client"].list_jobs(status_filter)
    except APIError as e:
        _fail(e)
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
    else:
        get_console().print_job_table(records)


@cli.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx, job_id):
    """Cancel a queued or running job."""
    try:
        ok = ctx.obj["client"].cancel_job(job_id)
    except APIError as e:
        _fail(e)
    if not ok:
        get_console().print_error("Not cancelled", f"Job {job_id!r} is unknown or already finished")
        sys.exit(1)
    get_console().print_info(f"Cancelled {job_id}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def retry(ctx, job_id):
    """Re-enqueue a failed job."""
    try:
        ok = ctx.obj["client"].retry_job(job_id)
    except APIError as e:
        _fail(e)
    if not ok:
        get_console().print_error(
            "Not retried",
            f"Job {job_id!r} is not a failed job, has no stored definition, or is out of retries",
        )
        sys.exit(1)
    get_console().print_info(f"Retrying {job_id}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def logs(ctx, job_id):
    """Follow a job's step output until it finishes."""
    try:
        for chunk in ctx.obj["client"].stream_logs(job_id):
            click.echo(chunk)
    except APIError as e:
        _fail(e)
    except KeyboardInterrupt:
        get_console().print_info("\nInterrupted by user")
        sys.exit(130)


@cli.command()
@click.pass_context
def caches(ctx):
    """Show dependency cache statistics."""
    try:
        stats = ctx.obj["client"].cache_stats()
    except APIError as e:
        _fail(e)
    console = get_console()
    console.print_header("CACHES")
    console.print_info(f"Total: {stats.get('total_caches', 0)} ({stats.get('total_size', 0)} bytes)")
    for c in stats.get("caches", []):
        console.print_info(f"  {c['key']}  {c.get('size') or 0} bytes  [{', '.join(c.get('paths', []))}]")


# -------------------- Local processes --------------------

def _require_shared_store(settings: Settings) -> None:
    # worker/maintenance only see jobs written by other processes through a shared store
    if settings.metadata_backend == "memory":
        get_console().print_error(
            "No shared metadata store",
            "The memory backend is private to this process, so there are no jobs to work on.",
            suggestion="Set CIENGINE_METADATA_BACKEND=redis and CIENGINE_REDIS_URL.",
        )
        sys.exit(1)


@cli.command()
@click.option("--max-concurrent", default=None, type=int, help="Override CIENGINE_MAX_CONCURRENT")
@click.option("--poll-interval", default=None, type=float, help="Seconds between queue polls")
@click.option("--work-dir", default=".ciengine/work", show_default=True, help="Root for per-job sandboxes")
@click.pass_context
def worker(ctx, max_concurrent, poll_interval, work_dir):
    """Run the scheduler loop with local sandboxes."""
    from ciengine.services import LOCAL_WORKSPACE_DIR, local_sandbox_factory

    overrides = {}
    if max_concurrent is not None:
        overrides["max_concurrent"] = max_concurrent
    if poll_interval is not None:
        overrides["poll_interval"] = poll_interval
    settings = get_settings().with_overrides(**overrides)
    _require_shared_store(settings)

    services = build_services(
        settings,
        sandbox_factory=local_sandbox_factory(work_dir),
        workspace_dir=LOCAL_WORKSPACE_DIR,
    )
    try:
        asyncio.run(services.scheduler.run(handle_signals=True))
    except KeyboardInterrupt:
        get_console().print_info("\nWorker stopped by user")
    except Exception as e:
        _fail(e)


@cli.command()
@click.pass_context
def maintenance(ctx):
    """Prune old snapshots, caches and finished jobs once."""
    settings = get_settings()
    _require_shared_store(settings)
    services = build_services(settings)
    try:
        asyncio.run(services.scheduler.run_maintenance())
    except Exception as e:
        _fail(e)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
def serve(host, port):
    """Run the control plane API (needs uvicorn)."""
    try:
        import uvicorn
    except ImportError:
        get_console().print_error(
            "uvicorn not installed",
            "The API server needs uvicorn.",
            suggestion="pip install 'ciengine[server]'",
        )
        sys.exit(1)
    from ciengine.api.main import create_app

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    cli()
