"""CLI commands for lessonpipe using Typer and Rich.

Implements all 6 CLI commands:
- create: Register a new lesson job for a YouTube video
- run: Run a pending job through the pipeline
- retry-render: Re-run only the final render of a completed job
- status: Show detailed job information
- list: List all jobs in a table
- fix-urls: Rewrite stale artifact locators in a job's timeline
"""

import asyncio
import logging
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lessonpipe import validate_dependencies
from lessonpipe.config import settings
from lessonpipe.db import async_session, init_database
from lessonpipe.db.job_store import JobNotFound, JobStore
from lessonpipe.orchestrator.pipeline import FatalStageFailure, build_orchestrator
from lessonpipe.orchestrator.state import JOB_STATUSES, VIDEO_GENERATION_STATUSES, InvalidTransition
from lessonpipe.services.artifact_store import ArtifactStore, source_key_for
from lessonpipe.services.url_rewriter import rewrite_stale_prefix

AUDIENCES = ("thai_college_students", "general")

app = typer.Typer(name="lessonpipe", help="Language-lesson videos generated from YouTube sources")
console = Console()


@app.callback()
def main():
    """Configure logging from settings before any command runs."""
    logging.basicConfig(level=settings.logging.level.upper(), format=settings.logging.format)


@app.command()
def create(
    youtube_url: str = typer.Argument(..., help="Source YouTube video URL"),
    title: str = typer.Option(..., "--title", "-t", help="Job title"),
    description: Optional[str] = typer.Option(None, "--description", help="Job description"),
    target_duration: int = typer.Option(
        settings.pipeline.default_segment_duration, "--target-duration", "-d",
        help="Target lesson length in seconds",
    ),
    audience: str = typer.Option("thai_college_students", "--audience", "-a", help="Target audience"),
    difficulty: Optional[str] = typer.Option(None, "--difficulty", help="beginner, intermediate or advanced"),
    vocabulary_highlights: bool = typer.Option(
        True, "--vocabulary-highlights/--no-vocabulary-highlights",
        help="Include dedicated vocabulary segments",
    ),
):
    """Create a new pending lesson job."""
    if audience not in AUDIENCES:
        console.print(f"[red]Error:[/red] Invalid audience: {audience}")
        console.print(f"Allowed: {', '.join(AUDIENCES)}")
        raise typer.Exit(code=1)

    preferences = {
        "target_segment_duration": target_duration,
        "target_audience": audience,
        "include_vocabulary_highlights": vocabulary_highlights,
    }
    if difficulty:
        preferences["difficulty_level"] = difficulty

    asyncio.run(_create_async(youtube_url, title, description, preferences))


async def _create_async(youtube_url: str, title: str, description: Optional[str], preferences: dict):
    """Async implementation of create command."""
    await init_database()
    job = await JobStore(async_session).create(
        youtube_url=youtube_url,
        title=title,
        description=description,
        preferences=preferences,
    )
    console.print(f"[green]Created job:[/green] {job.id}")
    console.print(f"Run it with: python -m lessonpipe run {job.id}")


@app.command()
def run(
    job_id: str = typer.Argument(..., help="Job UUID to run"),
    render: bool = typer.Option(True, "--render/--no-render", help="Render the final video after processing"),
):
    """Run a pending job: script, narration, images, timeline and render."""
    if render:
        # Fail-fast dependency validation
        try:
            validate_dependencies()
        except RuntimeError as e:
            console.print(f"[red]Error:[/red] {str(e)}")
            raise typer.Exit(code=1)

    asyncio.run(_run_async(_parse_uuid(job_id), render))


async def _run_async(job_uuid: uuid.UUID, render: bool):
    """Async implementation of run command."""
    await init_database()
    orchestrator = _build_orchestrator()

    try:
        with console.status("[bold green]Starting pipeline...") as status:
            def callback_wrapper(msg: str):
                status.update(f"[bold green]{msg}")

            job = await orchestrator.run(job_uuid, render=render, progress_callback=callback_wrapper)

    except JobNotFound:
        console.print(f"[red]Error:[/red] Job not found: {job_uuid}")
        raise typer.Exit(code=1)

    except InvalidTransition as e:
        console.print(f"[red]Error:[/red] Job cannot be started: status is '{e.current}'")
        raise typer.Exit(code=1)

    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Pipeline interrupted.[/yellow] Artifacts already written are reused by a new job for the same video.")
        raise typer.Exit(code=130)

    except FatalStageFailure as e:
        console.print()
        console.print(f"[red]✗ Job failed:[/red] {str(e)}")
        raise typer.Exit(code=1)

    except Exception as e:
        console.print()
        console.print(f"[red]✗ Pipeline failed:[/red] {str(e)}")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Job {job.id} {job.status}")
    _print_render_result(job)


@app.command(name="retry-render")
def retry_render(
    job_id: str = typer.Argument(..., help="Completed job UUID"),
):
    """Re-run only the render stage of a completed job."""
    # Fail-fast dependency validation
    try:
        validate_dependencies()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    asyncio.run(_retry_render_async(_parse_uuid(job_id)))


async def _retry_render_async(job_uuid: uuid.UUID):
    """Async implementation of retry-render command."""
    await init_database()
    orchestrator = _build_orchestrator()

    try:
        with console.status("[bold green]Rendering video..."):
            job = await orchestrator.retry_render(job_uuid)
    except JobNotFound:
        console.print(f"[red]Error:[/red] Job not found: {job_uuid}")
        raise typer.Exit(code=1)
    except InvalidTransition as e:
        console.print(f"[red]Error:[/red] Render cannot be retried: {e}")
        raise typer.Exit(code=1)

    _print_render_result(job)
    if job.video_generation_status == "failed":
        raise typer.Exit(code=1)


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job UUID"),
):
    """Show detailed job status and information."""
    asyncio.run(_status_async(_parse_uuid(job_id)))


async def _status_async(job_uuid: uuid.UUID):
    """Async implementation of status command."""
    await init_database()
    jobs = JobStore(async_session)

    try:
        job = await jobs.get(job_uuid)
    except JobNotFound:
        console.print(f"[red]Error:[/red] Job not found: {job_uuid}")
        raise typer.Exit(code=1)
    latest_run = await jobs.latest_run(job_uuid)

    status_color = _get_status_color(job.status)
    render_color = _get_status_color(job.video_generation_status)
    segments = job.output_segments or []

    info_lines = [
        f"[bold]ID:[/bold] {job.id}",
        f"[bold]Title:[/bold] {job.title}",
        f"[bold]Source:[/bold] {job.youtube_url}",
        f"[bold]Working directory:[/bold] {source_key_for(job.youtube_url, job.id)}",
        f"[bold]Status:[/bold] [{status_color}]{job.status}[/{status_color}] ({JOB_STATUSES.get(job.status, '')})",
        f"[bold]Video:[/bold] [{render_color}]{job.video_generation_status}[/{render_color}] "
        f"({VIDEO_GENERATION_STATUSES.get(job.video_generation_status, '')})",
        f"[bold]Segments:[/bold] {len(segments)} ({sum(s.get('duration', 0) for s in segments):.1f}s of audio)",
        f"[bold]Created:[/bold] {job.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"[bold]Updated:[/bold] {job.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    if job.processed_at:
        info_lines.append(f"[bold]Processed:[/bold] {job.processed_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if job.preferences:
        prefs = ", ".join(f"{k}={v}" for k, v in job.preferences.items())
        info_lines.append(f"[bold]Preferences:[/bold] {prefs}")
    output_path = (job.video_generation_data or {}).get("outputPath")
    if output_path:
        info_lines.append(f"[bold]Output:[/bold] [green]{output_path}[/green]")
    if job.error_message:
        info_lines.append(f"[bold]Error:[/bold] [red]{job.error_message}[/red]")

    if latest_run and latest_run.total_duration_seconds:
        duration = latest_run.total_duration_seconds
        if duration < 60:
            duration_str = f"{duration:.1f}s"
        else:
            mins = int(duration // 60)
            secs = duration % 60
            duration_str = f"{mins}m {secs:.1f}s"
        info_lines.append(
            f"[bold]Last Run:[/bold] {latest_run.kind}, {duration_str}, {latest_run.items_failed} items failed"
        )

    panel = Panel(
        "\n".join(info_lines),
        title="[bold]Job Status[/bold]",
        border_style="blue",
    )
    console.print(panel)


@app.command(name="list")
def list_jobs(
    status_filter: Optional[str] = typer.Option(None, "--status", "-s", help="Only jobs with this status"),
):
    """List all lesson jobs."""
    if status_filter and status_filter not in JOB_STATUSES:
        console.print(f"[red]Error:[/red] Invalid status: {status_filter}")
        console.print(f"Allowed: {', '.join(JOB_STATUSES)}")
        raise typer.Exit(code=1)
    asyncio.run(_list_async(status_filter))


async def _list_async(status_filter: Optional[str]):
    """Async implementation of list command."""
    await init_database()
    jobs = await JobStore(async_session).list_jobs(status_filter)

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Video")
    table.add_column("Created")

    for job in jobs:
        id_display = str(job.id)[:8] + "..."
        title_display = job.title if len(job.title) <= 50 else job.title[:47] + "..."
        status_color = _get_status_color(job.status)
        render_color = _get_status_color(job.video_generation_status)
        table.add_row(
            id_display,
            title_display,
            f"[{status_color}]{job.status}[/{status_color}]",
            f"[{render_color}]{job.video_generation_status}[/{render_color}]",
            job.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command(name="fix-urls")
def fix_urls(
    job_id: str = typer.Argument(..., help="Job UUID"),
    stale_prefix: str = typer.Argument(..., help="Locator prefix to replace"),
    new_prefix: str = typer.Argument(..., help="Replacement prefix"),
):
    """Rewrite stale audio/image locators in a job's synchronized timeline."""
    asyncio.run(_fix_urls_async(_parse_uuid(job_id), stale_prefix, new_prefix))


async def _fix_urls_async(job_uuid: uuid.UUID, stale_prefix: str, new_prefix: str):
    """Async implementation of fix-urls command."""
    await init_database()
    try:
        job = await JobStore(async_session).get(job_uuid)
    except JobNotFound:
        console.print(f"[red]Error:[/red] Job not found: {job_uuid}")
        raise typer.Exit(code=1)

    store = ArtifactStore(settings.storage.videos_dir, settings.storage.public_base_url)
    source_key = source_key_for(job.youtube_url, job.id)
    try:
        count = rewrite_stale_prefix(store, source_key, stale_prefix, new_prefix)
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] No synchronized timeline for job {job_uuid} yet")
        raise typer.Exit(code=1)

    if count:
        console.print(f"[green]✓[/green] Rewrote {count} locators")
    else:
        console.print("[yellow]Nothing to rewrite[/yellow]")


def _build_orchestrator():
    try:
        return build_orchestrator(settings, async_session)
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)


def _parse_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid job UUID: {value}")
        raise typer.Exit(code=1)


def _print_render_result(job):
    data = job.video_generation_data or {}
    if job.video_generation_status == "completed":
        console.print(f"[green]Output:[/green] {data.get('outputPath')}")
    elif job.video_generation_status == "failed":
        console.print(f"[red]✗ Render failed:[/red] {data.get('error') or job.error_message}")
        console.print(f"[yellow]You can retry with:[/yellow] python -m lessonpipe retry-render {job.id}")


def _get_status_color(status: str) -> str:
    """Get Rich color for a job or render status.

    Color coding:
    - completed: green
    - failed: red
    - processing/generating: yellow
    - pending/not_started: dim
    """
    if status == "completed":
        return "green"
    elif status == "failed":
        return "red"
    elif status in ("processing", "generating"):
        return "yellow"
    elif status in ("pending", "not_started"):
        return "dim"
    else:
        return "white"
