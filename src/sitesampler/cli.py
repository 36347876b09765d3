"""Command line interface.

Typer CLI with Rich output for running the background processor, processing
or inspecting single jobs, queueing jobs locally, and validating config files.
"""

# ruff: noqa: B008

import asyncio
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from sitesampler import __version__
from sitesampler.backends import create_store
from sitesampler.config import SiteSamplerConfig, load_config
from sitesampler.exceptions import ConfigError, SiteSamplerError
from sitesampler.models import Job, JobStatusView
from sitesampler.service import build_service, run_service
from sitesampler.urls import is_http_url
from sitesampler.utils import setup_logging

console = Console()

app = typer.Typer(
    name="sitesampler",
    help="sitesampler - sampled website crawling pipeline",
    add_completion=False,
)

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to YAML config file",
    exists=True,
    file_okay=True,
    dir_okay=False,
    resolve_path=True,
)
STORE_OPTION = typer.Option(
    None,
    "--store",
    "-s",
    help="Override job store path (.json or .db)",
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Verbose logging")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sitesampler version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """sitesampler - sampled website crawling pipeline."""
    pass


def _load(config_path: Path | None, store: Path | None) -> SiteSamplerConfig:
    config = load_config(config_path)
    if store is not None:
        config.store.path = str(store)
    return config


def _fail(message: str, error: BaseException, verbose: bool) -> NoReturn:
    console.print(f"[red]{message}:[/red] {error}")
    if verbose:
        console.print_exception()
    raise typer.Exit(code=1) from None


@app.command()
def run(
    config: Path | None = CONFIG_OPTION,
    store: Path | None = STORE_OPTION,
    once: bool = typer.Option(False, "--once", help="Run a single scan and exit"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run the background processor for verified jobs.

    Scans the store every crawl.scan_interval seconds until interrupted.
    Use --once to process the currently verified jobs and exit.
    """
    try:
        settings = _load(config, store)
        setup_logging(verbose=verbose)
        console.print(f"[cyan]Job store:[/cyan] {settings.store.path}")

        attempted = asyncio.run(run_service(settings, once=once))

        if once:
            console.print(f"[green]Scan finished:[/green] {attempted} job(s) processed")
        else:
            console.print("[green]Processor stopped[/green]")

    except ConfigError as e:
        _fail("Configuration error", e, verbose)

    except SiteSamplerError as e:
        _fail("Processor failed", e, verbose)

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        raise typer.Exit(code=130) from None


@app.command()
def process(
    job_id: str = typer.Argument(..., help="Id of a verified job"),
    config: Path | None = CONFIG_OPTION,
    store: Path | None = STORE_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run the pipeline for a single job in the foreground."""

    async def _process(settings: SiteSamplerConfig) -> Job:
        async with build_service(settings) as service:
            return await service.orchestrator.process_job(job_id)

    try:
        settings = _load(config, store)
        setup_logging(verbose=verbose)

        job = asyncio.run(_process(settings))
        console.print(f"[green]Job {job.id} {job.status}[/green]")
        if job.crawl_stats is not None:
            console.print(
                f"[cyan]Pages:[/cyan] {job.crawl_stats.successful_pages}/"
                f"{job.crawl_stats.total_pages} crawled, {job.crawl_stats.failed_pages} failed"
            )

    except ConfigError as e:
        _fail("Configuration error", e, verbose)

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        raise typer.Exit(code=130) from None

    except Exception as e:
        _fail(f"Job {job_id} failed", e, verbose)


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job id"),
    config: Path | None = CONFIG_OPTION,
    store: Path | None = STORE_OPTION,
) -> None:
    """Show the status of a job."""

    async def _status(settings: SiteSamplerConfig) -> JobStatusView | None:
        job_store = create_store(Path(settings.store.path), settings.store.backend)
        await job_store.initialize()
        try:
            job = await job_store.get_job(job_id)
        finally:
            await job_store.close()
        return JobStatusView.from_job(job) if job is not None else None

    try:
        view = asyncio.run(_status(_load(config, store)))
    except SiteSamplerError as e:
        _fail("Error", e, False)

    if view is None:
        console.print(f"[red]Job not found:[/red] {job_id}")
        raise typer.Exit(code=1)

    table = Table(title=f"Job {view.id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("URL", view.url)
    table.add_row("Email", view.email)
    table.add_row("Status", str(view.status))
    table.add_row("Verified", "Yes" if view.verified else "No")
    table.add_row("Cancelled", "Yes" if view.cancelled else "No")
    if view.failed_step:
        table.add_row("Failed step", view.failed_step)
        table.add_row("Error", view.error or "[dim]none[/dim]")
    if view.crawl_stats is not None:
        stats = view.crawl_stats
        table.add_row("Pages", f"{stats.successful_pages}/{stats.total_pages} crawled")
        table.add_row(
            "AI webhook",
            f"{stats.ai_webhook_succeeded} ok, {stats.ai_webhook_failed} failed, "
            f"{stats.ai_webhook_skipped} skipped",
        )
    table.add_row("Created", view.created_at)
    table.add_row("Updated", view.updated_at)

    console.print(table)


@app.command()
def enqueue(
    url: str = typer.Argument(..., help="Site URL to crawl"),
    email: str = typer.Option(..., "--email", "-e", help="Contact email for the job"),
    config: Path | None = CONFIG_OPTION,
    store: Path | None = STORE_OPTION,
) -> None:
    """Add an already verified job to the store (local runs)."""
    if not is_http_url(url):
        console.print(f"[red]Error:[/red] Not an http(s) URL: {url}")
        raise typer.Exit(code=1)

    async def _enqueue(settings: SiteSamplerConfig) -> Job:
        job_store = create_store(Path(settings.store.path), settings.store.backend)
        await job_store.initialize()
        try:
            return await job_store.create_job(Job.create(url, email, verified=True))
        finally:
            await job_store.close()

    try:
        job = asyncio.run(_enqueue(_load(config, store)))
    except SiteSamplerError as e:
        _fail("Error", e, False)

    console.print(f"[green]Queued job[/green] {job.id} [dim]({job.url})[/dim]")


@app.command()
def validate(
    config_path: Path = typer.Argument(
        ...,
        help="Path to YAML config file to validate",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """Validate a sitesampler configuration file.

    Checks YAML syntax and validates all fields against the schema,
    including environment overrides.
    """
    try:
        console.print(f"[cyan]Validating configuration:[/cyan] {config_path}")

        settings = load_config(config_path)

        console.print("[green][OK] Configuration is valid![/green]\n")

        table = Table(title="Configuration Summary")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("Browser endpoint", settings.browser.endpoint)
        table.add_row("Browser token", "set" if settings.browser.token else "[dim]none[/dim]")
        table.add_row("Page webhook", settings.webhooks.page_url or "[dim]not configured[/dim]")
        table.add_row(
            "Completion webhook", settings.webhooks.completion_url or "[dim]not configured[/dim]"
        )
        table.add_row("First-level limit", str(settings.sampling.first_level_limit))
        table.add_row("Per-category cap", str(settings.sampling.max_per_category))
        table.add_row("Batch size", str(settings.crawl.batch_size))
        table.add_row("Scan interval", f"{settings.crawl.scan_interval:g}s")
        table.add_row("Job store", settings.store.path)

        console.print(table)

    except ConfigError as e:
        console.print("[red][FAIL] Configuration validation failed:[/red]\n")
        console.print(str(e))
        raise typer.Exit(code=1) from None
