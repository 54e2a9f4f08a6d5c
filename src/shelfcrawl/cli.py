"""Command-line interface for shelfcrawl."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from shelfcrawl import __version__
from shelfcrawl.checkpoint import CheckpointRecord, JobType
from shelfcrawl.config import Config, find_config_file
from shelfcrawl.container import DEFAULT_COLLABORATORS, DependencyContainer, load_collaborator_factory
from shelfcrawl.exceptions import CheckpointNotFound, ShelfCrawlError
from shelfcrawl.observability import MetricsManager, configure_logging
from shelfcrawl.orchestrator import JobResult, JobSpec
from shelfcrawl.protocols import ProcessingStatus

console = Console()
logger = structlog.get_logger(__name__)


def _load_config(ctx: click.Context) -> Config:
    """Load the configuration selected on the command line and set up logging."""
    config_path: Optional[Path] = ctx.obj.get("config_path") or find_config_file()
    try:
        config = Config.from_yaml(config_path) if config_path else Config()
    except (ValidationError, OSError, ValueError) as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        sys.exit(1)
    if ctx.obj.get("log_level"):
        config.monitoring.log_level = ctx.obj["log_level"]
    configure_logging(config.monitoring)
    ctx.obj["config_path"] = config_path
    return config


def _record_summary(record: CheckpointRecord) -> Dict[str, Any]:
    data = record.pipeline_data
    return {
        "checkpoint_id": record.checkpoint_id,
        "job_id": record.job_id,
        "site_domain": record.site_domain,
        "status": record.status.value,
        "pipeline_step": record.pipeline_step,
        "processed": len(data.urls_processed),
        "categories": len(data.categories),
        "created_at": record.created_at.isoformat(),
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
    }


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides the configuration file)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """shelfcrawl - resumable, throttled e-commerce catalog crawler."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level.upper() if log_level else None


# ----------------------------------------------------------------------
# crawl
# ----------------------------------------------------------------------


@cli.command()
@click.argument("root_url")
@click.option(
    "--collaborators",
    default=DEFAULT_COLLABORATORS,
    show_default=True,
    help="module:factory returning the discovery and extraction collaborators",
)
@click.option("--job-id", default=None, help="Job identifier; reuse it to resume an interrupted crawl")
@click.option(
    "--job-type",
    type=click.Choice([job_type.value for job_type in JobType]),
    default=JobType.PRODUCT_CATALOG.value,
    show_default=True,
)
@click.option("--max-depth", type=int, default=None, help="Maximum category expansion depth")
@click.option("--max-pages", type=int, default=None, help="Maximum listing pages per category")
@click.option("--max-products", type=int, default=None, help="Maximum products per category")
@click.option("--parallel", type=int, default=None, help="Categories extracted concurrently")
@click.option("--deadline", type=float, default=None, help="Stop the job after this many seconds")
@click.option("--json", "as_json", is_flag=True, help="Print the job result as JSON")
@click.pass_context
def crawl(
    ctx: click.Context,
    root_url: str,
    collaborators: str,
    job_id: Optional[str],
    job_type: str,
    max_depth: Optional[int],
    max_pages: Optional[int],
    max_products: Optional[int],
    parallel: Optional[int],
    deadline: Optional[float],
    as_json: bool,
) -> None:
    """Crawl a site starting from ROOT_URL. Ctrl-C stops after in-flight pages finish."""
    config = _load_config(ctx)
    overrides = {
        "max_depth": max_depth,
        "max_pages": max_pages,
        "max_products_per_category": max_products,
        "parallel_categories": parallel,
    }
    try:
        limits = config.crawl.model_copy(update={k: v for k, v in overrides.items() if v is not None})
        factory = load_collaborator_factory(collaborators)
    except (ValueError, ImportError) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(2)

    async def run_job() -> JobResult:
        job = JobSpec(root_url=root_url, job_type=JobType(job_type), limits=limits, deadline_seconds=deadline)
        if job_id:
            job.job_id = job_id

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, job.cancel_event.set)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable, Ctrl-C will abort immediately")

        if config.monitoring.prometheus_port:
            MetricsManager(config.monitoring.prometheus_port).start()

        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            pages = await container.get_page_factory()
            orchestrator = await container.build_orchestrator(factory(pages, config))
            if not as_json:
                console.print(
                    Panel.fit(
                        f"[bold blue]shelfcrawl[/bold blue]\n"
                        f"Root: {root_url}\n"
                        f"Job: {job.job_id}\n"
                        f"Depth: {limits.max_depth}  Pages: {limits.max_pages}  Parallel: {limits.parallel_categories}",
                        title="Starting crawl",
                    )
                )
            return await orchestrator.run(job)

    try:
        result = asyncio.run(run_job())
    except ShelfCrawlError as e:
        console.print(f"[red]Crawl aborted: {escape(str(e))}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _print_result(result)
    if result.status is ProcessingStatus.FAILED:
        sys.exit(1)


def _print_result(result: JobResult) -> None:
    colour = {"completed": "green", "failed": "red"}.get(result.status.value, "yellow")
    console.print(
        Panel(
            f"Status: {result.status.value}\n"
            f"Categories: {result.successful_categories} ok, {result.failed_categories} failed "
            f"of {result.categories_discovered}\n"
            f"Products: {result.total_items}\n"
            f"Data quality: {result.data_quality_score:.2f}\n"
            f"Duration: {result.duration_seconds:.2f}s"
            + (f"\nMessage: {result.message}" if result.message else ""),
            title=f"Job {result.job_id}",
            border_style=colour,
        )
    )


# ----------------------------------------------------------------------
# checkpoints
# ----------------------------------------------------------------------


@cli.group()
def checkpoints() -> None:
    """Inspect and maintain stored checkpoints."""


def _with_checkpoints(ctx: click.Context, action: Any) -> Any:
    config = _load_config(ctx)

    async def run() -> Any:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            return await action(await container.get_checkpoints())

    return asyncio.run(run())


@checkpoints.command("list")
@click.option("--job-id", default=None, help="Only show checkpoints of this job")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.pass_context
def list_checkpoints(ctx: click.Context, job_id: Optional[str], as_json: bool) -> None:
    """List checkpoints, newest first."""

    async def action(manager: Any) -> List[CheckpointRecord]:
        return await manager.list_records()

    records: List[CheckpointRecord] = _with_checkpoints(ctx, action)
    if job_id:
        records = [record for record in records if record.job_id == job_id]
    records.sort(key=lambda record: record.created_at, reverse=True)
    summaries = [_record_summary(record) for record in records]

    if as_json:
        click.echo(json.dumps(summaries, indent=2))
        return
    if not summaries:
        console.print("[yellow]No checkpoints found[/yellow]")
        return

    table = Table(title="Checkpoints")
    for column in ("checkpoint_id", "job_id", "site_domain", "status", "pipeline_step", "processed", "created_at"):
        table.add_column(column, style="cyan" if column == "checkpoint_id" else None)
    for summary in summaries:
        table.add_row(
            summary["checkpoint_id"],
            summary["job_id"] or "-",
            summary["site_domain"],
            summary["status"],
            str(summary["pipeline_step"]),
            f"{summary['processed']}/{summary['categories']}",
            summary["created_at"],
        )
    console.print(table)


@checkpoints.command("show")
@click.argument("checkpoint_id")
@click.pass_context
def show_checkpoint(ctx: click.Context, checkpoint_id: str) -> None:
    """Print one checkpoint as JSON."""

    async def action(manager: Any) -> Dict[str, Any]:
        record = await manager.load(checkpoint_id)
        return {"record": record.model_dump(mode="json"), "resume_point": manager.get_resume_point(record)}

    try:
        payload = _with_checkpoints(ctx, action)
    except CheckpointNotFound:
        console.print(f"[red]Checkpoint {checkpoint_id} not found[/red]")
        sys.exit(1)
    click.echo(json.dumps(payload, indent=2))


@checkpoints.command("purge-expired")
@click.pass_context
def purge_expired(ctx: click.Context) -> None:
    """Expire stale active checkpoints and delete expired terminal ones."""

    async def action(manager: Any) -> Dict[str, int]:
        return await manager.clear_expired()

    counts = _with_checkpoints(ctx, action)
    click.echo(f"Expired: {counts['expired']}, deleted: {counts['deleted']}")


# ----------------------------------------------------------------------
# validate-config
# ----------------------------------------------------------------------


@cli.command()
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate the current configuration."""
    config = _load_config(ctx)
    source = ctx.obj.get("config_path")

    table = Table(title="Configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Settings", style="magenta")
    for section, values in config.model_dump(mode="json").items():
        if isinstance(values, dict):
            rendered = ", ".join(f"{key}={value}" for key, value in values.items())
        else:
            rendered = str(values)
        table.add_row(section, rendered)
    console.print(table)
    click.echo(f"Configuration is valid ({source or 'defaults and environment'})")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
