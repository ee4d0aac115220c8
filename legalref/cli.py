import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import click
import structlog
from dotenv import find_dotenv, load_dotenv
from pytimeparse import parse  # type: ignore

from . import __version__
from .datasets.types import DatasetSource

load_dotenv(dotenv_path=find_dotenv(usecwd=True))

structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.INFO))
log = structlog.get_logger()

DEFAULT_DB_URL = "postgres://postgres@localhost:5432/postgres"


class TimeDurationParamType(click.ParamType):
    name = "time duration"

    def convert(self, value, param, ctx) -> int:  # type: ignore
        if isinstance(value, int):
            return value
        val: int | float | None = parse(value)  # type: ignore
        if val is not None:
            return int(val)  # type: ignore
        try:
            val = int(value, 10)
            if val < 0:
                self.fail(
                    "time duration can't be negative",
                    param,
                    ctx,
                )
            return val
        except ValueError:
            self.fail(
                f"{value!r} is not a valid duration string or integer",
                param,
                ctx,
            )


def get_log_level(level: str) -> int:
    level_upper = level.upper()
    # getLevelName is deprecated, but still there for backwards compatibility
    level_name = logging.getLevelName(level_upper)  # type: ignore
    if level_upper != "INFO" and isinstance(level_name, int):
        return level_name
    return logging.INFO


def configure_logging(log_level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(get_log_level(log_level))
    )


def shutdown_handler(signum: int, _frame: Any):
    signame = signal.Signals(signum).name
    log.info(f"received {signame}, exiting")
    exit(0)


def to_sources(values: Sequence[str]) -> list[DatasetSource]:
    if not values:
        return list(DatasetSource)
    return [DatasetSource(v) for v in dict.fromkeys(values)]


db_url_option = click.option(
    "-d",
    "--db-url",
    type=click.STRING,
    default=DEFAULT_DB_URL,
    envvar="DATABASE_URL",
    show_default=True,
    help="The database URL to connect to",
)
source_option = click.option(
    "-s",
    "--source",
    "sources",
    type=click.Choice(DatasetSource.values()),
    multiple=True,
    default=[],
    help="Only handle the given sources. If not provided, all sources are used.",
)
cache_dir_option = click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path(".cache/datasets"),
    show_default=True,
    help="Directory holding the downloaded datasets.",
)
log_level_option = click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARN", "ERROR", "FATAL", "CRITICAL"], case_sensitive=False
    ),
    default="INFO",
)


@click.group()
@click.version_option(version=__version__)
def cli():
    pass


@cli.command()
@db_url_option
@click.option(
    "--dimensions",
    type=click.IntRange(1),
    default=1024,
    show_default=True,
    help="Dimension of the embedding column.",
)
def install(db_url: str, dimensions: int) -> None:
    """Create the vector extension and the ingestion tables."""
    from .bootstrap.schema import install as install_schema

    install_schema(db_url, dimensions)
    log.info(f"legalref {__version__} schema installed")


@click.group()
def bootstrap():
    """Ingest the legal reference datasets."""


@bootstrap.command(name="run")
@source_option
@click.option(
    "--force-refresh",
    is_flag=True,
    default=False,
    show_default=True,
    help="Download the datasets again even if they are cached.",
)
@db_url_option
@cache_dir_option
@log_level_option
@click.option(
    "--source-timeout",
    type=TimeDurationParamType(),
    default="2h",
    show_default=True,
    help="How long, in duration string or integer (seconds), a single source "
    "may run before it is stopped.",
)
@click.option(
    "-c",
    "--concurrency",
    type=click.IntRange(1, 10),
    default=2,
    show_default=True,
    help="How many sources are ingested at the same time.",
)
def bootstrap_run(
    sources: Sequence[str],
    force_refresh: bool,
    db_url: str,
    cache_dir: Path,
    log_level: str,
    source_timeout: int,
    concurrency: int,
) -> None:
    """Download, embed and store the datasets, then rebuild the index."""
    asyncio.run(
        async_run_bootstrap(
            to_sources(sources),
            force_refresh,
            db_url,
            cache_dir,
            log_level,
            source_timeout,
            concurrency,
        )
    )


async def async_run_bootstrap(
    sources: list[DatasetSource],
    force_refresh: bool,
    db_url: str,
    cache_dir: Path,
    log_level: str,
    source_timeout: int,
    concurrency: int,
) -> None:
    from .bootstrap import (
        BootstrapConfig,
        Coordinator,
        CoordinatorBusyError,
        IndexBuildError,
        IngestRequested,
        ProcessingSettings,
    )

    # gracefully handle being asked to shut down
    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    configure_logging(log_level)

    config = BootstrapConfig(
        db_url=db_url,
        cache_dir=cache_dir,
        source_timeout=source_timeout,
        processing=ProcessingSettings(max_concurrent_sources=concurrency),
    )
    try:
        coordinator = Coordinator.from_config(config)
    except ValueError as e:
        await log.aerror("cannot start ingestion", error=str(e))
        sys.exit(1)

    try:
        summary = await coordinator.run(
            IngestRequested(sources=sources, force_refresh=force_refresh)
        )
    except CoordinatorBusyError as e:
        await log.aerror("ingestion not started", error=str(e))
        sys.exit(1)
    except IndexBuildError as e:
        await log.aerror("ingestion failed", error=str(e))
        sys.exit(1)

    click.echo(summary.model_dump_json(indent=2))


@bootstrap.command(name="status")
@source_option
@db_url_option
def bootstrap_status(sources: Sequence[str], db_url: str) -> None:
    """Show the latest progress record of each source."""
    from rich.console import Console
    from rich.table import Table

    from .bootstrap.progress import ProgressTracker

    records = asyncio.run(
        ProgressTracker(db_url).list_latest([s.value for s in to_sources(sources)])
    )
    table = Table(title="Bootstrap progress")
    for column in (
        "source",
        "status",
        "processed",
        "embedded",
        "errors",
        "last batch",
        "started",
        "completed",
    ):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.source,
            record.status,
            str(record.processed_records),
            str(record.embedded_records),
            str(record.error_count),
            "" if record.last_batch_index is None else str(record.last_batch_index),
            "" if record.started_at is None else record.started_at.isoformat(),
            "" if record.completed_at is None else record.completed_at.isoformat(),
        )
    Console().print(table)


@click.group()
def datasets():
    """Fetch and inspect the reference datasets."""


@datasets.command(name="download")
@source_option
@click.option(
    "--force-refresh",
    is_flag=True,
    default=False,
    help="Download again even if cached.",
)
@cache_dir_option
def datasets_download(
    sources: Sequence[str], force_refresh: bool, cache_dir: Path
) -> None:
    """Download the datasets into the cache directory."""
    from .datasets import Downloader, DownloadError

    downloader = Downloader(cache_dir)
    try:
        results = asyncio.run(
            downloader.download_all(to_sources(sources), force_refresh)
        )
    except DownloadError as e:
        log.error("download failed", error=str(e))
        sys.exit(1)
    for source, result in results.items():
        state = "cached" if result.cached else "downloaded"
        click.echo(f"{source.value}\t{state}\t{result.size_bytes}\t{result.path}")


@datasets.command(name="stats")
@click.option(
    "-s",
    "--source",
    type=click.Choice(DatasetSource.values()),
    required=True,
)
@click.option(
    "--path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Dataset location. Defaults to the cached copy.",
)
@cache_dir_option
def datasets_stats(source: str, path: Path | None, cache_dir: Path) -> None:
    """Count the records a dataset produces."""
    from rich.console import Console
    from rich.table import Table

    from .datasets import DatasetCorruptError, Downloader, dataset_stats

    dataset = DatasetSource(source)
    path = path or Downloader(cache_dir).dataset_path(dataset)
    try:
        stats = dataset_stats(dataset, path)
    except DatasetCorruptError as e:
        log.error("cannot read dataset", source=source, error=str(e))
        sys.exit(1)

    console = Console()
    console.print(f"{source}: {stats.total_records} records")
    table = Table(title="Granularity")
    table.add_column("granularity")
    table.add_column("records", justify="right")
    for granularity, count in sorted(stats.granularities.items()):
        table.add_row(granularity, str(count))
    console.print(table)
    if stats.categories:
        table = Table(title="Category")
        table.add_column("category")
        table.add_column("records", justify="right")
        for category, count in stats.categories.most_common():
            table.add_row(category, str(count))
        console.print(table)


cli.add_command(bootstrap)
cli.add_command(datasets)
