import json
import signal
from pathlib import Path
from typing import Any

import click
import pytest
from click.testing import CliRunner

from legalref.bootstrap import Coordinator, CoordinatorBusyError, IndexBuildError
from legalref.bootstrap.events import IngestCompleted, IngestRequested, SourceCompleted
from legalref.cli import TimeDurationParamType, cli, get_log_level, to_sources
from legalref.datasets.types import DatasetSource


class FakeCoordinator:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.requests: list[IngestRequested] = []
        self.config: Any = None

    async def run(self, request: IngestRequested) -> IngestCompleted:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return IngestCompleted(
            sources=request.sources,
            total_records=3,
            total_embeddings=3,
            duration_ms=12,
            per_source={
                s: SourceCompleted(
                    source=s, progress_id=None, status="completed", processed_records=3
                )
                for s in request.sources
            },
        )


@pytest.fixture
def coordinator(monkeypatch: pytest.MonkeyPatch) -> FakeCoordinator:
    fake = FakeCoordinator()

    def from_config(config: Any) -> FakeCoordinator:
        fake.config = config
        return fake

    monkeypatch.setattr(Coordinator, "from_config", from_config)
    monkeypatch.setattr(signal, "signal", lambda *args: None)
    return fake


def test_bootstrap_run(coordinator: FakeCoordinator, tmp_path: Path):
    result = CliRunner().invoke(
        cli,
        [
            "bootstrap",
            "run",
            "-s",
            "cuad",
            "-s",
            "bonterms",
            "--force-refresh",
            "--source-timeout",
            "30m",
            "-c",
            "3",
            "--cache-dir",
            str(tmp_path),
            "--db-url",
            "postgres://example/db",
        ],
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["total_records"] == 3
    request = coordinator.requests[0]
    assert request.sources == [DatasetSource.CUAD, DatasetSource.BONTERMS]
    assert request.force_refresh is True
    assert coordinator.config.source_timeout == 1800
    assert coordinator.config.processing.max_concurrent_sources == 3
    assert coordinator.config.cache_dir == tmp_path
    assert coordinator.config.db_url == "postgres://example/db"


@pytest.mark.parametrize(
    "error",
    [CoordinatorBusyError("busy"), IndexBuildError("index failed")],
)
def test_bootstrap_run_failures_exit_nonzero(
    coordinator: FakeCoordinator, error: Exception
):
    coordinator.error = error
    result = CliRunner().invoke(cli, ["bootstrap", "run"])
    assert result.exit_code == 1
    assert len(coordinator.requests[0].sources) == len(DatasetSource)


def test_bootstrap_run_rejects_unknown_source():
    result = CliRunner().invoke(cli, ["bootstrap", "run", "-s", "wikipedia"])
    assert result.exit_code == 2


def test_datasets_stats(tmp_path: Path):
    (tmp_path / "nda.md").write_text("# Scope\n\nText.\n\n# Term\n\nOne year.\n")

    result = CliRunner().invoke(
        cli, ["datasets", "stats", "-s", "bonterms", "--path", str(tmp_path)]
    )

    assert result.exit_code == 0, result.output
    assert "bonterms: 3 records" in result.output
    assert "Scope" in result.output


def test_datasets_stats_corrupt_file(tmp_path: Path):
    path = tmp_path / "cuad.parquet"
    path.write_text("garbage")

    result = CliRunner().invoke(
        cli, ["datasets", "stats", "-s", "cuad", "--path", str(path)]
    )

    assert result.exit_code == 1


def test_datasets_download_cached(tmp_path: Path):
    (tmp_path / "CUAD_v1.parquet").write_bytes(b"1234")

    result = CliRunner().invoke(
        cli, ["datasets", "download", "-s", "cuad", "--cache-dir", str(tmp_path)]
    )

    assert result.exit_code == 0, result.output
    assert result.output.split("\t")[:3] == ["cuad", "cached", "4"]


@pytest.mark.parametrize(
    "value,seconds",
    [("2h", 7200), ("30m", 1800), ("90", 90), (45, 45)],
)
def test_time_duration(value: Any, seconds: int):
    assert TimeDurationParamType().convert(value, None, None) == seconds


def test_time_duration_rejects_garbage():
    with pytest.raises(click.BadParameter):
        TimeDurationParamType().convert("soon", None, None)


@pytest.mark.parametrize(
    "level,expected",
    [("debug", 10), ("ERROR", 40), ("info", 20), ("nonsense", 20)],
)
def test_get_log_level(level: str, expected: int):
    assert get_log_level(level) == expected


def test_to_sources():
    assert to_sources([]) == list(DatasetSource)
    assert to_sources(["cuad", "cuad", "bonterms"]) == [
        DatasetSource.CUAD,
        DatasetSource.BONTERMS,
    ]
