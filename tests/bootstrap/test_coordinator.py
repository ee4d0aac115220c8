import asyncio
import datetime
from pathlib import Path

import pytest
from pydantic import BaseModel

from legalref.bootstrap.configuration import (
    BootstrapConfig,
    ProcessingSettings,
    RetrySettings,
)
from legalref.bootstrap.coordinator import BUSY, Coordinator, CoordinatorBusyError
from legalref.bootstrap.events import (
    INGEST_COMPLETED,
    INGEST_REQUESTED,
    SOURCE_COMPLETED,
    SOURCE_DISPATCH,
    IngestRequested,
)
from legalref.bootstrap.indexing import IndexBuildError
from legalref.bootstrap.worker import STOPPED
from legalref.datasets.types import DatasetCorruptError, DatasetSource
from tests.utils import (
    FakeDownloader,
    FakeEmbedder,
    FakeProgressTracker,
    FakeStore,
    corrupt_parser,
    fixed_parser,
    make_records,
    now,
)

CUAD = DatasetSource.CUAD
NLI = DatasetSource.CONTRACT_NLI
BONTERMS = DatasetSource.BONTERMS
THREE = [CUAD, NLI, BONTERMS]


class SlowEmbedder(FakeEmbedder):
    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def call_embed_api(self, documents, input_type):
        await asyncio.sleep(self.delay)
        return await super().call_embed_api(documents, input_type)


class Harness:
    def __init__(self, tmp_path: Path, **config):
        config.setdefault(
            "processing",
            ProcessingSettings(batch_size=10, inter_batch_delay=0),
        )
        config.setdefault("retry", RetrySettings(max_attempts=1, backoff_ms=[0]))
        self.config = BootstrapConfig(cache_dir=tmp_path, **config)
        self.progress = FakeProgressTracker()
        self.store = FakeStore()
        self.embedder: FakeEmbedder = FakeEmbedder()
        self.downloader = FakeDownloader(tmp_path)
        self.parsers = {
            source: fixed_parser(make_records(12, source)) for source in DatasetSource
        }
        self.events: list[tuple[str, BaseModel]] = []
        self.index_builds = 0
        self.statuses_at_index_build: list[str] = []
        self.clock = now

    async def emit(self, name: str, payload: BaseModel) -> None:
        self.events.append((name, payload))

    async def build_index(self) -> None:
        self.index_builds += 1
        self.statuses_at_index_build = [
            r.status for r in self.progress.records.values()
        ]

    def coordinator(self, **kwargs) -> Coordinator:
        kwargs.setdefault("index_builder", self.build_index)
        return Coordinator(
            self.config,
            embedder=self.embedder,
            progress=self.progress,  # type: ignore
            store=self.store,  # type: ignore
            downloader=self.downloader,  # type: ignore
            parsers=self.parsers,
            emit=self.emit,
            clock=lambda: self.clock(),
            **kwargs,
        )

    def event_names(self, name: str) -> list[BaseModel]:
        return [payload for n, payload in self.events if n == name]


async def test_failing_source_does_not_stop_others(tmp_path: Path):
    harness = Harness(tmp_path)
    harness.parsers[NLI] = corrupt_parser(
        make_records(3, NLI), DatasetCorruptError("bad json")
    )

    summary = await harness.coordinator().run(IngestRequested(sources=THREE))

    assert summary.per_source[CUAD].status == "completed"
    assert summary.per_source[BONTERMS].status == "completed"
    assert summary.per_source[NLI].status == "failed"
    assert summary.per_source[NLI].reason == "DatasetCorruptError: bad json"
    assert summary.total_records == 12 + 12 + 3
    assert summary.total_embeddings == 27
    assert summary.downloaded == {s: True for s in THREE}
    assert harness.index_builds == 1
    assert sorted(harness.statuses_at_index_build) == [
        "completed",
        "completed",
        "failed",
    ]
    assert len(harness.event_names(SOURCE_DISPATCH)) == 3
    assert len(harness.event_names(SOURCE_COMPLETED)) == 3
    assert [n for n, _ in harness.events][0] == INGEST_REQUESTED
    assert [n for n, _ in harness.events][-1] == INGEST_COMPLETED


async def test_download_failure_fails_only_that_source(tmp_path: Path):
    harness = Harness(tmp_path)
    harness.downloader.failing = {NLI}

    summary = await harness.coordinator().run(IngestRequested(sources=THREE))

    failed = summary.per_source[NLI]
    assert failed.status == "failed"
    assert failed.reason is not None and failed.reason.startswith("download failed")
    assert summary.downloaded[NLI] is False
    assert summary.per_source[CUAD].status == "completed"
    assert [r.status for r in harness.progress.by_source(NLI)] == ["failed"]
    assert len(harness.event_names(SOURCE_DISPATCH)) == 2
    assert harness.index_builds == 1


async def test_duplicate_sources_run_once(tmp_path: Path):
    harness = Harness(tmp_path)

    summary = await harness.coordinator().run(
        IngestRequested(sources=[CUAD, CUAD], force_refresh=True)
    )

    assert summary.sources == [CUAD]
    assert harness.downloader.calls == [(CUAD, True)]
    assert len(harness.progress.by_source(CUAD)) == 1


async def test_rerun_skips_already_embedded_content(tmp_path: Path):
    harness = Harness(tmp_path)
    coordinator = harness.coordinator()

    await coordinator.run(IngestRequested(sources=[CUAD]))
    calls = len(harness.embedder.calls)
    summary = await coordinator.run(IngestRequested(sources=[CUAD]))

    assert summary.per_source[CUAD].status == "completed"
    assert summary.per_source[CUAD].processed_records == 0
    assert len(harness.embedder.calls) == calls
    assert len(harness.progress.by_source(CUAD)) == 2


async def test_recent_in_progress_source_is_busy(tmp_path: Path):
    harness = Harness(tmp_path)
    running = harness.progress.add("cuad", status="in_progress")

    summary = await harness.coordinator().run(IngestRequested(sources=[CUAD, NLI]))

    assert summary.per_source[CUAD].status == "failed"
    assert summary.per_source[CUAD].reason == BUSY
    assert summary.per_source[CUAD].progress_id is None
    assert harness.progress.records[running.id].status == "in_progress"
    assert summary.per_source[NLI].status == "completed"


async def test_stale_in_progress_record_is_abandoned(tmp_path: Path):
    harness = Harness(tmp_path, stale_after=60)
    stale = harness.progress.add("cuad", status="in_progress")
    harness.clock = lambda: now() + datetime.timedelta(minutes=5)

    summary = await harness.coordinator().run(IngestRequested(sources=[CUAD]))

    assert harness.progress.records[stale.id].status == "failed"
    assert summary.per_source[CUAD].status == "completed"
    assert summary.per_source[CUAD].progress_id != stale.id


async def test_index_failure_fails_run(tmp_path: Path):
    harness = Harness(tmp_path)

    async def broken_index() -> None:
        raise RuntimeError("out of memory")

    with pytest.raises(IndexBuildError, match="out of memory"):
        await harness.coordinator(index_builder=broken_index).run(
            IngestRequested(sources=[CUAD])
        )
    assert [r.status for r in harness.progress.by_source(CUAD)] == ["completed"]
    assert harness.event_names(INGEST_COMPLETED) == []


async def test_concurrent_run_is_rejected(tmp_path: Path):
    harness = Harness(tmp_path)
    entered = asyncio.Event()
    release = asyncio.Event()

    async def blocking_index() -> None:
        entered.set()
        await release.wait()

    coordinator = harness.coordinator(index_builder=blocking_index)
    first = asyncio.create_task(coordinator.run(IngestRequested(sources=[CUAD])))
    await entered.wait()

    with pytest.raises(CoordinatorBusyError):
        await coordinator.run(IngestRequested(sources=[NLI]))

    release.set()
    summary = await first
    assert summary.per_source[CUAD].status == "completed"


async def test_timed_out_source_stops_after_current_batch(tmp_path: Path):
    harness = Harness(tmp_path, source_timeout=0.05, cancel_grace=5)
    harness.embedder = SlowEmbedder(delay=0.2)

    summary = await harness.coordinator().run(IngestRequested(sources=[CUAD]))

    result = summary.per_source[CUAD]
    assert result.status == "failed"
    assert result.reason == STOPPED
    assert result.processed_records == 10
    assert len(harness.embedder.calls) == 1
    assert harness.index_builds == 1


async def test_timed_out_source_is_cancelled_after_grace(tmp_path: Path):
    harness = Harness(tmp_path, source_timeout=0.05, cancel_grace=0.05)
    harness.embedder = SlowEmbedder(delay=30)

    summary = await harness.coordinator().run(IngestRequested(sources=[CUAD]))

    result = summary.per_source[CUAD]
    assert result.status == "failed"
    assert result.reason == STOPPED
    assert [r.status for r in harness.progress.by_source(CUAD)] == ["failed"]
    assert harness.index_builds == 1
