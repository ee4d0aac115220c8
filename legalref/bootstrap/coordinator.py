import asyncio
import contextlib
import datetime
import functools
import os
import time
import zlib
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import AbstractAsyncContextManager
from pathlib import Path
from typing import Any

import psycopg
import structlog
from ddtrace.trace import tracer

from ..datasets import PARSERS, Downloader, Parser
from ..datasets.types import DatasetSource
from ..tracing import tag_span
from .cache import EmbeddingCache
from .configuration import BootstrapConfig
from .embeddings import Embedder, VoyageAIEmbedder
from .events import (
    INGEST_COMPLETED,
    INGEST_REQUESTED,
    SOURCE_COMPLETED,
    SOURCE_DISPATCH,
    Emitter,
    IngestCompleted,
    IngestRequested,
    SourceCompleted,
    SourceDispatch,
    log_event,
)
from .indexing import IndexBuildError, rebuild_hnsw_index
from .processing import BatchProcessor
from .progress import ProgressRecord, ProgressTracker
from .store import ReferenceStore
from .worker import STOPPED, SourceWorker, completion_from

logger = structlog.get_logger()

BUSY = "busy"
RUN_LOCK_KEY = zlib.crc32(b"legalref.bootstrap")


class CoordinatorBusyError(Exception):
    """Another ingestion run is in progress."""


RunLock = Callable[[], AbstractAsyncContextManager[Any]]


def postgres_run_lock(db_url: str) -> RunLock:
    """
    Session-level advisory lock held for the duration of a run, so only one
    coordinator per database ingests at a time.
    """

    @contextlib.asynccontextmanager
    async def lock() -> AsyncIterator[None]:
        async with await psycopg.AsyncConnection.connect(
            db_url, autocommit=True, application_name="legalref[coordinator]"
        ) as conn:
            cursor = await conn.execute(
                "select pg_try_advisory_lock(%s)", (RUN_LOCK_KEY,)
            )
            row = await cursor.fetchone()
            if row is None or not row[0]:
                raise CoordinatorBusyError("another ingestion run holds the run lock")
            try:
                yield
            finally:
                await conn.execute("select pg_advisory_unlock(%s)", (RUN_LOCK_KEY,))

    return lock


@contextlib.asynccontextmanager
async def no_run_lock() -> AsyncIterator[None]:
    yield


class Coordinator:
    """
    Runs one ingestion request across several sources.

    Downloads and progress records are prepared concurrently, sources are
    ingested concurrently up to ``max_concurrent_sources``, and the index is
    rebuilt exactly once after every source has finished, failed, or timed
    out. Only an index build failure fails the run as a whole.

    Args:
        config: Run configuration.
        embedder: Embedding client shared by all sources.
        progress: Progress tracker.
        store: Provides one persistence session per source.
        downloader: Fetches the datasets.
        parsers: Parser per source.
        cache: Embedding cache shared by all sources.
        index_builder: Rebuilds the similarity index.
        emit: Receives the source and run completion events.
        run_lock: Cross-process exclusion for runs.
        clock: Wall clock used to detect abandoned in-progress records.
    """

    def __init__(
        self,
        config: BootstrapConfig,
        embedder: Embedder,
        progress: ProgressTracker,
        store: ReferenceStore,
        downloader: Downloader,
        parsers: Mapping[DatasetSource, Parser] = PARSERS,
        cache: EmbeddingCache | None = None,
        index_builder: Callable[[], Awaitable[None]] | None = None,
        emit: Emitter = log_event,
        run_lock: RunLock = no_run_lock,
        clock: Callable[[], datetime.datetime] = lambda: datetime.datetime.now(
            datetime.timezone.utc
        ),
    ):
        self.config = config
        self.embedder = embedder
        self.progress = progress
        self.store = store
        self.downloader = downloader
        self.parsers = parsers
        self.cache = cache
        self.index_builder = index_builder or functools.partial(
            rebuild_hnsw_index, config.db_url, config.indexing
        )
        self.emit = emit
        self.run_lock = run_lock
        self.clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: BootstrapConfig) -> "Coordinator":
        embedder = VoyageAIEmbedder(config.embedding)
        embedder.set_api_key(os.environ)
        return cls(
            config,
            embedder=embedder,
            progress=ProgressTracker(config.db_url),
            store=ReferenceStore(config.db_url),
            downloader=Downloader(config.cache_dir),
            cache=EmbeddingCache(config.cache.max_entries, config.cache.ttl),
            run_lock=postgres_run_lock(config.db_url),
        )

    async def run(self, request: IngestRequested) -> IngestCompleted:
        """
        Ingests every requested source and rebuilds the index.

        Raises:
            CoordinatorBusyError: A run is already active.
            IndexBuildError: The final index rebuild failed.
        """
        if self._lock.locked():
            raise CoordinatorBusyError("an ingestion run is already active")
        async with self._lock, self.run_lock():
            with tracer.trace("bootstrap.run"):
                return await self._run(request)

    async def _run(self, request: IngestRequested) -> IngestCompleted:
        start_time = time.perf_counter()
        sources = list(dict.fromkeys(request.sources))
        tag_span(sources=",".join(s.value for s in sources))
        await self.emit(INGEST_REQUESTED, request)

        downloads = await asyncio.gather(
            *(self.downloader.download(s, request.force_refresh) for s in sources),
            return_exceptions=True,
        )
        paths: dict[DatasetSource, Path] = {}
        downloaded: dict[DatasetSource, bool] = {}
        failures: dict[DatasetSource, str] = {}
        for source, result in zip(sources, downloads, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                downloaded[source] = False
                failures[source] = f"download failed: {result}"
                await logger.aerror(
                    "download failed", source=source.value, error=str(result)
                )
            else:
                downloaded[source] = True
                paths[source] = result.path

        prepared = await asyncio.gather(
            *(self._prepare_progress(s) for s in sources), return_exceptions=True
        )
        outcomes: dict[DatasetSource, SourceCompleted] = {}
        dispatches: list[tuple[SourceDispatch, Path]] = []
        for source, prep in zip(sources, prepared, strict=True):
            if isinstance(prep, BaseException):
                if not isinstance(prep, Exception):
                    raise prep
                outcomes[source] = SourceCompleted(
                    source=source,
                    progress_id=None,
                    status="failed",
                    reason=f"progress record unavailable: {prep}",
                )
            elif prep is None:
                outcomes[source] = SourceCompleted(
                    source=source, progress_id=None, status="failed", reason=BUSY
                )
            elif source in failures:
                outcomes[source] = await self._fail_source(
                    SourceDispatch(source=source, progress_id=prep.id),
                    failures[source],
                )
            else:
                dispatch = SourceDispatch(
                    source=source,
                    progress_id=prep.id,
                    force_refresh=request.force_refresh,
                )
                await self.emit(SOURCE_DISPATCH, dispatch)
                dispatches.append((dispatch, paths[source]))

        for outcome in outcomes.values():
            await self.emit(SOURCE_COMPLETED, outcome)

        semaphore = asyncio.Semaphore(self.config.processing.max_concurrent_sources)
        results = await asyncio.gather(
            *(self._run_source(semaphore, d, path) for d, path in dispatches),
            return_exceptions=True,
        )
        for (dispatch, _), result in zip(dispatches, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                result = await self._fail_source(dispatch, f"{result}")
            outcomes[dispatch.source] = result
            await self.emit(SOURCE_COMPLETED, result)

        # every writer has finished; the index is rebuilt exactly once
        try:
            await self.index_builder()
        except IndexBuildError:
            raise
        except Exception as e:
            raise IndexBuildError(f"index rebuild failed: {e}") from e

        per_source = {s: outcomes[s] for s in sources}
        summary = IngestCompleted(
            sources=sources,
            total_records=sum(o.processed_records for o in per_source.values()),
            total_embeddings=sum(o.embedded_records for o in per_source.values()),
            duration_ms=int((time.perf_counter() - start_time) * 1000),
            per_source=per_source,
            downloaded=downloaded,
        )
        tag_span(
            total_records=summary.total_records,
            total_embeddings=summary.total_embeddings,
        )
        await self.emit(INGEST_COMPLETED, summary)
        return summary

    async def _prepare_progress(self, source: DatasetSource) -> ProgressRecord | None:
        """
        Creates the progress record for a new attempt.

        Returns None when a recent attempt of the source is still in progress.
        An in-progress attempt not updated for ``stale_after`` seconds is
        considered abandoned and marked failed first.
        """
        latest = await self.progress.get_latest(source.value)
        if latest is not None and latest.status == "in_progress":
            stale_after = self.config.stale_after or self.config.source_timeout
            age = (self.clock() - latest.updated_at).total_seconds()
            if age < stale_after:
                await logger.awarning(
                    "source already in progress, skipping",
                    source=source.value,
                    progress_id=latest.id,
                    age_seconds=age,
                )
                return None
            await logger.awarning(
                "abandoning stale in-progress record",
                source=source.value,
                progress_id=latest.id,
                age_seconds=age,
            )
            await self.progress.mark_failed(latest.id)
        return await self.progress.create(source.value)

    async def _work(
        self, dispatch: SourceDispatch, path: Path, stop_event: asyncio.Event
    ) -> SourceCompleted:
        async with self.store.session(dispatch.source.value) as session:
            known_hashes = await session.existing_hashes(dispatch.source.value)
            processor = BatchProcessor(
                self.embedder, session, cache=self.cache, retry=self.config.retry
            )
            worker = SourceWorker(
                dispatch.source,
                self.parsers[dispatch.source],
                path,
                processor,
                self.progress,
                batch_size=self.config.processing.batch_size,
                inter_batch_delay=self.config.processing.inter_batch_delay,
                known_hashes=known_hashes,
                stop_event=stop_event,
            )
            return await worker.run(dispatch.progress_id)

    async def _run_source(
        self, semaphore: asyncio.Semaphore, dispatch: SourceDispatch, path: Path
    ) -> SourceCompleted:
        """
        Runs one source with a timeout that starts once it gets a slot.

        On timeout the worker is asked to stop after its current batch; if it
        has not stopped after ``cancel_grace`` seconds it is cancelled.
        """
        async with semaphore:
            stop_event = asyncio.Event()
            task = asyncio.create_task(self._work(dispatch, path, stop_event))
            done, _ = await asyncio.wait({task}, timeout=self.config.source_timeout)
            if done:
                return task.result()

            await logger.aerror(
                "source timed out",
                source=dispatch.source.value,
                progress_id=dispatch.progress_id,
                timeout=self.config.source_timeout,
            )
            stop_event.set()
            done, _ = await asyncio.wait({task}, timeout=self.config.cancel_grace)
            if not done:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                return await self._fail_source(dispatch, STOPPED)
            result = task.result()
            if result.status == "failed":
                return result.model_copy(update={"reason": STOPPED})
            return result

    async def _fail_source(
        self, dispatch: SourceDispatch, reason: str
    ) -> SourceCompleted:
        await logger.aerror(
            "source failed", source=dispatch.source.value, reason=reason
        )
        try:
            record = await self.progress.mark_failed(dispatch.progress_id)
        except Exception:
            await logger.aexception(
                "could not mark source failed", source=dispatch.source.value
            )
            return SourceCompleted(
                source=dispatch.source,
                progress_id=dispatch.progress_id,
                status="failed",
                reason=reason,
            )
        return completion_from(record, reason)

