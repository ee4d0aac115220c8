import datetime
import uuid
from collections.abc import AsyncIterator, Iterable, Iterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from uuid import UUID

from typing_extensions import override

from legalref.bootstrap.embeddings import (
    Embedder,
    EmbeddingResponse,
    InputType,
    Usage,
)
from legalref.bootstrap.progress import ProgressNotFoundError, ProgressRecord
from legalref.datasets.downloader import DownloadError, DownloadResult
from legalref.datasets.types import DatasetSource, NormalizedRecord
from legalref.datasets.utils import make_record

DIMENSIONS = 4


def make_records(
    count: int, source: DatasetSource = DatasetSource.CUAD, prefix: str = "clause"
) -> list[NormalizedRecord]:
    return [
        make_record(
            source,
            f"{source.value}:{prefix}:{i}",
            f"{source.value} {prefix} text {i}",
            "clause",
        )
        for i in range(count)
    ]


def now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class FakeEmbedder(Embedder):
    """Returns a deterministic vector per text; raises queued errors first."""

    def __init__(
        self,
        dimensions: int = DIMENSIONS,
        batch_limit: int = 128,
        errors: Iterable[Exception] = (),
        fail_always: Exception | None = None,
        drop_last: bool = False,
    ):
        super().__init__()
        self.dimensions = dimensions
        self.batch_limit = batch_limit
        self.errors = list(errors)
        self.fail_always = fail_always
        self.drop_last = drop_last
        self.calls: list[list[str]] = []

    @override
    def _max_chunks_per_batch(self) -> int:
        return self.batch_limit

    def vector(self, text: str) -> list[float]:
        return [float(len(text))] + [0.5] * (self.dimensions - 1)

    @override
    async def call_embed_api(
        self, documents: list[str], input_type: InputType
    ) -> EmbeddingResponse:
        self.calls.append(list(documents))
        if self.fail_always is not None:
            raise self.fail_always
        if self.errors:
            raise self.errors.pop(0)
        embeddings = [self.vector(d) for d in documents]
        if self.drop_last:
            embeddings = embeddings[:-1]
        tokens = 10 * len(documents)
        return EmbeddingResponse(
            embeddings=embeddings,
            usage=Usage(prompt_tokens=tokens, total_tokens=tokens),
        )


class FakeSink:
    """In-memory stand-in for a store session, keyed on content hash."""

    def __init__(self, fail_source_ids: Iterable[str] = ()):
        self.fail_source_ids = set(fail_source_ids)
        self.documents: dict[str, NormalizedRecord] = {}
        self.embeddings: dict[str, Sequence[float]] = {}
        self.token_counts: dict[str, int] = {}

    async def upsert(
        self, record: NormalizedRecord, embedding: Sequence[float], token_count: int
    ) -> None:
        if record.source_id in self.fail_source_ids:
            raise RuntimeError(f"cannot persist {record.source_id}")
        self.documents[record.content_hash] = record
        self.embeddings.setdefault(record.content_hash, embedding)
        self.token_counts.setdefault(record.content_hash, token_count)

    async def existing_hashes(self, source: str) -> set[str]:
        return {
            h for h, record in self.documents.items() if record.source.value == source
        }


class FakeStore:
    def __init__(self, sink: FakeSink | None = None):
        self.sink = sink or FakeSink()
        self.sessions: list[str] = []

    @asynccontextmanager
    async def session(self, name: str = "store") -> AsyncIterator[FakeSink]:
        self.sessions.append(name)
        yield self.sink


class FakeProgressTracker:
    """Mirrors ProgressTracker semantics over a dict."""

    def __init__(self):
        self.records: dict[UUID, ProgressRecord] = {}

    def _get(self, progress_id: UUID) -> ProgressRecord:
        record = self.records.get(progress_id)
        if record is None:
            raise ProgressNotFoundError(progress_id)
        return record

    def _put(self, record: ProgressRecord, **fields: Any) -> ProgressRecord:
        updated = record.model_copy(update={**fields, "updated_at": now()})
        self.records[updated.id] = updated
        return updated

    def add(self, source: str, **fields: Any) -> ProgressRecord:
        timestamp = now()
        record = ProgressRecord(
            id=uuid.uuid4(),
            source=source,
            status="pending",
            created_at=timestamp,
            updated_at=timestamp,
        ).model_copy(update=fields)
        self.records[record.id] = record
        return record

    async def create(self, source: str) -> ProgressRecord:
        return self.add(source)

    async def mark_started(
        self, progress_id: UUID, total_records: int | None = None
    ) -> ProgressRecord:
        record = self._get(progress_id)
        return self._put(
            record,
            status="in_progress",
            total_records=total_records or record.total_records,
            started_at=record.started_at or now(),
        )

    async def update(self, progress_id: UUID, **fields: Any) -> ProgressRecord:
        return self._put(self._get(progress_id), **fields)

    async def increment_counters(
        self,
        progress_id: UUID,
        processed: int = 0,
        embedded: int = 0,
        errors: int = 0,
        last_batch_index: int | None = None,
        last_processed_hash: str | None = None,
    ) -> ProgressRecord:
        record = self._get(progress_id)
        fields: dict[str, Any] = {
            "processed_records": record.processed_records + processed,
            "embedded_records": record.embedded_records + embedded,
            "error_count": record.error_count + errors,
        }
        if last_batch_index is not None:
            fields["last_batch_index"] = max(
                record.last_batch_index if record.last_batch_index is not None else -1,
                last_batch_index,
            )
        if last_processed_hash is not None:
            fields["last_processed_hash"] = last_processed_hash
        return self._put(record, **fields)

    async def mark_completed(self, progress_id: UUID) -> ProgressRecord:
        return self._put(
            self._get(progress_id), status="completed", completed_at=now()
        )

    async def mark_failed(self, progress_id: UUID) -> ProgressRecord:
        return self._put(self._get(progress_id), status="failed", completed_at=now())

    async def get_by_id(self, progress_id: UUID) -> ProgressRecord | None:
        return self.records.get(progress_id)

    async def get_latest(self, source: str) -> ProgressRecord | None:
        matching = [r for r in self.records.values() if r.source == source]
        return max(matching, key=lambda r: r.created_at) if matching else None

    def by_source(self, source: DatasetSource) -> list[ProgressRecord]:
        return sorted(
            (r for r in self.records.values() if r.source == source.value),
            key=lambda r: r.created_at,
        )


class FakeDownloader:
    def __init__(self, root: Path, failing: Iterable[DatasetSource] = ()):
        self.root = root
        self.failing = set(failing)
        self.calls: list[tuple[DatasetSource, bool]] = []

    async def download(
        self, source: DatasetSource, force_refresh: bool = False
    ) -> DownloadResult:
        self.calls.append((source, force_refresh))
        if source in self.failing:
            raise DownloadError(f"GET {source.value} returned 503")
        return DownloadResult(
            source=source, path=self.root / source.value, cached=False, size_bytes=1
        )


def fixed_parser(records: list[NormalizedRecord]):
    def parse(path: Path) -> Iterator[NormalizedRecord]:
        yield from records

    return parse


def corrupt_parser(records: list[NormalizedRecord], error: Exception):
    """Yields ``records`` then raises ``error``, like a truncated file."""

    def parse(path: Path) -> Iterator[NormalizedRecord]:
        yield from records
        raise error

    return parse


class FakeVoyageClient:
    """Stands in for ``voyageai.AsyncClient``; records every embed call."""

    calls: list[dict[str, Any]] = []
    error: Exception | None = None
    vector: list[float] = [0.1, 0.2]

    def __init__(self, api_key: str, max_retries: int):
        self.api_key = api_key
        self.max_retries = max_retries

    async def embed(
        self, texts: list[str], model: str, input_type: str, truncation: bool
    ):
        FakeVoyageClient.calls.append(
            {
                "texts": texts,
                "model": model,
                "input_type": input_type,
                "truncation": truncation,
                "api_key": self.api_key,
                "max_retries": self.max_retries,
            }
        )
        if FakeVoyageClient.error is not None:
            raise FakeVoyageClient.error
        return SimpleNamespace(
            embeddings=[list(FakeVoyageClient.vector) for _ in texts],
            total_tokens=5 * len(texts),
        )
