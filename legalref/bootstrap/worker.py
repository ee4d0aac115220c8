import asyncio
import contextlib
from collections.abc import Iterator
from itertools import islice
from pathlib import Path
from uuid import UUID

import structlog

from ..datasets import Parser
from ..datasets.types import DatasetSource, NormalizedRecord
from .events import SourceCompleted
from .processing import BatchProcessor, should_circuit_break
from .progress import ProgressNotFoundError, ProgressRecord, ProgressTracker

logger = structlog.get_logger()

CIRCUIT_BREAKER = "circuit_breaker"
STOPPED = "timeout"


class SourceWorker:
    """
    Drives one source from its parser to a terminal progress status.

    Batches are processed one after the other: the breaker is checked
    against the updated cumulative counters before the next batch is pulled.
    Records whose content hash was already embedded, and records with empty
    content, are skipped without counting.

    Args:
        source: The dataset being ingested.
        parser: Produces the records of ``path`` lazily.
        path: Local copy of the dataset.
        processor: Embeds and persists batches.
        progress: Durable progress tracker.
        batch_size: Records per batch, at most the embedding batch limit.
        inter_batch_delay: Seconds to pause between batches.
        known_hashes: Content hashes to skip.
        stop_event: When set, no further batch is started.
    """

    def __init__(
        self,
        source: DatasetSource,
        parser: Parser,
        path: Path,
        processor: BatchProcessor,
        progress: ProgressTracker,
        batch_size: int,
        inter_batch_delay: float = 0.0,
        known_hashes: set[str] | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.source = source
        self.parser = parser
        self.path = path
        self.processor = processor
        self.progress = progress
        self.batch_size = batch_size
        self.inter_batch_delay = inter_batch_delay
        self.known_hashes = set(known_hashes or ())
        self.stop_event = stop_event
        self.skipped = 0

    def _wanted(self, record: NormalizedRecord) -> bool:
        if not record.content or record.content_hash in self.known_hashes:
            self.skipped += 1
            return False
        self.known_hashes.add(record.content_hash)
        return True

    def _next_batch(
        self, records: Iterator[NormalizedRecord]
    ) -> list[NormalizedRecord]:
        return list(islice(filter(self._wanted, records), self.batch_size))

    async def run(self, progress_id: UUID) -> SourceCompleted:
        """
        Processes the source until the parser is exhausted, the breaker
        trips, the stop event is set, or an unrecoverable error occurs.

        Raises:
            ProgressNotFoundError: If ``progress_id`` does not exist.
        """
        record = await self.progress.get_by_id(progress_id)
        if record is None:
            raise ProgressNotFoundError(progress_id)
        if record.is_terminal:
            await logger.awarning(
                "progress record already finished",
                source=self.source.value,
                progress_id=progress_id,
                status=record.status,
            )
            return completion_from(record, reason="already finished")

        record = await self.progress.mark_started(progress_id)
        # a re-dispatched record continues numbering after its checkpoint
        batch_index = (
            record.last_batch_index + 1 if record.last_batch_index is not None else 0
        )
        await logger.ainfo(
            "source started",
            source=self.source.value,
            progress_id=progress_id,
            batch_index=batch_index,
            known_hashes=len(self.known_hashes),
        )

        reason: str | None = None
        records: Iterator[NormalizedRecord] | None = None
        try:
            records = self.parser(self.path)
            while True:
                if self.stop_event is not None and self.stop_event.is_set():
                    reason = STOPPED
                    break
                batch = await asyncio.to_thread(self._next_batch, records)
                if not batch:
                    break
                result = await self.processor.process_batch(
                    batch, self.source.value, batch_index
                )
                record = await self.progress.increment_counters(
                    progress_id,
                    processed=result.processed,
                    embedded=result.embedded,
                    errors=result.errors,
                    last_batch_index=batch_index,
                    last_processed_hash=batch[-1].content_hash,
                )
                if should_circuit_break(record.processed_records, record.error_count):
                    reason = CIRCUIT_BREAKER
                    await logger.aerror(
                        "circuit breaker tripped",
                        source=self.source.value,
                        progress_id=progress_id,
                        processed=record.processed_records,
                        errors=record.error_count,
                    )
                    break
                batch_index += 1
                if self.inter_batch_delay > 0:
                    await asyncio.sleep(self.inter_batch_delay)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            await logger.aexception(
                "source failed",
                source=self.source.value,
                progress_id=progress_id,
                batch_index=batch_index,
            )
        finally:
            close = getattr(records, "close", None)
            # a cancelled batch pull may still be running in its thread
            if close is not None:
                with contextlib.suppress(ValueError):
                    close()

        if reason is None:
            record = await self.progress.mark_completed(progress_id)
        else:
            record = await self.progress.mark_failed(progress_id)
        await logger.ainfo(
            "source finished",
            source=self.source.value,
            progress_id=progress_id,
            status=record.status,
            processed=record.processed_records,
            embedded=record.embedded_records,
            errors=record.error_count,
            skipped=self.skipped,
            reason=reason,
        )
        return completion_from(record, reason)


def completion_from(
    record: ProgressRecord, reason: str | None = None
) -> SourceCompleted:
    return SourceCompleted(
        source=DatasetSource(record.source),
        progress_id=record.id,
        status="completed" if record.status == "completed" else "failed",
        processed_records=record.processed_records,
        embedded_records=record.embedded_records,
        error_count=record.error_count,
        reason=reason,
    )
