from collections.abc import Sequence
from dataclasses import dataclass

import structlog
from ddtrace.trace import tracer

from ..datasets.types import NormalizedRecord
from ..tracing import tag_span
from .cache import EmbeddingCache
from .configuration import RetrySettings
from .embeddings import Embedder, EmbeddingVector, InputType
from .retry import with_retry
from .store import RecordSink

logger = structlog.get_logger()

CIRCUIT_BREAKER_MIN_SAMPLE = 100
CIRCUIT_BREAKER_MAX_ERROR_RATE = 0.10


def should_circuit_break(total_processed: int, total_errors: int) -> bool:
    """
    Whether a source's cumulative error rate is high enough to stop it.

    Below 100 attempted records the breaker never trips. Above that it trips
    when errors make up strictly more than 10% of attempts.
    """
    total = total_processed + total_errors
    if total < CIRCUIT_BREAKER_MIN_SAMPLE:
        return False
    return total_errors / total > CIRCUIT_BREAKER_MAX_ERROR_RATE


@dataclass
class BatchResult:
    processed: int = 0
    embedded: int = 0
    errors: int = 0

    def __add__(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(
            processed=self.processed + other.processed,
            embedded=self.embedded + other.embedded,
            errors=self.errors + other.errors,
        )


class EmbeddingCountMismatch(Exception):
    def __init__(self, expected: int, received: int):
        super().__init__(f"expected {expected} embeddings, received {received}")


class BatchProcessor:
    """
    Embeds one batch of records and persists every record that got a valid
    vector.

    An embedding failure after retries fails the whole batch. Dimension
    mismatches and persistence failures only fail the record concerned.

    Args:
        embedder: The embedding client, called through ``with_retry``.
        sink: Where embedded records are upserted.
        cache: Optional cache consulted before calling the embedder.
        retry: Attempts and backoff schedule for embedding calls.
        input_type: Voyage input type for the texts.
    """

    def __init__(
        self,
        embedder: Embedder,
        sink: RecordSink,
        cache: EmbeddingCache | None = None,
        retry: RetrySettings | None = None,
        input_type: InputType = "document",
    ):
        self.embedder = embedder
        self.sink = sink
        self.cache = cache
        self.retry = retry or RetrySettings()
        self.input_type: InputType = input_type

    async def _embed(
        self, texts: list[str], source: str, batch_index: int
    ) -> tuple[list[EmbeddingVector], list[int]]:
        """
        Returns one vector and one token count per text, in order.

        Only cache misses are sent to the embedder.
        """
        hits = (
            self.cache.get_many(texts, self.input_type)
            if self.cache is not None
            else {}
        )
        miss_indices = [i for i in range(len(texts)) if i not in hits]
        embeddings: list[EmbeddingVector | None] = [None] * len(texts)
        tokens = [0] * len(texts)
        for i, entry in hits.items():
            embeddings[i] = entry.embedding
            tokens[i] = entry.tokens

        if miss_indices:
            miss_texts = [texts[i] for i in miss_indices]

            def on_retry(error: Exception, attempt: int) -> None:
                logger.warning(
                    "embedding attempt failed",
                    source=source,
                    batch_index=batch_index,
                    attempt=attempt,
                    error=str(error),
                )

            response = await with_retry(
                lambda: self.embedder.embed_batch(miss_texts, self.input_type),
                max_attempts=self.retry.max_attempts,
                backoff_ms=self.retry.backoff_ms,
                on_retry=on_retry,
            )
            if len(response.embeddings) != len(miss_texts):
                raise EmbeddingCountMismatch(
                    len(miss_texts), len(response.embeddings)
                )
            per_text_tokens = response.usage.total_tokens // len(miss_texts)
            for i, embedding in zip(miss_indices, response.embeddings, strict=True):
                embeddings[i] = embedding
                tokens[i] = per_text_tokens
                if self.cache is not None:
                    self.cache.set(
                        texts[i], self.input_type, embedding, per_text_tokens
                    )

        return [e for e in embeddings if e is not None], tokens

    @tracer.wrap()
    async def process_batch(
        self, records: Sequence[NormalizedRecord], source: str, batch_index: int
    ) -> BatchResult:
        if not records:
            return BatchResult()

        tag_span(source=source, batch_index=batch_index, records=len(records))
        texts = [record.content for record in records]
        try:
            embeddings, token_counts = await self._embed(texts, source, batch_index)
        except EmbeddingCountMismatch as e:
            await logger.aerror(
                "embedding count mismatch, failing batch",
                source=source,
                batch_index=batch_index,
                error=str(e),
            )
            return BatchResult(errors=len(records))
        except Exception as e:
            await logger.aerror(
                "batch embedding failed",
                source=source,
                batch_index=batch_index,
                records=len(records),
                error=str(e),
            )
            return BatchResult(errors=len(records))

        result = BatchResult()
        dimensions = self.embedder.dimensions
        for record, embedding, token_count in zip(
            records, embeddings, token_counts, strict=True
        ):
            if len(embedding) != dimensions:
                await logger.awarning(
                    "embedding has wrong dimensions",
                    source=source,
                    batch_index=batch_index,
                    source_id=record.source_id,
                    expected=dimensions,
                    received=len(embedding),
                )
                result.errors += 1
                continue
            try:
                await self.sink.upsert(record, embedding, token_count)
            except Exception as e:
                await logger.aerror(
                    "failed to persist record",
                    source=source,
                    batch_index=batch_index,
                    source_id=record.source_id,
                    error=str(e),
                )
                result.errors += 1
                continue
            result.processed += 1
            result.embedded += 1

        tag_span(
            processed=result.processed, embedded=result.embedded, errors=result.errors
        )
        await logger.adebug(
            "batch processed",
            source=source,
            batch_index=batch_index,
            processed=result.processed,
            embedded=result.embedded,
            errors=result.errors,
        )
        return result
