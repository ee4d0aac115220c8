from pathlib import Path
from typing import Annotated, Literal

from annotated_types import Ge, Gt, Le
from pydantic import BaseModel, Field, model_validator
from typing_extensions import Self

DEFAULT_DB_URL = "postgres://postgres@localhost:5432/postgres"
DEFAULT_CACHE_DIR = Path(".cache/datasets")


class EmbeddingSettings(BaseModel):
    """
    Settings for the Voyage AI embedding client.

    Attributes:
        model (str): The Voyage model used for embeddings.
        dimensions (Annotated[int, Gt(gt=0)]): The size of every returned
            vector; also the dimension of the ``embedding`` column.
        batch_limit (Annotated[int, Gt(gt=0), Le(le=1000)]): The maximum
            number of texts per API call. Default is 128.
        max_input_tokens (Annotated[int, Gt(gt=0)]): The model's context
            length. Longer texts are truncated by the API and count for this
            many tokens when requests are split by token budget.
        api_key_name (str): The environment variable holding the API key.
    """

    model: str = "voyage-law-2"
    dimensions: Annotated[int, Gt(gt=0)] = 1024
    batch_limit: Annotated[int, Gt(gt=0), Le(le=1000)] = 128
    max_input_tokens: Annotated[int, Gt(gt=0)] = 16_000
    api_key_name: str = "VOYAGE_API_KEY"


class RetrySettings(BaseModel):
    """
    Bounded retry for embedding calls.

    The delay before attempt k+1 is ``backoff_ms[min(k-1, len(backoff_ms)-1)]``.
    """

    max_attempts: Annotated[int, Gt(gt=0), Le(le=10)] = 3
    backoff_ms: list[Annotated[int, Ge(ge=0)]] = Field(
        default_factory=lambda: [1000, 2000, 4000], min_length=1
    )


class ProcessingSettings(BaseModel):
    batch_size: Annotated[int, Gt(gt=0), Le(le=1000)] = 128
    inter_batch_delay: Annotated[float, Ge(ge=0)] = 0.2
    max_concurrent_sources: Annotated[int, Gt(gt=0), Le(le=10)] = 2


class CacheSettings(BaseModel):
    max_entries: Annotated[int, Gt(gt=0)] = 10_000
    ttl: Annotated[float, Gt(gt=0)] = 3600.0


class HNSWIndexing(BaseModel):
    """
    HNSW index rebuilt over ``reference_embeddings.embedding`` after each run.

    Attributes:
        implementation (Literal["hnsw"]): The literal identifier for this
            implementation.
        index_name (str): Name of the index, dropped and recreated each run.
        opclass (Literal): The distance operator class.
        m (int): Max connections per layer.
        ef_construction (int): Size of the candidate list during build.
    """

    implementation: Literal["hnsw"] = "hnsw"
    index_name: str = "ref_embeddings_hnsw_idx"
    opclass: Literal["vector_cosine_ops", "vector_l2_ops", "vector_ip_ops"] = (
        "vector_cosine_ops"
    )
    m: Annotated[int, Ge(ge=2), Le(le=100)] = 16
    ef_construction: Annotated[int, Ge(ge=4), Le(le=1000)] = 64


class BootstrapConfig(BaseModel):
    """All knobs of one ingestion run, defaulted for the Voyage law model."""

    db_url: str = DEFAULT_DB_URL
    cache_dir: Path = DEFAULT_CACHE_DIR
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    indexing: HNSWIndexing = Field(default_factory=HNSWIndexing)
    # seconds
    source_timeout: Annotated[float, Gt(gt=0)] = 2 * 60 * 60
    cancel_grace: Annotated[float, Ge(ge=0)] = 60.0
    stale_after: Annotated[float, Gt(gt=0)] | None = None

    @model_validator(mode="after")
    def check_batch_size(self) -> Self:
        if self.processing.batch_size > self.embedding.batch_limit:
            raise ValueError(
                f"batch_size {self.processing.batch_size} exceeds the embedding "
                f"batch limit {self.embedding.batch_limit}"
            )
        if self.stale_after is None:
            self.stale_after = self.source_timeout
        return self
