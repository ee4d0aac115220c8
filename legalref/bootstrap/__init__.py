from .cache import CachedEmbedding, EmbeddingCache
from .configuration import (
    BootstrapConfig,
    CacheSettings,
    EmbeddingSettings,
    HNSWIndexing,
    ProcessingSettings,
    RetrySettings,
)
from .coordinator import Coordinator, CoordinatorBusyError
from .embeddings import (
    Embedder,
    EmbeddingError,
    EmbeddingInputError,
    EmbeddingResponse,
    Usage,
    VoyageAIEmbedder,
)
from .events import IngestCompleted, IngestRequested, SourceCompleted, SourceDispatch
from .indexing import IndexBuildError, rebuild_hnsw_index
from .processing import BatchProcessor, BatchResult, should_circuit_break
from .progress import ProgressNotFoundError, ProgressRecord, ProgressTracker
from .retry import NonRetriableError, with_retry
from .schema import ainstall, install
from .store import ReferenceStore, StoreSession
from .worker import SourceWorker

__all__ = [
    "BatchProcessor",
    "BatchResult",
    "BootstrapConfig",
    "CacheSettings",
    "CachedEmbedding",
    "Coordinator",
    "CoordinatorBusyError",
    "Embedder",
    "EmbeddingCache",
    "EmbeddingError",
    "EmbeddingInputError",
    "EmbeddingResponse",
    "EmbeddingSettings",
    "HNSWIndexing",
    "IndexBuildError",
    "IngestCompleted",
    "IngestRequested",
    "NonRetriableError",
    "ProcessingSettings",
    "ProgressNotFoundError",
    "ProgressRecord",
    "ProgressTracker",
    "ReferenceStore",
    "RetrySettings",
    "SourceCompleted",
    "SourceDispatch",
    "SourceWorker",
    "StoreSession",
    "Usage",
    "VoyageAIEmbedder",
    "ainstall",
    "install",
    "rebuild_hnsw_index",
    "should_circuit_break",
    "with_retry",
]
