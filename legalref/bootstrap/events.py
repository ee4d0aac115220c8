from collections.abc import Awaitable, Callable
from typing import Literal, TypeAlias
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from ..datasets.types import ALL_SOURCES, DatasetSource

logger = structlog.get_logger()

INGEST_REQUESTED = "bootstrap/ingest.requested"
SOURCE_DISPATCH = "bootstrap/source.process"
SOURCE_COMPLETED = "bootstrap/source.completed"
INGEST_COMPLETED = "bootstrap/ingest.completed"


class IngestRequested(BaseModel):
    sources: list[DatasetSource] = Field(default_factory=lambda: list(ALL_SOURCES))
    force_refresh: bool = False


class SourceDispatch(BaseModel):
    source: DatasetSource
    progress_id: UUID
    force_refresh: bool = False


class SourceCompleted(BaseModel):
    """
    Signal a source emits when it stops, successfully or not.

    Attributes:
        progress_id: None when no progress record could be created.
        reason: Why a source failed, e.g. ``circuit_breaker``, ``timeout``,
            ``busy`` or the error message of a download or parser failure.
    """

    source: DatasetSource
    progress_id: UUID | None
    status: Literal["completed", "failed"]
    processed_records: int = 0
    embedded_records: int = 0
    error_count: int = 0
    reason: str | None = None


class IngestCompleted(BaseModel):
    sources: list[DatasetSource]
    total_records: int
    total_embeddings: int
    duration_ms: int
    per_source: dict[DatasetSource, SourceCompleted] = Field(default_factory=dict)
    downloaded: dict[DatasetSource, bool] = Field(default_factory=dict)


Emitter: TypeAlias = Callable[[str, BaseModel], Awaitable[None]]


async def log_event(name: str, payload: BaseModel) -> None:
    """Default emitter: writes the event to the structured log."""
    await logger.ainfo(name, **payload.model_dump(mode="json"))
