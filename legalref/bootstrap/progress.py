import datetime
from collections.abc import Sequence
from typing import Any, Literal
from uuid import UUID

import psycopg
import structlog
from psycopg import sql as sql_lib
from psycopg.rows import dict_row
from pydantic import BaseModel

log = structlog.get_logger()

ProgressStatus = Literal["pending", "in_progress", "completed", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

# fields that update() may overwrite
UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "total_records",
        "processed_records",
        "embedded_records",
        "error_count",
        "last_processed_hash",
        "last_batch_index",
        "started_at",
        "completed_at",
    }
)


class ProgressNotFoundError(Exception):
    def __init__(self, progress_id: UUID):
        super().__init__(f"progress record {progress_id} not found")
        self.progress_id = progress_id


class ProgressRecord(BaseModel):
    """
    One ingestion attempt for one source.

    Counters only ever grow; a new attempt gets a new record so earlier
    attempts stay as an audit trail.
    """

    id: UUID
    source: str
    status: ProgressStatus
    total_records: int | None = None
    processed_records: int = 0
    embedded_records: int = 0
    error_count: int = 0
    last_processed_hash: str | None = None
    last_batch_index: int | None = None
    started_at: datetime.datetime | None = None
    completed_at: datetime.datetime | None = None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Queries:
    create = """
        insert into bootstrap_progress (source, status)
        values (%s, 'pending')
        returning *
    """
    mark_started = """
        update bootstrap_progress
        set status = 'in_progress'
        , total_records = coalesce(%s, total_records)
        , started_at = coalesce(started_at, clock_timestamp())
        , updated_at = clock_timestamp()
        where id = %s
        returning *
    """
    # additive so that concurrent flushes never lose an increment
    increment_counters = """
        update bootstrap_progress
        set processed_records = processed_records + %(processed)s
        , embedded_records = embedded_records + %(embedded)s
        , error_count = error_count + %(errors)s
        , last_batch_index = case
            when %(last_batch_index)s::int is null then last_batch_index
            else greatest(coalesce(last_batch_index, -1), %(last_batch_index)s::int)
          end
        , last_processed_hash = case
            when %(last_processed_hash)s::text is null then last_processed_hash
            when last_batch_index is null
              or %(last_batch_index)s::int >= last_batch_index
              then %(last_processed_hash)s::text
            else last_processed_hash
          end
        , updated_at = clock_timestamp()
        where id = %(id)s
        returning *
    """
    mark_terminal = """
        update bootstrap_progress
        set status = %s
        , completed_at = clock_timestamp()
        , updated_at = clock_timestamp()
        where id = %s
        returning *
    """
    get_by_id = "select * from bootstrap_progress where id = %s"
    get_latest = """
        select *
        from bootstrap_progress
        where source = %s
        order by created_at desc
        limit 1
    """
    list_latest = """
        select distinct on (source) *
        from bootstrap_progress
        where source = any(%s)
        order by source, created_at desc
    """


class ProgressTracker:
    """
    Durable per-source ingestion state in ``bootstrap_progress``.

    Every call opens its own short-lived connection so the tracker can be
    shared by concurrently running source workers.
    """

    def __init__(self, db_url: str):
        self.db_url = db_url

    async def _fetch_one(
        self, query: Any, params: Sequence[Any] | dict[str, Any]
    ) -> ProgressRecord | None:
        async with (
            await psycopg.AsyncConnection.connect(
                self.db_url, autocommit=True, application_name="legalref[progress]"
            ) as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(query, params)
            row = await cur.fetchone()
        return ProgressRecord(**row) if row is not None else None

    async def _fetch_existing(
        self,
        progress_id: UUID,
        query: Any,
        params: Sequence[Any] | dict[str, Any],
    ) -> ProgressRecord:
        record = await self._fetch_one(query, params)
        if record is None:
            raise ProgressNotFoundError(progress_id)
        return record

    async def create(self, source: str) -> ProgressRecord:
        record = await self._fetch_one(Queries.create, (source,))
        if record is None:
            raise Exception(f"failed to create progress record for {source}")
        await log.adebug(
            "progress record created", source=source, progress_id=record.id
        )
        return record

    async def mark_started(
        self, progress_id: UUID, total_records: int | None = None
    ) -> ProgressRecord:
        return await self._fetch_existing(
            progress_id, Queries.mark_started, (total_records, progress_id)
        )

    async def update(self, progress_id: UUID, **fields: Any) -> ProgressRecord:
        """
        Overwrites the given fields.

        Raises:
            ValueError: If a field is not a progress column that may be set.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update progress fields: {sorted(unknown)}")
        if not fields:
            record = await self.get_by_id(progress_id)
            if record is None:
                raise ProgressNotFoundError(progress_id)
            return record

        assignments = [
            sql_lib.SQL("{} = %s").format(sql_lib.Identifier(name))
            for name in fields
        ]
        assignments.append(sql_lib.SQL("updated_at = clock_timestamp()"))
        query = sql_lib.SQL(
            "update bootstrap_progress set {} where id = %s returning *"
        ).format(sql_lib.SQL(", ").join(assignments))
        return await self._fetch_existing(
            progress_id, query, (*fields.values(), progress_id)
        )

    async def increment_counters(
        self,
        progress_id: UUID,
        processed: int = 0,
        embedded: int = 0,
        errors: int = 0,
        last_batch_index: int | None = None,
        last_processed_hash: str | None = None,
    ) -> ProgressRecord:
        """
        Atomically adds to the counters and advances the checkpoint.

        ``last_batch_index`` never moves backwards; the checkpoint hash is
        only taken from a batch at least as recent as the stored one.

        Returns:
            ProgressRecord: The record after the increment.
        """
        if min(processed, embedded, errors) < 0:
            raise ValueError("counter increments must not be negative")
        return await self._fetch_existing(
            progress_id,
            Queries.increment_counters,
            {
                "id": progress_id,
                "processed": processed,
                "embedded": embedded,
                "errors": errors,
                "last_batch_index": last_batch_index,
                "last_processed_hash": last_processed_hash,
            },
        )

    async def mark_completed(self, progress_id: UUID) -> ProgressRecord:
        return await self._fetch_existing(
            progress_id, Queries.mark_terminal, ("completed", progress_id)
        )

    async def mark_failed(self, progress_id: UUID) -> ProgressRecord:
        return await self._fetch_existing(
            progress_id, Queries.mark_terminal, ("failed", progress_id)
        )

    async def get_by_id(self, progress_id: UUID) -> ProgressRecord | None:
        return await self._fetch_one(Queries.get_by_id, (progress_id,))

    async def get_latest(self, source: str) -> ProgressRecord | None:
        return await self._fetch_one(Queries.get_latest, (source,))

    async def list_latest(self, sources: Sequence[str]) -> list[ProgressRecord]:
        """The latest record of each source that has one, ordered by source."""
        async with (
            await psycopg.AsyncConnection.connect(
                self.db_url, autocommit=True, application_name="legalref[progress]"
            ) as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(Queries.list_latest, (list(sources),))
            rows = await cur.fetchall()
        return [ProgressRecord(**row) for row in rows]
