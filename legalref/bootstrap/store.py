from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Protocol
from uuid import UUID

import psycopg
import structlog
from pgvector.psycopg import register_vector_async  # type: ignore
from psycopg import AsyncConnection
from psycopg.types.json import Jsonb

from ..datasets.types import NormalizedRecord

logger = structlog.get_logger()


class RecordSink(Protocol):
    """Where the batch processor persists embedded records."""

    async def upsert(
        self, record: NormalizedRecord, embedding: Sequence[float], token_count: int
    ) -> None: ...


def document_title(record: NormalizedRecord) -> str:
    if record.section_path:
        return " > ".join(record.section_path)
    return record.source_id


class Queries:
    upsert_document = """
        insert into reference_documents
        (source, source_id, title, raw_text, metadata, content_hash)
        values (%s, %s, %s, %s, %s, %s)
        on conflict (content_hash) do update set source = excluded.source
        returning id
    """
    insert_embedding = """
        insert into reference_embeddings
        ( document_id, content, embedding, granularity, section_path
        , category, hypothesis_id, nli_label, content_hash, metadata
        )
        values (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        on conflict (content_hash) do nothing
    """
    existing_hashes = """
        select e.content_hash
        from reference_embeddings e
        join reference_documents d on d.id = e.document_id
        where d.source = %s
    """


class StoreSession:
    """
    Idempotent writes over one autocommit connection.

    Each ``upsert`` runs in its own transaction so that one failing record
    never rolls back the records persisted before it.
    """

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    async def upsert(
        self, record: NormalizedRecord, embedding: Sequence[float], token_count: int
    ) -> UUID:
        """
        Inserts the document and its embedding, keyed on ``content_hash``.

        A document that already exists only has its ``source`` updated; an
        existing embedding is left untouched.

        Returns:
            UUID: The id of the (possibly pre-existing) document row.
        """
        # Note: deferred import to avoid import overhead
        import numpy as np

        async with self.conn.transaction(), self.conn.cursor() as cursor:
            await cursor.execute(
                Queries.upsert_document,
                (
                    record.source.value,
                    record.source_id,
                    document_title(record),
                    record.content,
                    Jsonb(record.metadata),
                    record.content_hash,
                ),
            )
            row = await cursor.fetchone()
            if row is None:
                raise Exception("document upsert returned no id")
            document_id: UUID = row[0]
            await cursor.execute(
                Queries.insert_embedding,
                (
                    document_id,
                    record.content,
                    np.array(embedding),
                    record.granularity,
                    record.section_path,
                    record.category,
                    record.hypothesis_id,
                    record.nli_label,
                    record.content_hash,
                    Jsonb({**record.metadata, "tokenCount": token_count}),
                ),
            )
        return document_id

    async def existing_hashes(self, source: str) -> set[str]:
        """The content hashes already embedded for ``source``."""
        async with self.conn.cursor() as cursor:
            await cursor.execute(Queries.existing_hashes, (source,))
            return {row[0] for row in await cursor.fetchall()}


class ReferenceStore:
    def __init__(self, db_url: str):
        self.db_url = db_url

    @asynccontextmanager
    async def session(self, name: str = "store") -> AsyncIterator[StoreSession]:
        async with await psycopg.AsyncConnection.connect(
            self.db_url,
            autocommit=True,
            application_name=f"legalref[{name}]",
        ) as conn:
            await register_vector_async(conn)
            yield StoreSession(conn)
