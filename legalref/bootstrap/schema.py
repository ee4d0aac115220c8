import asyncio

import psycopg
import structlog
from psycopg import sql as sql_lib

log = structlog.get_logger()

DOCUMENTS_TABLE = "reference_documents"
EMBEDDINGS_TABLE = "reference_embeddings"
PROGRESS_TABLE = "bootstrap_progress"


def _get_server_version_sql() -> sql_lib.SQL:
    return sql_lib.SQL(
        "select current_setting('server_version_num', true)::int / 10000"
    )


def _get_tables_sql(dimensions: int) -> sql_lib.Composed:
    return sql_lib.SQL("""
        create table if not exists reference_documents
        ( id uuid primary key default gen_random_uuid()
        , source text not null
        , source_id text not null
        , title text not null
        , raw_text text not null
        , metadata jsonb not null default '{{}}'::jsonb
        , content_hash text not null unique
        , created_at timestamptz not null default now()
        );

        create table if not exists reference_embeddings
        ( id uuid primary key default gen_random_uuid()
        , document_id uuid not null references reference_documents (id)
            on delete cascade
        , content text not null
        , embedding vector({dimensions}) not null
        , granularity text not null
        , section_path text[] not null default '{{}}'
        , category text
        , hypothesis_id int
        , nli_label text
        , content_hash text not null unique
        , metadata jsonb not null default '{{}}'::jsonb
        , created_at timestamptz not null default now()
        );

        create index if not exists reference_documents_source_idx
            on reference_documents (source);

        create table if not exists bootstrap_progress
        ( id uuid primary key default gen_random_uuid()
        , source text not null
        , status text not null default 'pending'
            check (status in ('pending', 'in_progress', 'completed', 'failed'))
        , total_records int
        , processed_records int not null default 0
        , embedded_records int not null default 0
        , error_count int not null default 0
        , last_processed_hash text
        , last_batch_index int
        , started_at timestamptz
        , completed_at timestamptz
        , created_at timestamptz not null default clock_timestamp()
        , updated_at timestamptz not null default clock_timestamp()
        );

        create index if not exists bootstrap_progress_source_created_idx
            on bootstrap_progress (source, created_at desc);
    """).format(dimensions=sql_lib.SQL(str(int(dimensions))))


async def ainstall(db_url: str, dimensions: int = 1024) -> None:
    """Asynchronously create the vector extension and the ingestion tables.

    Installing is idempotent: existing tables are left untouched.

    Args:
        db_url: Database connection URL
        dimensions: Dimension of the ``reference_embeddings.embedding`` column

    Raises:
        RuntimeError: If the server is older than postgres 13
    """
    async with (
        await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn,
        conn.cursor() as cur,
        conn.transaction(),
    ):
        await cur.execute(_get_server_version_sql())
        result = await cur.fetchone()
        pg_version = int(result[0]) if result is not None else None
        if pg_version and pg_version < 13:
            raise RuntimeError(
                f"postgres {pg_version} is unsupported, legalref requires postgres version 13 or greater"  # noqa
            )
        await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        await conn.execute(_get_tables_sql(dimensions))
    await log.ainfo("schema installed", dimensions=dimensions)


def install(db_url: str, dimensions: int = 1024) -> None:
    asyncio.run(ainstall(db_url, dimensions))
