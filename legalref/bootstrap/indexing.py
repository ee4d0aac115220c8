import psycopg
import structlog
from ddtrace.trace import tracer
from psycopg import sql as sql_lib

from .configuration import HNSWIndexing

log = structlog.get_logger()


class IndexBuildError(Exception):
    """Rebuilding the similarity index failed; the run cannot finish."""


def rebuild_statements(indexing: HNSWIndexing) -> list[sql_lib.Composed]:
    index = sql_lib.Identifier(indexing.index_name)
    return [
        sql_lib.SQL("DROP INDEX IF EXISTS {}").format(index),
        sql_lib.SQL(
            "CREATE INDEX {} ON reference_embeddings "
            "USING hnsw (embedding {}) WITH (m = {}, ef_construction = {})"
        ).format(
            index,
            sql_lib.SQL(indexing.opclass),
            sql_lib.SQL(str(int(indexing.m))),
            sql_lib.SQL(str(int(indexing.ef_construction))),
        ),
    ]


@tracer.wrap()
async def rebuild_hnsw_index(db_url: str, indexing: HNSWIndexing) -> None:
    """
    Drops and recreates the HNSW index over ``reference_embeddings``.

    Must only run once every writer has finished.

    Raises:
        IndexBuildError: If either statement fails.
    """
    await log.ainfo(
        "rebuilding index",
        index=indexing.index_name,
        m=indexing.m,
        ef_construction=indexing.ef_construction,
    )
    try:
        async with (
            await psycopg.AsyncConnection.connect(
                db_url, autocommit=True, application_name="legalref[index]"
            ) as conn,
            conn.cursor() as cur,
        ):
            for statement in rebuild_statements(indexing):
                await cur.execute(statement)
    except psycopg.Error as e:
        raise IndexBuildError(f"failed to rebuild {indexing.index_name}: {e}") from e
    await log.ainfo("index rebuilt", index=indexing.index_name)
