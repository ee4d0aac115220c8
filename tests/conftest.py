import os
from collections.abc import Generator

import psycopg
import pytest
import voyageai
from testcontainers.postgres import PostgresContainer  # type:ignore

from legalref.bootstrap.schema import install
from tests.utils import FakeVoyageClient

DIMENSION_COUNT = 4


@pytest.fixture(autouse=True)
def __env_setup():  # type:ignore
    # Restore environment variables changed by a test.
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def voyage_client(monkeypatch: pytest.MonkeyPatch) -> type[FakeVoyageClient]:
    FakeVoyageClient.calls = []
    FakeVoyageClient.error = None
    FakeVoyageClient.vector = [0.1, 0.2]
    monkeypatch.setattr(voyageai, "AsyncClient", FakeVoyageClient)
    return FakeVoyageClient


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    container = PostgresContainer(
        image="pgvector/pgvector:pg17",
        username="legalref",
        password="my-password",
        dbname="legalref",
        driver=None,
    )
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"docker is not available: {e}")
    yield container
    container.stop()


@pytest.fixture(scope="session")
def installed_db_url(postgres_container: PostgresContainer) -> str:
    db_url: str = postgres_container.get_connection_url()  # type: ignore
    install(db_url, DIMENSION_COUNT)
    return db_url


@pytest.fixture
def db_url(installed_db_url: str) -> Generator[str, None, None]:
    yield installed_db_url
    with psycopg.connect(installed_db_url, autocommit=True) as conn:
        conn.execute(
            "truncate reference_embeddings, reference_documents, bootstrap_progress"
        )
