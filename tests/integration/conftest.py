import os
import uuid
from collections.abc import Generator
from typing import Any

import psycopg
import pytest

from docbatch.config.settings import Settings
from docbatch.database.connection import apply_schema, close_pool, get_connection, init_pool
from docbatch.database.models import FileRecord
from docbatch.database.repositories.file_repository import FileRepository


def _test_settings() -> Settings:
    os.environ.setdefault("DB_DATABASE", "docbatch_test")
    return Settings()


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    return _test_settings()


@pytest.fixture(scope="session")
def integration_pool(test_settings: Settings) -> Generator[None, None, None]:
    try:
        init_pool(test_settings)
        apply_schema()
    except Exception as e:
        close_pool()
        pytest.skip(
            f"PostgreSQL test DB not available: {e}. "
            "Set DB_* env to point at a disposable database"
        )
    try:
        yield
    finally:
        close_pool()


@pytest.fixture
def db_conn(integration_pool: None) -> Generator[psycopg.Connection[Any], None, None]:
    with get_connection() as conn:
        yield conn


@pytest.fixture
def batch_context(integration_pool: None) -> Generator[str, None, None]:
    """A fresh batch context whose rows are removed after the test."""
    context = f"it-{uuid.uuid4().hex}"
    yield context
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM processing_records WHERE batch_context = %s", (context,))
            cur.execute("DELETE FROM batch_files WHERE batch_context = %s", (context,))
        conn.commit()


@pytest.fixture
def seed_db_files(batch_context: str):
    """Insert pending files for the test's batch context and return their ids."""

    def _seed(count: int) -> list[str]:
        repo = FileRepository()
        ids = []
        for index in range(count):
            stored = repo.insert(
                FileRecord(
                    id="",
                    batch_context=batch_context,
                    filename=f"{uuid.uuid4().hex[:12]}_file_{index}.pdf",
                    original_filename=f"file_{index}.pdf",
                    size_bytes=1024 + index,
                    sha256=uuid.uuid4().hex * 2,
                    declared_period="03/2024",
                    kind="payslip",
                )
            )
            ids.append(stored.id)
        return ids

    return _seed
