"""Integration test fixtures.

Applies the identity migrations against an ephemeral PostgreSQL database
provided by pytest-postgresql before any integration test runs.
"""

from __future__ import annotations

import csv
import shutil
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from identity_etl.config import ImportSettings
from identity_etl.passwords import IdentityV3PasswordHasher

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = sorted((PROJECT_ROOT / "migrations").glob("*.sql"))

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


def pytest_collection_modifyitems(config, items):
    if shutil.which("pg_ctl") is not None:
        return
    skip = pytest.mark.skip(reason="pg_ctl not on PATH; PostgreSQL integration tests skipped")
    for item in items:
        if "integration" in item.path.parts:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (psycopg connection, dsn) with the schema applied.

    Function scope gives every test a fresh database.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def pg_settings(db_conn) -> ImportSettings:
    _, dsn = db_conn
    return ImportSettings("Postgres", dsn, batch_size=2)


@pytest.fixture
def fast_hasher() -> IdentityV3PasswordHasher:
    return IdentityV3PasswordHasher(iterations=1_000)


@pytest.fixture
def write_csv(tmp_path):
    def _write(name: str, rows: list[dict[str, str]], headers: list[str] | None = None) -> Path:
        path = tmp_path / name
        fieldnames = headers or list(rows[0].keys())
        with open(path, "w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=fieldnames)
            writer.writeheader()
            writer.writerows(rows)
        return path

    return _write
