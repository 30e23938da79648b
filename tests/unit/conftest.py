"""Unit test fixtures.

Pipeline tests run against an in-memory SQLite database through the same
Store class used for the real providers, with a SQLite dialect.
"""

from __future__ import annotations

import csv
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import pytest

from identity_etl.config import ImportSettings
from identity_etl.passwords import IdentityV3PasswordHasher
from identity_etl.store import Dialect, Store

SQLITE = Dialect("sqlite", "?", '"', '"')

sqlite3.register_adapter(datetime, lambda d: d.isoformat(" "))

SCHEMA = """
CREATE TABLE "AspNetRoles" (
    "Id" TEXT PRIMARY KEY,
    "Name" TEXT,
    "NormalizedName" TEXT UNIQUE,
    "ConcurrencyStamp" TEXT
);
CREATE TABLE "AspNetRoleClaims" (
    "Id" INTEGER PRIMARY KEY AUTOINCREMENT,
    "RoleId" TEXT NOT NULL,
    "ClaimType" TEXT,
    "ClaimValue" TEXT
);
CREATE TABLE "AspNetUsers" (
    "Id" TEXT PRIMARY KEY,
    "UserName" TEXT,
    "NormalizedUserName" TEXT UNIQUE,
    "Email" TEXT,
    "NormalizedEmail" TEXT,
    "EmailConfirmed" INTEGER NOT NULL DEFAULT 0,
    "PasswordHash" TEXT,
    "SecurityStamp" TEXT,
    "ConcurrencyStamp" TEXT,
    "PhoneNumber" TEXT,
    "PhoneNumberConfirmed" INTEGER NOT NULL DEFAULT 0,
    "TwoFactorEnabled" INTEGER NOT NULL DEFAULT 0,
    "LockoutEnd" TEXT,
    "LockoutEnabled" INTEGER NOT NULL DEFAULT 0,
    "AccessFailedCount" INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE "AspNetUserRoles" (
    "UserId" TEXT NOT NULL,
    "RoleId" TEXT NOT NULL,
    PRIMARY KEY ("UserId", "RoleId")
);
CREATE TABLE "AspNetUserClaims" (
    "Id" INTEGER PRIMARY KEY AUTOINCREMENT,
    "UserId" TEXT NOT NULL,
    "ClaimType" TEXT,
    "ClaimValue" TEXT
);
CREATE TABLE "AspNetUserLogins" (
    "LoginProvider" TEXT NOT NULL,
    "ProviderKey" TEXT NOT NULL,
    "ProviderDisplayName" TEXT,
    "UserId" TEXT NOT NULL,
    PRIMARY KEY ("LoginProvider", "ProviderKey")
);
CREATE TABLE "AspNetUserTokens" (
    "UserId" TEXT NOT NULL,
    "LoginProvider" TEXT NOT NULL,
    "Name" TEXT NOT NULL,
    "Value" TEXT,
    PRIMARY KEY ("UserId", "LoginProvider", "Name")
);
CREATE TABLE "Customers" (
    "Id" INTEGER PRIMARY KEY AUTOINCREMENT,
    "Code" TEXT NOT NULL UNIQUE,
    "Name" TEXT NOT NULL,
    "Email" TEXT
);
"""

EXTERNAL_SCHEMA = """
CREATE TABLE "ExternalData"."ExtEmployeeFromSinta" (
    "Id" INTEGER PRIMARY KEY AUTOINCREMENT,
    "EmployeeId" TEXT,
    "EmployeeName" TEXT,
    "PositionId" TEXT NOT NULL,
    "PositionName" TEXT,
    "Area" TEXT,
    "PlantArea" TEXT,
    "Directorate" TEXT,
    "Function" TEXT,
    "Department" TEXT,
    "Email" TEXT,
    "Level" TEXT,
    "SuperiorId" TEXT,
    "SuperiorPositionId" TEXT,
    "UserName" TEXT,
    "Unit" TEXT,
    "Posgrd" TEXT,
    "CostCenter" TEXT,
    "Entity" TEXT,
    "LastUpdate" TEXT,
    "Helper_IsDelegate" INTEGER,
    "Helper_EmployeePositionTypeId" INTEGER
);
"""


def create_schema(conn: sqlite3.Connection, *, external: bool = True) -> None:
    conn.executescript(SCHEMA)
    if external:
        conn.execute("ATTACH DATABASE ':memory:' AS \"ExternalData\"")
        conn.executescript(EXTERNAL_SCHEMA)
    conn.commit()


# ---------------------------------------------------------------------------
# Connection / store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sqlite_conn():
    conn = sqlite3.connect(":memory:")
    create_schema(conn)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def store(sqlite_conn):
    return Store(sqlite_conn, SQLITE)


@pytest.fixture
def settings():
    return ImportSettings(provider="Postgres", connection_string="memory", batch_size=500)


@pytest.fixture
def fast_hasher():
    return IdentityV3PasswordHasher(iterations=1_000)


# ---------------------------------------------------------------------------
# CSV / query helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def write_csv(tmp_path) -> Callable[..., Path]:
    """Write rows (list of dicts) to a CSV under tmp_path and return its path."""
    def _write(name: str, rows: list[dict[str, Any]], headers: list[str] | None = None) -> Path:
        path = tmp_path / name
        fieldnames = headers or list(rows[0].keys())
        with path.open("w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=fieldnames)
            writer.writeheader()
            for row in rows:
                writer.writerow(row)
        return path

    return _write


@pytest.fixture
def query(sqlite_conn) -> Callable[..., list[dict[str, Any]]]:
    """Run a SELECT on the test database and return rows as dicts."""
    def _query(sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        cur = sqlite_conn.execute(sql, params)
        names = [d[0] for d in cur.description]
        return [dict(zip(names, row)) for row in cur.fetchall()]

    return _query


@pytest.fixture
def count(sqlite_conn) -> Callable[[str], int]:
    def _count(table: str) -> int:
        return sqlite_conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]

    return _count


@pytest.fixture
def open_file_store(tmp_path) -> Callable[..., Store]:
    """Factory for Stores on a file-backed database (survives Store.close)."""
    db_path = tmp_path / "identity.db"
    conn = sqlite3.connect(db_path)
    create_schema(conn, external=False)
    conn.close()

    def _open(cancel=None) -> Store:
        return Store(sqlite3.connect(db_path), SQLITE, cancel)

    return _open
