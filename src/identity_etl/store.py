"""identity_etl.store

Thin transactional store over a DB-API connection.

Supports the operations the import pipeline needs: point existence checks,
point lookups, predicate range queries, batched insert and update-by-identity.
SQL differences between providers are limited to placeholder style and
identifier quoting, captured by Dialect.

The connection runs with autocommit off; every statement joins the current
transaction and flushes commit or roll back through Store.transaction().
"""

from __future__ import annotations

import urllib.parse
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Sequence

import psycopg

from identity_etl.config import ImportSettings, normalize_provider
from identity_etl.shared import ConfigError
from identity_etl.source import CancelToken


# ---------------------------------------------------------------------------
# Dialects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Dialect:
    name: str
    placeholder: str
    quote_open: str
    quote_close: str

    def quote(self, identifier: str) -> str:
        escaped = identifier.replace(self.quote_close, self.quote_close * 2)
        return f"{self.quote_open}{escaped}{self.quote_close}"


POSTGRES = Dialect("Postgres", "%s", '"', '"')
MYSQL = Dialect("MySql", "%s", "`", "`")
SQLSERVER = Dialect("SqlServer", "?", "[", "]")

DIALECTS = {d.name: d for d in (POSTGRES, MYSQL, SQLSERVER)}


@dataclass(frozen=True)
class Table:
    name: str
    schema: str | None = None

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class Store:
    """Entity store used by one import run; owns its connection."""

    def __init__(
        self,
        conn: Any,
        dialect: Dialect,
        cancel: CancelToken | None = None,
    ) -> None:
        self._conn = conn
        self.dialect = dialect
        self.cancel = cancel or CancelToken()
        self.round_trips = 0

    # -- SQL building -------------------------------------------------------

    def _table(self, table: Table) -> str:
        if table.schema:
            return f"{self.dialect.quote(table.schema)}.{self.dialect.quote(table.name)}"
        return self.dialect.quote(table.name)

    def _where(self, where: Mapping[str, Any]) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in where.items():
            if value is None:
                clauses.append(f"{self.dialect.quote(column)} IS NULL")
            else:
                clauses.append(f"{self.dialect.quote(column)} = {self.dialect.placeholder}")
                params.append(value)
        return " AND ".join(clauses), params

    def _select_list(self, columns: Sequence[str] | None) -> str:
        if not columns:
            return "*"
        return ", ".join(self.dialect.quote(c) for c in columns)

    # -- execution ----------------------------------------------------------

    def _execute(
        self,
        sql: str,
        params: Sequence[Any] = (),
        *,
        fetch: bool = False,
    ) -> list[dict[str, Any]]:
        self.cancel.raise_if_cancelled()
        self.round_trips += 1
        cur = self._conn.cursor()
        try:
            cur.execute(sql, tuple(params))
            if not fetch:
                return []
            names = [d[0] for d in cur.description]
            return [dict(zip(names, row)) for row in cur.fetchall()]
        finally:
            cur.close()

    def _executemany(self, sql: str, param_rows: list[tuple[Any, ...]]) -> None:
        self.cancel.raise_if_cancelled()
        self.round_trips += 1
        cur = self._conn.cursor()
        try:
            if self.dialect is SQLSERVER:
                cur.fast_executemany = True
            cur.executemany(sql, param_rows)
        finally:
            cur.close()

    # -- queries ------------------------------------------------------------

    def exists(self, table: Table, column: str, value: Any) -> bool:
        where, params = self._where({column: value})
        rows = self._execute(
            f"SELECT 1 AS hit FROM {self._table(table)} WHERE {where}",
            params,
            fetch=True,
        )
        return bool(rows)

    def find_one(
        self,
        table: Table,
        where: Mapping[str, Any],
        columns: Sequence[str] | None = None,
    ) -> dict[str, Any] | None:
        clause, params = self._where(where)
        rows = self._execute(
            f"SELECT {self._select_list(columns)} FROM {self._table(table)} WHERE {clause}",
            params,
            fetch=True,
        )
        return rows[0] if rows else None

    def find_all(
        self,
        table: Table,
        where: Mapping[str, Any],
        columns: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        clause, params = self._where(where)
        return self._execute(
            f"SELECT {self._select_list(columns)} FROM {self._table(table)} WHERE {clause}",
            params,
            fetch=True,
        )

    # -- writes -------------------------------------------------------------

    def insert_many(self, table: Table, records: Sequence[Mapping[str, Any]]) -> int:
        """Insert records sharing one column set; returns the count inserted."""
        if not records:
            return 0
        columns = list(records[0].keys())
        col_sql = ", ".join(self.dialect.quote(c) for c in columns)
        values_sql = ", ".join([self.dialect.placeholder] * len(columns))
        sql = f"INSERT INTO {self._table(table)} ({col_sql}) VALUES ({values_sql})"
        self._executemany(sql, [tuple(r.get(c) for c in columns) for r in records])
        return len(records)

    def update(
        self,
        table: Table,
        key: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> None:
        if not changes:
            return
        set_sql = ", ".join(
            f"{self.dialect.quote(c)} = {self.dialect.placeholder}" for c in changes
        )
        where, where_params = self._where(key)
        self._execute(
            f"UPDATE {self._table(table)} SET {set_sql} WHERE {where}",
            [*changes.values(), *where_params],
        )

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit on success; roll back and re-raise on any failure."""
        try:
            yield
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------

def mysql_connect_args(connection_string: str) -> dict[str, Any]:
    """Parse a mysql:// URL or a 'Server=..;Database=..;' string for PyMySQL."""
    if connection_string.startswith(("mysql://", "mariadb://")):
        url = urllib.parse.urlparse(connection_string)
        args: dict[str, Any] = {
            "host": url.hostname or "localhost",
            "user": urllib.parse.unquote(url.username or ""),
            "password": urllib.parse.unquote(url.password or ""),
            "database": url.path.lstrip("/") or None,
        }
        if url.port:
            args["port"] = url.port
        return args

    keys = {
        "server": "host",
        "host": "host",
        "data source": "host",
        "port": "port",
        "database": "database",
        "initial catalog": "database",
        "user": "user",
        "uid": "user",
        "user id": "user",
        "username": "user",
        "password": "password",
        "pwd": "password",
    }
    args = {}
    for part in connection_string.split(";"):
        if "=" not in part:
            continue
        name, _, value = part.partition("=")
        target = keys.get(name.strip().lower())
        if target:
            args[target] = value.strip()
    if "port" in args:
        try:
            args["port"] = int(args["port"])
        except ValueError:
            raise ConfigError(f"Invalid MySQL port {args['port']!r}") from None
    if "host" not in args:
        raise ConfigError("MySQL connection string has no Server/Host")
    return args


def connect(settings: ImportSettings, cancel: CancelToken | None = None) -> Store:
    """Open a Store for the configured provider."""
    provider = normalize_provider(settings.provider)

    if provider == "Postgres":
        conn = psycopg.connect(settings.connection_string, autocommit=False)
        return Store(conn, POSTGRES, cancel)

    if provider == "MySql":
        import pymysql

        conn = pymysql.connect(
            **mysql_connect_args(settings.connection_string),
            charset="utf8mb4",
            autocommit=False,
        )
        return Store(conn, MYSQL, cancel)

    import pyodbc

    conn = pyodbc.connect(settings.connection_string, autocommit=False)
    return Store(conn, SQLSERVER, cancel)
