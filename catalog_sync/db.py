"""Target database access: connection setup and dialect-aware write statements."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Connection, Engine, URL
from sqlalchemy.exc import SQLAlchemyError

from .errors import ConnectError


@dataclass(frozen=True)
class ConnectionProfile:
    id: Optional[int]
    name: str
    url: Union[str, URL]
    ssl: bool = False


def profile_url(
    host: str,
    port: Optional[int],
    database: str,
    user: str,
    password: str,
    driver: str = "mysql+pymysql",
) -> URL:
    return URL.create(
        drivername=driver or "mysql+pymysql",
        username=user or None,
        password=password or None,
        host=host or "localhost",
        port=int(port) if port else 3306,
        database=database or None,
    )


def create_target_engine(url: Union[str, URL], connect_timeout: int = 10, ssl: bool = False) -> Engine:
    target = sa.engine.make_url(url)
    connect_args: Dict[str, Any] = {}
    if target.get_backend_name() == "mysql":
        connect_args["connect_timeout"] = connect_timeout
        if "charset" not in target.query:
            target = target.update_query_dict({"charset": "utf8mb4"})
        if ssl:
            connect_args["ssl"] = {"check_hostname": False}
    # Every statement commits on its own; there is no run-level transaction.
    return sa.create_engine(
        target,
        isolation_level="AUTOCOMMIT",
        pool_pre_ping=True,
        connect_args=connect_args,
    )


@contextmanager
def open_connection(engine: Engine) -> Iterator[Connection]:
    try:
        connection = engine.connect()
    except SQLAlchemyError as exc:
        raise ConnectError(f"Could not connect to target database: {exc}") from exc
    try:
        yield connection
    finally:
        connection.close()


def _dialect_insert(connection: Connection, table: sa.Table):
    name = connection.dialect.name
    if name == "mysql":
        return mysql.insert(table)
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise ValueError(f"Unsupported target dialect: {name}")


def upsert(
    connection: Connection,
    table: sa.Table,
    row: Mapping[str, Any],
    keys: Sequence[str],
    guarded: Iterable[str] = (),
) -> None:
    """Insert ``row`` or update the existing row sharing ``keys``.

    Columns listed in ``guarded`` only overwrite NULL (or blank string) values
    of an existing row.
    """
    values = dict(row)
    keys = [key for key in keys if key in values]
    if not keys:
        connection.execute(sa.insert(table).values(values))
        return

    guarded = set(guarded)
    stmt = _dialect_insert(connection, table).values(values)
    is_mysql = connection.dialect.name == "mysql"
    proposed = stmt.inserted if is_mysql else stmt.excluded

    assignments: Dict[str, Any] = {}
    for column in values:
        if column in keys:
            continue
        new_value = proposed[column]
        if column in guarded:
            current = table.c[column]
            blank = current.is_(None)
            if isinstance(values[column], str):
                blank = sa.or_(blank, current == "")
            new_value = sa.case((blank, new_value), else_=current)
        assignments[column] = new_value

    if is_mysql:
        stmt = stmt.on_duplicate_key_update(assignments) if assignments else stmt.prefix_with("IGNORE")
    elif assignments:
        stmt = stmt.on_conflict_do_update(index_elements=keys, set_=assignments)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=keys)
    connection.execute(stmt)


def insert_ignore(connection: Connection, table: sa.Table, row: Mapping[str, Any]) -> None:
    name = connection.dialect.name
    if name == "postgresql":
        stmt = postgresql.insert(table).values(dict(row)).on_conflict_do_nothing()
    elif name == "sqlite":
        stmt = sa.insert(table).values(dict(row)).prefix_with("OR IGNORE")
    else:
        stmt = sa.insert(table).values(dict(row)).prefix_with("IGNORE")
    connection.execute(stmt)


def insert_row(connection: Connection, table: sa.Table, row: Mapping[str, Any]) -> Optional[int]:
    """Plain INSERT returning the generated primary key, if any."""
    stmt = sa.insert(table)
    if row:
        stmt = stmt.values(dict(row))
    result = connection.execute(stmt)
    generated = result.inserted_primary_key
    if generated and generated[0] is not None:
        return int(generated[0])
    return int(result.lastrowid) if result.lastrowid else None


def fetch_ids(connection: Connection, stmt: sa.Select) -> list:
    return [int(value) for value in connection.execute(stmt).scalars() if value is not None]


def first_id(connection: Connection, stmt: sa.Select) -> Optional[int]:
    value = connection.execute(stmt.limit(1)).scalar()
    return int(value) if value is not None else None
