"""Run-scoped introspection of the target catalog schema."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection


@dataclass(frozen=True)
class ColumnType:
    category: str
    nullable: bool


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    category: str
    nullable: bool
    max_length: int


def _category(column_type: sa.types.TypeEngine) -> str:
    if isinstance(column_type, (sa.Integer, sa.Numeric, sa.Float, sa.Boolean)):
        return "numeric"
    if isinstance(column_type, (sa.DateTime, sa.Date, sa.Time)):
        return "date"
    return "text"


class SchemaCache:
    """Answers table/column questions for one connection; nothing outlives the run."""

    def __init__(self, connection: Connection) -> None:
        self.connection = connection
        self._inspector = sa.inspect(connection)
        self._exists: Dict[str, bool] = {}
        self._tables: Dict[str, sa.Table] = {}
        self._columns: Dict[str, Dict[str, ColumnInfo]] = {}
        self._metadata = sa.MetaData()

    def table_exists(self, name: str) -> bool:
        if name not in self._exists:
            self._exists[name] = self._inspector.has_table(name)
        return self._exists[name]

    def table(self, name: str) -> sa.Table:
        if name not in self._tables:
            self._tables[name] = sa.Table(name, self._metadata, autoload_with=self.connection)
        return self._tables[name]

    def columns(self, name: str) -> Dict[str, ColumnInfo]:
        if name not in self._columns:
            if not self.table_exists(name):
                self._columns[name] = {}
            else:
                self._columns[name] = {
                    column.name: ColumnInfo(
                        name=column.name,
                        category=_category(column.type),
                        nullable=bool(column.nullable),
                        max_length=int(getattr(column.type, "length", None) or 0),
                    )
                    for column in self.table(name).columns
                }
        return self._columns[name]

    def column_exists(self, table: str, column: str) -> bool:
        return column in self.columns(table)

    def column_max_length(self, table: str, column: str) -> int:
        info = self.columns(table).get(column)
        return info.max_length if info else 0

    def column_type(self, table: str, column: str) -> Optional[ColumnType]:
        info = self.columns(table).get(column)
        if info is None:
            return None
        return ColumnType(category=info.category, nullable=info.nullable)

    def primary_key(self, table: str) -> List[str]:
        if not self.table_exists(table):
            return []
        return [column.name for column in self.table(table).primary_key.columns]
