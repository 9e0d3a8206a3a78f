"""Scope resolution (prefix, shops, languages, groups) and the per-run context."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from .audit import Failure
from .db import fetch_ids
from .field_spec import FieldSpec, resolve
from .logging_setup import LOGGER_NAME
from .mapping_loader import MappingSpec, id_list
from .mapping_store import TableSettings
from .schema import SchemaCache
from .validator import coerce_for_category, is_empty, to_id


Resolver = Tuple[str, Callable[[], Any]]


def _is_unset(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return not value
    return is_empty(value)


def first_resolved(
    resolvers: Sequence[Resolver],
    accept: Optional[Callable[[Any], bool]] = None,
) -> Tuple[Optional[str], Any]:
    """Evaluate named resolvers in order; return ``(name, value)`` of the first accepted value.

    Later resolvers are never called once one is accepted. ``(None, None)`` when nothing resolves.
    """
    for name, resolver in resolvers:
        value = resolver()
        if accept(value) if accept is not None else not _is_unset(value):
            return name, value
    return None, None


@dataclass(frozen=True)
class Scope:
    prefix: str
    id_lang: int
    langs: List[int]
    shops: List[int]
    groups: List[int]
    id_shop_default: Optional[int]
    id_shop_group: int
    sources: Dict[str, Optional[str]] = field(default_factory=dict)

    def table(self, name: str) -> str:
        return f"{self.prefix}{name}"


def resolve_prefix(mapping: MappingSpec, domain_prefix: Optional[str], fallback: str) -> str:
    _, prefix = first_resolved(
        [
            ("mapping.prefix", lambda: mapping.prefix),
            ("domain.prefix", lambda: (domain_prefix or "").strip()),
            ("config.table_prefix", lambda: fallback),
        ]
    )
    return prefix or ""


def _active_ids(connection: Connection, schema: SchemaCache, table_name: str, id_column: str) -> List[int]:
    if not schema.table_exists(table_name) or not schema.column_exists(table_name, id_column):
        return []
    table = schema.table(table_name)
    stmt = sa.select(table.c[id_column])
    if schema.column_exists(table_name, "active"):
        stmt = stmt.where(table.c.active == 1)
    return fetch_ids(connection, stmt.order_by(table.c[id_column]))


def resolve_scope(
    connection: Connection,
    schema: SchemaCache,
    mapping: MappingSpec,
    settings: TableSettings,
    prefix: str,
) -> Scope:
    id_lang = mapping.id_lang or 1
    product_shop = settings.for_table("product_shop")
    category_group = settings.for_table("category_group")
    product_settings = settings.for_table("product")

    langs_source, langs = first_resolved(
        [
            ("active_langs", lambda: _active_ids(connection, schema, f"{prefix}lang", "id_lang")),
            ("id_lang", lambda: [id_lang]),
        ]
    )
    shops_source, shops = first_resolved(
        [
            ("product_shop.settings.id_shops", lambda: id_list(product_shop.get("id_shops"))),
            ("product_shop.mapping.id_shops", lambda: id_list(mapping.table_settings("product_shop").get("id_shops"))),
            ("mapping.id_shops", lambda: list(mapping.id_shops)),
            ("active_shops", lambda: _active_ids(connection, schema, f"{prefix}shop", "id_shop")),
        ]
    )
    shops = shops or []
    groups_source, groups = first_resolved(
        [
            ("category_group.settings.id_groups", lambda: id_list(category_group.get("id_groups"))),
            ("mapping.id_groups", lambda: list(mapping.id_groups)),
            ("groups", lambda: _active_ids(connection, schema, f"{prefix}group", "id_group")),
        ]
    )
    default_source, id_shop_default = first_resolved(
        [
            ("mapping.id_shop_default", lambda: mapping.id_shop_default),
            ("product.settings", lambda: to_id(product_settings.get("id_shop_default"))),
            ("product.mapping_settings", lambda: to_id(mapping.table_settings("product").get("id_shop_default"))),
            ("product.defaults", lambda: to_id(mapping.defaults_for("product").get("id_shop_default"))),
            ("first_shop", lambda: shops[0] if shops else None),
        ]
    )

    return Scope(
        prefix=prefix,
        id_lang=id_lang,
        langs=langs or [id_lang],
        shops=shops,
        groups=groups or [],
        id_shop_default=id_shop_default,
        id_shop_group=mapping.id_shop_group or 0,
        sources={
            "langs": langs_source,
            "shops": shops_source,
            "groups": groups_source,
            "id_shop_default": default_source,
        },
    )


@dataclass
class RunContext:
    """Everything a writer needs for one run, passed by reference from writer to writer."""

    run_id: Optional[int]
    domain: str
    page_type: str
    url: Optional[str]
    record: Dict[str, Any]
    mapping: MappingSpec
    settings: TableSettings
    scope: Scope
    schema: SchemaCache
    connection: Connection
    now: datetime = field(default_factory=lambda: datetime.now().replace(microsecond=0))
    product_id: Optional[int] = None
    generated_ids: Dict[str, int] = field(default_factory=dict)
    logger: Any = field(default_factory=lambda: logging.getLogger(LOGGER_NAME))

    @property
    def strict(self) -> bool:
        return self.mapping.flags.strict_mapping_only

    def table(self, name: str) -> str:
        return self.scope.table(name)

    def has_table(self, name: str) -> bool:
        return self.schema.table_exists(self.table(name))

    def has_column(self, name: str, column: str) -> bool:
        return self.schema.column_exists(self.table(name), column)

    def sa_table(self, name: str) -> sa.Table:
        return self.schema.table(self.table(name))

    def resolve(self, spec: Optional[FieldSpec], variant: Optional[Mapping[str, Any]] = None) -> Any:
        return resolve(self.record, spec, variant)

    def table_fields(self, name: str) -> Dict[str, FieldSpec]:
        merged: Dict[str, FieldSpec] = dict(self.mapping.table_fields(name))
        if not self.strict:
            merged.update(self.settings.fields_for(name))
        return merged

    def table_settings(self, name: str) -> Dict[str, Any]:
        merged: Dict[str, Any] = dict(self.mapping.table_settings(name))
        if not self.strict:
            merged.update(self.settings.for_table(name))
        return merged

    def defaults_for(self, name: str) -> Dict[str, Any]:
        merged = self.settings.defaults_for(name)
        merged.update(self.mapping.defaults_for(name))
        return merged

    def fit_row(
        self,
        name: str,
        row: Dict[str, Any],
        id_shop: Optional[int] = None,
        id_lang: Optional[int] = None,
    ) -> Tuple[Dict[str, Any], List[Failure]]:
        """Truncate text values to their column length; one ``truncate`` entry per cut."""
        table_name = self.table(name)
        fitted = dict(row)
        notes: List[Failure] = []
        for column, value in row.items():
            if not isinstance(value, str):
                continue
            max_len = self.schema.column_max_length(table_name, column)
            if max_len and len(value) > max_len:
                fitted[column] = value[:max_len]
                notes.append(
                    Failure(
                        table=table_name,
                        op="truncate",
                        error="truncated",
                        product_id=self.product_id,
                        id_shop=id_shop,
                        id_lang=id_lang,
                        payload={
                            "column": column,
                            "max_len": max_len,
                            "before_len": len(value),
                            "after_len": max_len,
                        },
                    )
                )
        return fitted, notes

    def coerce_row(self, name: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Blank strings and ISO dates made acceptable to the column types."""
        table_name = self.table(name)
        coerced: Dict[str, Any] = {}
        for column, value in row.items():
            column_type = self.schema.column_type(table_name, column)
            coerced[column] = coerce_for_category(value, column_type.category) if column_type else value
        return coerced

    def existing_columns(self, name: str, columns: Iterable[str]) -> List[str]:
        return [column for column in columns if self.has_column(name, column)]
