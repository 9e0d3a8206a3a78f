"""Schema-aware writer for any extra table named by the mapping or stored table settings."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .audit import Failure, WriterReport, attempt
from .db import insert_row, upsert
from .fanout import HELPER_KEYS
from .mapping_loader import id_list
from .scope import RunContext
from .transformers import slugify
from .validator import is_na


HANDLED_TABLES = frozenset(
    {
        "product",
        "product_shop",
        "product_lang",
        "stock_available",
        "product_attribute",
        "product_attribute_shop",
        "product_attribute_combination",
        "product_attribute_lang",
        "product_attribute_image",
        "image",
        "image_shop",
        "image_lang",
        "attachment",
        "attachment_lang",
        "attachment_shop",
        "product_attachment",
    }
)
PRODUCT_SATELLITES = frozenset({"product_shop", "product_lang", "stock_available"})
CATEGORY_TABLES = ("category", "category_lang", "category_shop", "category_group")

# Base tables whose auto-increment key is expected to be missing before insert.
_BASE_KEYS = {"category": "id_category", "product": "id_product"}
_CATEGORY_PAGES = {"category", "article"}
_PREVIEW_ENTRIES = 12


def _missing(value: Any) -> bool:
    return value is None or value == "" or value == 0


def _rank(name: str) -> Tuple[int, str]:
    if name == "product":
        return 0, name
    if name == "category":
        return 1, name
    return 2, name


class GenericTableWriter:
    """Upserts every candidate table across its shop x language x group axes."""

    def __init__(
        self,
        ctx: RunContext,
        allow: Optional[Iterable[str]] = None,
        include_satellites: bool = False,
    ) -> None:
        self.ctx = ctx
        self.allow: Optional[Set[str]] = set(allow) if allow is not None else None
        self.skip_tables = set(HANDLED_TABLES)
        if include_satellites:
            self.skip_tables -= PRODUCT_SATELLITES

    def candidates(self) -> List[str]:
        ctx = self.ctx
        names = set(ctx.mapping.tables) | ctx.settings.table_names()
        if self.allow is not None:
            # Allow-listed tables are candidates even when nothing maps them.
            names = set(self.allow)
        names = {name for name in names if name not in self.skip_tables}
        return sorted(names, key=_rank)

    def run(self) -> WriterReport:
        report = WriterReport("generic")
        names = self.candidates()
        self.ctx.logger.info(
            "generic_tables",
            extra={"event": "generic_tables", "tables": names, "allowed": sorted(self.allow or [])},
        )
        for name in names:
            self._write_table(name, report)
        return report

    def _skip(self, report: WriterReport, name: str, error: str, **ids: Any) -> None:
        report.skip(Failure(table=self.ctx.table(name), op="skip", error=error, **ids))

    def _axes(self, name: str, settings: Dict[str, Any], report: WriterReport):
        ctx = self.ctx
        scope = ctx.scope

        shops: List[Optional[int]] = [None]
        if ctx.has_column(name, "id_shop"):
            if name == "product_lang":
                # Translations follow the global shop list only.
                shops = list(scope.shops)
            else:
                shops = list(id_list(settings.get("id_shops")) or scope.shops)
            if ctx.strict and not shops:
                self._skip(report, name, "mapping_missing_shops_table")
                return None
            default_shop = scope.id_shop_default
            if not ctx.strict and name == "product_shop" and default_shop and default_shop not in shops:
                shops.append(default_shop)

        langs: List[Optional[int]] = [None]
        if ctx.has_column(name, "id_lang"):
            langs = list(id_list(settings.get("id_langs")) or scope.langs)
            if not langs and not ctx.strict:
                langs = [scope.id_lang]

        groups: List[Optional[int]] = [None]
        if ctx.has_column(name, "id_group"):
            groups = list(id_list(settings.get("id_groups")) or scope.groups)
            if ctx.strict and not groups:
                self._skip(report, name, "mapping_missing_groups_table")
                return None

        return shops, langs, groups

    def _write_table(self, name: str, report: WriterReport) -> None:
        ctx = self.ctx
        if not ctx.has_table(name):
            self._skip(report, name, "missing_table")
            return

        fields = ctx.table_fields(name)
        settings = ctx.table_settings(name)
        defaults = ctx.defaults_for(name)
        axes = self._axes(name, settings, report)
        if axes is None:
            return
        shops, langs, groups = axes
        keys = [str(key) for key in settings.get("keys") or []] or ctx.schema.primary_key(ctx.table(name))

        for id_shop in shops:
            for id_lang in langs:
                for id_group in groups:
                    row, guarded = self.build_row(name, fields, settings, defaults, id_shop, id_lang, id_group)
                    self._write_row(name, row, keys, guarded, settings, report, id_shop, id_lang)

    def build_row(
        self,
        name: str,
        fields: Dict[str, Any],
        settings: Dict[str, Any],
        defaults: Dict[str, Any],
        id_shop: Optional[int],
        id_lang: Optional[int],
        id_group: Optional[int],
    ) -> Tuple[Dict[str, Any], Set[str]]:
        """One row for one axis combination, plus the default-only columns that must not overwrite values."""
        ctx = self.ctx
        scope = ctx.scope

        def has(column: str) -> bool:
            return ctx.has_column(name, column)

        category_page = ctx.page_type in _CATEGORY_PAGES
        row: Dict[str, Any] = {}

        if category_page and name == "category":
            for column, value in (
                ("active", 1),
                ("position", 0),
                ("id_parent", 2),
                ("id_shop_default", scope.shops[0] if scope.shops else 1),
            ):
                if has(column):
                    row[column] = value

        default_columns = {column for column in defaults if has(column)}
        for column in default_columns:
            row[column] = defaults[column]

        mapped: Set[str] = set()
        for column, spec in fields.items():
            if not has(column) or column in default_columns:
                continue
            value = ctx.resolve(spec)
            if value is not None:
                row[column] = value
                mapped.add(column)

        for column in ("id_product", "id_product_attribute"):
            if row.get(column) == "":
                del row[column]

        for column, value in settings.items():
            if column in HELPER_KEYS or isinstance(value, (dict, list)) or not has(column):
                continue
            row[column] = value
            mapped.add(column)

        for column in ("reference", "supplier_reference"):
            if has(column) and is_na(row.get(column)):
                row[column] = ""

        product_id = ctx.product_id or ctx.generated_ids.get("product")
        if has("id_product") and _missing(row.get("id_product")):
            row["id_product"] = product_id
        if name != "category" and has("id_category") and _missing(row.get("id_category")):
            if ctx.generated_ids.get("category"):
                row["id_category"] = ctx.generated_ids["category"]
        if has("id_product_attribute") and _missing(row.get("id_product_attribute")):
            row["id_product_attribute"] = ctx.generated_ids.get("product_attribute", 0)

        if has("id_shop") and id_shop is not None:
            row["id_shop"] = id_shop
        if has("id_lang") and id_lang is not None:
            row["id_lang"] = id_lang
        if has("id_group") and id_group is not None:
            row["id_group"] = id_group
        if has("id_shop_group") and row.get("id_shop_group") is None:
            row["id_shop_group"] = scope.id_shop_group
        for column in ("date_add", "date_upd"):
            if has(column) and row.get(column) is None:
                row[column] = ctx.now

        if not ctx.strict and name == "category" and has("id_shop_default"):
            current = row.get("id_shop_default")
            if _missing(current) or (scope.shops and current not in scope.shops):
                row["id_shop_default"] = scope.shops[0] if scope.shops else 0

        if category_page and name == "category_lang" and has("name") and _missing(row.get("name")):
            row["name"] = self._record_title() or "Imported Category"

        if has("link_rewrite"):
            base = row.get("link_rewrite") or row.get("name") or ""
            if base:
                row["link_rewrite"] = slugify(base) or "imported-category"

        # An explicit empty default clears the column like a mapped value.
        cleared = {column for column in default_columns if defaults[column] == ""}
        return row, default_columns - mapped - cleared

    def _record_title(self) -> str:
        record = self.ctx.record
        for value in (
            record.get("title"),
            (record.get("product") or {}).get("name") if isinstance(record.get("product"), dict) else None,
        ):
            if isinstance(value, str) and value.strip():
                return value.strip()
        return ""

    def _is_base_table(self, name: str, keys: List[str], settings: Dict[str, Any]) -> bool:
        if len(keys) != 1:
            return False
        if _BASE_KEYS.get(name) == keys[0]:
            return True
        return bool(settings.get("auto_insert_if_missing_pk"))

    def _write_row(
        self,
        name: str,
        row: Dict[str, Any],
        keys: List[str],
        guarded: Set[str],
        settings: Dict[str, Any],
        report: WriterReport,
        id_shop: Optional[int],
        id_lang: Optional[int],
    ) -> None:
        ctx = self.ctx
        table_name = ctx.table(name)
        ids = {"product_id": ctx.product_id, "id_shop": id_shop, "id_lang": id_lang}

        if any(row.get(key) is None for key in keys):
            if self._is_base_table(name, keys, settings):
                self._insert_base(name, row, keys[0], report, id_shop, id_lang)
                return
            preview = dict(list(row.items())[:_PREVIEW_ENTRIES])
            report.skip(
                Failure(
                    table=table_name,
                    op="skip_missing_pk",
                    error="missing_primary_key_values",
                    payload={"pk": keys, "row_preview": preview},
                    **ids,
                )
            )
            return

        row, notes = ctx.fit_row(name, row, id_shop=id_shop, id_lang=id_lang)
        report.note(notes)
        row = ctx.coerce_row(name, row)
        if not row:
            self._skip(report, name, "no_mapped_columns", **ids)
            return

        table = ctx.sa_table(name)
        report.add(
            attempt(
                lambda: upsert(ctx.connection, table, row, keys, guarded=guarded),
                table=table_name,
                op="upsert",
                payload={"row": row},
                **ids,
            )
        )

    def _insert_base(
        self,
        name: str,
        row: Dict[str, Any],
        key: str,
        report: WriterReport,
        id_shop: Optional[int],
        id_lang: Optional[int],
    ) -> None:
        ctx = self.ctx
        values = {column: value for column, value in row.items() if column != key}
        values, notes = ctx.fit_row(name, values, id_shop=id_shop, id_lang=id_lang)
        report.note(notes)
        values = ctx.coerce_row(name, values)
        table = ctx.sa_table(name)
        outcome = report.add(
            attempt(
                lambda: insert_row(ctx.connection, table, values),
                table=ctx.table(name),
                op="insert",
                product_id=ctx.product_id,
                id_shop=id_shop,
                id_lang=id_lang,
                payload={"row": values},
            )
        )
        if outcome.ok and outcome.value:
            new_id = int(outcome.value)
            ctx.generated_ids[name] = new_id
            report.ids[name] = new_id
            ctx.logger.info(
                "generic_insert",
                extra={"event": "generic_insert", "table": ctx.table(name), "pk": key, "insertedId": new_id},
            )
