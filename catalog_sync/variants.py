"""Attribute groups, attribute values and product combinations built from variant codes."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import sqlalchemy as sa

from .audit import WriterReport, attempt
from .db import fetch_ids, first_id, insert_ignore, insert_row, upsert
from .field_spec import lookup
from .mapping_loader import id_list
from .scope import RunContext
from .validator import to_number


REQUIRED_TABLES = ("attribute_group", "attribute", "product_attribute", "product_attribute_combination")
NUMERIC_COLUMNS = frozenset(
    {
        "price",
        "wholesale_price",
        "ecotax",
        "unit_price_impact",
        "weight",
        "minimal_quantity",
        "low_stock_alert",
        "low_stock_threshold",
    }
)
_SHOP_KEYS = {"id_product_attribute", "id_shop", "id_product", "default_on"}


def variant_codes(record: Dict[str, Any], source: str) -> List[str]:
    raw = lookup(record, source)
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple)):
        return []
    codes: List[str] = []
    for item in raw:
        if item is None or isinstance(item, (dict, list)):
            continue
        code = str(item).strip()
        if code and code not in codes:
            codes.append(code)
    return codes


class VariantWriter:
    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx
        self.report = WriterReport("attributes")

    def run(self) -> WriterReport:
        ctx = self.ctx
        if not ctx.product_id:
            return self.report
        missing = [name for name in REQUIRED_TABLES if not ctx.has_table(name)]
        if missing:
            ctx.logger.info(
                "variants_skipped",
                extra={"event": "variants_skipped", "reason": "missing_tables", "tables": missing},
            )
            return self.report

        config = ctx.mapping.variants
        codes = variant_codes(ctx.record, config.source) if config.enabled else []
        if not codes:
            self.apply_shop_overrides(self.existing_combinations())
            return self.report

        group_id = self.ensure_group(config.group_name)
        if not group_id:
            return self.report

        combinations: List[int] = []
        for code in codes:
            attribute_id = self.ensure_attribute(group_id, code)
            if not attribute_id:
                continue
            combination_id = self.ensure_combination(attribute_id)
            if not combination_id:
                continue
            combinations.append(combination_id)
            self.apply_shop_overrides([combination_id], variant={"code": code})
            self.stock_rows(combination_id)

        if combinations:
            ctx.generated_ids["product_attribute"] = combinations[0]
            self.report.ids["product_attribute"] = combinations[0]
            self.mark_default(combinations[0])
        return self.report

    def _attempt(self, action, name: str, op: str, **kwargs: Any):
        return self.report.add(
            attempt(action, table=self.ctx.table(name), op=op, product_id=self.ctx.product_id, **kwargs)
        )

    def _link_rows(self, name: str, base: Dict[str, Any], axis: str, ids: List[int], extra: Optional[Dict[str, Any]] = None) -> None:
        if not self.ctx.has_table(name):
            return
        table = self.ctx.sa_table(name)
        for value in ids:
            row = dict(base, **{axis: value})
            row.update({column: v for column, v in (extra or {}).items() if self.ctx.has_column(name, column)})
            self._attempt(lambda: insert_ignore(self.ctx.connection, table, row), name, "insert", payload={"row": row})

    # Group and values

    def ensure_group(self, group_name: str) -> Optional[int]:
        ctx = self.ctx
        group = ctx.sa_table("attribute_group")
        if ctx.has_table("attribute_group_lang"):
            group_lang = ctx.sa_table("attribute_group_lang")
            found = first_id(
                ctx.connection,
                sa.select(group_lang.c.id_attribute_group)
                .where(group_lang.c.name == group_name)
                .order_by(group_lang.c.id_attribute_group),
            )
            if found:
                return found

        row = {
            column: value
            for column, value in (("is_color_group", 1), ("group_type", "color"), ("position", 0))
            if ctx.has_column("attribute_group", column)
        }
        outcome = self._attempt(lambda: insert_row(ctx.connection, group, row), "attribute_group", "create_group",
                                payload={"name": group_name})
        if not outcome.ok or not outcome.value:
            return None
        group_id = int(outcome.value)
        self._link_rows(
            "attribute_group_lang",
            {"id_attribute_group": group_id},
            "id_lang",
            ctx.scope.langs,
            extra={"name": group_name, "public_name": group_name},
        )
        self._link_rows("attribute_group_shop", {"id_attribute_group": group_id}, "id_shop", ctx.scope.shops)
        ctx.logger.info(
            "attribute_group_created",
            extra={"event": "attribute_group_created", "idAttributeGroup": group_id, "name": group_name},
        )
        return group_id

    def ensure_attribute(self, group_id: int, code: str) -> Optional[int]:
        ctx = self.ctx
        attribute = ctx.sa_table("attribute")
        if ctx.has_table("attribute_lang"):
            attribute_lang = ctx.sa_table("attribute_lang")
            found = first_id(
                ctx.connection,
                sa.select(attribute.c.id_attribute)
                .join(attribute_lang, attribute_lang.c.id_attribute == attribute.c.id_attribute)
                .where(attribute.c.id_attribute_group == group_id, attribute_lang.c.name == code)
                .order_by(attribute.c.id_attribute),
            )
            if found:
                return found

        row: Dict[str, Any] = {"id_attribute_group": group_id}
        if ctx.has_column("attribute", "position"):
            row["position"] = 0
        outcome = self._attempt(lambda: insert_row(ctx.connection, attribute, row), "attribute", "create_attribute",
                                payload={"code": code})
        if not outcome.ok or not outcome.value:
            return None
        attribute_id = int(outcome.value)
        self._link_rows("attribute_lang", {"id_attribute": attribute_id}, "id_lang", ctx.scope.langs, extra={"name": code})
        self._link_rows("attribute_shop", {"id_attribute": attribute_id}, "id_shop", ctx.scope.shops)
        return attribute_id

    # Combinations

    def ensure_combination(self, attribute_id: int) -> Optional[int]:
        ctx = self.ctx
        combination = ctx.sa_table("product_attribute")
        link = ctx.sa_table("product_attribute_combination")
        found = first_id(
            ctx.connection,
            sa.select(combination.c.id_product_attribute)
            .join(link, link.c.id_product_attribute == combination.c.id_product_attribute)
            .where(combination.c.id_product == ctx.product_id, link.c.id_attribute == attribute_id)
            .order_by(combination.c.id_product_attribute),
        )
        if found:
            return found

        row: Dict[str, Any] = {"id_product": ctx.product_id}
        for column, value in ctx.defaults_for("product_attribute").items():
            if column not in ("id_product_attribute", "id_product", "default_on") and ctx.has_column("product_attribute", column):
                row[column] = value
        row, notes = ctx.fit_row("product_attribute", row)
        self.report.note(notes)
        row = ctx.coerce_row("product_attribute", row)
        outcome = self._attempt(lambda: insert_row(ctx.connection, combination, row), "product_attribute",
                                "create_combination", payload={"row": row, "id_attribute": attribute_id})
        if not outcome.ok or not outcome.value:
            return None
        combination_id = int(outcome.value)
        pair = {"id_attribute": attribute_id, "id_product_attribute": combination_id}
        self._attempt(lambda: insert_ignore(ctx.connection, link, pair), "product_attribute_combination", "insert",
                      payload={"row": pair})
        return combination_id

    def existing_combinations(self) -> List[int]:
        combination = self.ctx.sa_table("product_attribute")
        return fetch_ids(
            self.ctx.connection,
            sa.select(combination.c.id_product_attribute)
            .where(combination.c.id_product == self.ctx.product_id)
            .order_by(combination.c.id_product_attribute),
        )

    def apply_shop_overrides(self, combinations: List[int], variant: Optional[Dict[str, Any]] = None) -> None:
        """Per-shop combination values, only when the mapping declares fields for them."""
        ctx = self.ctx
        fields = ctx.table_fields("product_attribute_shop")
        if not fields or not combinations or not ctx.has_table("product_attribute_shop"):
            return
        table = ctx.sa_table("product_attribute_shop")
        shops = id_list(ctx.table_settings("product_attribute_shop").get("id_shops")) or ctx.scope.shops

        for combination_id in combinations:
            item = dict(variant or {}, id_product_attribute=combination_id)
            values: Dict[str, Any] = {}
            for column, spec in fields.items():
                if column in _SHOP_KEYS or not ctx.has_column("product_attribute_shop", column):
                    continue
                value = ctx.resolve(spec, item)
                if value is None:
                    continue
                values[column] = to_number(value) if column in NUMERIC_COLUMNS else value

            for id_shop in shops:
                base: Dict[str, Any] = {"id_product_attribute": combination_id, "id_shop": id_shop}
                if ctx.has_column("product_attribute_shop", "id_product"):
                    base["id_product"] = ctx.product_id
                self._attempt(lambda: insert_ignore(ctx.connection, table, base), "product_attribute_shop", "insert",
                              id_shop=id_shop, payload={"row": base})
                if not values:
                    continue
                row, notes = ctx.fit_row("product_attribute_shop", values, id_shop=id_shop)
                self.report.note(notes)
                row = ctx.coerce_row("product_attribute_shop", row)
                self._attempt(
                    lambda: ctx.connection.execute(
                        sa.update(table)
                        .where(table.c.id_product_attribute == combination_id, table.c.id_shop == id_shop)
                        .values(row)
                    ),
                    "product_attribute_shop",
                    "update",
                    id_shop=id_shop,
                    payload={"row": row},
                )

    def stock_rows(self, combination_id: int) -> None:
        ctx = self.ctx
        if not ctx.has_table("stock_available"):
            return
        table = ctx.sa_table("stock_available")
        keys = ["id_product", "id_product_attribute", "id_shop", "id_shop_group"]
        for id_shop in ctx.scope.shops:
            row: Dict[str, Any] = {
                "id_product": ctx.product_id,
                "id_product_attribute": combination_id,
                "id_shop": id_shop,
                "id_shop_group": ctx.scope.id_shop_group,
                "quantity": 0,
            }
            if ctx.has_column("stock_available", "out_of_stock"):
                row["out_of_stock"] = 0
            self._attempt(lambda: upsert(ctx.connection, table, row, keys), "stock_available", "upsert",
                          id_shop=id_shop, payload={"row": row})

    # Default combination

    def mark_default(self, combination_id: int) -> None:
        ctx = self.ctx
        product = ctx.sa_table("product")
        product_values: Dict[str, Any] = {}
        if ctx.has_column("product", "cache_default_attribute"):
            product_values["cache_default_attribute"] = combination_id
        for column in ("product_type", "type"):
            if ctx.has_column("product", column):
                product_values[column] = "combinations"
                break
        if product_values:
            self._attempt(
                lambda: ctx.connection.execute(
                    sa.update(product).where(product.c.id_product == ctx.product_id).values(product_values)
                ),
                "product",
                "default",
                payload=product_values,
            )

        if ctx.has_table("product_shop") and ctx.has_column("product_shop", "cache_default_attribute"):
            product_shop = ctx.sa_table("product_shop")
            self._attempt(
                lambda: ctx.connection.execute(
                    sa.update(product_shop)
                    .where(product_shop.c.id_product == ctx.product_id)
                    .values(cache_default_attribute=combination_id)
                ),
                "product_shop",
                "default",
            )

        for name in ("product_attribute", "product_attribute_shop"):
            if ctx.has_table(name) and ctx.has_column(name, "default_on"):
                self._reset_default_on(name, combination_id)

    def _reset_default_on(self, name: str, combination_id: int) -> None:
        ctx = self.ctx
        table = ctx.sa_table(name)
        if "id_product" in table.c:
            scope_clause = table.c.id_product == ctx.product_id
        else:
            scope_clause = table.c.id_product_attribute.in_(self.existing_combinations())

        def apply() -> None:
            ctx.connection.execute(sa.update(table).where(scope_clause).values(default_on=None))
            ctx.connection.execute(
                sa.update(table).where(table.c.id_product_attribute == combination_id).values(default_on=1)
            )

        self._attempt(apply, name, "default", payload={"id_product_attribute": combination_id})
