"""Per-shop, per-language and stock rows for the core entity."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence

from .audit import Failure, WriterReport, attempt
from .core_entity import CoreValues, shop_tax_rules_group
from .db import upsert
from .field_spec import parse_field_spec
from .mapping_loader import id_list
from .scope import RunContext, first_resolved
from .transformers import slugify


# Setting keys that describe fan-out, never column values.
HELPER_KEYS = {"id_shops", "id_langs", "id_groups", "keys", "defaults"}

_DESCRIPTION_PATHS = parse_field_spec(
    ["product.description_html", "product.description", "meta.description"], "legacy.description"
)
_SHORT_DESCRIPTION_PATHS = parse_field_spec(
    ["product.description_short", "meta.description"], "legacy.description_short"
)


def _write(
    ctx: RunContext,
    report: WriterReport,
    name: str,
    row: Dict[str, Any],
    keys: Sequence[str],
    id_shop: Optional[int] = None,
    id_lang: Optional[int] = None,
    guarded: Sequence[str] = (),
) -> None:
    row, notes = ctx.fit_row(name, row, id_shop=id_shop, id_lang=id_lang)
    report.note(notes)
    row = ctx.coerce_row(name, row)
    table = ctx.sa_table(name)
    report.add(
        attempt(
            lambda: upsert(ctx.connection, table, row, keys, guarded=guarded),
            table=ctx.table(name),
            op="upsert",
            product_id=ctx.product_id,
            id_shop=id_shop,
            id_lang=id_lang,
            payload={"row": row},
        )
    )


def _fixed_settings(ctx: RunContext, name: str) -> Dict[str, Any]:
    return {
        column: value
        for column, value in ctx.table_settings(name).items()
        if column not in HELPER_KEYS and not isinstance(value, (dict, list)) and ctx.has_column(name, column)
    }


def write_shop_rows(ctx: RunContext, values: CoreValues) -> WriterReport:
    report = WriterReport("product_shop")
    if not ctx.has_table("product_shop") or not ctx.product_id:
        return report

    settings = ctx.table_settings("product_shop")
    shop_defaults = ctx.defaults_for("product_shop")
    product_defaults = ctx.defaults_for("product")
    shops = id_list(settings.get("id_shops")) or ctx.scope.shops

    def setting_or_default(column: str, fallback: Callable[[], Any]) -> Any:
        _, value = first_resolved(
            [
                ("product_shop.settings", lambda: settings.get(column)),
                ("product_shop.defaults", lambda: shop_defaults.get(column)),
                ("product.defaults", lambda: product_defaults.get(column)),
                ("fallback", fallback),
            ]
        )
        return value

    category_default = setting_or_default("id_category_default", lambda: ctx.mapping.id_category_default)
    base: Dict[str, Any] = {
        "active": 1,
        "price": values.price,
        "id_tax_rules_group": shop_tax_rules_group(ctx),
        "visibility": setting_or_default("visibility", lambda: "both"),
        "condition": setting_or_default("condition", lambda: "new"),
        "available_for_order": setting_or_default("available_for_order", lambda: 1),
        "date_add": ctx.now,
        "date_upd": ctx.now,
    }
    if category_default is not None:
        base["id_category_default"] = category_default
    for column, value in shop_defaults.items():
        base.setdefault(column, value)
    base.update(_fixed_settings(ctx, "product_shop"))

    for id_shop in shops:
        row = {"id_product": ctx.product_id, "id_shop": id_shop}
        row.update({column: value for column, value in base.items() if ctx.has_column("product_shop", column)})
        _write(ctx, report, "product_shop", row, ["id_product", "id_shop"], id_shop=id_shop, guarded=("date_add",))
    return report


def lang_values(ctx: RunContext, values: CoreValues) -> Dict[str, Any]:
    """Translated columns shared by every language row."""
    fields = ctx.table_fields("product_lang")
    defaults = ctx.defaults_for("product_lang")

    def pick(column: str, *fallbacks: Callable[[], Any]) -> Any:
        resolvers = [
            ("product_lang.fields", lambda: ctx.resolve(fields.get(column))),
            ("product_lang.defaults", lambda: defaults.get(column)),
        ]
        resolvers.extend((f"fallback{index}", fallback) for index, fallback in enumerate(fallbacks))
        _, value = first_resolved(resolvers)
        return "" if value is None else value

    legacy = not ctx.strict
    name = pick("name", lambda: values.name, lambda: "Imported Product")
    texts = {
        "name": name,
        "description": pick(
            "description",
            lambda: values.description,
            lambda: ctx.resolve(_DESCRIPTION_PATHS) if legacy else None,
        ),
        "description_short": pick(
            "description_short",
            lambda: ctx.resolve(_SHORT_DESCRIPTION_PATHS) if legacy else None,
        ),
        "meta_title": pick("meta_title"),
        "meta_description": pick("meta_description"),
    }
    texts["link_rewrite"] = slugify(pick("link_rewrite", lambda: name)) or "product"
    for column, value in defaults.items():
        texts.setdefault(column, value)
    return texts


def write_lang_rows(ctx: RunContext, values: CoreValues) -> WriterReport:
    report = WriterReport("product_lang")
    if not ctx.has_table("product_lang") or not ctx.product_id:
        return report

    texts = lang_values(ctx, values)
    texts = {column: value for column, value in texts.items() if ctx.has_column("product_lang", column)}
    # Translations follow the global shop list, whatever product_lang's own settings say.
    shop_scoped = ctx.has_column("product_lang", "id_shop")
    shops: List[Optional[int]] = list(ctx.scope.shops) if shop_scoped else [None]
    keys = ["id_product", "id_shop", "id_lang"] if shop_scoped else ["id_product", "id_lang"]

    for id_lang in ctx.scope.langs:
        for id_shop in shops:
            row: Dict[str, Any] = {"id_product": ctx.product_id, "id_lang": id_lang}
            if shop_scoped:
                row["id_shop"] = id_shop
            row.update(texts)
            _write(ctx, report, "product_lang", row, keys, id_shop=id_shop, id_lang=id_lang)
    return report


def write_stock_rows(ctx: RunContext, values: CoreValues) -> WriterReport:
    report = WriterReport("stock_available")
    if not ctx.product_id:
        return report
    if not ctx.has_table("stock_available"):
        report.skip(Failure(table=ctx.table("stock_available"), op="skip", error="missing_table",
                            product_id=ctx.product_id))
        return report

    defaults = ctx.defaults_for("stock_available")
    keys = ["id_product", "id_product_attribute", "id_shop", "id_shop_group"]
    for id_shop in ctx.scope.shops:
        row: Dict[str, Any] = {
            "id_product": ctx.product_id,
            "id_product_attribute": 0,
            "id_shop": id_shop,
            "id_shop_group": ctx.scope.id_shop_group,
            "quantity": values.quantity,
        }
        extras = [column for column in defaults if column not in row and ctx.has_column("stock_available", column)]
        row.update({column: defaults[column] for column in extras})
        guarded = [column for column in extras if defaults[column] != ""]
        _write(ctx, report, "stock_available", row, keys, id_shop=id_shop, guarded=guarded)
    return report
