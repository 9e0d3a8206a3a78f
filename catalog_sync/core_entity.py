"""Core entity (product row): value resolution, lookup and insert/update."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import sqlalchemy as sa

from .audit import Failure, WriterReport, attempt
from .db import first_id, insert_row
from .errors import EntityNotFound
from .field_spec import parse_field_spec, resolve
from .scope import Resolver, RunContext, first_resolved
from .validator import sanitize_string, to_int, to_number


IDENTIFIER_COLUMNS = ("ean13", "upc", "isbn", "mpn")

_LEGACY_PATHS = {
    "name": ["title", "name"],
    "description": ["description", "content"],
    "reference": ["sku", "reference"],
    "supplier_reference": ["supplier_reference", "mpn"],
    "price": ["price", "price_without_tax", "price_with_tax"],
    "quantity": ["quantity", "stock.quantity", "qty"],
}
_LEGACY_FALLBACKS = {"name": "Imported Product"}
_LEGACY_SPECS = {key: parse_field_spec(paths, f"legacy.{key}") for key, paths in _LEGACY_PATHS.items()}

# Which table's field specs own each core value.
_VALUE_TABLE = {
    "name": "product_lang",
    "description": "product_lang",
    "quantity": "stock_available",
}

# Defaults that never reach the product row through the generic defaults pass.
_RESERVED_DEFAULTS = {"date_add", "date_upd", "id_tax_rules_group"}


@dataclass(frozen=True)
class CoreValues:
    name: str = ""
    description: str = ""
    reference: str = ""
    supplier_reference: str = ""
    price: float = 0.0
    quantity: int = 0
    ean13: str = ""
    upc: str = ""
    isbn: str = ""
    mpn: str = ""
    sources: Dict[str, Optional[str]] = field(default_factory=dict, compare=False)

    def as_dict(self) -> Dict[str, Any]:
        values = asdict(self)
        values.pop("sources")
        return values


def _value_resolvers(ctx: RunContext, key: str) -> List[Resolver]:
    table = _VALUE_TABLE.get(key, "product")
    resolvers: List[Resolver] = [
        (f"{table}.fields", lambda: ctx.resolve(ctx.table_fields(table).get(key))),
    ]
    if table == "product_lang":
        resolvers.append(("product.fields", lambda: ctx.resolve(ctx.table_fields("product").get(key))))
    if key != "quantity":
        resolvers.append(("product.defaults", lambda: ctx.defaults_for("product").get(key)))
    if not ctx.strict:
        resolvers.append(("fields", lambda: ctx.resolve(ctx.mapping.fields.get(key))))
        if key in _LEGACY_PATHS:
            resolvers.append(("legacy", lambda: resolve(ctx.record, _LEGACY_SPECS[key])))
            if key in _LEGACY_FALLBACKS:
                resolvers.append(("fallback", lambda: _LEGACY_FALLBACKS[key]))
    return resolvers


def resolve_core_values(ctx: RunContext) -> CoreValues:
    resolved: Dict[str, Any] = {}
    sources: Dict[str, Optional[str]] = {}
    for key in ("name", "description", "reference", "supplier_reference", "price", "quantity") + IDENTIFIER_COLUMNS:
        sources[key], resolved[key] = first_resolved(_value_resolvers(ctx, key))

    def text(key: str) -> str:
        value = resolved.get(key)
        return sanitize_string(str(value)) if value is not None else ""

    return CoreValues(
        name=text("name"),
        description=text("description"),
        reference=text("reference"),
        supplier_reference=text("supplier_reference"),
        price=to_number(resolved.get("price")),
        quantity=to_int(resolved.get("quantity")),
        ean13=text("ean13"),
        upc=text("upc"),
        isbn=text("isbn"),
        mpn=text("mpn"),
        sources=sources,
    )


def _present(value: Any) -> bool:
    return value is not None and value != ""


def product_tax_rules_group(ctx: RunContext) -> int:
    _, value = first_resolved(
        [
            ("mapping", lambda: ctx.mapping.id_tax_rules_group),
            ("product.settings", lambda: ctx.table_settings("product").get("id_tax_rules_group")),
            ("product.defaults", lambda: ctx.defaults_for("product").get("id_tax_rules_group")),
            ("product_shop.defaults", lambda: ctx.defaults_for("product_shop").get("id_tax_rules_group")),
        ],
        accept=_present,
    )
    return to_int(value)


def shop_tax_rules_group(ctx: RunContext) -> int:
    _, value = first_resolved(
        [
            ("product_shop.settings", lambda: ctx.table_settings("product_shop").get("id_tax_rules_group")),
            ("product.settings", lambda: ctx.table_settings("product").get("id_tax_rules_group")),
            ("product_shop.defaults", lambda: ctx.defaults_for("product_shop").get("id_tax_rules_group")),
            ("product.defaults", lambda: ctx.defaults_for("product").get("id_tax_rules_group")),
            ("mapping", lambda: ctx.mapping.id_tax_rules_group),
        ],
        accept=_present,
    )
    return to_int(value)


def _category_default(ctx: RunContext) -> int:
    _, value = first_resolved(
        [
            ("mapping", lambda: ctx.mapping.id_category_default),
            ("product.settings", lambda: ctx.table_settings("product").get("id_category_default")),
            ("product.defaults", lambda: ctx.defaults_for("product").get("id_category_default")),
        ],
        accept=_present,
    )
    return to_int(value)


class CoreEntityUpserter:
    """Finds or creates the product row and writes its scalar columns."""

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx

    def locate(self, values: CoreValues, mode: str = "upsert", forced_id: Optional[int] = None) -> Optional[int]:
        ctx = self.ctx
        product = ctx.sa_table("product")
        if forced_id:
            found = first_id(
                ctx.connection,
                sa.select(product.c.id_product).where(product.c.id_product == int(forced_id)),
            )
            if found is None:
                raise EntityNotFound(f"Product {forced_id} does not exist in {product.name}")
            return found
        if mode == "insert":
            return None

        if values.reference and "reference" in product.c:
            found = first_id(
                ctx.connection,
                sa.select(product.c.id_product)
                .where(product.c.reference == values.reference)
                .order_by(product.c.id_product),
            )
            if found is not None:
                return found

        if values.name and ctx.has_table("product_lang"):
            lang = ctx.sa_table("product_lang")
            return first_id(
                ctx.connection,
                sa.select(product.c.id_product)
                .join(lang, lang.c.id_product == product.c.id_product)
                .where(lang.c.id_lang == ctx.scope.id_lang, lang.c.name == values.name)
                .order_by(product.c.id_product),
            )
        return None

    def upsert(self, values: CoreValues, mode: str = "upsert", forced_id: Optional[int] = None) -> WriterReport:
        ctx = self.ctx
        report = WriterReport("core")
        table_name = ctx.table("product")
        if not ctx.has_table("product"):
            report.skip(Failure(table=table_name, op="skip", error="missing_table"))
            return report

        product_id = self.locate(values, mode=mode, forced_id=forced_id)
        if product_id is None:
            row, op = self._insert_row(values), "insert"
        else:
            row, op = self._update_row(values), "update"

        row, notes = ctx.fit_row("product", row)
        report.note(notes)
        row = ctx.coerce_row("product", row)
        product = ctx.sa_table("product")

        if op == "insert":
            outcome = report.add(
                attempt(lambda: insert_row(ctx.connection, product, row), table=table_name, op=op, payload={"row": row})
            )
            if outcome.ok and outcome.value:
                product_id = int(outcome.value)
                ctx.generated_ids["product"] = product_id
        else:
            report.add(
                attempt(
                    lambda: ctx.connection.execute(
                        sa.update(product).where(product.c.id_product == product_id).values(row)
                    ),
                    table=table_name,
                    op=op,
                    product_id=product_id,
                    payload={"row": row},
                )
            )

        if product_id:
            ctx.product_id = product_id
            report.ids["product"] = product_id
        return report

    def _put(self, row: Dict[str, Any], column: str, value: Any) -> None:
        if self.ctx.has_column("product", column):
            row[column] = value

    def _insert_row(self, values: CoreValues) -> Dict[str, Any]:
        ctx = self.ctx
        defaults = ctx.defaults_for("product")
        row: Dict[str, Any] = {}
        self._put(row, "price", values.price)
        self._put(row, "reference", values.reference)
        self._put(row, "active", 1)
        if ctx.scope.id_shop_default is not None:
            self._put(row, "id_shop_default", ctx.scope.id_shop_default)
        self._put(row, "id_category_default", _category_default(ctx))
        self._put(row, "date_add", defaults.get("date_add") or ctx.now)
        self._put(row, "date_upd", defaults.get("date_upd") or ctx.now)
        self._put(row, "id_tax_rules_group", product_tax_rules_group(ctx))
        self._put(row, "supplier_reference", values.supplier_reference)
        for column in IDENTIFIER_COLUMNS:
            self._put(row, column, getattr(values, column))
        for column, value in defaults.items():
            if column in row or column in _RESERVED_DEFAULTS or column == "id_product":
                continue
            self._put(row, column, value)
        return row

    def _update_row(self, values: CoreValues) -> Dict[str, Any]:
        ctx = self.ctx
        row: Dict[str, Any] = {}
        self._put(row, "price", values.price)
        for column in ("reference", "supplier_reference") + IDENTIFIER_COLUMNS:
            if getattr(values, column):
                self._put(row, column, getattr(values, column))
        self._put(row, "id_tax_rules_group", product_tax_rules_group(ctx))
        if ctx.scope.id_shop_default is not None:
            self._put(row, "id_shop_default", ctx.scope.id_shop_default)
        self._put(row, "date_upd", ctx.now)
        for column, value in ctx.defaults_for("product").items():
            if column in row or column in ("date_add", "date_upd", "id_product"):
                continue
            self._put(row, column, value)
        return row
