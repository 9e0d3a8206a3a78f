from typing import Any, Dict, Optional

import pytest
import requests
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from catalog_sync.mapping_loader import load_mapping
from catalog_sync.mapping_store import MappingStore, TableSettings, metadata as app_metadata
from catalog_sync.schema import SchemaCache
from catalog_sync.scope import RunContext, resolve_scope


PREFIX = "ps_"


class DummyLogger:
    def __init__(self) -> None:
        self.messages = []

    def _log(self, level, message, extra=None):
        self.messages.append((level, message, extra or {}))

    def debug(self, message, extra=None):
        self._log("debug", message, extra)

    def info(self, message, extra=None):
        self._log("info", message, extra)

    def warning(self, message, extra=None):
        self._log("warning", message, extra)

    def error(self, message, extra=None):
        self._log("error", message, extra)

    def events(self):
        return [extra.get("event") for _, _, extra in self.messages]


class DummyResponse:
    def __init__(self, status_code: int, body: bytes = b"") -> None:
        self.status_code = status_code
        self.body = body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def iter_content(self, chunk_size=1):
        return iter([self.body])

    def close(self):
        pass


class FakeSession:
    def __init__(self, responses) -> None:
        self.responses = responses
        self.calls = []

    def request(self, method, url, timeout, **kwargs):
        self.calls.append((url, kwargs))
        status, body = self.responses.get(url, (404, b""))
        return DummyResponse(status, body)


def _memory_engine() -> sa.engine.Engine:
    return sa.create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        isolation_level="AUTOCOMMIT",
    )


def catalog_metadata() -> sa.MetaData:
    md = sa.MetaData()

    def table(name, *columns):
        return sa.Table(f"{PREFIX}{name}", md, *columns)

    def ids(*names):
        return [sa.Column(name, sa.Integer, primary_key=True, autoincrement=False) for name in names]

    table("lang", sa.Column("id_lang", sa.Integer, primary_key=True), sa.Column("active", sa.Integer))
    table("shop", sa.Column("id_shop", sa.Integer, primary_key=True), sa.Column("active", sa.Integer))
    table("group", sa.Column("id_group", sa.Integer, primary_key=True))

    table(
        "product",
        sa.Column("id_product", sa.Integer, primary_key=True),
        sa.Column("reference", sa.String(64)),
        sa.Column("supplier_reference", sa.String(64)),
        sa.Column("price", sa.Float),
        sa.Column("active", sa.Integer),
        sa.Column("id_shop_default", sa.Integer),
        sa.Column("id_category_default", sa.Integer),
        sa.Column("id_tax_rules_group", sa.Integer),
        sa.Column("ean13", sa.String(13)),
        sa.Column("upc", sa.String(12)),
        sa.Column("isbn", sa.String(32)),
        sa.Column("mpn", sa.String(40)),
        sa.Column("minimal_quantity", sa.Integer),
        sa.Column("cache_default_attribute", sa.Integer),
        sa.Column("product_type", sa.String(16)),
        sa.Column("date_add", sa.DateTime),
        sa.Column("date_upd", sa.DateTime),
    )
    table(
        "product_shop",
        *ids("id_product", "id_shop"),
        sa.Column("price", sa.Float),
        sa.Column("active", sa.Integer),
        sa.Column("id_tax_rules_group", sa.Integer),
        sa.Column("id_category_default", sa.Integer),
        sa.Column("visibility", sa.String(16)),
        sa.Column("condition", sa.String(16)),
        sa.Column("available_for_order", sa.Integer),
        sa.Column("cache_default_attribute", sa.Integer),
        sa.Column("date_add", sa.DateTime),
        sa.Column("date_upd", sa.DateTime),
    )
    table(
        "product_lang",
        *ids("id_product", "id_shop", "id_lang"),
        sa.Column("name", sa.String(128)),
        sa.Column("description", sa.Text),
        sa.Column("description_short", sa.Text),
        sa.Column("link_rewrite", sa.String(128)),
        sa.Column("meta_title", sa.String(128)),
        sa.Column("meta_description", sa.String(512)),
    )
    table(
        "stock_available",
        sa.Column("id_stock_available", sa.Integer, primary_key=True),
        sa.Column("id_product", sa.Integer, nullable=False),
        sa.Column("id_product_attribute", sa.Integer, nullable=False),
        sa.Column("id_shop", sa.Integer, nullable=False),
        sa.Column("id_shop_group", sa.Integer, nullable=False),
        sa.Column("quantity", sa.Integer),
        sa.Column("out_of_stock", sa.Integer),
        sa.UniqueConstraint("id_product", "id_product_attribute", "id_shop", "id_shop_group"),
    )

    table(
        "attribute_group",
        sa.Column("id_attribute_group", sa.Integer, primary_key=True),
        sa.Column("is_color_group", sa.Integer),
        sa.Column("group_type", sa.String(32)),
        sa.Column("position", sa.Integer),
    )
    table(
        "attribute_group_lang",
        *ids("id_attribute_group", "id_lang"),
        sa.Column("name", sa.String(128)),
        sa.Column("public_name", sa.String(64)),
    )
    table("attribute_group_shop", *ids("id_attribute_group", "id_shop"))
    table(
        "attribute",
        sa.Column("id_attribute", sa.Integer, primary_key=True),
        sa.Column("id_attribute_group", sa.Integer),
        sa.Column("position", sa.Integer),
    )
    table("attribute_lang", *ids("id_attribute", "id_lang"), sa.Column("name", sa.String(128)))
    table("attribute_shop", *ids("id_attribute", "id_shop"))
    table(
        "product_attribute",
        sa.Column("id_product_attribute", sa.Integer, primary_key=True),
        sa.Column("id_product", sa.Integer),
        sa.Column("price", sa.Float),
        sa.Column("minimal_quantity", sa.Integer),
        sa.Column("default_on", sa.Integer, nullable=True),
    )
    table("product_attribute_combination", *ids("id_attribute", "id_product_attribute"))
    table(
        "product_attribute_shop",
        *ids("id_product_attribute", "id_shop"),
        sa.Column("id_product", sa.Integer),
        sa.Column("price", sa.Float),
        sa.Column("weight", sa.Float),
        sa.Column("default_on", sa.Integer, nullable=True),
    )

    table("feature", sa.Column("id_feature", sa.Integer, primary_key=True), sa.Column("position", sa.Integer))
    table("feature_lang", *ids("id_feature", "id_lang"), sa.Column("name", sa.String(128)))
    table("feature_shop", *ids("id_feature", "id_shop"))
    table(
        "feature_value",
        sa.Column("id_feature_value", sa.Integer, primary_key=True),
        sa.Column("id_feature", sa.Integer),
        sa.Column("custom", sa.Integer),
    )
    table("feature_value_lang", *ids("id_feature_value", "id_lang"), sa.Column("value", sa.String(255)))
    table("feature_product", *ids("id_feature", "id_product", "id_feature_value"))

    table(
        "attachment",
        sa.Column("id_attachment", sa.Integer, primary_key=True),
        sa.Column("file", sa.String(40)),
        sa.Column("file_name", sa.String(128)),
        sa.Column("file_size", sa.Integer),
        sa.Column("mime", sa.String(128)),
    )
    table(
        "attachment_lang",
        *ids("id_attachment", "id_lang"),
        sa.Column("name", sa.String(32)),
        sa.Column("description", sa.Text),
    )
    table("attachment_shop", *ids("id_attachment", "id_shop"))
    table("product_attachment", *ids("id_product", "id_attachment"))

    table(
        "image",
        sa.Column("id_image", sa.Integer, primary_key=True),
        sa.Column("id_product", sa.Integer),
        sa.Column("position", sa.Integer),
        sa.Column("cover", sa.Integer, nullable=True),
    )
    table("image_lang", *ids("id_image", "id_lang"), sa.Column("legend", sa.String(16)))
    table(
        "image_shop",
        *ids("id_image", "id_shop"),
        sa.Column("id_product", sa.Integer),
        sa.Column("cover", sa.Integer, nullable=True),
    )

    table(
        "category",
        sa.Column("id_category", sa.Integer, primary_key=True),
        sa.Column("id_parent", sa.Integer),
        sa.Column("id_shop_default", sa.Integer),
        sa.Column("active", sa.Integer),
        sa.Column("position", sa.Integer),
        sa.Column("date_add", sa.DateTime),
        sa.Column("date_upd", sa.DateTime),
    )
    table(
        "category_lang",
        *ids("id_category", "id_shop", "id_lang"),
        sa.Column("name", sa.String(128)),
        sa.Column("link_rewrite", sa.String(128)),
    )
    table("category_shop", *ids("id_category", "id_shop"), sa.Column("position", sa.Integer))
    table("category_group", *ids("id_category", "id_group"))

    table(
        "product_extra",
        *ids("id_product", "id_shop"),
        sa.Column("note", sa.String(32)),
        sa.Column("weight", sa.Float),
        sa.CheckConstraint("id_shop <> 7", name="ck_product_extra_shop"),
    )
    table(
        "product_dated",
        *ids("id_product", "id_shop"),
        sa.Column("note", sa.String(32)),
        sa.Column("date_upd", sa.DateTime),
        sa.CheckConstraint("id_shop <> 7", name="ck_product_dated_shop"),
    )
    table(
        "product_supplier",
        sa.Column("id_product_supplier", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("id_product", sa.Integer),
        sa.Column("product_supplier_reference", sa.String(64)),
    )
    return md


@pytest.fixture
def catalog_engine():
    engine = _memory_engine()
    catalog_metadata().create_all(engine)
    with engine.connect() as conn:
        conn.execute(sa.text("INSERT INTO ps_lang (id_lang, active) VALUES (1, 1), (2, 1), (3, 0)"))
        conn.execute(sa.text("INSERT INTO ps_shop (id_shop, active) VALUES (1, 1), (2, 1)"))
        conn.execute(sa.text('INSERT INTO "ps_group" (id_group) VALUES (1), (2), (3)'))
    yield engine
    engine.dispose()


@pytest.fixture
def catalog(catalog_engine):
    with catalog_engine.connect() as conn:
        yield conn


@pytest.fixture
def app_engine():
    engine = _memory_engine()
    app_metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(app_engine):
    return MappingStore(app_engine)


@pytest.fixture
def logger():
    return DummyLogger()


@pytest.fixture
def make_context(catalog, logger):
    def build(
        record: Dict[str, Any],
        mapping: Optional[Dict[str, Any]] = None,
        settings: Optional[TableSettings] = None,
        page_type: str = "product",
        product_id: Optional[int] = None,
    ) -> RunContext:
        spec = load_mapping(mapping or {})
        table_settings = settings or TableSettings()
        schema = SchemaCache(catalog)
        scope = resolve_scope(catalog, schema, spec, table_settings, spec.prefix or PREFIX)
        return RunContext(
            run_id=1,
            domain="shop.example",
            page_type=page_type,
            url="https://shop.example/p/1",
            record=record,
            mapping=spec,
            settings=table_settings,
            scope=scope,
            schema=schema,
            connection=catalog,
            product_id=product_id,
            logger=logger,
        )

    return build


def rows(connection, name: str, order_by: Optional[str] = None):
    stmt = f'SELECT * FROM "{PREFIX}{name}"'
    if order_by:
        stmt += f" ORDER BY {order_by}"
    return [dict(row) for row in connection.execute(sa.text(stmt)).mappings().all()]
