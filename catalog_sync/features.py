"""Feature/value entities from extracted attributes and structured metadata."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import sqlalchemy as sa

from .audit import Failure, WriterReport, attempt
from .db import first_id, insert_ignore, insert_row
from .field_spec import walk
from .mapping_loader import id_list
from .scope import RunContext


MAX_TEXT = 255
REFERENCE_TOKEN = re.compile(r"([A-Za-z0-9._\-]{2,})\s*$")

# (aliases, extract a trailing reference token)
FEATURE_ALIASES = (
    (("référence produit", "référence", "reference"), True),
    (("dimensions",), False),
    (("poids",), False),
    (("compatibilité", "compatibilite"), False),
)

_REPLACEMENTS = (
    ("\u00a0", " "),
    ("\u2013", "-"),
    ("\u2014", "-"),
    ("\u2018", "'"),
    ("\u2019", "'"),
    ("\u201c", '"'),
    ("\u201d", '"'),
    ("\u00d7", "x"),
)
_SPACES = re.compile(r"\s+")


@dataclass(frozen=True)
class FeaturePair:
    name: str
    value: str
    source: str


def normalize_text(value: Any) -> str:
    text = "" if value is None else str(value)
    for old, new in _REPLACEMENTS:
        text = text.replace(old, new)
    return _SPACES.sub(" ", text).strip()[:MAX_TEXT]


def _match_alias(name: str) -> Optional[bool]:
    lowered = name.lower().rstrip(":").strip()
    for aliases, extract in FEATURE_ALIASES:
        if any(alias in lowered for alias in aliases):
            return extract
    return None


def collect_pairs(record: Dict[str, Any]) -> List[FeaturePair]:
    """Curated attribute rows plus additionalProperty pairs, deduplicated by (name, value)."""
    pairs: List[FeaturePair] = []
    seen = set()

    def add(name: Any, value: Any, source: str) -> None:
        clean_name = normalize_text(name)
        clean_value = normalize_text(value)
        if not clean_name or not clean_value:
            return
        key = (clean_name, clean_value)
        if key in seen:
            return
        seen.add(key)
        pairs.append(FeaturePair(clean_name, clean_value, source))

    attributes = record.get("attributes") if isinstance(record, dict) else None
    for item in attributes if isinstance(attributes, list) else []:
        if not isinstance(item, dict):
            continue
        name = re.sub(r"\s*:$", "", str(item.get("name") or "").strip())
        extract = _match_alias(name)
        if extract is None:
            continue
        value = str(item.get("value") or "").strip()
        if extract:
            match = REFERENCE_TOKEN.search(value)
            value = match.group(1) if match else value
        add(name, value, "attributes")

    properties = walk(record, "json_ld.raw.additionalProperty")
    for prop in properties if isinstance(properties, list) else []:
        if not isinstance(prop, dict):
            continue
        name = prop.get("name") or prop.get("propertyID") or prop.get("@id")
        value = prop.get("value") or prop.get("description")
        add(name, value, "json_ld")
    return pairs


class FeatureWriter:
    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx
        self.report = WriterReport("features")
        self.link_table = "feature_product" if ctx.has_table("feature_product") else "product_feature"

    def run(self) -> WriterReport:
        ctx = self.ctx
        if not ctx.product_id:
            return self.report
        required = ("feature", "feature_lang", "feature_value", "feature_value_lang", self.link_table)
        missing = [name for name in required if not ctx.has_table(name)]
        if missing:
            self.report.skip(
                Failure(
                    table=ctx.table("feature"),
                    op="features_tables_missing",
                    error="missing_required_tables",
                    product_id=ctx.product_id,
                    payload={"missing": missing},
                )
            )
            return self.report

        langs = self.feature_langs()
        for pair in collect_pairs(ctx.record):
            feature_id = self.ensure_feature(pair.name, langs)
            if not feature_id:
                continue
            value_id = self.ensure_value(feature_id, pair.value, langs)
            if not value_id:
                continue
            row = {"id_product": ctx.product_id, "id_feature": feature_id, "id_feature_value": value_id}
            link = ctx.sa_table(self.link_table)
            self.report.add(
                attempt(
                    lambda: insert_ignore(ctx.connection, link, row),
                    table=ctx.table(self.link_table),
                    op="link",
                    product_id=ctx.product_id,
                    payload={"id_feature": feature_id, "id_feature_value": value_id, "source": pair.source},
                )
            )
        return self.report

    def feature_langs(self) -> List[int]:
        ctx = self.ctx
        return (
            id_list(ctx.table_settings("feature_lang").get("id_langs"))
            or id_list(ctx.table_settings("feature_value_lang").get("id_langs"))
            or list(ctx.scope.langs)
            or [ctx.scope.id_lang]
        )

    def feature_shops(self) -> List[int]:
        return id_list(self.ctx.table_settings("feature_shop").get("id_shops")) or list(self.ctx.scope.shops)

    def _link_shops(self, feature_id: int) -> None:
        ctx = self.ctx
        if not ctx.has_table("feature_shop"):
            return
        table = ctx.sa_table("feature_shop")
        for id_shop in self.feature_shops():
            row = {"id_feature": feature_id, "id_shop": id_shop}
            self.report.add(
                attempt(
                    lambda: insert_ignore(ctx.connection, table, row),
                    table=ctx.table("feature_shop"),
                    op="insert",
                    product_id=ctx.product_id,
                    id_shop=id_shop,
                    payload={"row": row},
                )
            )

    def ensure_feature(self, name: str, langs: List[int]) -> Optional[int]:
        ctx = self.ctx
        feature = ctx.sa_table("feature")
        feature_lang = ctx.sa_table("feature_lang")
        found = first_id(
            ctx.connection,
            sa.select(feature.c.id_feature)
            .join(feature_lang, feature_lang.c.id_feature == feature.c.id_feature)
            .where(feature_lang.c.name == name)
            .order_by(feature.c.id_feature),
        )
        if found:
            self._link_shops(found)
            return found

        def create() -> int:
            row = {"position": 0} if ctx.has_column("feature", "position") else {}
            feature_id = insert_row(ctx.connection, feature, row)
            for id_lang in langs:
                insert_ignore(ctx.connection, feature_lang, {"id_feature": feature_id, "id_lang": id_lang, "name": name})
            return feature_id

        outcome = self.report.add(
            attempt(create, table=ctx.table("feature"), op="create_feature", product_id=ctx.product_id,
                    payload={"name": name})
        )
        if not outcome.ok or not outcome.value:
            return None
        self._link_shops(int(outcome.value))
        ctx.logger.info("feature_created", extra={"event": "feature_created", "idFeature": outcome.value, "name": name})
        return int(outcome.value)

    def ensure_value(self, feature_id: int, text: str, langs: List[int]) -> Optional[int]:
        ctx = self.ctx
        value = ctx.sa_table("feature_value")
        value_lang = ctx.sa_table("feature_value_lang")
        found = first_id(
            ctx.connection,
            sa.select(value.c.id_feature_value)
            .join(value_lang, value_lang.c.id_feature_value == value.c.id_feature_value)
            .where(value.c.id_feature == feature_id, value_lang.c.value == text)
            .order_by(value.c.id_feature_value),
        )
        if found:
            return found

        def create() -> int:
            row: Dict[str, Any] = {"id_feature": feature_id}
            if ctx.has_column("feature_value", "custom"):
                row["custom"] = 0
            value_id = insert_row(ctx.connection, value, row)
            for id_lang in langs:
                insert_ignore(ctx.connection, value_lang, {"id_feature_value": value_id, "id_lang": id_lang, "value": text})
            return value_id

        outcome = self.report.add(
            attempt(create, table=ctx.table("feature_value"), op="create_value", product_id=ctx.product_id,
                    payload={"id_feature": feature_id, "value": text})
        )
        if not outcome.ok or not outcome.value:
            return None
        return int(outcome.value)
