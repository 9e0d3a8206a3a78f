"""Application database: versioned mappings, table settings, profiles, runs, error logs and image map."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from .db import ConnectionProfile, profile_url
from .errors import ProfileError
from .field_spec import FieldSpec, parse_field_map
from .logging_setup import json_safe


metadata = sa.MetaData()

mapping_versions = sa.Table(
    "mapping_versions",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("domain", sa.String(255), nullable=False),
    sa.Column("page_type", sa.String(64), nullable=False),
    sa.Column("version", sa.Integer, nullable=False),
    sa.Column("config", sa.JSON, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("domain", "page_type", "version", name="uq_mapping_versions_version"),
)

table_settings = sa.Table(
    "table_settings",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("domain", sa.String(255), nullable=False),
    sa.Column("page_type", sa.String(64), nullable=False),
    sa.Column("table_name", sa.String(128), nullable=False),
    sa.Column("settings", sa.JSON, nullable=True),
    sa.Column("mapping", sa.JSON, nullable=True),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("domain", "page_type", "table_name", name="uq_table_settings_table"),
)

domains = sa.Table(
    "domains",
    metadata,
    sa.Column("domain", sa.String(255), primary_key=True),
    sa.Column("profile_id", sa.Integer, nullable=True),
    sa.Column("prefix", sa.String(32), nullable=True),
)

connection_profiles = sa.Table(
    "connection_profiles",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("name", sa.String(128), nullable=False),
    sa.Column("driver", sa.String(64), nullable=False, default="mysql+pymysql"),
    sa.Column("host", sa.String(255), nullable=False),
    sa.Column("port", sa.Integer, nullable=True),
    sa.Column("database", sa.String(128), nullable=False),
    sa.Column("db_user", sa.String(128), nullable=False),
    sa.Column("db_password", sa.String(255), nullable=True),
    sa.Column("ssl", sa.Boolean, nullable=False, default=False),
)

extraction_runs = sa.Table(
    "extraction_runs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("domain", sa.String(255), nullable=False),
    sa.Column("url", sa.Text, nullable=True),
    sa.Column("page_type", sa.String(64), nullable=True),
    sa.Column("version", sa.Integer, nullable=True),
    sa.Column("result", sa.JSON, nullable=True),
    sa.Column("product_id", sa.Integer, nullable=True),
    sa.Column("mapping_version", sa.Integer, nullable=True),
    sa.Column("mapping", sa.JSON, nullable=True),
    sa.Column("transfer", sa.JSON, nullable=True),
    sa.Column("ok", sa.Boolean, nullable=True),
    sa.Column("error", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)

transfer_error_logs = sa.Table(
    "transfer_error_logs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("run_id", sa.Integer, nullable=True),
    sa.Column("domain", sa.String(255), nullable=True),
    sa.Column("page_type", sa.String(64), nullable=True),
    sa.Column("table_name", sa.String(128), nullable=True),
    sa.Column("op", sa.String(64), nullable=True),
    sa.Column("product_id", sa.Integer, nullable=True),
    sa.Column("id_shop", sa.Integer, nullable=True),
    sa.Column("id_lang", sa.Integer, nullable=True),
    sa.Column("error", sa.Text, nullable=True),
    sa.Column("payload", sa.JSON, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

image_map = sa.Table(
    "image_map",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("domain", sa.String(255), nullable=False),
    sa.Column("product_id", sa.Integer, nullable=False),
    sa.Column("source_url", sa.Text, nullable=True),
    sa.Column("url_hash", sa.String(40), nullable=False),
    sa.Column("content_sha1", sa.String(40), nullable=False),
    sa.Column("id_image", sa.Integer, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("domain", "product_id", "content_sha1", name="uq_image_map_content"),
)

JSON_RUN_COLUMNS = ("result", "mapping", "transfer")


def normalize_domain(domain: Optional[str]) -> str:
    cleaned = (domain or "").strip().lower()
    if cleaned.startswith("www."):
        cleaned = cleaned[4:]
    return cleaned


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StoredMapping:
    domain: str
    page_type: str
    version: int
    config: Dict[str, Any]


@dataclass(frozen=True)
class RunRecord:
    id: int
    domain: str
    url: Optional[str]
    page_type: Optional[str]
    version: Optional[int]
    result: Dict[str, Any]
    product_id: Optional[int] = None
    mapping_version: Optional[int] = None


@dataclass(frozen=True)
class DomainConfig:
    domain: str
    profile_id: Optional[int]
    prefix: Optional[str]


@dataclass(frozen=True)
class TableSettings:
    """Per-table settings and field mappings stored for one (domain, page type)."""

    settings: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    fields: Dict[str, Dict[str, FieldSpec]] = field(default_factory=dict)
    defaults: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def for_table(self, name: str) -> Dict[str, Any]:
        return self.settings.get(name) or {}

    def fields_for(self, name: str) -> Dict[str, FieldSpec]:
        return self.fields.get(name) or {}

    def defaults_for(self, name: str) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        stored = self.for_table(name).get("defaults")
        if isinstance(stored, dict):
            merged.update(stored)
        merged.update(self.defaults.get(name) or {})
        return merged

    def table_names(self) -> Set[str]:
        return set(self.settings) | set(self.fields)


class MappingStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # Mapping versions

    def latest_mapping(self, domain: str, page_type: str) -> Optional[StoredMapping]:
        stmt = (
            sa.select(mapping_versions)
            .where(
                mapping_versions.c.domain == normalize_domain(domain),
                mapping_versions.c.page_type == page_type.lower(),
            )
            .order_by(mapping_versions.c.version.desc(), mapping_versions.c.id.desc())
            .limit(1)
        )
        return self._stored_mapping(stmt)

    def mapping_version(self, domain: str, page_type: str, version: int) -> Optional[StoredMapping]:
        stmt = sa.select(mapping_versions).where(
            mapping_versions.c.domain == normalize_domain(domain),
            mapping_versions.c.page_type == page_type.lower(),
            mapping_versions.c.version == int(version),
        )
        return self._stored_mapping(stmt)

    def publish_mapping(self, domain: str, page_type: str, config: Mapping[str, Any]) -> int:
        """Store ``config`` as the next version for (domain, page type) and return that version."""
        key = normalize_domain(domain)
        kind = page_type.lower()
        with self.engine.begin() as conn:
            current = conn.execute(
                sa.select(sa.func.max(mapping_versions.c.version)).where(
                    mapping_versions.c.domain == key,
                    mapping_versions.c.page_type == kind,
                )
            ).scalar()
            version = int(current or 0) + 1
            conn.execute(
                sa.insert(mapping_versions).values(
                    domain=key,
                    page_type=kind,
                    version=version,
                    config=json_safe(dict(config)),
                    created_at=_now(),
                )
            )
        return version

    def _stored_mapping(self, stmt: sa.Select) -> Optional[StoredMapping]:
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            return None
        return StoredMapping(
            domain=row["domain"],
            page_type=row["page_type"],
            version=int(row["version"]),
            config=dict(row["config"] or {}),
        )

    # Table settings

    def load_table_settings(self, domain: str, page_type: str) -> TableSettings:
        stmt = sa.select(table_settings).where(
            table_settings.c.domain == normalize_domain(domain),
            table_settings.c.page_type == page_type.lower(),
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()

        settings: Dict[str, Dict[str, Any]] = {}
        fields: Dict[str, Dict[str, FieldSpec]] = {}
        defaults: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            name = str(row["table_name"] or "").strip().lower()
            if not name:
                continue
            if isinstance(row["settings"], dict):
                settings[name] = dict(row["settings"])
            stored_mapping = row["mapping"] if isinstance(row["mapping"], dict) else {}
            if isinstance(stored_mapping.get("fields"), dict):
                fields[name] = parse_field_map(stored_mapping["fields"], f"table_settings.{name}.fields")
            if isinstance(stored_mapping.get("defaults"), dict):
                defaults[name] = dict(stored_mapping["defaults"])
        return TableSettings(settings=settings, fields=fields, defaults=defaults)

    def save_table_settings(
        self,
        domain: str,
        page_type: str,
        table_name: str,
        settings: Optional[Mapping[str, Any]] = None,
        mapping: Optional[Mapping[str, Any]] = None,
    ) -> None:
        key = normalize_domain(domain)
        kind = page_type.lower()
        name = table_name.strip().lower()
        where = sa.and_(
            table_settings.c.domain == key,
            table_settings.c.page_type == kind,
            table_settings.c.table_name == name,
        )
        values = {
            "settings": json_safe(dict(settings or {})),
            "mapping": json_safe(dict(mapping or {})),
            "updated_at": _now(),
        }
        with self.engine.begin() as conn:
            updated = conn.execute(sa.update(table_settings).where(where).values(**values)).rowcount
            if not updated:
                conn.execute(
                    sa.insert(table_settings).values(domain=key, page_type=kind, table_name=name, **values)
                )

    # Domains and connection profiles

    def domain_config(self, domain: str) -> Optional[DomainConfig]:
        stmt = sa.select(domains).where(domains.c.domain == normalize_domain(domain))
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            return None
        return DomainConfig(domain=row["domain"], profile_id=row["profile_id"], prefix=row["prefix"])

    def resolve_profile(self, domain: str, explicit_id: Optional[int] = None) -> ConnectionProfile:
        profile_id = explicit_id
        if not profile_id:
            config = self.domain_config(domain)
            profile_id = config.profile_id if config else None
        if not profile_id:
            raise ProfileError(f"No connection profile configured for {domain!r}", code="missing_profile")

        stmt = sa.select(connection_profiles).where(connection_profiles.c.id == int(profile_id))
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            raise ProfileError(f"Connection profile {profile_id} does not exist", code="profile_not_found")
        return ConnectionProfile(
            id=int(row["id"]),
            name=row["name"],
            url=profile_url(
                host=row["host"],
                port=row["port"],
                database=row["database"],
                user=row["db_user"],
                password=row["db_password"] or "",
                driver=row["driver"],
            ),
            ssl=bool(row["ssl"]),
        )

    # Runs

    def create_run(
        self,
        domain: str,
        result: Mapping[str, Any],
        page_type: str = "product",
        url: Optional[str] = None,
        version: Optional[int] = None,
    ) -> int:
        now = _now()
        with self.engine.begin() as conn:
            inserted = conn.execute(
                sa.insert(extraction_runs).values(
                    domain=domain,
                    url=url,
                    page_type=page_type,
                    version=version,
                    result=json_safe(dict(result)),
                    created_at=now,
                    updated_at=now,
                )
            )
            return int(inserted.inserted_primary_key[0])

    def get_run(self, run_id: int) -> Optional[RunRecord]:
        stmt = sa.select(extraction_runs).where(extraction_runs.c.id == int(run_id))
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            return None
        result = row["result"] if isinstance(row["result"], dict) else {}
        return RunRecord(
            id=int(row["id"]),
            domain=row["domain"],
            url=row["url"],
            page_type=row["page_type"],
            version=row["version"],
            result=result,
            product_id=row["product_id"],
            mapping_version=row["mapping_version"],
        )

    def update_run(self, run_id: int, **values: Any) -> None:
        for column in JSON_RUN_COLUMNS:
            if values.get(column) is not None:
                values[column] = json_safe(values[column])
        values["updated_at"] = _now()
        with self.engine.begin() as conn:
            conn.execute(sa.update(extraction_runs).where(extraction_runs.c.id == int(run_id)).values(**values))

    # Error log

    def append_error_logs(self, entries: List[Dict[str, Any]]) -> None:
        if not entries:
            return
        now = _now()
        rows = [dict(entry, payload=json_safe(entry.get("payload")), created_at=now) for entry in entries]
        with self.engine.begin() as conn:
            conn.execute(sa.insert(transfer_error_logs), rows)

    def error_logs(self, run_id: int) -> List[Dict[str, Any]]:
        stmt = (
            sa.select(transfer_error_logs)
            .where(transfer_error_logs.c.run_id == int(run_id))
            .order_by(transfer_error_logs.c.id)
        )
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings().all()]

    # Image map

    def find_image(self, domain: str, product_id: int, content_sha1: str, url_hash: str) -> Optional[int]:
        """Image id stored by an earlier run for the same content or source URL."""
        stmt = (
            sa.select(image_map.c.id_image)
            .where(
                image_map.c.domain == normalize_domain(domain),
                image_map.c.product_id == int(product_id),
                sa.or_(image_map.c.content_sha1 == content_sha1, image_map.c.url_hash == url_hash),
            )
            .order_by(image_map.c.id.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            value = conn.execute(stmt).scalar()
        return int(value) if value is not None else None

    def remember_image(
        self,
        domain: str,
        product_id: int,
        url: str,
        url_hash: str,
        content_sha1: str,
        id_image: int,
    ) -> None:
        key = normalize_domain(domain)
        where = sa.and_(
            image_map.c.domain == key,
            image_map.c.product_id == int(product_id),
            image_map.c.content_sha1 == content_sha1,
        )
        values = {"source_url": url, "url_hash": url_hash, "id_image": int(id_image), "created_at": _now()}
        with self.engine.begin() as conn:
            updated = conn.execute(sa.update(image_map).where(where).values(**values)).rowcount
            if not updated:
                conn.execute(
                    sa.insert(image_map).values(
                        domain=key, product_id=int(product_id), content_sha1=content_sha1, **values
                    )
                )
