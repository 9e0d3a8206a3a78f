"""Mapping document loader and validation."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import MappingError
from .field_spec import FieldSpec, parse_field_map
from .logging_setup import LOGGER_NAME
from .validator import to_id


SEND_PIPELINES = ("images", "documents", "attributes", "features", "generic")
_FALSE_WORDS = {"false", "0", "no", "off", ""}
_TRUE_WORDS = {"true", "1", "yes", "on"}

logger = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True)
class TableMapping:
    name: str
    fields: Dict[str, FieldSpec] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)
    defaults: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MappingFlags:
    strict_mapping_only: bool = False
    unified_dynamic: bool = False


@dataclass(frozen=True)
class VariantConfig:
    enabled: bool = True
    group_name: str = "Couleur (RAL)"
    source: str = "colors.codes"


@dataclass(frozen=True)
class SendFlags:
    images: bool = True
    documents: bool = True
    attributes: bool = True
    features: bool = True
    generic: bool = True

    def enabled(self, pipeline: str) -> bool:
        return bool(getattr(self, pipeline, True))


@dataclass(frozen=True)
class MappingSpec:
    prefix: Optional[str] = None
    id_lang: Optional[int] = None
    id_shops: List[int] = field(default_factory=list)
    id_shop_default: Optional[int] = None
    id_shop_group: Optional[int] = None
    id_groups: List[int] = field(default_factory=list)
    id_tax_rules_group: Optional[int] = None
    id_category_default: Optional[int] = None
    fields: Dict[str, FieldSpec] = field(default_factory=dict)
    tables: Dict[str, TableMapping] = field(default_factory=dict)
    defaults: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    flags: MappingFlags = field(default_factory=MappingFlags)
    variants: VariantConfig = field(default_factory=VariantConfig)
    send: SendFlags = field(default_factory=SendFlags)
    version: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def table(self, name: str) -> TableMapping:
        return self.tables.get(name) or TableMapping(name=name)

    def table_fields(self, name: str) -> Dict[str, FieldSpec]:
        return self.table(name).fields

    def table_settings(self, name: str) -> Dict[str, Any]:
        return self.table(name).settings

    def defaults_for(self, name: str) -> Dict[str, Any]:
        """Column defaults for a table; top-level ``defaults`` win over ``tables.<t>.defaults``."""
        merged = dict(self.table(name).defaults)
        merged.update(self.defaults.get(name) or {})
        return merged


def load_mapping(raw: Any, version: Optional[int] = None) -> MappingSpec:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise MappingError("Mapping root must be a dictionary")
    if isinstance(raw.get("config"), dict):
        raw = raw["config"]

    prefix = raw.get("prefix")
    if prefix is not None and not isinstance(prefix, str):
        raise MappingError("prefix must be a string")

    return MappingSpec(
        prefix=prefix.strip() if isinstance(prefix, str) and prefix.strip() else None,
        id_lang=_optional_id(raw, "id_lang"),
        id_shops=_id_list(raw.get("id_shops"), "id_shops"),
        id_shop_default=_optional_id(raw, "id_shop_default"),
        id_shop_group=_optional_int(raw, "id_shop_group"),
        id_groups=_id_list(raw.get("id_groups"), "id_groups"),
        id_tax_rules_group=_optional_int(raw, "id_tax_rules_group"),
        id_category_default=_optional_int(raw, "id_category_default"),
        fields=parse_field_map(raw.get("fields"), "fields"),
        tables=_parse_tables(raw.get("tables")),
        defaults=_parse_defaults(raw.get("defaults")),
        flags=_parse_flags(raw.get("flags")),
        variants=_parse_variants(raw.get("variants")),
        send=_parse_send(raw.get("send")),
        version=version,
        raw=raw,
    )


def load_mapping_file(path: str | Path, version: Optional[int] = None) -> MappingSpec:
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise MappingError(f"Mapping file is not valid YAML/JSON: {exc}") from exc
    return load_mapping(raw, version=version)


def read_mapping_document(path: str | Path) -> Optional[Dict[str, Any]]:
    """Raw legacy mapping document, or None when the file does not exist."""
    file_path = Path(path)
    if not file_path.exists():
        return None
    try:
        raw = yaml.safe_load(file_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise MappingError(f"Mapping file is not valid YAML/JSON: {exc}") from exc
    return raw if isinstance(raw, dict) and raw else None


def _parse_tables(raw: Any) -> Dict[str, TableMapping]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise MappingError("tables must be a mapping of table name -> config")
    tables: Dict[str, TableMapping] = {}
    for name, entry in raw.items():
        table_name = str(name).strip()
        if entry is None:
            entry = {}
        if not isinstance(entry, dict):
            raise MappingError(f"tables.{table_name} must be a dictionary")

        fields_raw: Dict[str, Any] = {}
        nested = entry.get("mapping")
        if isinstance(nested, dict) and isinstance(nested.get("fields"), dict):
            fields_raw.update(nested["fields"])
        if entry.get("fields") is not None:
            if not isinstance(entry["fields"], dict):
                raise MappingError(f"tables.{table_name}.fields must be a dictionary")
            fields_raw.update(entry["fields"])

        settings = entry.get("settings") or {}
        if not isinstance(settings, dict):
            raise MappingError(f"tables.{table_name}.settings must be a dictionary")
        defaults = entry.get("defaults") or {}
        if not isinstance(defaults, dict):
            raise MappingError(f"tables.{table_name}.defaults must be a dictionary")

        tables[table_name] = TableMapping(
            name=table_name,
            fields=parse_field_map(fields_raw, f"tables.{table_name}.fields"),
            settings=dict(settings),
            defaults=dict(defaults),
        )
    return tables


def _parse_defaults(raw: Any) -> Dict[str, Dict[str, Any]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise MappingError("defaults must be a mapping of table -> column defaults")
    parsed: Dict[str, Dict[str, Any]] = {}
    for table, columns in raw.items():
        if columns is None:
            continue
        if not isinstance(columns, dict):
            raise MappingError(f"defaults.{table} must be a dictionary")
        parsed[str(table)] = dict(columns)
    return parsed


def _parse_flags(raw: Any) -> MappingFlags:
    if raw is None:
        return MappingFlags()
    if not isinstance(raw, dict):
        raise MappingError("flags must be a dictionary")
    return MappingFlags(
        strict_mapping_only=_flag(raw.get("strict_mapping_only"), False, "flags.strict_mapping_only"),
        unified_dynamic=_flag(raw.get("unified_dynamic"), False, "flags.unified_dynamic"),
    )


def _parse_variants(raw: Any) -> VariantConfig:
    if raw is None:
        return VariantConfig()
    if not isinstance(raw, dict):
        raise MappingError("variants must be a dictionary")
    defaults = VariantConfig()
    group_name = raw.get("group_name")
    if group_name is not None and not isinstance(group_name, str):
        raise MappingError("variants.group_name must be a string")
    source = raw.get("source") or defaults.source
    if not isinstance(source, str):
        raise MappingError("variants.source must be a string path")
    return VariantConfig(
        enabled=_flag(raw.get("enabled"), True, "variants.enabled"),
        group_name=(group_name or "").strip() or defaults.group_name,
        source=source,
    )


def _parse_send(raw: Any) -> SendFlags:
    if raw is None:
        return SendFlags()
    if not isinstance(raw, dict):
        raise MappingError("send must be a dictionary")
    unknown = sorted(str(name) for name in set(raw) - set(SEND_PIPELINES))
    if unknown:
        logger.warning("mapping_send_unknown", extra={"event": "mapping_send_unknown", "keys": unknown})
    return SendFlags(**{name: _flag(raw.get(name), True, f"send.{name}") for name in SEND_PIPELINES})


def _flag(value: Any, default: bool, key: str) -> bool:
    """Boolean switch; accepts booleans, 0/1 and words such as "false" or "off"."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _FALSE_WORDS:
            return False
        if word in _TRUE_WORDS:
            return True
    raise MappingError(f"{key} must be a boolean")


def _optional_id(raw: Mapping[str, Any], key: str) -> Optional[int]:
    value = raw.get(key)
    if value is None or value == "":
        return None
    parsed = to_id(value)
    if parsed is None:
        raise MappingError(f"{key} must be a positive integer")
    return parsed


def _optional_int(raw: Mapping[str, Any], key: str) -> Optional[int]:
    value = raw.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MappingError(f"{key} must be an integer") from exc


def _id_list(value: Any, key: str) -> List[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MappingError(f"{key} must be a list of ids")
    return id_list(value)


def id_list(value: Any) -> List[int]:
    """Positive integer ids from a loosely typed list; anything else is dropped."""
    if not isinstance(value, (list, tuple)):
        return []
    ids: List[int] = []
    for item in value:
        parsed = to_id(item)
        if parsed is not None and parsed not in ids:
            ids.append(parsed)
    return ids
