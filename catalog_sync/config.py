"""Configuration loading and validation."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Config:
    app_database_url: str
    target_database_url: Optional[str]
    log_file: str
    log_level: str
    mapping_file: str
    table_prefix: str
    connect_timeout: int
    http_timeout: float
    retry_count: int
    retry_backoff: float
    staging_root: str
    download_dir: Optional[str]
    image_dir: Optional[str] = None


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def load_config() -> Config:
    load_dotenv()

    return Config(
        app_database_url=_require_env("APP_DATABASE_URL"),
        target_database_url=_normalize_optional(os.getenv("TARGET_DATABASE_URL")),
        log_file=os.getenv("LOG_FILE", "logs/transfer.log"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        mapping_file=os.getenv("MAPPING_FILE", "mappings/mapping.yaml"),
        table_prefix=os.getenv("TABLE_PREFIX", "ps_").strip() or "ps_",
        connect_timeout=int(os.getenv("CONNECT_TIMEOUT", "10")),
        http_timeout=float(os.getenv("HTTP_TIMEOUT", "20")),
        retry_count=int(os.getenv("RETRY_COUNT", "2")),
        retry_backoff=float(os.getenv("RETRY_BACKOFF", "0.5")),
        staging_root=os.getenv("STAGING_ROOT", "staging"),
        download_dir=_presta_dir("DOWNLOAD_DIR", "download"),
        image_dir=_presta_dir("IMAGE_DIR", "img", "p"),
    )


def _presta_dir(name: str, *parts: str) -> Optional[str]:
    """Directory from ``name``, else the matching folder under PRESTA_ROOT."""
    explicit = _normalize_optional(os.getenv(name))
    if explicit:
        return explicit
    presta_root = _normalize_optional(os.getenv("PRESTA_ROOT"))
    if presta_root:
        return str(Path(presta_root).joinpath(*parts))
    return None


def _normalize_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned if cleaned else None
