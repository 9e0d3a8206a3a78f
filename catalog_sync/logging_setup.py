"""Structured JSON logging for transfer runs."""

from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


LOGGER_NAME = "catalog_sync"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True, default=_json_default)


class TruncatingFileHandler(logging.FileHandler):
    """File handler that drops the oldest lines once the file passes ``max_bytes``."""

    def __init__(self, filename: str | Path, max_bytes: int) -> None:
        super().__init__(filename, mode="a", encoding="utf-8", delay=False)
        self.max_bytes = max_bytes

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        try:
            self._shrink()
        except OSError:
            self.handleError(record)

    def _shrink(self) -> None:
        if self.max_bytes <= 0 or self.stream is None:
            return
        self.stream.flush()
        if os.path.getsize(self.baseFilename) <= self.max_bytes:
            return

        with open(self.baseFilename, "rb+") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            handle.seek(max(0, size - self.max_bytes))
            tail = handle.read()
            cut = tail.find(b"\n")
            if cut != -1:
                tail = tail[cut + 1 :]
            handle.seek(0)
            handle.write(tail)
            handle.truncate()


class MergeExtraAdapter(logging.LoggerAdapter):
    """Adapter whose bound context is merged with the per-call ``extra``."""

    def process(self, msg, kwargs):
        merged = dict(self.extra)
        merged.update(kwargs.get("extra") or {})
        kwargs["extra"] = merged
        return msg, kwargs

    def bind(self, **context: Any) -> "MergeExtraAdapter":
        merged = dict(self.extra)
        merged.update(context)
        return MergeExtraAdapter(self.logger, merged)


def summarize_payload(payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Flatten a payload for a log line, replacing nested containers with markers."""
    if not payload:
        return {}
    summary: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, (list, tuple)):
            summary[key] = "[array]"
        elif isinstance(value, dict):
            summary[key] = "[object]"
        else:
            summary[key] = value
    return summary


def json_safe(value: Any) -> Any:
    """Copy of ``value`` holding only JSON types; dates, decimals and bytes become strings."""
    return json.loads(json.dumps(value, default=_json_default))


def _json_default(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def setup_logging(
    log_file: str,
    level: str,
    run_id: Optional[str] = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> MergeExtraAdapter:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = JsonFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = TruncatingFileHandler(log_path, max_bytes=max_bytes)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    context: Dict[str, Any] = {}
    if run_id is not None:
        context["runId"] = run_id
    return MergeExtraAdapter(logger, context)
