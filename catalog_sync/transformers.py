"""Transform pipeline for mapped values."""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Callable, Dict, Iterable


_TAG_RE = re.compile(r"<[^>]*>")
_SPACE_RE = re.compile(r"\s+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def trim(value: Any, **_kwargs: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


def replace(value: Any, find: str = "", replace: str = "", **_kwargs: Any) -> Any:
    if value is None or not find:
        return value
    return str(value).replace(str(find), "" if replace is None else str(replace))


def strip_html(value: Any, **_kwargs: Any) -> Any:
    if value is None:
        return None
    text = _TAG_RE.sub(" ", str(value))
    return _SPACE_RE.sub(" ", text).strip()


def truncate(value: Any, **kwargs: Any) -> Any:
    limit = kwargs.get("len", kwargs.get("n", kwargs.get("max")))
    if value is None or limit is None:
        return value
    try:
        size = int(limit)
    except (TypeError, ValueError):
        return value
    if size <= 0:
        return value
    return str(value)[:size]


def slugify(value: Any, **_kwargs: Any) -> Any:
    if value is None:
        return None
    normalized = unicodedata.normalize("NFKD", str(value))
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return _SLUG_RE.sub("-", stripped.lower()).strip("-")


TRANSFORM_REGISTRY: Dict[str, Callable[..., Any]] = {
    "trim": trim,
    "replace": replace,
    "strip_html": strip_html,
    "truncate": truncate,
    "slugify": slugify,
}


def apply_transforms(value: Any, transforms: Iterable[Any]) -> Any:
    current = value
    for spec in transforms:
        transform = TRANSFORM_REGISTRY[spec.name]
        current = transform(current, **spec.args)
    return current
