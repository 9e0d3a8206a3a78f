"""Value sanitizing and coercion helpers."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
import math
import re
from typing import Any, Optional


_PLACEHOLDER_STRINGS = {"undefined", "null", "nan"}
_NA_STRINGS = {"n/a", "na", "n.a", "n - a"}
_NUMBER_JUNK = re.compile(r"[^0-9,.\-]")


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value == "":
        return True
    return False


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, (list, tuple, dict)) and not value:
        return True
    return False


def sanitize_string(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower() in _PLACEHOLDER_STRINGS:
        return ""
    return cleaned


def is_na(value: Any) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _NA_STRINGS


def to_number(value: Any) -> float:
    """Parse a scraped price or quantity; anything unusable becomes 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    text = _NUMBER_JUNK.sub("", str(value))
    if not text:
        return 0.0

    last_comma = text.rfind(",")
    last_dot = text.rfind(".")
    if last_comma != -1 and last_dot != -1:
        if last_comma > last_dot:
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif last_comma != -1:
        text = text.replace(",", "") if text.count(",") > 1 else text.replace(",", ".")
    elif text.count(".") > 1:
        text = text.replace(".", "")

    try:
        number = float(text)
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def to_int(value: Any) -> int:
    return int(to_number(value))


def to_id(value: Any) -> Optional[int]:
    """Positive integer id or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(float(str(value).strip()))
    except (ValueError, OverflowError):
        return None
    return number if number > 0 else None


def blank_for_category(category: str) -> Any:
    if category == "numeric":
        return 0
    if category == "date":
        return None
    return ""


def coerce_for_category(value: Any, category: str) -> Any:
    """Make a resolved value acceptable to a column of the given category."""
    if isinstance(value, str) and value == "":
        return blank_for_category(category)
    if category == "date" and isinstance(value, str):
        try:
            return _parse_datetime(value)
        except ValueError:
            return None
    if category == "date" and isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    if category == "numeric" and isinstance(value, str):
        return to_number(value) if "." in value or "," in value else to_int(value)
    return value


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        text = value.strip().replace("Z", "+00:00")
        if len(text) == 10:
            return datetime.fromisoformat(text + "T00:00:00")
        return datetime.fromisoformat(text.replace(" ", "T", 1))
    raise ValueError("invalid datetime value")
