"""Cell normalization shared by every import type.

All functions accept whatever openpyxl hands back for a cell (str, int, float,
bool, date, datetime or None) and return the typed value or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

TRUE_VALUES = {"true", "yes", "y", "1"}
FALSE_VALUES = {"false", "no", "n", "0"}
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_header(value: Any) -> str:
    if value is None:
        return ""
    return _WHITESPACE_RE.sub("_", str(value).strip().lower())


def to_text(value: Any) -> str | None:
    if value is None:
        return None
    text_value = str(value).replace("\xa0", " ").strip()
    return text_value or None


def to_code(value: Any) -> str | None:
    """Text for identifier cells that Excel may have stored as numbers."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    raw = to_text(value)
    if raw is None:
        return None
    if raw.endswith(".0") and raw[:-2].isdigit():
        return raw[:-2]
    return raw


def to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value in (0, 1):
            return bool(value)
        return None
    raw = to_text(value)
    if raw is None:
        return None
    lowered = raw.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    return None


def to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    raw = to_text(value)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def to_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = to_text(value)
    if raw is None:
        return None

    # Date columns read back from SQLite carry a time part.
    raw = raw.split(" ")[0].split("T")[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None


def to_email(value: Any) -> str | None:
    raw = to_text(value)
    return raw.lower() if raw else None


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value.strip()))


def to_proper_case(value: Any) -> str | None:
    raw = to_text(value)
    if raw is None:
        return None
    words = _WHITESPACE_RE.sub(" ", raw).lower().split(" ")
    return " ".join(w[:1].upper() + w[1:] for w in words)
