"""Normalization functions for Airtable fleet records.

Airtable hands back loosely-typed values: strings, numbers, booleans,
lookup fields as single-element lists, attachment objects and ISO
timestamps.  Every function here accepts any of those (or None) and
returns the normalized value or None.  None of them raise.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

DEFAULT_COUNTRY_CODE = "1"

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
)
_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %I:%M%p",
)
_TRUE_STRINGS = {"yes", "y", "true", "t", "1", "checked", "x"}
_YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")


# ---------------------------------------------------------------------------
# Scalar unwrapping
# ---------------------------------------------------------------------------

def first_scalar(value: Any) -> Any:
    """Unwrap Airtable lookup/linked-record lists to their first element."""
    while isinstance(value, (list, tuple)):
        if not value:
            return None
        value = value[0]
    return value


def as_text(value: Any) -> str | None:
    """Return a stripped string for any scalar-ish value; blank → None."""
    value = first_scalar(value)
    if value is None or isinstance(value, dict):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    return as_text(value)


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: Any) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: normalize_phone
# ---------------------------------------------------------------------------

def normalize_phone(value: Any, country_code: str = DEFAULT_COUNTRY_CODE) -> str | None:
    """Return a '+'-prefixed phone number or None.

    Drops everything except digits and '+'.  Numbers already carrying a
    '+' are kept as they are.  Otherwise an 11-digit number starting with
    the country code already has its trunk digit and just gets '+';
    anything else gets '+' and the country code prepended.  Fewer than 7
    digits is treated as a data error.

    Idempotent: a value this returns is returned unchanged.
    """
    v = trim(value)
    if v is None:
        return None
    cleaned = re.sub(r"[^\d+]", "", v)
    digits = re.sub(r"\D", "", cleaned)
    if len(digits) < 7:
        return None
    if cleaned.startswith("+"):
        return cleaned
    if len(digits) == 10 + len(country_code) and digits.startswith(country_code):
        return f"+{digits}"
    return f"+{country_code}{digits}"


# ---------------------------------------------------------------------------
# Rule 5: slug_name
# ---------------------------------------------------------------------------

def slug_name(value: Any) -> str | None:
    """Lowercase alnum with '-' separators (used for synthesized ids)."""
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 6: dates
# ---------------------------------------------------------------------------

def _parse_datetime_obj(value: Any) -> datetime | None:
    value = first_scalar(value)
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    v = trim(value)
    if v is None:
        return None
    iso = v[:-1] + "+00:00" if v.endswith("Z") else v
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        pass
    for fmt in _DATETIME_FORMATS + _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt)
        except ValueError:
            continue
    return None


def parse_date(value: Any) -> str | None:
    """Return 'YYYY-MM-DD' for a date string or native date, else None."""
    raw = first_scalar(value)
    if isinstance(raw, date) and not isinstance(raw, datetime):
        return raw.isoformat()
    dt = _parse_datetime_obj(raw)
    return dt.date().isoformat() if dt is not None else None


def parse_datetime(value: Any) -> str | None:
    """Return an ISO-8601 timestamp, preserving time of day, else None."""
    dt = _parse_datetime_obj(value)
    return dt.isoformat() if dt is not None else None


def parse_time(value: Any) -> str | None:
    """Return 'HH:MM' from a time or full timestamp string, else None.

    '14:30', '2:30 PM' and '2024-03-05T14:30:00.000Z' all parse.
    """
    v = trim(value)
    if v is None:
        return None
    if "T" in v:
        dt = _parse_datetime_obj(v)
        return dt.strftime("%H:%M") if dt is not None else None
    for fmt in ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p", "%I %p"):
        try:
            return datetime.strptime(v.upper(), fmt).strftime("%H:%M")
        except ValueError:
            continue
    return None


def extract_year(value: Any) -> int | None:
    """Return the first 19xx/20xx year embedded in a string, or None."""
    v = trim(value)
    if v is None:
        return None
    m = _YEAR_RE.search(v)
    return int(m.group(0)) if m else None


# ---------------------------------------------------------------------------
# Rule 7: numbers / booleans
# ---------------------------------------------------------------------------

def parse_numeric(value: Any) -> Decimal | None:
    """Parse a decimal number, tolerating '$' and ',' separators."""
    value = first_scalar(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        d = Decimal(str(value))
    else:
        v = trim(value)
        if v is None:
            return None
        v = re.sub(r"[,$\s]", "", v)
        try:
            d = Decimal(v)
        except InvalidOperation:
            return None
    return d if d.is_finite() else None


def parse_int(value: Any) -> int | None:
    """Parse an integer (truncating decimals), or None."""
    d = parse_numeric(value)
    return int(d) if d is not None else None


def parse_bool(value: Any) -> bool:
    """Airtable checkboxes are true/absent; text flags use yes/no."""
    value = first_scalar(value)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    v = trim(value)
    if v is None:
        return False
    return v.lower() in _TRUE_STRINGS


# ---------------------------------------------------------------------------
# Rule 8: lists
# ---------------------------------------------------------------------------

def extract_photo_urls(value: Any) -> list[str]:
    """Return the 'url' of each attachment object, dropping any without one."""
    if not isinstance(value, list):
        return []
    urls: list[str] = []
    for item in value:
        if isinstance(item, dict):
            url = trim(item.get("url"))
            if url:
                urls.append(url)
    return urls


def split_list(value: Any) -> list[str]:
    """Accept a multi-select list or comma-separated text; return trimmed items."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = [trim(v) for v in value]
    else:
        text = trim(value)
        items = [trim(part) for part in text.split(",")] if text else []
    return [i for i in items if i]


# ---------------------------------------------------------------------------
# Rule 9: pick_first
# ---------------------------------------------------------------------------

def pick_first(candidates: Iterable[Any]) -> str | None:
    """Return the first candidate that normalizes to a non-empty string."""
    for candidate in candidates:
        v = normalize_space(candidate)
        if v:
            return v
    return None


def pick_field(fields: dict[str, Any], aliases: Iterable[str]) -> Any:
    """Return the first raw value among aliases that is not blank."""
    for alias in aliases:
        value = fields.get(alias)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, (list, tuple)) and not value:
            continue
        return value
    return None


def pick_text(fields: dict[str, Any], aliases: Iterable[str]) -> str | None:
    """pick_first over the named fields of a record."""
    return pick_first(fields.get(alias) for alias in aliases)


# ---------------------------------------------------------------------------
# Helper: make/model parsing and VIN synthesis
# ---------------------------------------------------------------------------

_MAKE_MODEL_PATTERNS = (
    re.compile(r"^(\d{4})\s+([^\[]+)"),
    re.compile(r"^([^\[]+?)\s+-\s+([^\[]+)"),
    re.compile(r"^(\S+)\s+([^\[]+)"),
)


def parse_make_model(description: Any) -> tuple[str | None, str | None]:
    """Split '2018 Toyota Tacoma [Co. ID: 1599]' style text into (make, model).

    Supports:
    - "2018 Toyota Tacoma"          → ("Toyota", "Tacoma")
    - "John Deere - Gator TX"       → ("John Deere", "Gator TX")
    - "Kubota RTV"                  → ("Kubota", "RTV")
    - Single token                  → (token, None)
    """
    v = normalize_space(description)
    if not v:
        return None, None
    for pattern in _MAKE_MODEL_PATTERNS:
        m = pattern.match(v)
        if not m:
            continue
        make, model = m.group(1).strip(), m.group(2).strip()
        if re.fullmatch(r"\d{4}", make):
            parts = model.split()
            make = parts[0] if parts else None
            model = " ".join(parts[1:]) or None
        return make or None, model or None
    return v, None


def synthesize_vin(external_id: str) -> str:
    """Placeholder VIN for records with none; stable per external id."""
    return f"FLEET-{external_id}"
