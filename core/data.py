from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from core.errors import ValidationError
from core.models import ColumnDefinition, Record
from core.settings import CURRENCY_SYMBOL, DISPLAY_DATE_FORMAT


# Separators and currency glyphs stripped from typed numeric input.
NUMBER_NOISE = re.compile(r"[\s,'_₪$€£¥]")
NUMBER_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)$")

SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
DOT_DATE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$")
ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")

COMMON_KEYS = {
    "תאריך": "date",
    "תיאור": "description",
    "הכנסה": "income",
    "הוצאה": "expense",
    "קטגוריה": "category",
    "יתרה": "balance",
    "סכום": "amount",
    "שם": "name",
    "סוג": "type",
    "מחיר": "price",
    "כמות": "quantity",
    "סטטוס": "status",
}

TRANSLITERATION = {
    "א": "a", "ב": "b", "ג": "g", "ד": "d", "ה": "h", "ו": "v", "ז": "z",
    "ח": "ch", "ט": "t", "י": "y", "כ": "k", "ך": "k", "ל": "l", "מ": "m", "ם": "m",
    "נ": "n", "ן": "n", "ס": "s", "ע": "a", "פ": "p", "ף": "p", "צ": "ts", "ץ": "ts",
    "ק": "k", "ר": "r", "ש": "sh", "ת": "t",
}


def is_blank(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def to_number(value: object) -> Optional[float]:
    """Best-effort numeric coercion; None when the value is not a number."""
    if is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, np.integer, np.floating)):
        out = float(value)
    else:
        try:
            out = float(str(value).strip())
        except ValueError:
            return None
    if np.isnan(out) or np.isinf(out):
        return None
    return out


def coerce_number(value: object) -> float:
    out = to_number(value)
    return 0.0 if out is None else out


def value_text(value: object) -> str:
    """String form used for equality and substring comparisons."""
    if is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ---------------- Typed input ----------------
def parse_number_input(text: object, *, field: Optional[str] = None) -> Optional[float]:
    """Parse locale-formatted numeric input ("₪1,234.50"); blank clears the cell."""
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        out = to_number(text)
        if out is None:
            raise ValidationError("Invalid numeric value", field=field)
        return out
    if is_blank(text):
        return None
    s = NUMBER_NOISE.sub("", str(text).strip())
    negative = s.startswith("(") and s.endswith(")")
    if negative:
        s = s[1:-1]
    if not NUMBER_PATTERN.match(s):
        raise ValidationError(f"Invalid numeric value: {text!r}", field=field)
    out = float(s)
    return -out if negative else out


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date_text(text: object) -> Optional[date]:
    """Parse DD/MM/YYYY, DD.MM.YYYY or ISO text; None when unparsable."""
    if is_blank(text):
        return None
    if isinstance(text, datetime):
        return text.date()
    if isinstance(text, date):
        return text
    s = str(text).strip()
    for pattern in (SLASH_DATE, DOT_DATE):
        match = pattern.match(s)
        if match:
            day, month, year = (int(g) for g in match.groups())
            return _safe_date(year, month, day)
    match = ISO_DATE.match(s)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return _safe_date(year, month, day)
    return None


def parse_date_input(text: object, *, field: Optional[str] = None) -> Optional[str]:
    """Validate typed date input and return the stored ISO form."""
    if is_blank(text):
        return None
    parsed = parse_date_text(text)
    if parsed is None:
        raise ValidationError("Invalid date format, use DD/MM/YYYY", field=field)
    return parsed.isoformat()


def parse_cell_input(column: ColumnDefinition, value: object) -> Any:
    """Convert edit-boundary input into the stored value for the column's type."""
    if column.type in ("number", "currency"):
        return parse_number_input(value, field=column.key)
    if column.type == "date":
        return parse_date_input(value, field=column.key)
    if column.type == "lookup":
        return None if is_blank(value) else value
    if value is None:
        return None
    return str(value)


def to_date_series(series: pd.Series) -> pd.Series:
    return pd.to_datetime(series.map(parse_date_text), errors="coerce")


# ---------------- Display ----------------
def format_date(value: object) -> str:
    parsed = parse_date_text(value)
    return parsed.strftime(DISPLAY_DATE_FORMAT) if parsed else ("" if is_blank(value) else str(value))


def format_number(value: object) -> str:
    num = to_number(value)
    if num is None:
        return "-" if is_blank(value) else str(value)
    if float(num).is_integer():
        return f"{num:,.0f}"
    return f"{num:,.2f}"


def format_currency(value: object, decimals: int = 2) -> str:
    num = to_number(value)
    if num is None:
        return "-" if is_blank(value) else str(value)
    return f"{CURRENCY_SYMBOL}{num:,.{decimals}f}"


# ---------------- Keys ----------------
def _label_hash(text: str) -> str:
    acc = 0
    for ch in text:
        acc = ((acc << 5) - acc + ord(ch)) & 0xFFFFFFFF
    if acc >= 0x80000000:
        acc -= 0x100000000
    return np.base_repr(abs(acc), 36).lower()[:10]


def key_from_label(label: str) -> str:
    trimmed = (label or "").strip()
    if not trimmed:
        return ""
    mapped = COMMON_KEYS.get(trimmed.lower())
    if mapped:
        return mapped
    out = ""
    for ch in trimmed[:20]:
        if ch == " ":
            if out and not out.endswith("_"):
                out += "_"
        elif ch in TRANSLITERATION:
            out += TRANSLITERATION[ch]
        elif re.match(r"[a-zA-Z0-9]", ch):
            out += ch.lower()
        elif out and not out.endswith("_"):
            out += "_"
    out = re.sub(r"_+", "_", out).strip("_")
    if not out or not re.match(r"^[a-z]", out):
        out = "field_" + _label_hash(trimmed)
    return out


def generate_key(label: str, existing: Sequence[str] = ()) -> str:
    base = key_from_label(label) or "field"
    key = base
    counter = 1
    while key in existing:
        key = f"{base}_{counter}"
        counter += 1
    return key


# ---------------- Frames ----------------
def records_frame(records: Iterable[Record], keys: Optional[Iterable[str]] = None) -> pd.DataFrame:
    rows: List[Dict[str, Any]] = []
    for rec in records:
        row = dict(rec.data)
        row["__id"] = rec.id
        rows.append(row)
    df = pd.DataFrame(rows)
    if keys is not None:
        for key in keys:
            if key not in df.columns:
                df[key] = pd.NA
    if "__id" not in df.columns:
        df["__id"] = pd.Series(dtype=object)
    return df
