from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd

from core.data import is_blank, parse_date_text, to_date_series, to_number, value_text
from core.models import Condition, DateRange, View


def matches_condition(value: object, condition: Condition) -> bool:
    """Single-row predicate; numeric comparisons that fail to parse do not match."""
    text = value_text(value)
    target = condition.value
    op = condition.operator
    if op == "equals":
        return text == target
    if op == "not_equals":
        return text != target
    if op in ("greater_than", "less_than"):
        left = to_number(text)
        right = to_number(target)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right
    if op == "contains":
        return target in text
    if op == "not_empty":
        return text != ""
    if op == "is_empty":
        return text == ""
    return False


def condition_mask(df: pd.DataFrame, condition: Optional[Condition]) -> pd.Series:
    if condition is None or df.empty:
        return pd.Series(True, index=df.index)
    if condition.column not in df.columns:
        values = pd.Series([None] * len(df), index=df.index, dtype=object)
    else:
        values = df[condition.column]
    return values.map(lambda v: matches_condition(v, condition)).astype(bool)


def equality_mask(df: pd.DataFrame, filters: Mapping[str, Any]) -> pd.Series:
    mask = pd.Series(True, index=df.index)
    for key, expected in (filters or {}).items():
        if key not in df.columns:
            return pd.Series(False, index=df.index)
        mask &= df[key].map(lambda v: value_text(v) == value_text(expected)).astype(bool)
    return mask


def date_mask(df: pd.DataFrame, date_column: Optional[str], date_range: Optional[DateRange]) -> pd.Series:
    """Rows whose date falls inside the inclusive range; unparsable dates never match."""
    if not date_column or date_range is None or date_range.is_open or df.empty:
        return pd.Series(True, index=df.index)
    if date_column not in df.columns:
        return pd.Series(False, index=df.index)
    dates = to_date_series(df[date_column])
    mask = dates.notna()
    start = parse_date_text(date_range.start) if date_range.start else None
    end = parse_date_text(date_range.end) if date_range.end else None
    if start is not None:
        mask &= dates >= pd.Timestamp(start)
    if end is not None:
        mask &= dates <= pd.Timestamp(end)
    return mask.fillna(False).astype(bool)


def is_valid_date_range(date_range: Optional[DateRange]) -> bool:
    if date_range is None or not date_range.start or not date_range.end:
        return True
    start = parse_date_text(date_range.start)
    end = parse_date_text(date_range.end)
    if start is None or end is None:
        return False
    return start <= end


def _as_key_list(values: Optional[Iterable[object]], known: List[str]) -> List[str]:
    if not values:
        return []
    return [str(v) for v in values if str(v) in known]


def normalize_view(raw: Mapping[str, Any] | View | None, *, known_keys: List[str]) -> View:
    """Drop unknown keys and blank filters from a persisted view."""
    view = raw if isinstance(raw, View) else View.from_dict(raw)
    visible = _as_key_list(view.visible_columns, known_keys)
    order = _as_key_list(view.column_order, known_keys) or list(visible)
    filters: Dict[str, Any] = {
        k: v for k, v in view.filters.items() if k in known_keys and not is_blank(v)
    }
    sort_by = view.sort_by if view.sort_by in known_keys else None
    return View(
        visible_columns=visible,
        column_order=order,
        filters=filters,
        sort_by=sort_by,
        sort_direction=(view.sort_direction or "asc") if sort_by else None,
    )
