from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

import pandas as pd

from core.data import records_frame, value_text
from core.filters import condition_mask, date_mask, equality_mask
from core.models import OPERATIONS, Condition, DateRange, FormulaMetadata, Record

logger = logging.getLogger(__name__)

GROUP_COL = "__group"
VALUE_COL = "__value"

REDUCERS = {
    "SUM": "sum",
    "AVERAGE": "mean",
    "COUNT": "count",
    "MIN": "min",
    "MAX": "max",
}


@dataclass(frozen=True)
class AggregationResult:
    groups: Dict[str, float] = field(default_factory=dict)
    total: float = 0.0
    row_count: int = 0

    def get(self, key: object, default: Optional[float] = None) -> Optional[float]:
        return self.groups.get(value_text(key), default)


def filtered_rows(
    records: Iterable[Record],
    *,
    group_by_column: Optional[str] = None,
    date_column: Optional[str] = None,
    date_range: Optional[DateRange] = None,
    condition: Optional[Condition] = None,
    equals: Optional[Mapping[str, Any]] = None,
) -> pd.DataFrame:
    """Steps 1-4: rows with a group key that pass the date window and condition."""
    df = records_frame(records)
    if df.empty:
        return df
    if group_by_column:
        if group_by_column not in df.columns:
            return df.iloc[0:0]
        df = df.assign(**{GROUP_COL: df[group_by_column].map(value_text)})
        df = df[df[GROUP_COL] != ""]
    else:
        df = df.assign(**{GROUP_COL: ""})
    if equals:
        df = df[equality_mask(df, equals)]
    df = df[date_mask(df, date_column, date_range)]
    df = df[condition_mask(df, condition)]
    return df


def reduce_values(values: pd.Series, operation: str) -> float:
    if values.empty:
        return 0.0
    out = getattr(values, REDUCERS[operation])()
    return 0.0 if pd.isna(out) else float(out)


def aggregate_records(
    records: Iterable[Record],
    *,
    value_column: Optional[str],
    operation: str,
    group_by_column: Optional[str] = None,
    date_column: Optional[str] = None,
    date_range: Optional[DateRange] = None,
    condition: Optional[Condition] = None,
    equals: Optional[Mapping[str, Any]] = None,
) -> AggregationResult:
    """Grouped SUM/AVERAGE/COUNT/MIN/MAX over already-fetched rows.

    The grand total applies the same reduction to every surviving row as a
    single group, so an AVERAGE total is the overall mean, not a mean of
    per-group means. Without ``group_by_column`` every row lands in one
    group keyed by the empty string.
    """
    operation = (operation or "").upper()
    if operation not in OPERATIONS:
        logger.warning("unknown aggregation operation %r", operation)
        return AggregationResult()

    df = filtered_rows(
        records,
        group_by_column=group_by_column,
        date_column=date_column,
        date_range=date_range,
        condition=condition,
        equals=equals,
    )
    if df.empty:
        return AggregationResult()

    if operation == "COUNT":
        df = df.assign(**{VALUE_COL: 1.0})
    else:
        if not value_column or value_column not in df.columns:
            return AggregationResult()
        df = df.assign(**{VALUE_COL: pd.to_numeric(df[value_column], errors="coerce")})
        df = df.dropna(subset=[VALUE_COL])
        if df.empty:
            return AggregationResult()

    grouped = df.groupby(GROUP_COL, sort=False)[VALUE_COL].agg(REDUCERS[operation])
    groups = {str(k): float(v) for k, v in grouped.items()}
    return AggregationResult(groups=groups, total=reduce_values(df[VALUE_COL], operation), row_count=int(len(df)))


def aggregate(
    store,
    entity: str,
    target_module: str,
    group_by_column: Optional[str],
    value_column: Optional[str],
    operation: str,
    *,
    date_column: Optional[str] = None,
    date_range: Optional[DateRange] = None,
    condition: Optional[Condition] = None,
    equals: Optional[Mapping[str, Any]] = None,
) -> AggregationResult:
    """Fetch ``target_module`` rows from the record store, then aggregate them."""
    records = store.get_records(entity, target_module)
    return aggregate_records(
        records,
        value_column=value_column,
        operation=operation,
        group_by_column=group_by_column,
        date_column=date_column,
        date_range=date_range,
        condition=condition,
        equals=equals,
    )


def aggregate_formula(
    records: Iterable[Record],
    formula: FormulaMetadata,
    *,
    date_range: Optional[DateRange] = None,
) -> AggregationResult:
    return aggregate_records(
        records,
        value_column=formula.value_column,
        operation=formula.operation or "",
        group_by_column=formula.group_by_column,
        date_column=formula.date_column,
        date_range=date_range,
        condition=formula.condition,
        equals=formula.filter,
    )
