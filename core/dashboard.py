from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from core import expressions
from core.aggregation import aggregate_records
from core.data import value_text
from core.errors import SchemaError
from core.filters import is_valid_date_range
from core.models import (
    NUMERIC_TYPES,
    OPERATIONS,
    CalculatedMetric,
    DashboardConfig,
    DashboardMetric,
    DateRange,
    Module,
    Record,
    StandardMetric,
    metric_from_dict,
)
from core.schema_registry import SchemaRegistry
from core.store import DashboardConfigStore, RecordStore

logger = logging.getLogger(__name__)

RecordsByModule = Mapping[str, List[Record]]


@dataclass(frozen=True)
class Unconfigured:
    modules: List[Module]


@dataclass(frozen=True)
class Configured:
    config: DashboardConfig


DashboardMode = Union[Unconfigured, Configured]


def dashboard_mode(
    registry: SchemaRegistry,
    dashboards: DashboardConfigStore,
    entity: str,
    branch: Optional[str] = None,
) -> DashboardMode:
    config = dashboards.get(entity, branch)
    if config is not None and config.primary_module:
        return Configured(config)
    return Unconfigured(registry.get_all_schemas(entity, branch))


# ---------------- configured mode ----------------
@dataclass
class MetricResults:
    values: Dict[str, Dict[str, float]] = field(default_factory=dict)
    totals: Dict[str, float] = field(default_factory=dict)

    def value(self, metric_id: str, key: object) -> float:
        return self.values.get(metric_id, {}).get(value_text(key), 0.0)


def _variables(metrics: Iterable[DashboardMetric], skip_id: str, lookup) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for m in metrics:
        if m.id == skip_id or m.label in out:
            continue
        out[m.label] = lookup(m.id)
    return out


def compute_metrics(
    config: DashboardConfig,
    records_by_module: RecordsByModule,
    *,
    date_range: Optional[DateRange] = None,
) -> MetricResults:
    """Standard metrics first, then calculated ones in declaration order.

    A calculated metric sees every standard metric plus the calculated
    metrics declared before it; later ones (and itself) read 0.
    """
    results = MetricResults()
    if not config.primary_key_column or not config.metrics:
        return results

    for metric in config.metrics:
        if not isinstance(metric, StandardMetric):
            continue
        agg = aggregate_records(
            records_by_module.get(metric.source_module, []),
            value_column=metric.value_column,
            operation=metric.operation,
            group_by_column=metric.foreign_key_column,
            date_column=metric.date_column,
            date_range=date_range,
            condition=metric.condition,
        )
        results.values[metric.id] = dict(agg.groups)
        results.totals[metric.id] = agg.total

    for metric in config.metrics:
        if not isinstance(metric, CalculatedMetric):
            continue
        total_vars = _variables(config.metrics, metric.id, lambda mid: results.totals.get(mid, 0.0))
        results.totals[metric.id] = expressions.evaluate(metric.formula, total_vars)

        keys: Dict[str, None] = {}
        for per_key in results.values.values():
            keys.update(dict.fromkeys(per_key))
        per_key_values: Dict[str, float] = {}
        for key in keys:
            row_vars = _variables(config.metrics, metric.id, lambda mid: results.values.get(mid, {}).get(key, 0.0))
            per_key_values[key] = expressions.evaluate(metric.formula, row_vars)
        results.values[metric.id] = per_key_values
    return results


@dataclass(frozen=True)
class DashboardRow:
    record_id: str
    key: Any
    display: Any
    values: Dict[str, float]


@dataclass(frozen=True)
class DashboardTable:
    metrics: List[DashboardMetric]
    rows: List[DashboardRow]
    totals: Dict[str, float]


def matches_search(record: Record, config: DashboardConfig, search: str) -> bool:
    needle = (search or "").strip().lower()
    if not needle:
        return True
    display = value_text(record.data.get(config.primary_display_column)).lower()
    key = value_text(record.data.get(config.primary_key_column)).lower()
    return needle in display or needle in key


def build_table(
    config: DashboardConfig,
    records_by_module: RecordsByModule,
    *,
    date_range: Optional[DateRange] = None,
    search: str = "",
) -> DashboardTable:
    """One row per primary record plus the grand totals, one value per metric."""
    results = compute_metrics(config, records_by_module, date_range=date_range)
    rows: List[DashboardRow] = []
    for rec in records_by_module.get(config.primary_module, []):
        if not matches_search(rec, config, search):
            continue
        key = rec.data.get(config.primary_key_column)
        rows.append(
            DashboardRow(
                record_id=rec.id,
                key=key,
                display=rec.data.get(config.primary_display_column),
                values={m.id: results.value(m.id, key) for m in config.metrics},
            )
        )
    totals = {m.id: results.totals.get(m.id, 0.0) for m in config.metrics}
    return DashboardTable(metrics=list(config.metrics), rows=rows, totals=totals)


# ---------------- validation / editing ----------------
def validate_metric(metric: DashboardMetric) -> List[str]:
    errors: List[str] = []
    if not metric.label.strip():
        errors.append("Metric label is required")
    if isinstance(metric, StandardMetric):
        if not metric.source_module or not metric.foreign_key_column or not metric.value_column:
            errors.append("Standard metrics need a source module, foreign key column and value column")
        if metric.operation not in OPERATIONS:
            errors.append(f"Unknown operation {metric.operation!r}")
    else:
        if not metric.formula.strip():
            errors.append("Calculated metrics need a formula")
        else:
            syntax = expressions.validate(metric.formula)
            if syntax:
                errors.append(syntax)
    return errors


def validate_config(config: DashboardConfig, date_range: Optional[DateRange] = None) -> List[str]:
    errors: List[str] = []
    if not config.primary_module or not config.primary_key_column or not config.primary_display_column:
        errors.append("Primary module, key column and display column are required")
    if not config.metrics:
        errors.append("At least one metric is required")
    if not is_valid_date_range(date_range):
        errors.append("Invalid date range")
    for metric in config.metrics:
        errors.extend(f"{metric.label or metric.id}: {e}" for e in validate_metric(metric))
    return errors


def formula_warnings(config: DashboardConfig) -> Dict[str, List[str]]:
    """Placeholders in calculated metrics that name no metric in the config."""
    labels = [m.label for m in config.metrics]
    out: Dict[str, List[str]] = {}
    for metric in config.metrics:
        if isinstance(metric, CalculatedMetric):
            missing = expressions.missing_references(metric.formula, labels)
            if missing:
                out[metric.id] = missing
    return out


def add_metric(config: DashboardConfig, metric: Union[DashboardMetric, Mapping[str, Any]]) -> DashboardConfig:
    if not isinstance(metric, (StandardMetric, CalculatedMetric)):
        metric = metric_from_dict(metric)
    errors = validate_metric(metric)
    if errors:
        raise SchemaError("; ".join(errors))
    metric = replace(metric, id=uuid.uuid4().hex)
    return replace(config, metrics=[*config.metrics, metric])


def ensure_metric_ids(config: DashboardConfig) -> DashboardConfig:
    metrics = [m if m.id else replace(m, id=uuid.uuid4().hex) for m in config.metrics]
    return replace(config, metrics=metrics)


def remove_metric(config: DashboardConfig, metric_id: str) -> DashboardConfig:
    return replace(config, metrics=[m for m in config.metrics if m.id != metric_id])


# ---------------- unconfigured mode ----------------
@dataclass(frozen=True)
class ColumnSummary:
    key: str
    label: str
    sum: float
    average: float
    count: int


@dataclass(frozen=True)
class ModuleSummary:
    module_name: str
    record_count: int
    stats: List[ColumnSummary]


@dataclass(frozen=True)
class CrossModuleTotal:
    label: str
    sum: float
    count: int


@dataclass(frozen=True)
class AutoSummary:
    modules: List[ModuleSummary]
    cross_totals: Dict[str, CrossModuleTotal]


def auto_summary(modules: Iterable[Module], records_by_module: RecordsByModule) -> AutoSummary:
    """Sum/average of every numeric column per module, merged across modules by label."""
    summaries: List[ModuleSummary] = []
    for module in modules:
        records = records_by_module.get(module.module_name, [])
        numeric = [c for c in module.columns if c.type in NUMERIC_TYPES]
        if not numeric and not records:
            continue
        df = pd.DataFrame([r.data for r in records])
        stats: List[ColumnSummary] = []
        for col in numeric:
            if col.key in df.columns:
                series = pd.to_numeric(df[col.key], errors="coerce").dropna()
            else:
                series = pd.Series([], dtype=float)
            count = int(series.count())
            total = float(series.sum()) if count else 0.0
            stats.append(ColumnSummary(col.key, col.label, total, total / count if count else 0.0, count))
        summaries.append(ModuleSummary(module.module_name, len(records), stats))

    cross: Dict[str, CrossModuleTotal] = {}
    for summary in summaries:
        for stat in summary.stats:
            name = stat.label.lower()
            prev = cross.get(name)
            if prev is None:
                cross[name] = CrossModuleTotal(stat.label, stat.sum, stat.count)
            else:
                cross[name] = CrossModuleTotal(prev.label, prev.sum + stat.sum, prev.count + stat.count)
    return AutoSummary(modules=summaries, cross_totals=cross)


# ---------------- controller ----------------
class DashboardController:
    """Branch dashboard over one (entity, branch): configured metrics or the automatic summary."""

    def __init__(
        self,
        entity: str,
        registry: SchemaRegistry,
        store: RecordStore,
        dashboards: DashboardConfigStore,
        branch: Optional[str] = None,
    ) -> None:
        self.entity = entity
        self.branch = branch or None
        self.registry = registry
        self.store = store
        self.dashboards = dashboards
        self.date_range: Optional[DateRange] = None
        self.search = ""

    @property
    def mode(self) -> DashboardMode:
        return dashboard_mode(self.registry, self.dashboards, self.entity, self.branch)

    def _records(self, module_names: Iterable[str]) -> Dict[str, List[Record]]:
        return {name: self.store.get_records(self.entity, name) for name in dict.fromkeys(module_names) if name}

    def compute(self) -> Union[DashboardTable, AutoSummary]:
        mode = self.mode
        if isinstance(mode, Configured):
            config = mode.config
            needed = [config.primary_module] + [m.source_module for m in config.metrics if isinstance(m, StandardMetric)]
            return build_table(config, self._records(needed), date_range=self.date_range, search=self.search)
        records = self._records(m.module_name for m in mode.modules)
        return auto_summary(mode.modules, records)

    def save_config(self, config: DashboardConfig) -> DashboardConfig:
        errors = validate_config(config, self.date_range)
        if errors:
            raise SchemaError("; ".join(errors))
        logger.info("saved dashboard for %s/%s (%d metrics)", self.entity, self.branch or "-", len(config.metrics))
        return self.dashboards.save(self.entity, self.branch, config)

    def clear_config(self) -> bool:
        return self.dashboards.delete(self.entity, self.branch)

    def set_date_range(self, date_range: Optional[DateRange]) -> None:
        self.date_range = date_range
