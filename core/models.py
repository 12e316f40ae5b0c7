from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Union


ColumnType = Literal["text", "number", "currency", "date", "formula", "reference", "calculated", "lookup"]
Operation = Literal["SUM", "AVERAGE", "COUNT", "MIN", "MAX"]
ConditionOperator = Literal["equals", "not_equals", "greater_than", "less_than", "contains", "not_empty", "is_empty"]
FormatCondition = Literal["gt", "lt", "gte", "lte", "eq", "neq", "contains"]
SortDirection = Literal["asc", "desc"]

COLUMN_TYPES = ("text", "number", "currency", "date", "formula", "reference", "calculated", "lookup")
AGGREGATE_TYPES = frozenset({"formula", "reference"})
DERIVED_TYPES = frozenset({"formula", "reference", "calculated", "lookup"})
NUMERIC_TYPES = frozenset({"number", "currency"})
OPERATIONS = ("SUM", "AVERAGE", "COUNT", "MIN", "MAX")
CONDITION_OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains", "not_empty", "is_empty")
FORMAT_CONDITIONS = ("gt", "lt", "gte", "lte", "eq", "neq", "contains")


@dataclass(frozen=True)
class Condition:
    column: str
    operator: str = "equals"
    value: str = ""

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> Optional["Condition"]:
        if not raw or not raw.get("column"):
            return None
        value = raw.get("value")
        return cls(
            column=str(raw["column"]),
            operator=str(raw.get("operator") or "equals"),
            value="" if value is None else str(value),
        )


@dataclass(frozen=True)
class DateRange:
    """Inclusive [start, end] window; either bound may be open."""

    start: Optional[str] = None
    end: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return not self.start and not self.end

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> Optional["DateRange"]:
        if not raw:
            return None
        start = raw.get("from", raw.get("start")) or None
        end = raw.get("to", raw.get("end")) or None
        if start is None and end is None:
            return None
        return cls(start=start, end=end)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"from": self.start, "to": self.end}


@dataclass
class FormulaMetadata:
    # Aggregate form
    target_module: Optional[str] = None
    value_column: Optional[str] = None
    group_by_column: Optional[str] = None
    operation: Optional[str] = None
    date_column: Optional[str] = None
    condition: Optional[Condition] = None
    # Current-row column supplying the group key; defaults to group_by_column.
    source_key_column: Optional[str] = None
    filter: Dict[str, Any] = field(default_factory=dict)
    # Calculated form
    expression: Optional[str] = None

    @property
    def row_key_column(self) -> Optional[str]:
        return self.source_key_column or self.group_by_column

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> Optional["FormulaMetadata"]:
        if not raw:
            return None
        operation = raw.get("operation")
        return cls(
            target_module=raw.get("target_module") or None,
            value_column=raw.get("value_column") or None,
            group_by_column=raw.get("group_by_column") or None,
            operation=str(operation).upper() if operation else None,
            date_column=raw.get("date_column") or None,
            condition=Condition.from_dict(raw.get("condition")),
            source_key_column=raw.get("source_key_column") or None,
            filter=dict(raw.get("filter") or {}),
            expression=raw.get("expression") or None,
        )


@dataclass
class RelationshipMetadata:
    target_module: str
    target_key_column: str
    target_display_column: str
    source_column_key: Optional[str] = None

    def source_key(self, column_key: str) -> str:
        return self.source_column_key or column_key

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> Optional["RelationshipMetadata"]:
        if not raw:
            return None
        return cls(
            target_module=str(raw.get("target_module") or ""),
            target_key_column=str(raw.get("target_key_column") or ""),
            target_display_column=str(raw.get("target_display_column") or ""),
            source_column_key=raw.get("source_column_key") or None,
        )


@dataclass
class ConditionalFormatRule:
    condition: str
    value: Any
    style: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ConditionalFormatRule":
        style = dict(raw.get("style") or {})
        # Flat style keys are accepted as well.
        for key in ("background_color", "text_color", "font_weight"):
            if raw.get(key):
                style.setdefault(key, raw[key])
        return cls(condition=str(raw.get("condition") or "eq"), value=raw.get("value"), style=style)


@dataclass
class ColumnDefinition:
    key: str
    label: str
    type: str = "text"
    required: bool = False
    default: Any = None
    formula: Optional[FormulaMetadata] = None
    relationship: Optional[RelationshipMetadata] = None
    conditional_formatting: List[ConditionalFormatRule] = field(default_factory=list)

    @property
    def is_derived(self) -> bool:
        return self.type in DERIVED_TYPES

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ColumnDefinition":
        return cls(
            key=str(raw.get("key") or ""),
            label=str(raw.get("label") or raw.get("key") or ""),
            type=str(raw.get("type") or "text"),
            required=bool(raw.get("required", False)),
            default=raw.get("default"),
            formula=FormulaMetadata.from_dict(raw.get("formula")),
            relationship=RelationshipMetadata.from_dict(raw.get("relationship")),
            conditional_formatting=[
                ConditionalFormatRule.from_dict(r) for r in (raw.get("conditional_formatting") or [])
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Module:
    entity: str
    module_name: str
    columns: List[ColumnDefinition] = field(default_factory=list)
    branch: Optional[str] = None

    def column(self, key: str) -> Optional[ColumnDefinition]:
        for col in self.columns:
            if col.key == key:
                return col
        return None

    @property
    def keys(self) -> List[str]:
        return [c.key for c in self.columns]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Record:
    id: str
    entity: str
    module_name: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StandardMetric:
    id: str
    label: str
    source_module: str
    foreign_key_column: str
    value_column: str
    operation: str = "SUM"
    date_column: Optional[str] = None
    condition: Optional[Condition] = None
    type: str = field(default="standard", init=False)


@dataclass(frozen=True)
class CalculatedMetric:
    id: str
    label: str
    formula: str
    type: str = field(default="calculated", init=False)


DashboardMetric = Union[StandardMetric, CalculatedMetric]


def metric_from_dict(raw: Mapping[str, Any]) -> DashboardMetric:
    if raw.get("type") == "calculated":
        return CalculatedMetric(id=str(raw.get("id") or ""), label=str(raw.get("label") or ""), formula=str(raw.get("formula") or ""))
    return StandardMetric(
        id=str(raw.get("id") or ""),
        label=str(raw.get("label") or ""),
        source_module=str(raw.get("source_module") or ""),
        foreign_key_column=str(raw.get("foreign_key_column") or ""),
        value_column=str(raw.get("value_column") or ""),
        operation=str(raw.get("operation") or "SUM").upper(),
        date_column=raw.get("date_column") or None,
        condition=Condition.from_dict(raw.get("condition")),
    )


@dataclass
class DashboardConfig:
    primary_module: str
    primary_key_column: str
    primary_display_column: str
    metrics: List[DashboardMetric] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DashboardConfig":
        return cls(
            primary_module=str(raw.get("primary_module") or ""),
            primary_key_column=str(raw.get("primary_key_column") or ""),
            primary_display_column=str(raw.get("primary_display_column") or ""),
            metrics=[metric_from_dict(m) for m in (raw.get("metrics") or [])],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class View:
    visible_columns: List[str] = field(default_factory=list)
    column_order: List[str] = field(default_factory=list)
    filters: Dict[str, Any] = field(default_factory=dict)
    sort_by: Optional[str] = None
    sort_direction: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "View":
        raw = raw or {}
        direction = raw.get("sort_direction")
        return cls(
            visible_columns=[str(c) for c in (raw.get("visible_columns") or [])],
            column_order=[str(c) for c in (raw.get("column_order") or [])],
            filters=dict(raw.get("filters") or {}),
            sort_by=raw.get("sort_by") or None,
            sort_direction=direction if direction in ("asc", "desc") else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChangeEvent:
    kind: Literal["insert", "update", "delete"]
    entity: str
    module_name: str
    record_id: str
    record: Optional[Record] = None
