from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from core import expressions
from core.data import generate_key
from core.errors import SchemaError
from core.models import (
    AGGREGATE_TYPES,
    COLUMN_TYPES,
    CONDITION_OPERATORS,
    FORMAT_CONDITIONS,
    OPERATIONS,
    ColumnDefinition,
    Module,
)

logger = logging.getLogger(__name__)

ColumnInput = Union[ColumnDefinition, Mapping[str, Any]]


def _as_column(raw: ColumnInput) -> ColumnDefinition:
    return raw if isinstance(raw, ColumnDefinition) else ColumnDefinition.from_dict(raw)


def validate_column(col: ColumnDefinition) -> None:
    if col.type not in COLUMN_TYPES:
        raise SchemaError(f"Column {col.key!r}: unknown type {col.type!r}")
    for rule in col.conditional_formatting:
        if rule.condition not in FORMAT_CONDITIONS:
            raise SchemaError(f"Column {col.key!r}: unknown formatting condition {rule.condition!r}")
    if col.type in AGGREGATE_TYPES:
        f = col.formula
        if f is None or not f.target_module or not f.value_column or not f.operation:
            raise SchemaError(f"Column {col.key!r}: aggregate columns need target_module, value_column and operation")
        if f.operation not in OPERATIONS:
            raise SchemaError(f"Column {col.key!r}: unknown operation {f.operation!r}")
        if f.condition is not None and f.condition.operator not in CONDITION_OPERATORS:
            raise SchemaError(f"Column {col.key!r}: unknown condition operator {f.condition.operator!r}")
    elif col.type == "calculated":
        if col.formula is None or not (col.formula.expression or "").strip():
            raise SchemaError(f"Column {col.key!r}: calculated columns need an expression")
        error = expressions.validate(col.formula.expression)
        if error:
            raise SchemaError(f"Column {col.key!r}: {error}")
    elif col.type == "lookup":
        rel = col.relationship
        if rel is None or not rel.target_module or not rel.target_key_column or not rel.target_display_column:
            raise SchemaError(f"Column {col.key!r}: lookup columns need target_module, target_key_column and target_display_column")


def prepare_columns(columns: Iterable[ColumnInput]) -> List[ColumnDefinition]:
    """Assign keys to new columns and validate the whole set."""
    out: List[ColumnDefinition] = []
    keys: List[str] = []
    for raw in columns:
        col = _as_column(raw)
        if not col.key:
            col.key = generate_key(col.label, keys)
        if col.key in keys:
            raise SchemaError(f"Duplicate column key {col.key!r}")
        validate_column(col)
        keys.append(col.key)
        out.append(col)
    return out


def stored_fields(module: Optional[Module], data: Mapping[str, Any]) -> Dict[str, Any]:
    """Payload with every derived value removed.

    A lookup column without its own ``source_column_key`` keeps its raw
    foreign key under its own key; the resolved label is never stored.
    """
    if module is None:
        return dict(data)
    drop = set()
    for col in module.columns:
        if col.type == "lookup":
            if col.relationship is not None and col.relationship.source_key(col.key) != col.key:
                drop.add(col.key)
        elif col.is_derived:
            drop.add(col.key)
    return {k: v for k, v in data.items() if k not in drop}


class SchemaRegistry:
    """Per-entity, per-branch column definitions held in memory."""

    def __init__(self) -> None:
        self._modules: Dict[Tuple[str, Optional[str], str], Module] = {}

    @staticmethod
    def _key(entity: str, module_name: str, branch: Optional[str]) -> Tuple[str, Optional[str], str]:
        return (entity, branch or None, module_name)

    def get_schema(self, entity: str, module_name: str, branch: Optional[str] = None) -> Optional[Module]:
        return self._modules.get(self._key(entity, module_name, branch))

    def find_schema(self, entity: str, module_name: str) -> Optional[Module]:
        """Module by name in any branch of the entity, main tables first."""
        found = self.get_schema(entity, module_name)
        if found is not None:
            return found
        for (ent, _branch, name), module in self._modules.items():
            if ent == entity and name == module_name:
                return module
        return None

    def get_all_schemas(self, entity: str, branch: Optional[str] = None) -> List[Module]:
        branch = branch or None
        return [m for (ent, br, _), m in self._modules.items() if ent == entity and br == branch]

    def entities(self) -> List[str]:
        return sorted({ent for (ent, _, _) in self._modules})

    def branches(self, entity: str) -> List[str]:
        return sorted({br for (ent, br, _) in self._modules if ent == entity and br})

    def upsert_schema(
        self,
        entity: str,
        module_name: str,
        columns: Iterable[ColumnInput],
        branch: Optional[str] = None,
    ) -> Module:
        prepared = prepare_columns(columns)
        key = self._key(entity, module_name, branch)
        existing = self._modules.get(key)
        module = Module(entity=entity, module_name=module_name, columns=prepared, branch=branch or None)
        self._modules[key] = module
        logger.debug("%s schema %s/%s (%d columns)", "updated" if existing else "created", entity, module_name, len(prepared))
        return module

    def delete_module(self, entity: str, module_name: str, branch: Optional[str] = None) -> bool:
        return self._modules.pop(self._key(entity, module_name, branch), None) is not None

    def _require(self, entity: str, module_name: str, branch: Optional[str]) -> Module:
        module = self.get_schema(entity, module_name, branch)
        if module is None:
            raise SchemaError(f"Unknown module {module_name!r}")
        return module

    def add_column(
        self,
        entity: str,
        module_name: str,
        label: str,
        type: str = "text",
        branch: Optional[str] = None,
        **options: Any,
    ) -> ColumnDefinition:
        """Append a column; existing rows are untouched."""
        module = self._require(entity, module_name, branch)
        raw = {"label": label, "type": type, **options}
        raw["key"] = generate_key(label, module.keys)
        col = ColumnDefinition.from_dict(raw)
        validate_column(col)
        self.upsert_schema(entity, module_name, module.columns + [col], branch)
        return col

    def rename_column(
        self, entity: str, module_name: str, key: str, label: str, branch: Optional[str] = None
    ) -> ColumnDefinition:
        """Change a column's label; its key is immutable so stored data stays attached."""
        module = self._require(entity, module_name, branch)
        col = module.column(key)
        if col is None:
            raise SchemaError(f"Unknown column {key!r}")
        col.label = label
        return col

    def remove_column(self, entity: str, module_name: str, key: str, branch: Optional[str] = None) -> bool:
        """Drop a column definition; values already stored under ``key`` are left in place."""
        module = self._require(entity, module_name, branch)
        remaining = [c for c in module.columns if c.key != key]
        if len(remaining) == len(module.columns):
            return False
        self.upsert_schema(entity, module_name, remaining, branch)
        return True
