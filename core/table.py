from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pandas as pd

from core.aggregation import AggregationResult, aggregate_formula
from core.charts import bar_chart
from core.data import is_blank, parse_cell_input, parse_date_text, to_number, value_text
from core.errors import StoreError, ValidationError
from core.expressions import evaluate, row_variables
from core.filters import normalize_view
from core.formatting import cell_style, display_text
from core.models import AGGREGATE_TYPES, ChangeEvent, ColumnDefinition, DateRange, Module, Record, View
from core.relationships import LookupIndex, LookupOption
from core.schema_registry import SchemaRegistry, stored_fields
from core.settings import DEFAULT_PAGE_SIZE, MAX_FILTER_OPTIONS, PAGE_SIZES
from core.store import RecordStore

logger = logging.getLogger(__name__)

# Column types that never get an exact-value filter.
UNFILTERABLE_TYPES = {"number", "date", "formula", "reference", "calculated"}
TOTAL_TYPES = {"number", "currency", "formula", "reference", "calculated"}


@dataclass
class EditingCell:
    record_id: str
    column: str
    field: str
    value: Any = None


@dataclass
class Notification:
    level: str
    message: str


@dataclass
class BulkResult:
    success: int = 0
    errors: int = 0


@dataclass
class TableSession:
    """Per-viewer UI state: sort, filters, paging, edit and selection."""

    sort_by: Optional[str] = None
    sort_direction: str = "asc"
    global_filter: str = ""
    column_filters: Dict[str, str] = field(default_factory=dict)
    page_index: int = 0
    page_size: int = DEFAULT_PAGE_SIZE
    date_range: Optional[DateRange] = None
    editing: Optional[EditingCell] = None
    batch_mode: bool = False
    pending_edits: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    selected: Set[str] = field(default_factory=set)
    visible_columns: List[str] = field(default_factory=list)
    column_order: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DisplayRow:
    record_id: str
    values: Dict[str, Any]
    text: Dict[str, str]
    styles: Dict[str, Dict[str, str]]
    stored: Dict[str, Any]


@dataclass(frozen=True)
class ColumnTotals:
    sum: float
    average: float
    count: int


class TableController:
    """Editable grid over one module: derived values, filters, sort, paging and edits."""

    def __init__(
        self,
        entity: str,
        module_name: str,
        store: RecordStore,
        registry: SchemaRegistry,
        *,
        branch: Optional[str] = None,
        view: Optional[View] = None,
        records: Optional[List[Record]] = None,
        read_only: bool = False,
        on_record_update: Optional[Callable[[], None]] = None,
        on_view_config_change: Optional[Callable[[View], None]] = None,
    ) -> None:
        self.entity = entity
        self.module_name = module_name
        self.branch = branch
        self.store = store
        self.registry = registry
        self.read_only = read_only
        self.on_record_update = on_record_update
        self.on_view_config_change = on_view_config_change
        self.session = TableSession()
        self.notifications: List[Notification] = []
        self.lookup_options: Dict[str, List[LookupOption]] = {}
        self.module = self._load_module()
        self.records: List[Record] = list(records) if records is not None else store.get_records(entity, module_name)
        self._rows: List[DisplayRow] = []
        self.recompute()
        if view is not None:
            self.apply_view(view)

    # ---------------- schema / records ----------------
    def _load_module(self) -> Module:
        module = self.registry.get_schema(self.entity, self.module_name, self.branch)
        return module or Module(entity=self.entity, module_name=self.module_name, branch=self.branch)

    @property
    def columns(self) -> List[ColumnDefinition]:
        return self.module.columns

    def column(self, key: str) -> Optional[ColumnDefinition]:
        return self.module.column(key)

    def reload(self) -> None:
        """Full refetch after structural operations; paging resets only when rows changed."""
        fresh = self.store.get_records(self.entity, self.module_name)
        changed = [(r.id, r.data) for r in fresh] != [(r.id, r.data) for r in self.records]
        self.records = fresh
        if changed:
            self._records_changed()
        else:
            self.recompute()

    def reload_schema(self) -> None:
        self.module = self._load_module()
        self.recompute()

    def _records_changed(self) -> None:
        self.session.page_index = 0
        self.recompute()

    def _record(self, record_id: str) -> Optional[Record]:
        for rec in self.records:
            if rec.id == record_id:
                return rec
        return None

    def apply_event(self, event: ChangeEvent) -> bool:
        """Sync local rows from a pushed change; events for other modules are ignored."""
        if event.entity != self.entity or event.module_name != self.module_name:
            return False
        if event.kind == "delete":
            before = len(self.records)
            self.records = [r for r in self.records if r.id != event.record_id]
            self.session.selected.discard(event.record_id)
            changed = len(self.records) != before
        elif event.record is None:
            return False
        else:
            incoming = Record(event.record.id, event.record.entity, event.record.module_name, dict(event.record.data))
            for idx, rec in enumerate(self.records):
                if rec.id == incoming.id:
                    self.records[idx] = incoming
                    break
            else:
                self.records.append(incoming)
            changed = True
        if changed:
            self._records_changed()
        return changed

    # ---------------- derived values ----------------
    def _formula_results(self) -> Dict[str, AggregationResult]:
        results: Dict[str, AggregationResult] = {}
        cache: Dict[str, List[Record]] = {}
        for col in self.columns:
            if col.type not in AGGREGATE_TYPES or col.formula is None or not col.formula.target_module:
                continue
            target = col.formula.target_module
            if target not in cache:
                cache[target] = self.store.get_records(self.entity, target)
            results[col.key] = aggregate_formula(cache[target], col.formula, date_range=self.session.date_range)
        return results

    def _lookup_indexes(self) -> Dict[str, LookupIndex]:
        indexes: Dict[str, LookupIndex] = {}
        for col in self.columns:
            if col.type == "lookup" and col.relationship is not None:
                target = self.store.get_records(self.entity, col.relationship.target_module)
                indexes[col.key] = LookupIndex(target, col.relationship)
        return indexes

    def _derive(self, rec: Record, formulas: Dict[str, AggregationResult], lookups: Dict[str, LookupIndex], labels: Dict[str, str]) -> DisplayRow:
        values: Dict[str, Any] = {}
        for col in self.columns:
            if col.type in AGGREGATE_TYPES:
                result = formulas.get(col.key)
                if result is None:
                    values[col.key] = None
                elif col.formula.row_key_column and col.formula.group_by_column:
                    values[col.key] = result.get(rec.data.get(col.formula.row_key_column))
                else:
                    values[col.key] = result.total
            elif col.type == "calculated":
                expression = col.formula.expression if col.formula else ""
                values[col.key] = evaluate(expression or "", row_variables(rec.data, labels))
            elif col.type == "lookup" and col.key in lookups:
                fk = rec.data.get(col.relationship.source_key(col.key))
                values[col.key] = lookups[col.key].display(fk)
            else:
                values[col.key] = rec.data.get(col.key)
        return DisplayRow(
            record_id=rec.id,
            values=values,
            text={c.key: display_text(c, values[c.key]) for c in self.columns},
            styles={c.key: cell_style(c, values[c.key]) for c in self.columns if c.conditional_formatting},
            stored=dict(rec.data),
        )

    def recompute(self) -> None:
        """Rebuild every derived value from the current records and schema."""
        formulas = self._formula_results()
        lookups = self._lookup_indexes()
        self.lookup_options = {key: idx.options for key, idx in lookups.items()}
        labels = {c.key: c.label for c in self.columns}
        self._rows = [self._derive(rec, formulas, lookups, labels) for rec in self.records]

    def set_date_range(self, date_range: Optional[DateRange]) -> None:
        self.session.date_range = date_range
        self.recompute()

    # ---------------- view ----------------
    @property
    def visible_columns(self) -> List[ColumnDefinition]:
        visible = self.session.visible_columns
        if not visible:
            return list(self.columns)
        order = self.session.column_order or visible
        cols = [c for c in self.columns if c.key in visible]
        return sorted(cols, key=lambda c: order.index(c.key) if c.key in order else 999)

    def apply_view(self, view: View) -> None:
        normalized = normalize_view(view, known_keys=self.module.keys)
        self.session.visible_columns = normalized.visible_columns
        self.session.column_order = normalized.column_order
        self.session.column_filters = {k: value_text(v) for k, v in normalized.filters.items()}
        self.session.sort_by = normalized.sort_by
        self.session.sort_direction = normalized.sort_direction or "asc"
        self.session.page_index = 0
        self._emit_view_config()

    def set_visible_columns(self, keys: List[str]) -> None:
        known = self.module.keys
        self.session.visible_columns = [k for k in keys if k in known]
        self.session.column_order = list(self.session.visible_columns)
        self._emit_view_config()

    def view_config(self) -> View:
        keys = [c.key for c in self.visible_columns]
        sort_by = self.session.sort_by
        return View(
            visible_columns=keys,
            column_order=list(keys),
            filters=dict(self.session.column_filters),
            sort_by=sort_by,
            sort_direction=self.session.sort_direction if sort_by else None,
        )

    def _emit_view_config(self) -> None:
        if self.on_view_config_change is not None:
            self.on_view_config_change(self.view_config())

    # ---------------- filtering ----------------
    def filter_options(self) -> Dict[str, List[str]]:
        """Distinct values per column, omitted when a column has none or too many."""
        options: Dict[str, List[str]] = {}
        for col in self.columns:
            if col.type in UNFILTERABLE_TYPES:
                continue
            values: Set[str] = set()
            for row in self._rows:
                text = value_text(row.values.get(col.key)).strip()
                if text:
                    values.add(text)
                if len(values) > MAX_FILTER_OPTIONS:
                    break
            if values and len(values) <= MAX_FILTER_OPTIONS:
                options[col.key] = sorted(values, key=str.casefold)
        return options

    def set_column_filter(self, key: str, value: Optional[str]) -> bool:
        if is_blank(value):
            self.session.column_filters.pop(key, None)
        else:
            if key not in self.filter_options():
                logger.debug("column %s has no bounded value set; filter ignored", key)
                return False
            self.session.column_filters[key] = str(value).strip()
        self.session.page_index = 0
        self._emit_view_config()
        return True

    def clear_filters(self) -> None:
        self.session.column_filters = {}
        self.session.global_filter = ""
        self.session.page_index = 0
        self._emit_view_config()

    def set_global_filter(self, text: str) -> None:
        self.session.global_filter = (text or "").strip()
        self.session.page_index = 0

    def _matches_columns(self, row: DisplayRow) -> bool:
        for key, expected in self.session.column_filters.items():
            if value_text(row.values.get(key)).strip() != expected:
                return False
        return True

    def _matches_global(self, row: DisplayRow) -> bool:
        needle = self.session.global_filter.casefold()
        if not needle:
            return True
        for col in self.visible_columns:
            if needle in value_text(row.values.get(col.key)).casefold() or needle in row.text.get(col.key, "").casefold():
                return True
        return False

    # ---------------- sorting ----------------
    def set_sort(self, key: Optional[str], direction: Optional[str] = None) -> None:
        """Sort by one column; repeating the same column toggles the direction."""
        if key is None:
            self.session.sort_by = None
        elif direction in ("asc", "desc"):
            self.session.sort_by = key
            self.session.sort_direction = direction
        elif self.session.sort_by == key:
            self.session.sort_direction = "desc" if self.session.sort_direction == "asc" else "asc"
        else:
            self.session.sort_by = key
            self.session.sort_direction = "asc"
        self.session.page_index = 0
        self._emit_view_config()

    def _sort_key(self, col: Optional[ColumnDefinition], value: Any) -> Tuple[int, Any]:
        if col is not None and col.type == "date":
            parsed = parse_date_text(value)
            if parsed is not None:
                return (0, parsed.toordinal())
        num = to_number(value)
        if num is not None:
            return (0, num)
        return (1, value_text(value).casefold())

    def _sorted(self, rows: List[DisplayRow]) -> List[DisplayRow]:
        key = self.session.sort_by
        if not key:
            return rows
        col = self.column(key)
        present = [r for r in rows if not is_blank(r.values.get(key))]
        blank = [r for r in rows if is_blank(r.values.get(key))]
        present = sorted(
            present,
            key=lambda r: self._sort_key(col, r.values.get(key)),
            reverse=self.session.sort_direction == "desc",
        )
        return present + blank

    # ---------------- rows / paging ----------------
    @property
    def all_rows(self) -> List[DisplayRow]:
        return list(self._rows)

    def rows(self) -> List[DisplayRow]:
        """Filtered and sorted rows across all pages."""
        filtered = [r for r in self._rows if self._matches_columns(r) and self._matches_global(r)]
        return self._sorted(filtered)

    @property
    def page_count(self) -> int:
        return max(1, math.ceil(len(self.rows()) / self.session.page_size))

    def page(self) -> List[DisplayRow]:
        rows = self.rows()
        start = self.session.page_index * self.session.page_size
        return rows[start:start + self.session.page_size]

    def set_page(self, index: int) -> int:
        self.session.page_index = max(0, min(int(index), self.page_count - 1))
        return self.session.page_index

    def set_page_size(self, size: int) -> None:
        if size not in PAGE_SIZES:
            raise ValueError(f"Page size must be one of {PAGE_SIZES}")
        self.session.page_size = size
        self.session.page_index = 0

    # ---------------- totals ----------------
    def totals(self) -> Dict[str, ColumnTotals]:
        """Sum and average of every numeric visible column over the whole filtered set."""
        cols = [c for c in self.visible_columns if c.type in TOTAL_TYPES]
        if not cols:
            return {}
        rows = self.rows()
        frame = pd.DataFrame([{c.key: r.values.get(c.key) for c in cols} for r in rows], columns=[c.key for c in cols])
        out: Dict[str, ColumnTotals] = {}
        for col in cols:
            series = frame[col.key].map(to_number).dropna().astype(float)
            count = int(series.count())
            total = float(series.sum()) if count else 0.0
            out[col.key] = ColumnTotals(sum=total, average=total / count if count else 0.0, count=count)
        return out

    # ---------------- notifications ----------------
    def notify(self, level: str, message: str) -> None:
        self.notifications.append(Notification(level, message))

    def drain_notifications(self) -> List[Notification]:
        out, self.notifications = self.notifications, []
        return out

    # ---------------- single-cell edit ----------------
    def _edit_target(self, column_key: str) -> Optional[Tuple[ColumnDefinition, str]]:
        col = self.column(column_key)
        if col is None:
            return None
        if col.type == "lookup" and col.relationship is not None:
            return col, col.relationship.source_key(col.key)
        if col.is_derived:
            return None
        return col, col.key

    def begin_edit(self, record_id: str, column_key: str) -> Optional[EditingCell]:
        """Open a cell for editing; derived cells refuse, lookups edit their foreign key."""
        if self.read_only:
            return None
        target = self._edit_target(column_key)
        rec = self._record(record_id)
        if target is None or rec is None:
            return None
        _, field_name = target
        self.session.editing = EditingCell(record_id=record_id, column=column_key, field=field_name, value=rec.data.get(field_name))
        return self.session.editing

    def cancel_edit(self) -> None:
        self.session.editing = None

    def _input_column(self, column_key: str, field_name: str) -> ColumnDefinition:
        col = self.column(column_key)
        if col is not None and col.type == "lookup":
            source = self.column(field_name)
            if source is not None and source.key != col.key and not source.is_derived:
                return source
        return col or ColumnDefinition(key=field_name, label=field_name)

    def _patch_local(self, record_id: str, field_name: str, value: Any) -> None:
        rec = self._record(record_id)
        if rec is not None:
            rec.data[field_name] = value

    def commit_edit(self, value: Any) -> bool:
        """Validate and save the open cell.

        Raises ValidationError for malformed input, leaving the cell open.
        A store rejection becomes an error notification and returns False.
        """
        editing = self.session.editing
        if editing is None:
            return False
        col = self._input_column(editing.column, editing.field)
        try:
            parsed = parse_cell_input(col, value)
        except ValidationError as exc:
            self.notify("error", exc.message)
            raise
        try:
            self.store.update_record_field(editing.record_id, editing.field, parsed)
        except StoreError as exc:
            logger.warning("update of %s.%s rejected: %s", editing.record_id, editing.field, exc)
            self.notify("error", str(exc))
            return False
        self._patch_local(editing.record_id, editing.field, parsed)
        self.session.editing = None
        self._records_changed()
        self.notify("success", "Field updated")
        if self.on_record_update is not None:
            self.on_record_update()
        return True

    def editable_columns(self) -> List[ColumnDefinition]:
        """Columns reachable by Tab/Enter; lookups edit through their foreign key."""
        return [c for c in self.visible_columns if self._edit_target(c.key) is not None]

    def next_editable_cell(self, record_id: str, column_key: str) -> Optional[Tuple[str, str]]:
        """Next editable cell in row-major order over the displayed rows."""
        keys = [c.key for c in self.editable_columns()]
        if not keys:
            return None
        ids = [r.record_id for r in self.rows()]
        if record_id not in ids:
            return None
        row_idx = ids.index(record_id)
        if column_key in keys and keys.index(column_key) + 1 < len(keys):
            return record_id, keys[keys.index(column_key) + 1]
        if column_key not in keys:
            col_keys = [c.key for c in self.visible_columns]
            pos = col_keys.index(column_key) if column_key in col_keys else len(col_keys)
            for key in col_keys[pos + 1:]:
                if key in keys:
                    return record_id, key
        if row_idx + 1 < len(ids):
            return ids[row_idx + 1], keys[0]
        return None

    def commit_and_advance(self, value: Any) -> Optional[EditingCell]:
        """Tab/Enter: save the open cell, then open the next editable one."""
        editing = self.session.editing
        if editing is None or not self.commit_edit(value):
            return None
        nxt = self.next_editable_cell(editing.record_id, editing.column)
        if nxt is None:
            return None
        return self.begin_edit(*nxt)

    # ---------------- batch edit ----------------
    def set_batch_mode(self, enabled: bool) -> None:
        self.session.batch_mode = enabled
        if not enabled:
            self.session.pending_edits = {}

    def stage_edit(self, record_id: str, column_key: str, value: Any) -> bool:
        target = self._edit_target(column_key)
        if self.read_only or target is None or self._record(record_id) is None:
            return False
        _, field_name = target
        self.session.pending_edits.setdefault(record_id, {})[field_name] = value
        return True

    @property
    def pending_count(self) -> int:
        return sum(len(fields) for fields in self.session.pending_edits.values())

    def cancel_batch(self) -> None:
        self.session.pending_edits = {}
        self.session.batch_mode = False

    def save_all(self) -> BulkResult:
        """Flush pending edits one field at a time; failures are counted, never fatal."""
        result = BulkResult()
        pending = self.session.pending_edits
        if not pending:
            self.notify("info", "No changes to save")
            return result
        for record_id, fields in pending.items():
            for field_name, raw in fields.items():
                col = self.column(field_name) or ColumnDefinition(key=field_name, label=field_name)
                try:
                    parsed = parse_cell_input(col, raw)
                    self.store.update_record_field(record_id, field_name, parsed)
                except (ValidationError, StoreError) as exc:
                    logger.warning("batch update of %s.%s failed: %s", record_id, field_name, exc)
                    result.errors += 1
                    continue
                self._patch_local(record_id, field_name, parsed)
                result.success += 1
        self.session.pending_edits = {}
        self.session.batch_mode = False
        self._records_changed()
        level = "success" if not result.errors else "error"
        self.notify(level, f"{result.success} fields updated, {result.errors} failed")
        if self.on_record_update is not None:
            self.on_record_update()
        return result

    # ---------------- selection / delete ----------------
    def toggle_selection(self, record_id: str) -> None:
        if record_id in self.session.selected:
            self.session.selected.discard(record_id)
        else:
            self.session.selected.add(record_id)

    def select_all(self) -> None:
        self.session.selected = {r.record_id for r in self.rows()}

    def clear_selection(self) -> None:
        self.session.selected = set()

    def delete_record(self, record_id: str) -> bool:
        try:
            self.store.delete_record(record_id)
        except StoreError as exc:
            self.notify("error", str(exc))
            return False
        self.records = [r for r in self.records if r.id != record_id]
        self.session.selected.discard(record_id)
        self._records_changed()
        if self.on_record_update is not None:
            self.on_record_update()
        return True

    def bulk_delete(self, record_ids: Optional[List[str]] = None) -> BulkResult:
        """Delete each id independently and report how many actually went."""
        ids = list(record_ids if record_ids is not None else sorted(self.session.selected))
        result = BulkResult()
        for rid in ids:
            try:
                self.store.delete_record(rid)
            except StoreError as exc:
                logger.warning("delete of %s failed: %s", rid, exc)
                result.errors += 1
                continue
            result.success += 1
        self.session.selected = set()
        self.records = self.store.get_records(self.entity, self.module_name)
        self._records_changed()
        self.notify("success" if not result.errors else "error", f"{result.success} records deleted, {result.errors} failed")
        if self.on_record_update is not None:
            self.on_record_update()
        return result

    # ---------------- create ----------------
    def add_record(self, data: Dict[str, Any]) -> Record:
        """Create a row from typed input, applying defaults and required checks."""
        payload: Dict[str, Any] = {}
        for col in self.columns:
            target = self._edit_target(col.key)
            if target is None:
                continue
            _, field_name = target
            raw = data.get(field_name, data.get(col.key))
            if is_blank(raw) and col.default is not None:
                raw = col.default
            value = parse_cell_input(self._input_column(col.key, field_name), raw)
            if col.required and is_blank(value):
                raise ValidationError(f"{col.label} is required", field=col.key)
            if value is not None:
                payload[field_name] = value
        rec = self.store.add_record(self.entity, self.module_name, stored_fields(self.module, payload))
        if self._record(rec.id) is None:
            self.records.append(rec)
        self._records_changed()
        if self.on_record_update is not None:
            self.on_record_update()
        return rec

    def duplicate_record(self, record_id: str) -> Optional[Record]:
        rec = self._record(record_id)
        if rec is None:
            return None
        copy = self.store.add_record(self.entity, self.module_name, stored_fields(self.module, rec.data))
        if self._record(copy.id) is None:
            self.records.append(copy)
        self._records_changed()
        if self.on_record_update is not None:
            self.on_record_update()
        return copy

    # ---------------- charts ----------------
    def chart_spec(self, x_key: str, y_key: str) -> Optional[Dict[str, Any]]:
        x_col, y_col = self.column(x_key), self.column(y_key)
        if x_col is None or y_col is None:
            return None
        data = [
            {"x": r.text.get(x_key, ""), "y": to_number(r.values.get(y_key)) or 0.0}
            for r in self.rows()
        ]
        return bar_chart(data, x_title=x_col.label, y_title=y_col.label)
