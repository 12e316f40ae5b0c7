from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from core.errors import StoreError
from core.models import ChangeEvent, DashboardConfig, Record, View
from core.schema_registry import SchemaRegistry

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], None]


class RecordStore:
    """In-memory record accessor with a push-event channel.

    Reads hand out copies, so callers patching their local state never
    write through to the store.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Record] = {}
        self._listeners: List[Listener] = []

    @staticmethod
    def _copy(rec: Record) -> Record:
        return Record(id=rec.id, entity=rec.entity, module_name=rec.module_name, data=dict(rec.data))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, rec: Record) -> None:
        event = ChangeEvent(
            kind=kind,  # type: ignore[arg-type]
            entity=rec.entity,
            module_name=rec.module_name,
            record_id=rec.id,
            record=None if kind == "delete" else self._copy(rec),
        )
        for listener in list(self._listeners):
            listener(event)

    def get_records(self, entity: str, module_name: str) -> List[Record]:
        return [
            self._copy(r) for r in self._records.values() if r.entity == entity and r.module_name == module_name
        ]

    def get_record(self, record_id: str) -> Record:
        rec = self._records.get(record_id)
        if rec is None:
            raise StoreError("Record not found", record_id=record_id, not_found=True)
        return self._copy(rec)

    def add_record(self, entity: str, module_name: str, data: Mapping[str, Any], record_id: Optional[str] = None) -> Record:
        rid = record_id or uuid.uuid4().hex
        if rid in self._records:
            raise StoreError("Duplicate record id", record_id=rid)
        rec = Record(id=rid, entity=entity, module_name=module_name, data=dict(data))
        self._records[rid] = rec
        logger.debug("inserted %s into %s/%s", rid, entity, module_name)
        self._emit("insert", rec)
        return self._copy(rec)

    def add_records_bulk(self, entity: str, module_name: str, rows: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
        inserted = 0
        for data in rows:
            self.add_record(entity, module_name, data)
            inserted += 1
        return {"inserted": inserted}

    def update_record_field(self, record_id: str, field_name: str, value: Any) -> Record:
        rec = self._records.get(record_id)
        if rec is None:
            raise StoreError("Record not found", record_id=record_id, not_found=True)
        rec.data[field_name] = value
        logger.debug("updated %s.%s", record_id, field_name)
        self._emit("update", rec)
        return self._copy(rec)

    def delete_record(self, record_id: str) -> None:
        rec = self._records.pop(record_id, None)
        if rec is None:
            raise StoreError("Record not found", record_id=record_id, not_found=True)
        logger.debug("deleted %s", record_id)
        self._emit("delete", rec)

    def delete_module_records(self, entity: str, module_name: str) -> int:
        ids = [r.id for r in self._records.values() if r.entity == entity and r.module_name == module_name]
        for rid in ids:
            self.delete_record(rid)
        return len(ids)


class ViewStore:
    """Named column/filter/sort views per (entity, module)."""

    def __init__(self) -> None:
        self._views: Dict[Tuple[str, str], Dict[str, View]] = {}

    def get_module_views(self, entity: str, module_name: str) -> Dict[str, View]:
        views = self._views.get((entity, module_name), {})
        return {name: views[name] for name in sorted(views)}

    def save_view(self, entity: str, module_name: str, view_name: str, view: View | Mapping[str, Any]) -> View:
        if not view_name.strip():
            raise ValueError("View name is required")
        saved = view if isinstance(view, View) else View.from_dict(view)
        self._views.setdefault((entity, module_name), {})[view_name] = saved
        return saved

    def delete_view(self, entity: str, module_name: str, view_name: str) -> bool:
        return self._views.get((entity, module_name), {}).pop(view_name, None) is not None


class DashboardConfigStore:
    """One dashboard config per (entity, branch); ``None`` branch is the main tables."""

    def __init__(self) -> None:
        self._configs: Dict[Tuple[str, Optional[str]], DashboardConfig] = {}

    def get(self, entity: str, branch: Optional[str] = None) -> Optional[DashboardConfig]:
        return self._configs.get((entity, branch or None))

    def save(self, entity: str, branch: Optional[str], config: DashboardConfig) -> DashboardConfig:
        self._configs[(entity, branch or None)] = config
        return config

    def delete(self, entity: str, branch: Optional[str] = None) -> bool:
        return self._configs.pop((entity, branch or None), None) is not None


@dataclass
class Workspace:
    registry: SchemaRegistry = field(default_factory=SchemaRegistry)
    records: RecordStore = field(default_factory=RecordStore)
    views: ViewStore = field(default_factory=ViewStore)
    dashboards: DashboardConfigStore = field(default_factory=DashboardConfigStore)


def load_workspace(path: Optional[Path] = None) -> Workspace:
    """Seed an in-memory workspace from a JSON file; a missing file yields an empty one.

    Layout::

        {"modules":    [{"entity", "module_name", "branch"?, "columns": [...]}],
         "records":    [{"entity", "module_name", "id"?, "data": {...}}],
         "dashboards": [{"entity", "branch"?, "config": {...}}],
         "views":      [{"entity", "module_name", "name", "view": {...}}]}
    """
    ws = Workspace()
    if path is None or not Path(path).exists():
        return ws
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    for mod in raw.get("modules", []):
        ws.registry.upsert_schema(mod["entity"], mod["module_name"], mod.get("columns", []), mod.get("branch"))
    for rec in raw.get("records", []):
        ws.records.add_record(rec["entity"], rec["module_name"], rec.get("data", {}), record_id=rec.get("id"))
    for dash in raw.get("dashboards", []):
        ws.dashboards.save(dash["entity"], dash.get("branch"), DashboardConfig.from_dict(dash.get("config", {})))
    for view in raw.get("views", []):
        ws.views.save_view(view["entity"], view["module_name"], view["name"], view.get("view", {}))
    logger.info("loaded workspace from %s", path)
    return ws
