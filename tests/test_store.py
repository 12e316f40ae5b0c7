import json

import pytest

from core.errors import StoreError
from core.models import DashboardConfig, View
from core.store import DashboardConfigStore, RecordStore, ViewStore, load_workspace


class TestRecordStore:
    """In-memory record accessor"""

    def test_add_and_get(self):
        """Inserted rows come back by module"""
        store = RecordStore()
        rec = store.add_record("acme", "m", {"a": 1})
        assert [r.id for r in store.get_records("acme", "m")] == [rec.id]
        assert store.get_records("acme", "other") == []

    def test_reads_are_copies(self):
        """Mutating a returned record does not write through"""
        store = RecordStore()
        rec = store.add_record("acme", "m", {"a": 1})
        rec.data["a"] = 99
        assert store.get_record(rec.id).data["a"] == 1

    def test_bulk_insert(self):
        """add_records_bulk reports the inserted count"""
        store = RecordStore()
        assert store.add_records_bulk("acme", "m", [{"a": 1}, {"a": 2}]) == {"inserted": 2}

    def test_unknown_id(self):
        """Updates and deletes of missing ids raise StoreError"""
        store = RecordStore()
        with pytest.raises(StoreError) as err:
            store.update_record_field("nope", "a", 1)
        assert err.value.not_found
        with pytest.raises(StoreError):
            store.delete_record("nope")

    def test_duplicate_id(self):
        """Explicit ids must be unique"""
        store = RecordStore()
        store.add_record("acme", "m", {}, record_id="x")
        with pytest.raises(StoreError):
            store.add_record("acme", "m", {}, record_id="x")

    def test_events(self):
        """Every mutation is pushed to subscribers"""
        store = RecordStore()
        events = []
        unsubscribe = store.subscribe(events.append)
        rec = store.add_record("acme", "m", {"a": 1})
        store.update_record_field(rec.id, "a", 2)
        store.delete_record(rec.id)
        unsubscribe()
        store.add_record("acme", "m", {})
        assert [e.kind for e in events] == ["insert", "update", "delete"]
        assert events[1].record.data == {"a": 2}
        assert events[2].record is None

    def test_delete_module_records(self, store, entity):
        """All rows of one module are removed"""
        assert store.delete_module_records(entity, "orders") == 3
        assert store.get_records(entity, "orders") == []


class TestViewStore:
    """Named views per module"""

    def test_round_trip(self):
        """Saved views are listed by name"""
        views = ViewStore()
        views.save_view("acme", "m", "mine", {"visible_columns": ["a"], "sort_by": "a", "sort_direction": "desc"})
        saved = views.get_module_views("acme", "m")["mine"]
        assert saved == View(visible_columns=["a"], sort_by="a", sort_direction="desc")
        assert views.delete_view("acme", "m", "mine")
        assert views.get_module_views("acme", "m") == {}

    def test_blank_name_rejected(self):
        """A view needs a name"""
        with pytest.raises(ValueError):
            ViewStore().save_view("acme", "m", " ", View())


class TestDashboardConfigStore:
    """One config per (entity, branch)"""

    def test_branch_scoping(self):
        """Main tables and branches are separate"""
        configs = DashboardConfigStore()
        cfg = DashboardConfig("clients", "code", "name")
        configs.save("acme", "north", cfg)
        assert configs.get("acme", "north") is cfg
        assert configs.get("acme") is None


class TestLoadWorkspace:
    """JSON workspace seeding"""

    def test_missing_file(self, tmp_path):
        """Absent file gives an empty workspace"""
        ws = load_workspace(tmp_path / "missing.json")
        assert ws.registry.entities() == []

    def test_seed(self, tmp_path):
        """Modules, records, dashboards and views load"""
        path = tmp_path / "workspace.json"
        path.write_text(
            json.dumps(
                {
                    "modules": [{"entity": "acme", "module_name": "m", "columns": [{"label": "Amount", "type": "number"}]}],
                    "records": [{"entity": "acme", "module_name": "m", "id": "r1", "data": {"amount": 5}}],
                    "dashboards": [{"entity": "acme", "config": {"primary_module": "m", "primary_key_column": "amount", "primary_display_column": "amount"}}],
                    "views": [{"entity": "acme", "module_name": "m", "name": "default", "view": {"visible_columns": ["amount"]}}],
                }
            ),
            encoding="utf-8",
        )
        ws = load_workspace(path)
        assert ws.registry.get_schema("acme", "m").keys == ["amount"]
        assert ws.records.get_record("r1").data == {"amount": 5}
        assert ws.dashboards.get("acme").primary_module == "m"
        assert ws.views.get_module_views("acme", "m")["default"].visible_columns == ["amount"]
