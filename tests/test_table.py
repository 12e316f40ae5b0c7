import pytest

from core.errors import ValidationError
from core.models import ChangeEvent, DateRange, Record, View
from core.table import TableController


def make_table(workspace, module, **kwargs):
    return TableController("acme", module, workspace.records, workspace.registry, **kwargs)


def ids(rows):
    return [r.record_id for r in rows]


class TestDerivedValues:
    """Formula, calculated and lookup cells"""

    def test_formula_keyed_by_row(self, workspace):
        """Each vendor row shows the SUM of its own invoices"""
        table = make_table(workspace, "vendors")
        values = {r.record_id: r.values["total_invoiced"] for r in table.all_rows}
        assert values == {"ven-a": 150.0, "ven-b": 200.0, "ven-c": None}

    def test_formula_date_range(self, workspace):
        """Session date range narrows formula columns"""
        table = make_table(workspace, "vendors")
        table.set_date_range(DateRange("2024-01-01", "2024-01-31"))
        assert table.all_rows[0].values["total_invoiced"] == 100.0

    def test_calculated(self, workspace):
        """Expression over the row's own fields"""
        table = make_table(workspace, "vendors")
        assert [r.values["remaining"] for r in table.all_rows] == [250.0, 75.0, 10.0]

    def test_lookup_display_and_miss(self, workspace):
        """Resolved label, or the raw key when nothing matches"""
        table = make_table(workspace, "orders")
        assert [r.values["vendor_code"] for r in table.all_rows] == ["Alpha Ltd", "Beta Inc", "Z"]

    def test_lookup_follows_target(self, workspace):
        """Renaming the target shows on the next read"""
        table = make_table(workspace, "orders")
        workspace.records.update_record_field("ven-b", "name", "Beta Group")
        table.reload()
        assert table.all_rows[1].values["vendor_code"] == "Beta Group"
        assert workspace.records.get_record("ord-2").data == {"title": "Ink", "qty": 3, "vendor_code": "B"}

    def test_conditional_formatting_first_match(self, workspace):
        """150 gets red, not yellow"""
        table = make_table(workspace, "vendors")
        styles = {r.record_id: r.styles["budget"] for r in table.all_rows}
        assert styles == {"ven-a": {"background_color": "red"}, "ven-b": {"background_color": "red"}, "ven-c": {}}

    def test_display_text(self, workspace):
        """Blank derived cells render as a dash"""
        table = make_table(workspace, "vendors")
        assert table.all_rows[2].text["total_invoiced"] == "-"


class TestSorting:
    """Single-column stable sort"""

    def test_toggle(self, workspace):
        """Repeat click flips direction, blanks stay last"""
        table = make_table(workspace, "vendors")
        table.set_sort("total_invoiced")
        assert ids(table.rows()) == ["ven-a", "ven-b", "ven-c"]
        table.set_sort("total_invoiced")
        assert table.session.sort_direction == "desc"
        assert ids(table.rows()) == ["ven-b", "ven-a", "ven-c"]

    def test_stable(self, workspace):
        """Equal keys keep record order in both directions"""
        table = make_table(workspace, "invoices")
        table.set_sort("vendor", "asc")
        assert ids(table.rows()) == ["inv-1", "inv-3", "inv-2"]
        table.set_sort("vendor", "desc")
        assert ids(table.rows()) == ["inv-2", "inv-1", "inv-3"]

    def test_dates_sort_chronologically(self, workspace):
        """Dates compare as dates"""
        workspace.records.add_record("acme", "invoices", {"amount": 1, "vendor": "C", "date": "15/12/2023"}, record_id="inv-0")
        table = make_table(workspace, "invoices")
        table.set_sort("date", "asc")
        assert ids(table.rows())[0] == "inv-0"

    def test_clear(self, workspace):
        """None restores record order"""
        table = make_table(workspace, "vendors")
        table.set_sort("name", "desc")
        table.set_sort(None)
        assert ids(table.rows()) == ["ven-a", "ven-b", "ven-c"]


class TestFiltering:
    """Global and per-column filters"""

    def test_filter_options(self, workspace):
        """Bounded text columns offer their distinct values"""
        options = make_table(workspace, "vendors").filter_options()
        assert options["code"] == ["A", "B", "C"]
        assert "total_invoiced" not in options
        assert "remaining" not in options

    def test_lookup_options_use_labels(self, workspace):
        """Lookup filters match the displayed label"""
        table = make_table(workspace, "orders")
        assert table.set_column_filter("vendor_code", "Beta Inc")
        assert ids(table.rows()) == ["ord-2"]

    def test_suppressed_when_unbounded(self, workspace):
        """More than the option limit disables the column filter"""
        for i in range(25):
            workspace.records.add_record("acme", "vendors", {"code": f"X{i}", "name": f"Vendor {i}"})
        table = make_table(workspace, "vendors")
        assert "name" not in table.filter_options()
        assert not table.set_column_filter("name", "Vendor 1")
        assert len(table.rows()) == 28

    def test_global_case_insensitive(self, workspace):
        """Free text matches any visible column"""
        table = make_table(workspace, "vendors")
        table.set_global_filter("ALPHA")
        assert ids(table.rows()) == ["ven-a"]

    def test_composition(self, workspace):
        """Column filter and free text intersect"""
        table = make_table(workspace, "vendors")
        table.set_column_filter("code", "B")
        column_only = ids(table.rows())
        table.set_column_filter("code", None)
        table.set_global_filter("a")
        global_only = ids(table.rows())
        table.set_column_filter("code", "B")
        both = ids(table.rows())
        assert both == [i for i in column_only if i in global_only] == ["ven-b"]

    def test_clear_filters(self, workspace):
        """Everything comes back"""
        table = make_table(workspace, "vendors")
        table.set_column_filter("code", "A")
        table.set_global_filter("zzz")
        table.clear_filters()
        assert len(table.rows()) == 3


class TestPagination:
    """Client-side pages"""

    @pytest.fixture
    def big(self, workspace):
        for i in range(25):
            workspace.records.add_record("acme", "invoices", {"amount": 10, "vendor": "C", "date": "2024-03-01"})
        return make_table(workspace, "invoices")

    def test_page_slices(self, big):
        """Page size bounds each page"""
        big.set_page_size(10)
        assert big.page_count == 3
        big.set_page(2)
        assert len(big.page()) == 8

    def test_page_clamped(self, big):
        """Out-of-range pages clamp"""
        big.set_page_size(10)
        assert big.set_page(99) == 2

    def test_page_size_resets(self, big):
        """Changing page size returns to page 0"""
        big.set_page_size(10)
        big.set_page(2)
        big.set_page_size(20)
        assert big.session.page_index == 0

    def test_filter_and_sort_reset(self, big):
        """Sort, filter and record changes all reset paging"""
        big.set_page_size(10)
        big.set_page(1)
        big.set_sort("amount")
        assert big.session.page_index == 0
        big.set_page(1)
        big.set_global_filter("C")
        assert big.session.page_index == 0
        big.set_page(1)
        big.delete_record("inv-1")
        assert big.session.page_index == 0

    def test_edits_reset(self, big):
        """A saved cell or batch flush returns to page 0"""
        big.set_page_size(10)
        big.set_page(2)
        record_id = big.page()[0].record_id
        big.begin_edit(record_id, "amount")
        assert big.commit_edit("15")
        assert big.session.page_index == 0
        big.set_page(2)
        big.set_batch_mode(True)
        big.stage_edit(record_id, "amount", "20")
        big.save_all()
        assert big.session.page_index == 0

    def test_unchanged_reload_keeps_page(self, big):
        """Refetching identical records leaves paging alone"""
        big.set_page_size(10)
        big.set_page(2)
        big.reload()
        assert big.session.page_index == 2

    def test_invalid_size(self, big):
        """Only the offered sizes are accepted"""
        with pytest.raises(ValueError):
            big.set_page_size(15)

    def test_totals_cover_filtered_set(self, big):
        """Totals span every page, not just the visible one"""
        big.set_page_size(10)
        totals = big.totals()["amount"]
        assert totals.sum == 600.0
        assert totals.count == 28
        assert totals.average == pytest.approx(600.0 / 28)
        big.set_global_filter("A")
        assert big.totals()["amount"].sum == 150.0


class TestTotals:
    """Derived numeric totals"""

    def test_derived_columns_included(self, workspace):
        """Formula and calculated columns total too"""
        totals = make_table(workspace, "vendors").totals()
        assert totals["total_invoiced"].sum == 350.0
        assert totals["total_invoiced"].average == 175.0
        assert totals["budget"].sum == 670.0
        assert "code" not in totals


class TestEditing:
    """Single-cell edit flow"""

    def test_derived_cells_refuse(self, workspace):
        """Formula and calculated cells cannot be opened"""
        table = make_table(workspace, "vendors")
        assert table.begin_edit("ven-a", "total_invoiced") is None
        assert table.begin_edit("ven-a", "remaining") is None

    def test_read_only(self, workspace):
        """Read-only grids never edit"""
        assert make_table(workspace, "vendors", read_only=True).begin_edit("ven-a", "name") is None

    def test_commit_number(self, workspace):
        """Locale input is parsed and saved, listeners notified"""
        calls = []
        table = make_table(workspace, "vendors", on_record_update=lambda: calls.append(1))
        table.begin_edit("ven-a", "budget")
        assert table.commit_edit("₪1,000")
        assert workspace.records.get_record("ven-a").data["budget"] == 1000.0
        assert table.all_rows[0].values["remaining"] == 500.0
        assert table.session.editing is None
        assert calls == [1]

    def test_invalid_number_keeps_editing(self, workspace):
        """ValidationError aborts the save and leaves the cell open"""
        table = make_table(workspace, "vendors")
        table.begin_edit("ven-a", "budget")
        with pytest.raises(ValidationError):
            table.commit_edit("lots")
        assert table.session.editing is not None
        assert workspace.records.get_record("ven-a").data["budget"] == 500

    def test_invalid_date(self, workspace):
        """Dates outside the convention are rejected"""
        table = make_table(workspace, "invoices")
        table.begin_edit("inv-1", "date")
        with pytest.raises(ValidationError):
            table.commit_edit("January 5th")

    def test_store_rejection_notifies(self, workspace):
        """StoreError becomes an error notification"""
        table = make_table(workspace, "vendors")
        workspace.records.delete_record("ven-a")
        table.begin_edit("ven-a", "name")
        assert not table.commit_edit("New")
        notes = table.drain_notifications()
        assert [n.level for n in notes] == ["error"]
        assert table.drain_notifications() == []

    def test_lookup_edits_foreign_key(self, workspace):
        """Lookup cells edit the raw key, never the label"""
        table = make_table(workspace, "orders")
        cell = table.begin_edit("ord-1", "vendor_code")
        assert cell.field == "vendor_code" and cell.value == "A"
        table.commit_edit("B")
        assert workspace.records.get_record("ord-1").data["vendor_code"] == "B"
        assert table.all_rows[0].values["vendor_code"] == "Beta Inc"

    def test_cancel(self, workspace):
        """Escape discards the open cell"""
        table = make_table(workspace, "vendors")
        table.begin_edit("ven-a", "name")
        table.cancel_edit()
        assert table.session.editing is None

    def test_next_editable_cell(self, workspace):
        """Row-major order skipping derived columns, wrapping rows"""
        table = make_table(workspace, "vendors")
        assert table.next_editable_cell("ven-a", "name") == ("ven-a", "budget")
        assert table.next_editable_cell("ven-a", "budget") == ("ven-b", "code")
        assert table.next_editable_cell("ven-a", "total_invoiced") == ("ven-a", "budget")
        assert table.next_editable_cell("ven-c", "budget") is None

    def test_lookup_reachable_by_tab(self, workspace):
        """Lookup cells sit in the Tab order and open on their foreign key"""
        table = make_table(workspace, "orders")
        assert [c.key for c in table.editable_columns()] == ["title", "qty", "vendor_code"]
        assert table.next_editable_cell("ord-1", "qty") == ("ord-1", "vendor_code")
        table.begin_edit("ord-1", "qty")
        nxt = table.commit_and_advance("4")
        assert (nxt.column, nxt.field, nxt.value) == ("vendor_code", "vendor_code", "A")

    def test_commit_and_advance(self, workspace):
        """Tab saves then opens the next cell"""
        table = make_table(workspace, "vendors")
        table.begin_edit("ven-a", "budget")
        nxt = table.commit_and_advance("10")
        assert (nxt.record_id, nxt.column) == ("ven-b", "code")

    def test_derived_never_stored(self, workspace):
        """No derived key ever lands in record data"""
        table = make_table(workspace, "vendors")
        table.begin_edit("ven-a", "budget")
        table.commit_edit("42")
        for rec in workspace.records.get_records("acme", "vendors"):
            assert not {"total_invoiced", "remaining"} & set(rec.data)


class TestBatch:
    """Pending edits and save-all"""

    def test_pending_not_persisted(self, workspace):
        """Staged edits stay local until saved"""
        table = make_table(workspace, "vendors")
        table.set_batch_mode(True)
        assert table.stage_edit("ven-a", "name", "Changed")
        assert not table.stage_edit("ven-a", "remaining", 1)
        assert table.pending_count == 1
        assert workspace.records.get_record("ven-a").data["name"] == "Alpha Ltd"

    def test_save_all_counts_failures(self, workspace):
        """Each field is attempted; failures are counted"""
        table = make_table(workspace, "vendors")
        table.set_batch_mode(True)
        table.stage_edit("ven-a", "name", "Changed")
        table.stage_edit("ven-a", "budget", "abc")
        table.stage_edit("ven-b", "budget", "1,500")
        table.stage_edit("ven-c", "name", "Gone")
        workspace.records.delete_record("ven-c")
        result = table.save_all()
        assert (result.success, result.errors) == (2, 2)
        assert workspace.records.get_record("ven-a").data["name"] == "Changed"
        assert workspace.records.get_record("ven-b").data["budget"] == 1500.0
        assert table.pending_count == 0 and not table.session.batch_mode

    def test_cancel(self, workspace):
        """Cancel discards the pending set"""
        table = make_table(workspace, "vendors")
        table.set_batch_mode(True)
        table.stage_edit("ven-a", "name", "Changed")
        table.cancel_batch()
        assert table.pending_count == 0
        assert workspace.records.get_record("ven-a").data["name"] == "Alpha Ltd"


class TestBulkDelete:
    """Independent deletes with partial success"""

    def test_partial_success(self, workspace):
        """Missing ids count as errors, the rest go"""
        table = make_table(workspace, "orders")
        table.toggle_selection("ord-1")
        table.toggle_selection("ord-2")
        workspace.records.delete_record("ord-2")
        table.toggle_selection("ord-3")
        result = table.bulk_delete()
        assert (result.success, result.errors) == (2, 1)
        assert table.all_rows == []
        assert table.session.selected == set()

    def test_select_all_uses_filtered_rows(self, workspace):
        """Select-all respects active filters"""
        table = make_table(workspace, "vendors")
        table.set_global_filter("beta")
        table.select_all()
        assert table.session.selected == {"ven-b"}
        table.clear_selection()
        assert table.session.selected == set()


class TestEvents:
    """Push-event synchronisation"""

    def test_other_module_ignored(self, workspace):
        """Events for another module are discarded"""
        table = make_table(workspace, "vendors")
        rec = Record("x", "acme", "orders", {"title": "t"})
        assert not table.apply_event(ChangeEvent("insert", "acme", "orders", "x", rec))
        assert len(table.all_rows) == 3

    def test_subscribed_insert_update_delete(self, workspace):
        """A subscribed table tracks the store"""
        table = make_table(workspace, "vendors")
        workspace.records.subscribe(table.apply_event)
        rec = workspace.records.add_record("acme", "vendors", {"code": "D", "name": "Delta"})
        assert ids(table.all_rows)[-1] == rec.id
        workspace.records.update_record_field(rec.id, "name", "Delta Two")
        assert table.all_rows[-1].values["name"] == "Delta Two"
        workspace.records.delete_record(rec.id)
        assert rec.id not in ids(table.all_rows)


class TestViews:
    """View config in and out"""

    def test_apply_view(self, workspace):
        """Visible columns, order, filters and sort"""
        table = make_table(
            workspace,
            "vendors",
            view=View(visible_columns=["name", "code", "gone"], filters={"code": "B"}, sort_by="name", sort_direction="desc"),
        )
        assert [c.key for c in table.visible_columns] == ["name", "code"]
        assert ids(table.rows()) == ["ven-b"]

    def test_changes_emitted(self, workspace):
        """Sort and filter changes emit the view config"""
        seen = []
        table = make_table(workspace, "vendors", on_view_config_change=seen.append)
        table.set_sort("name")
        table.set_column_filter("code", "A")
        assert seen[-1].sort_by == "name" and seen[-1].sort_direction == "asc"
        assert seen[-1].filters == {"code": "A"}
        assert seen[-1].visible_columns == ["code", "name", "total_invoiced", "budget", "remaining"]

    def test_set_visible_columns(self, workspace):
        """Unknown keys are ignored and the order is kept"""
        seen = []
        table = make_table(workspace, "vendors", on_view_config_change=seen.append)
        table.set_visible_columns(["budget", "gone", "code"])
        assert [c.key for c in table.visible_columns] == ["budget", "code"]
        assert seen[-1].visible_columns == ["budget", "code"]


class TestCreate:
    """New and duplicated rows"""

    def test_add_record_parses_input(self, workspace):
        """Typed input is converted before storing"""
        table = make_table(workspace, "invoices")
        rec = table.add_record({"amount": "₪1,200", "vendor": "C", "date": "01/03/2024"})
        assert workspace.records.get_record(rec.id).data == {"amount": 1200.0, "vendor": "C", "date": "2024-03-01"}
        assert rec.id in ids(table.all_rows)

    def test_required_and_default(self, workspace):
        """Required fields are enforced, defaults applied"""
        workspace.registry.upsert_schema(
            "acme",
            "tasks",
            [{"key": "title", "label": "Title", "required": True}, {"key": "status", "label": "Status", "default": "open"}],
        )
        table = make_table(workspace, "tasks")
        with pytest.raises(ValidationError):
            table.add_record({})
        rec = table.add_record({"title": "Call"})
        assert rec.data == {"title": "Call", "status": "open"}

    def test_derived_input_dropped(self, workspace):
        """Values for derived columns are ignored"""
        table = make_table(workspace, "vendors")
        rec = table.add_record({"code": "D", "total_invoiced": 99, "remaining": 1})
        assert rec.data == {"code": "D"}

    def test_duplicate(self, workspace):
        """Copies the stored data under a new id"""
        table = make_table(workspace, "vendors")
        copy = table.duplicate_record("ven-a")
        assert copy.id != "ven-a"
        assert copy.data == workspace.records.get_record("ven-a").data


class TestChart:
    """Inline chart spec"""

    def test_bar_spec(self, workspace):
        """Vega-Lite bar over the filtered rows"""
        spec = make_table(workspace, "vendors").chart_spec("name", "budget")
        assert spec["mark"]["type"] == "bar"
        assert spec["encoding"]["y"]["title"] == "Budget"
