"""Shared fixtures: an in-memory workspace seeded with invoices, clients and payments."""

import pytest

from core.store import Workspace

ENTITY = "acme"

INVOICE_COLUMNS = [
    {"key": "amount", "label": "Amount", "type": "number"},
    {"key": "vendor", "label": "Vendor", "type": "text"},
    {"key": "date", "label": "Date", "type": "date"},
]

INVOICE_ROWS = [
    ("inv-1", {"amount": 100, "vendor": "A", "date": "2024-01-05"}),
    ("inv-2", {"amount": 200, "vendor": "B", "date": "2024-01-10"}),
    ("inv-3", {"amount": 50, "vendor": "A", "date": "2024-02-01"}),
]

VENDOR_COLUMNS = [
    {"key": "code", "label": "Code", "type": "text"},
    {"key": "name", "label": "Name", "type": "text"},
    {
        "key": "total_invoiced",
        "label": "Total Invoiced",
        "type": "formula",
        "formula": {
            "target_module": "invoices",
            "value_column": "amount",
            "group_by_column": "vendor",
            "source_key_column": "code",
            "operation": "SUM",
            "date_column": "date",
        },
    },
    {
        "key": "budget",
        "label": "Budget",
        "type": "currency",
        "conditional_formatting": [
            {"condition": "gt", "value": 100, "style": {"background_color": "red"}},
            {"condition": "gt", "value": 50, "style": {"background_color": "yellow"}},
        ],
    },
    {"key": "remaining", "label": "Remaining", "type": "calculated", "formula": {"expression": "[Budget] / 2"}},
]

VENDOR_ROWS = [
    ("ven-a", {"code": "A", "name": "Alpha Ltd", "budget": 500}),
    ("ven-b", {"code": "B", "name": "Beta Inc", "budget": 150}),
    ("ven-c", {"code": "C", "name": "Gamma", "budget": 20}),
]

ORDER_COLUMNS = [
    {"key": "title", "label": "Title", "type": "text"},
    {"key": "qty", "label": "Qty", "type": "number"},
    {
        "key": "vendor_code",
        "label": "Vendor",
        "type": "lookup",
        "relationship": {"target_module": "vendors", "target_key_column": "code", "target_display_column": "name"},
    },
]

ORDER_ROWS = [
    ("ord-1", {"title": "Paper", "qty": 10, "vendor_code": "A"}),
    ("ord-2", {"title": "Ink", "qty": 3, "vendor_code": "B"}),
    ("ord-3", {"title": "Desk", "qty": 1, "vendor_code": "Z"}),
]


def build_workspace() -> Workspace:
    ws = Workspace()
    ws.registry.upsert_schema(ENTITY, "invoices", INVOICE_COLUMNS)
    ws.registry.upsert_schema(ENTITY, "vendors", VENDOR_COLUMNS)
    ws.registry.upsert_schema(ENTITY, "orders", ORDER_COLUMNS)
    for module, rows in (("invoices", INVOICE_ROWS), ("vendors", VENDOR_ROWS), ("orders", ORDER_ROWS)):
        for rid, data in rows:
            ws.records.add_record(ENTITY, module, data, record_id=rid)
    return ws


@pytest.fixture
def workspace():
    return build_workspace()


@pytest.fixture
def registry(workspace):
    return workspace.registry


@pytest.fixture
def store(workspace):
    return workspace.records


@pytest.fixture
def invoices(store):
    return store.get_records(ENTITY, "invoices")


@pytest.fixture
def entity():
    return ENTITY
