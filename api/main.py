from __future__ import annotations

from dataclasses import asdict
import logging
import math
from typing import Optional

import numpy as np
import pandas as pd
from fastapi import Depends, FastAPI, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.schemas import (
    AggregateModel,
    BatchModel,
    BulkDeleteModel,
    BulkResultResponse,
    DashboardComputeModel,
    DashboardConfigModel,
    EvaluateModel,
    FieldUpdateModel,
    RecordBulkModel,
    RecordCreateModel,
    SchemaUpsertModel,
    TableQueryModel,
    ViewModel,
)
from core import expressions
from core.aggregation import aggregate
from core.dashboard import (
    AutoSummary,
    Configured,
    DashboardController,
    ensure_metric_ids,
    formula_warnings,
)
from core.data import parse_cell_input
from core.errors import SchemaError, StoreError, ValidationError
from core.models import Condition, DashboardConfig, DateRange, View
from core.schema_registry import stored_fields
from core.settings import CORS_ORIGINS, WORKSPACE_PATH
from core.store import Workspace, load_workspace
from core.table import BulkResult, TableController


app = FastAPI(title="Module Grid API", version="0.1.0")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_workspace: Optional[Workspace] = None


def get_workspace() -> Workspace:
    global _workspace
    if _workspace is None:
        _workspace = load_workspace(WORKSPACE_PATH)
    return _workspace


def _json(data: object, status_code: int = 200) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        ),
    )


def _error(exc: Exception, where: str) -> JSONResponse:
    payload = {"error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, ValidationError):
        payload["field"] = exc.field
        return JSONResponse(status_code=422, content=payload)
    if isinstance(exc, (SchemaError, ValueError)):
        return JSONResponse(status_code=422, content=payload)
    if isinstance(exc, StoreError):
        return JSONResponse(status_code=404 if exc.not_found else 409, content=payload)
    logger.exception("%s failed", where)
    return JSONResponse(status_code=500, content=payload)


def _date_range(model) -> Optional[DateRange]:
    return DateRange.from_dict(model.as_dict()) if model is not None else None


def _bulk(result: BulkResult) -> dict:
    return BulkResultResponse(success=result.success, errors=result.errors).model_dump()


# ---------------- schemas ----------------
@app.get("/entities/{entity}/schemas")
def list_schemas(entity: str, branch: Optional[str] = Query(default=None), ws: Workspace = Depends(get_workspace)):
    try:
        modules = ws.registry.get_all_schemas(entity, branch)
        return _json({"modules": [m.to_dict() for m in modules], "branches": ws.registry.branches(entity)})
    except Exception as exc:
        return _error(exc, "list_schemas")


@app.get("/entities/{entity}/schemas/{module}")
def get_schema(entity: str, module: str, branch: Optional[str] = Query(default=None), ws: Workspace = Depends(get_workspace)):
    found = ws.registry.get_schema(entity, module, branch)
    if found is None:
        return JSONResponse(status_code=404, content={"error": f"Unknown module {module!r}", "type": "NotFound"})
    return _json(found.to_dict())


@app.put("/entities/{entity}/schemas/{module}")
def put_schema(
    entity: str,
    module: str,
    body: SchemaUpsertModel,
    branch: Optional[str] = Query(default=None),
    ws: Workspace = Depends(get_workspace),
):
    try:
        saved = ws.registry.upsert_schema(entity, module, [c.model_dump() for c in body.columns], branch)
        return _json(saved.to_dict())
    except Exception as exc:
        return _error(exc, "put_schema")


@app.delete("/entities/{entity}/schemas/{module}")
def delete_schema(entity: str, module: str, branch: Optional[str] = Query(default=None), ws: Workspace = Depends(get_workspace)):
    deleted = ws.registry.delete_module(entity, module, branch)
    return _json({"deleted": deleted})


# ---------------- records ----------------
@app.get("/entities/{entity}/modules/{module}/records")
def list_records(entity: str, module: str, ws: Workspace = Depends(get_workspace)):
    return _json({"records": [r.to_dict() for r in ws.records.get_records(entity, module)]})


@app.post("/entities/{entity}/modules/{module}/records")
def create_record(
    entity: str,
    module: str,
    body: RecordCreateModel,
    branch: Optional[str] = Query(default=None),
    ws: Workspace = Depends(get_workspace),
):
    try:
        table = TableController(entity, module, ws.records, ws.registry, branch=branch)
        return _json(table.add_record(body.data).to_dict(), status_code=201)
    except Exception as exc:
        return _error(exc, "create_record")


@app.post("/entities/{entity}/modules/{module}/records/bulk")
def create_records_bulk(
    entity: str,
    module: str,
    body: RecordBulkModel,
    branch: Optional[str] = Query(default=None),
    ws: Workspace = Depends(get_workspace),
):
    try:
        schema = ws.registry.get_schema(entity, module, branch)
        rows = [stored_fields(schema, row) for row in body.rows]
        return _json(ws.records.add_records_bulk(entity, module, rows), status_code=201)
    except Exception as exc:
        return _error(exc, "create_records_bulk")


@app.patch("/records/{record_id}")
def update_field(record_id: str, body: FieldUpdateModel, ws: Workspace = Depends(get_workspace)):
    try:
        rec = ws.records.get_record(record_id)
        module = ws.registry.find_schema(rec.entity, rec.module_name)
        column = module.column(body.field) if module is not None else None
        field_name = body.field
        value = body.value
        if column is not None:
            if column.is_derived and column.type != "lookup":
                raise ValidationError(f"{column.label} is computed and cannot be edited", field=column.key)
            if column.type == "lookup" and column.relationship is not None:
                # The foreign key may live under a separate source column.
                field_name = column.relationship.source_key(column.key)
                source = module.column(field_name)
                if source is not None and source.key != column.key:
                    if source.is_derived:
                        raise ValidationError(f"{source.label} is computed and cannot be edited", field=source.key)
                    column = source
            value = parse_cell_input(column, value)
        updated = ws.records.update_record_field(record_id, field_name, value)
        return _json(updated.to_dict())
    except Exception as exc:
        return _error(exc, "update_field")


@app.delete("/records/{record_id}")
def delete_record(record_id: str, ws: Workspace = Depends(get_workspace)):
    try:
        ws.records.delete_record(record_id)
        return _json({"deleted": True})
    except Exception as exc:
        return _error(exc, "delete_record")


# ---------------- table ----------------
@app.post("/entities/{entity}/modules/{module}/table")
def table_page(entity: str, module: str, query: TableQueryModel, ws: Workspace = Depends(get_workspace)):
    try:
        table = TableController(
            entity,
            module,
            ws.records,
            ws.registry,
            branch=query.branch,
            view=View.from_dict(query.view.model_dump()),
        )
        if query.date_range is not None:
            table.set_date_range(_date_range(query.date_range))
        table.set_global_filter(query.search)
        table.set_page_size(query.page_size)
        table.set_page(query.page)
        return _json(
            {
                "columns": [c.to_dict() for c in table.visible_columns],
                "rows": [asdict(r) for r in table.page()],
                "totals": {k: asdict(v) for k, v in table.totals().items()},
                "filter_options": table.filter_options(),
                "lookup_options": {k: [asdict(o) for o in opts] for k, opts in table.lookup_options.items()},
                "page": table.session.page_index,
                "page_count": table.page_count,
                "row_count": len(table.rows()),
                "view": table.view_config().to_dict(),
            }
        )
    except Exception as exc:
        return _error(exc, "table_page")


@app.post("/entities/{entity}/modules/{module}/batch")
def batch_save(entity: str, module: str, body: BatchModel, ws: Workspace = Depends(get_workspace)):
    try:
        table = TableController(entity, module, ws.records, ws.registry, branch=body.branch)
        table.set_batch_mode(True)
        rejected = 0
        for edit in body.edits:
            if not table.stage_edit(edit.record_id, edit.column, edit.value):
                rejected += 1
        result = table.save_all()
        result.errors += rejected
        return _json(_bulk(result))
    except Exception as exc:
        return _error(exc, "batch_save")


@app.post("/entities/{entity}/modules/{module}/bulk-delete")
def bulk_delete(entity: str, module: str, body: BulkDeleteModel, ws: Workspace = Depends(get_workspace)):
    try:
        table = TableController(entity, module, ws.records, ws.registry)
        return _json(_bulk(table.bulk_delete(body.ids)))
    except Exception as exc:
        return _error(exc, "bulk_delete")


# ---------------- views ----------------
@app.get("/entities/{entity}/modules/{module}/views")
def list_views(entity: str, module: str, ws: Workspace = Depends(get_workspace)):
    views = ws.views.get_module_views(entity, module)
    return _json({"views": {name: v.to_dict() for name, v in views.items()}})


@app.get("/entities/{entity}/modules/{module}/views/{name}")
def get_view(entity: str, module: str, name: str, ws: Workspace = Depends(get_workspace)):
    view = ws.views.get_module_views(entity, module).get(name)
    if view is None:
        return JSONResponse(status_code=404, content={"error": f"Unknown view {name!r}", "type": "NotFound"})
    return _json(view.to_dict())


@app.put("/entities/{entity}/modules/{module}/views/{name}")
def put_view(entity: str, module: str, name: str, body: ViewModel, ws: Workspace = Depends(get_workspace)):
    try:
        saved = ws.views.save_view(entity, module, name, body.model_dump())
        return _json(saved.to_dict())
    except Exception as exc:
        return _error(exc, "put_view")


@app.delete("/entities/{entity}/modules/{module}/views/{name}")
def delete_view(entity: str, module: str, name: str, ws: Workspace = Depends(get_workspace)):
    return _json({"deleted": ws.views.delete_view(entity, module, name)})


# ---------------- dashboard ----------------
def _dashboard(ws: Workspace, entity: str, branch: Optional[str]) -> DashboardController:
    return DashboardController(entity, ws.registry, ws.records, ws.dashboards, branch=branch)


@app.get("/entities/{entity}/dashboard")
def get_dashboard(entity: str, branch: Optional[str] = Query(default=None), ws: Workspace = Depends(get_workspace)):
    mode = _dashboard(ws, entity, branch).mode
    if isinstance(mode, Configured):
        return _json({"mode": "configured", "config": mode.config.to_dict()})
    return _json({"mode": "unconfigured", "modules": [m.module_name for m in mode.modules]})


@app.put("/entities/{entity}/dashboard")
def put_dashboard(
    entity: str,
    body: DashboardConfigModel,
    branch: Optional[str] = Query(default=None),
    ws: Workspace = Depends(get_workspace),
):
    try:
        config = ensure_metric_ids(DashboardConfig.from_dict(body.model_dump()))
        saved = _dashboard(ws, entity, branch).save_config(config)
        return _json(saved.to_dict())
    except Exception as exc:
        return _error(exc, "put_dashboard")


@app.delete("/entities/{entity}/dashboard")
def delete_dashboard(entity: str, branch: Optional[str] = Query(default=None), ws: Workspace = Depends(get_workspace)):
    return _json({"deleted": _dashboard(ws, entity, branch).clear_config()})

@app.post("/entities/{entity}/dashboard/compute")
def compute_dashboard(
    entity: str,
    body: DashboardComputeModel,
    branch: Optional[str] = Query(default=None),
    ws: Workspace = Depends(get_workspace),
):
    try:
        controller = _dashboard(ws, entity, branch)
        controller.set_date_range(_date_range(body.date_range))
        controller.search = body.search
        result = controller.compute()
        if isinstance(result, AutoSummary):
            return _json({"mode": "unconfigured", **asdict(result)})
        mode = controller.mode
        return _json(
            {
                "mode": "configured",
                "metrics": [asdict(m) for m in result.metrics],
                "rows": [asdict(r) for r in result.rows],
                "totals": result.totals,
                "warnings": formula_warnings(mode.config) if isinstance(mode, Configured) else {},
            }
        )
    except Exception as exc:
        return _error(exc, "compute_dashboard")


# ---------------- evaluator / engine ----------------
@app.post("/evaluate")
def evaluate(body: EvaluateModel):
    return _json(
        {
            "result": expressions.evaluate(body.expression, body.variables),
            "error": expressions.validate(body.expression),
            "references": expressions.references(body.expression),
        }
    )


@app.post("/entities/{entity}/aggregate")
def run_aggregate(entity: str, body: AggregateModel, ws: Workspace = Depends(get_workspace)):
    try:
        condition = Condition.from_dict(body.condition.model_dump()) if body.condition else None
        result = aggregate(
            ws.records,
            entity,
            body.target_module,
            body.group_by_column,
            body.value_column,
            body.operation,
            date_column=body.date_column,
            date_range=_date_range(body.date_range),
            condition=condition,
        )
        return _json(asdict(result))
    except Exception as exc:
        return _error(exc, "run_aggregate")
