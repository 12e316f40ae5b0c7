from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ConditionModel(BaseModel):
    column: str
    operator: str = "equals"
    value: str = ""


class DateRangeModel(BaseModel):
    start: Optional[str] = Field(default=None, alias="from")
    end: Optional[str] = Field(default=None, alias="to")

    model_config = {"populate_by_name": True}

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"from": self.start, "to": self.end}


class ColumnModel(BaseModel):
    key: str = ""
    label: str
    type: str = "text"
    required: bool = False
    default: Any = None
    formula: Optional[Dict[str, Any]] = None
    relationship: Optional[Dict[str, Any]] = None
    conditional_formatting: List[Dict[str, Any]] = Field(default_factory=list)


class SchemaUpsertModel(BaseModel):
    columns: List[ColumnModel] = Field(default_factory=list)


class RecordCreateModel(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)


class RecordBulkModel(BaseModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class FieldUpdateModel(BaseModel):
    field: str
    value: Any = None


class ViewModel(BaseModel):
    visible_columns: List[str] = Field(default_factory=list)
    column_order: List[str] = Field(default_factory=list)
    filters: Dict[str, Any] = Field(default_factory=dict)
    sort_by: Optional[str] = None
    sort_direction: Optional[Literal["asc", "desc"]] = None


class TableQueryModel(BaseModel):
    branch: Optional[str] = None
    view: ViewModel = Field(default_factory=ViewModel)
    search: str = ""
    page: int = 0
    page_size: int = 20
    date_range: Optional[DateRangeModel] = None


class PendingEditModel(BaseModel):
    record_id: str
    column: str
    value: Any = None


class BatchModel(BaseModel):
    branch: Optional[str] = None
    edits: List[PendingEditModel] = Field(default_factory=list)


class BulkDeleteModel(BaseModel):
    ids: List[str] = Field(default_factory=list)


class BulkResultResponse(BaseModel):
    success: int
    errors: int


class DashboardConfigModel(BaseModel):
    primary_module: str
    primary_key_column: str
    primary_display_column: str
    metrics: List[Dict[str, Any]] = Field(default_factory=list)


class DashboardComputeModel(BaseModel):
    search: str = ""
    date_range: Optional[DateRangeModel] = None


class EvaluateModel(BaseModel):
    expression: str
    variables: Dict[str, Any] = Field(default_factory=dict)


class AggregateModel(BaseModel):
    target_module: str
    value_column: Optional[str] = None
    operation: str = "SUM"
    group_by_column: Optional[str] = None
    date_column: Optional[str] = None
    date_range: Optional[DateRangeModel] = None
    condition: Optional[ConditionModel] = None
