from __future__ import annotations

from typing import Optional


class ValidationError(ValueError):
    """Cell input that cannot be converted to the column's type."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.field = field
        self.message = message


class SchemaError(ValueError):
    """Invalid column definition or dashboard configuration."""


class StoreError(RuntimeError):
    """Mutation rejected by the record store."""

    def __init__(self, message: str, *, record_id: Optional[str] = None, not_found: bool = False):
        super().__init__(message)
        self.record_id = record_id
        self.not_found = not_found
