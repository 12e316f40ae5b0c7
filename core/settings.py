from __future__ import annotations

import os
from pathlib import Path
from typing import Tuple


BASE_DIR = Path(__file__).resolve().parents[1]

PAGE_SIZES: Tuple[int, ...] = (10, 20, 50, 100)
DEFAULT_PAGE_SIZE = int(os.environ.get("MODULE_GRID_PAGE_SIZE", "20"))
if DEFAULT_PAGE_SIZE not in PAGE_SIZES:
    DEFAULT_PAGE_SIZE = 20

# Columns with more distinct values than this get no exact-value filter.
MAX_FILTER_OPTIONS = int(os.environ.get("MODULE_GRID_MAX_FILTER_OPTIONS", "20"))

DISPLAY_DATE_FORMAT = "%d/%m/%Y"
CURRENCY_SYMBOL = os.environ.get("MODULE_GRID_CURRENCY", "₪")

WORKSPACE_PATH = Path(os.environ.get("MODULE_GRID_WORKSPACE", str(BASE_DIR / "workspace.json")))

CORS_ORIGINS = [
    o.strip()
    for o in os.environ.get("MODULE_GRID_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if o.strip()
]
