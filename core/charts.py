from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

import altair as alt
import pandas as pd

alt.data_transformers.disable_max_rows()


def to_vega_spec(chart: alt.Chart) -> Dict[str, Any]:
    """Convert an Altair chart into a Vega-Lite spec dict (JSON-serializable)."""
    return chart.to_dict()


def bar_chart(data: Iterable[Mapping[str, Any]], *, x_title: str, y_title: str) -> Dict[str, Any]:
    """Bar chart over ``{"x", "y"}`` points, in row order."""
    df = pd.DataFrame(list(data), columns=["x", "y"])
    df["y"] = pd.to_numeric(df["y"], errors="coerce").fillna(0.0)
    order: List[str] = [str(v) for v in dict.fromkeys(df["x"].astype(str))]
    chart = (
        alt.Chart(df)
        .mark_bar(cornerRadiusTopLeft=3, cornerRadiusTopRight=3)
        .encode(
            x=alt.X("x:N", title=x_title, sort=order),
            y=alt.Y("y:Q", title=y_title, axis=alt.Axis(format="~s", gridDash=[4, 4], domain=False, ticks=False)),
            tooltip=[alt.Tooltip("x:N", title=x_title), alt.Tooltip("y:Q", title=y_title, format=",.2f")],
        )
    )
    return to_vega_spec(chart)


def metric_chart(rows: Iterable[Mapping[str, Any]], metric_id: str, metric_label: str, *, x_title: str = "") -> Dict[str, Any]:
    """One dashboard metric per primary row; expects ``display`` and ``values`` on each row."""
    data = [{"x": row.get("display", ""), "y": (row.get("values") or {}).get(metric_id, 0.0)} for row in rows]
    return bar_chart(data, x_title=x_title, y_title=metric_label)
