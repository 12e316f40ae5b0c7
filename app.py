import altair as alt
import pandas as pd
import streamlit as st
from contextlib import contextmanager
from typing import Dict, List, Optional

from core.charts import metric_chart
from core.dashboard import AutoSummary, DashboardController, DashboardTable
from core.data import format_number, is_blank
from core.errors import ValidationError
from core.formatting import style_to_css
from core.models import DateRange
from core.settings import PAGE_SIZES, WORKSPACE_PATH
from core.store import Workspace, load_workspace
from core.table import TableController

alt.data_transformers.disable_max_rows()


# ---------- UI / layout helpers ----------
def inject_base_styles():
    if st.session_state.get("_base_css_injected"):
        return
    st.markdown(
        """
        <style>
        .app-top-bar {padding: 6px 0 4px;border-bottom: 1px solid #e5e7eb;margin-bottom: 10px;}
        .app-top-bar .breadcrumb {color: #6b7280;font-size: 0.9rem;margin-bottom: 2px;}
        .app-top-bar .page-title {font-size: 1.4rem;font-weight: 700;color: #111827;}
        .card {border: 1px solid #e5e7eb;border-radius: 12px;padding: 16px;background: #ffffff;
               box-shadow: 0 1px 2px rgba(0,0,0,0.04); margin-bottom: 12px;}
        .card-header {display: flex;justify-content: space-between;align-items: center;margin-bottom: 8px;}
        .card-title {font-weight: 600;font-size: 1.0rem;color: #111827;}
        .chip-row {display: flex;flex-wrap: wrap;gap: 6px;margin-top: 6px;}
        .chip {background: #f3f4f6;border: 1px solid #e5e7eb;border-radius: 14px;padding: 4px 10px;font-size: 0.85rem;color: #374151;}
        </style>
        """,
        unsafe_allow_html=True,
    )
    st.session_state["_base_css_injected"] = True


@contextmanager
def card(title: str, actions: Optional[str] = None):
    container = st.container()
    container.markdown(
        f"""
        <div class="card">
          <div class="card-header">
            <div class="card-title">{title}</div>
            <div>{actions or ""}</div>
          </div>
        """,
        unsafe_allow_html=True,
    )
    body = container.container()
    with body:
        yield body
    container.markdown("</div>", unsafe_allow_html=True)


def format_filter_summary(table: TableController) -> str:
    chips = [f"{k}: {v}" for k, v in table.session.column_filters.items()]
    if table.session.global_filter:
        chips.append(f"search: {table.session.global_filter}")
    if table.session.sort_by:
        chips.append(f"sort: {table.session.sort_by} {table.session.sort_direction}")
    if not chips:
        chips = ["No filters"]
    return "".join([f"<span class='chip'>{txt}</span>" for txt in chips])


def show_notifications(notes) -> None:
    for note in notes:
        if note.level == "error":
            st.error(note.message)
        elif note.level == "success":
            st.success(note.message)
        else:
            st.info(note.message)


# ---------- UI setup ----------
st.set_page_config(page_title="Module Grid", layout="wide")
inject_base_styles()
st.title("Module Grid")
st.caption("Per-entity tables with cross-module formulas, lookups and branch dashboards.")

if "workspace" not in st.session_state:
    st.session_state["workspace"] = load_workspace(WORKSPACE_PATH)
ws: Workspace = st.session_state["workspace"]

entities = ws.registry.entities()
if not entities:
    st.error(f"No modules defined. Point MODULE_GRID_WORKSPACE at a workspace file (looked for {WORKSPACE_PATH}).")
    st.stop()

# ----- Sidebar: navigation + filters -----
with st.sidebar:
    st.markdown("### Navigate")
    entity = st.selectbox("Entity", entities)
    branch_options = ["Main tables"] + ws.registry.branches(entity)
    branch_choice = st.selectbox("Branch", branch_options)
    branch = None if branch_choice == "Main tables" else branch_choice
    modules = ws.registry.get_all_schemas(entity, branch)
    module_name = st.selectbox("Module", [m.module_name for m in modules]) if modules else None

    st.markdown("---")
    st.markdown("### Quick filters")
    search = st.text_input("Search", "")
    page_size = st.selectbox("Rows per page", PAGE_SIZES, index=list(PAGE_SIZES).index(20))
    with st.expander("Date range", expanded=False):
        date_from = st.text_input("From (DD/MM/YYYY)", "")
        date_to = st.text_input("To (DD/MM/YYYY)", "")
    date_range = DateRange.from_dict({"from": date_from.strip(), "to": date_to.strip()})


def get_table(module: str) -> TableController:
    """One controller per (entity, branch, module) so session state survives reruns."""
    key = f"table::{entity}::{branch or ''}::{module}"
    table = st.session_state.get(key)
    if table is None:
        views = ws.views.get_module_views(entity, module)
        table = TableController(
            entity,
            module,
            ws.records,
            ws.registry,
            branch=branch,
            view=views.get("default"),
            on_view_config_change=lambda view: ws.views.save_view(entity, module, "default", view),
        )
        st.session_state[key] = table
    else:
        table.reload_schema()
        table.reload()
    return table


def render_table_page(module: str):
    table = get_table(module)
    if table.session.page_size != page_size:
        table.set_page_size(page_size)
    if table.session.global_filter != search.strip():
        table.set_global_filter(search)
    if table.session.date_range != date_range:
        table.set_date_range(date_range)

    st.markdown(
        f"<div class='app-top-bar'><div class='breadcrumb'>{entity} / {branch or 'Main tables'}</div>"
        f"<div class='page-title'>{module}</div></div>",
        unsafe_allow_html=True,
    )
    st.markdown(f"<div class='chip-row'>{format_filter_summary(table)}</div>", unsafe_allow_html=True)

    with card("Filters"):
        options = table.filter_options()
        cols = st.columns(max(1, min(4, len(options) or 1)))
        for idx, (key, values) in enumerate(options.items()):
            label = table.column(key).label
            current = table.session.column_filters.get(key, "")
            choices = [""] + values
            choice = cols[idx % len(cols)].selectbox(
                label, choices, index=choices.index(current) if current in choices else 0, key=f"flt_{module}_{key}"
            )
            if choice != current:
                table.set_column_filter(key, choice)
        sort_keys = [""] + [c.key for c in table.visible_columns]
        s1, s2 = st.columns(2)
        sort_by = s1.selectbox("Sort by", sort_keys, index=sort_keys.index(table.session.sort_by) if table.session.sort_by in sort_keys else 0)
        direction = s2.radio("Direction", ["asc", "desc"], horizontal=True, index=0 if table.session.sort_direction == "asc" else 1)
        if (sort_by or None) != table.session.sort_by or (sort_by and direction != table.session.sort_direction):
            table.set_sort(sort_by or None, direction)

    visible = table.visible_columns
    page_rows = table.page()
    with card("Rows", actions=f"{len(table.rows())} rows"):
        if not page_rows:
            st.info("No rows match the current filters.")
        else:
            df = pd.DataFrame([{c.label: r.text.get(c.key, "-") for c in visible} for r in page_rows])
            styles = pd.DataFrame(
                [{c.label: style_to_css(r.styles.get(c.key, {})) for c in visible} for r in page_rows]
            )
            st.dataframe(df.style.apply(lambda _: styles, axis=None), hide_index=True, use_container_width=True)
        page = st.number_input("Page", min_value=1, max_value=table.page_count, value=table.session.page_index + 1)
        if page - 1 != table.session.page_index:
            table.set_page(page - 1)
            st.rerun()

        totals = table.totals()
        if totals:
            st.markdown("**Totals (filtered rows)**")
            st.dataframe(
                pd.DataFrame(
                    [
                        {"column": table.column(k).label, "sum": format_number(t.sum), "average": format_number(t.average)}
                        for k, t in totals.items()
                    ]
                ),
                hide_index=True,
            )

    with card("Edit cell"):
        ids = [r.record_id for r in page_rows]
        editable = table.editable_columns()
        if ids and editable:
            e1, e2, e3 = st.columns(3)
            row_labels = {r.record_id: r.text.get(visible[0].key, r.record_id) for r in page_rows}
            rid = e1.selectbox("Row", ids, format_func=lambda i: row_labels.get(i, i))
            col_key = e2.selectbox("Column", [c.key for c in editable], format_func=lambda k: table.column(k).label)
            column = table.column(col_key)
            if column.type == "lookup":
                opts = table.lookup_options.get(col_key, [])
                labels = {str(o.value): o.label for o in opts}
                value = e3.selectbox("Value", [""] + list(labels), format_func=lambda v: labels.get(v, "-"))
            else:
                value = e3.text_input("Value", "")
            if st.button("Save cell"):
                if table.begin_edit(rid, col_key) is not None:
                    try:
                        table.commit_edit(value)
                    except ValidationError:
                        pass
                    if table.session.editing is not None:
                        table.cancel_edit()
        show_notifications(table.drain_notifications())

    with card("Bulk delete"):
        selected = st.multiselect("Rows to delete", [r.record_id for r in table.rows()])
        if selected and st.button("Delete selected"):
            result = table.bulk_delete(selected)
            st.write({"deleted": result.success, "failed": result.errors})
            show_notifications(table.drain_notifications())

    with card("Chart"):
        numeric = [c for c in visible if c.type in ("number", "currency", "formula", "reference", "calculated")]
        if numeric and visible:
            c1, c2 = st.columns(2)
            x_key = c1.selectbox("X", [c.key for c in visible], format_func=lambda k: table.column(k).label)
            y_key = c2.selectbox("Y", [c.key for c in numeric], format_func=lambda k: table.column(k).label)
            spec = table.chart_spec(x_key, y_key)
            if spec:
                st.vega_lite_chart(spec, use_container_width=True)


def render_dashboard_page():
    controller = DashboardController(entity, ws.registry, ws.records, ws.dashboards, branch=branch)
    controller.set_date_range(date_range)
    controller.search = search
    result = controller.compute()
    if isinstance(result, AutoSummary):
        render_auto_summary(result)
    else:
        render_metric_table(result)


def render_metric_table(table: DashboardTable):
    if not table.metrics:
        st.info("This dashboard has no metrics yet.")
        return
    labels: Dict[str, str] = {m.id: m.label for m in table.metrics}
    rows: List[Dict[str, object]] = []
    for row in table.rows:
        out: Dict[str, object] = {"": "-" if is_blank(row.display) else row.display}
        out.update({labels[mid]: format_number(v) for mid, v in row.values.items()})
        rows.append(out)
    total_row: Dict[str, object] = {"": "Total"}
    total_row.update({labels[mid]: format_number(v) for mid, v in table.totals.items()})
    rows.append(total_row)
    with card("Branch metrics"):
        st.dataframe(pd.DataFrame(rows), hide_index=True, use_container_width=True)
    with card("Metric chart"):
        metric_id = st.selectbox("Metric", list(labels), format_func=lambda mid: labels[mid])
        chart_rows = [{"display": r.display, "values": r.values} for r in table.rows]
        st.vega_lite_chart(metric_chart(chart_rows, metric_id, labels[metric_id]), use_container_width=True)


def render_auto_summary(summary: AutoSummary):
    if not summary.modules:
        st.info("No modules with numeric columns in this branch.")
        return
    for mod in summary.modules:
        with card(mod.module_name, actions=f"{mod.record_count} rows"):
            if mod.stats:
                st.dataframe(
                    pd.DataFrame(
                        [{"column": s.label, "sum": format_number(s.sum), "average": format_number(s.average), "count": s.count} for s in mod.stats]
                    ),
                    hide_index=True,
                )
            else:
                st.caption("No numeric columns.")
    if summary.cross_totals:
        with card("Across modules"):
            st.dataframe(
                pd.DataFrame([{"column": t.label, "sum": format_number(t.sum), "count": t.count} for t in summary.cross_totals.values()]),
                hide_index=True,
            )


tab_table, tab_dashboard = st.tabs(["Table", "Dashboard"])
with tab_table:
    if module_name:
        render_table_page(module_name)
    else:
        st.info("No modules in this branch.")
with tab_dashboard:
    render_dashboard_page()
