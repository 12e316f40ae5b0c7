from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from core.data import format_currency, format_date, format_number, is_blank, to_number, value_text
from core.models import ColumnDefinition, ConditionalFormatRule

CSS_PROPERTIES = {
    "background_color": "background-color",
    "text_color": "color",
    "font_weight": "font-weight",
}


def rule_matches(rule: ConditionalFormatRule, value: object) -> bool:
    cond = rule.condition
    if cond in ("gt", "lt", "gte", "lte"):
        left = to_number(value)
        right = to_number(rule.value)
        if left is None or right is None:
            return False
        if cond == "gt":
            return left > right
        if cond == "lt":
            return left < right
        if cond == "gte":
            return left >= right
        return left <= right
    if cond in ("eq", "neq"):
        left_num, right_num = to_number(value), to_number(rule.value)
        if left_num is not None and right_num is not None:
            equal = left_num == right_num
        else:
            equal = value_text(value) == value_text(rule.value)
        return equal if cond == "eq" else not equal
    if cond == "contains":
        return value_text(rule.value).lower() in value_text(value).lower()
    return False


def match_rule(rules: Iterable[ConditionalFormatRule], value: object) -> Optional[ConditionalFormatRule]:
    """First matching rule wins."""
    for rule in rules:
        if rule_matches(rule, value):
            return rule
    return None


def cell_style(column: ColumnDefinition, value: object) -> Dict[str, str]:
    rule = match_rule(column.conditional_formatting, value)
    return dict(rule.style) if rule else {}


def style_to_css(style: Dict[str, str]) -> str:
    parts = [f"{CSS_PROPERTIES.get(k, k.replace('_', '-'))}: {v}" for k, v in style.items() if v]
    return "; ".join(parts)


def display_text(column: ColumnDefinition, value: Any) -> str:
    if is_blank(value):
        return "-"
    if column.type == "date":
        return format_date(value)
    if column.type == "currency":
        return format_currency(value)
    if column.type in ("number", "formula", "reference", "calculated"):
        return format_number(value)
    return value_text(value)
