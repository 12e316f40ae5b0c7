from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from core.data import is_blank, value_text
from core.models import Record, RelationshipMetadata


@dataclass(frozen=True)
class LookupOption:
    value: Any
    label: str


def options_from_records(records: Iterable[Record], relationship: RelationshipMetadata) -> List[LookupOption]:
    """One option per distinct target key, labelled by the display column."""
    seen: Dict[str, LookupOption] = {}
    for rec in records:
        value = rec.data.get(relationship.target_key_column)
        if is_blank(value):
            continue
        token = value_text(value)
        if token in seen:
            continue
        display = rec.data.get(relationship.target_display_column)
        label = value_text(display) if not is_blank(display) else token
        seen[token] = LookupOption(value=value, label=label)
    return list(seen.values())


def value_from_records(records: Iterable[Record], relationship: RelationshipMetadata, source_value: object) -> Optional[Any]:
    if is_blank(source_value):
        return None
    needle = value_text(source_value)
    for rec in records:
        if value_text(rec.data.get(relationship.target_key_column)) == needle:
            return rec.data.get(relationship.target_display_column)
    return None


def resolve_options(store, entity: str, relationship: RelationshipMetadata) -> List[LookupOption]:
    return options_from_records(store.get_records(entity, relationship.target_module), relationship)


def resolve_value(store, entity: str, relationship: RelationshipMetadata, source_value: object) -> Optional[Any]:
    """Display value of the first target row whose key equals ``source_value``."""
    return value_from_records(store.get_records(entity, relationship.target_module), relationship, source_value)


class LookupIndex:
    """Key → display map over one snapshot of a target module's rows.

    Built fresh on every read so a changed display value shows up on the
    next read without touching the referencing rows.
    """

    def __init__(self, records: Iterable[Record], relationship: RelationshipMetadata):
        self.relationship = relationship
        self._labels: Dict[str, Any] = {}
        records = list(records)
        for rec in records:
            token = value_text(rec.data.get(relationship.target_key_column))
            if token and token not in self._labels:
                self._labels[token] = rec.data.get(relationship.target_display_column)
        self.options = options_from_records(records, relationship)

    def label(self, source_value: object) -> Optional[Any]:
        if is_blank(source_value):
            return None
        return self._labels.get(value_text(source_value))

    def display(self, source_value: object) -> Any:
        """Resolved label, or the raw foreign key when nothing matches."""
        label = self.label(source_value)
        if label is None or is_blank(label):
            return source_value
        return label
