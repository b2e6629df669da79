"""Pruning of structured records against the live Notion database schema."""

from __future__ import annotations

from collections.abc import Collection, Iterable

from calsync.models import StructuredRecord


def prune(record: StructuredRecord, known_field_names: Collection[str]) -> StructuredRecord:
    """Drop every field of *record* that the remote schema does not define."""
    return {name: value for name, value in record.items() if name in known_field_names}


def missing_fields(field_names: Iterable[str], known_field_names: Collection[str]) -> list[str]:
    """Return the field names :func:`prune` would drop, sorted and de-duplicated."""
    return sorted({name for name in field_names if name not in known_field_names})
