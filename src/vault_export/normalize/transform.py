from __future__ import annotations

import json
from typing import Any, List, Mapping

from ..util.time import epoch_to_date
from .schema import DATE, ColumnSchema

# Rendered for absent, null, or blank values so "missing" is never confused
# with an empty string in the CSV.
MISSING_VALUE = "N/A"
LIST_SEPARATOR = ";"


def get_path(record: Mapping[str, Any], path: str) -> Any:
    cur: Any = record
    for part in path.split("."):
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(part)
        if cur is None:
            return None
    return cur


def format_value(value: Any, kind: str = "text") -> str:
    if value is None:
        return MISSING_VALUE
    if kind == DATE:
        rendered = epoch_to_date(value)
        return rendered if rendered is not None else MISSING_VALUE
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set)):
        parts = [format_value(v) for v in value if v is not None]
        return LIST_SEPARATOR.join(parts) if parts else MISSING_VALUE
    if isinstance(value, dict):
        return stable_json_dumps(value) if value else MISSING_VALUE
    text = str(value)
    return text if text.strip() else MISSING_VALUE


def project_row(record: Mapping[str, Any], schema: ColumnSchema) -> List[str]:
    return [format_value(get_path(record, col.path), col.kind) for col in schema.columns]


def project_rows(record: Mapping[str, Any], schema: ColumnSchema) -> List[List[str]]:
    """
    Rows for one record: exactly one for flat schemas, one per list element
    (possibly none) for exploding schemas.
    """
    if not schema.explode:
        return [project_row(record, schema)]
    members = record.get(schema.explode) or []
    rows: List[List[str]] = []
    for member in members:
        ctx = dict(record)
        ctx["member"] = member
        rows.append(project_row(ctx, schema))
    return rows


def stable_json_dumps(obj: Any) -> str:
    """
    Dump JSON with sort_keys=True and separators to ensure stable output.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
