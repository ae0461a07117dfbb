"""
Decoding of BigQuery's REST row format.

A row arrives as {"f": [{"v": value}, ...]}, positionally aligned with the
schema's field list. RECORD values nest the same shape; REPEATED values are a
list of {"v": ...} wrappers.
"""

import math
from typing import Any

from app.models.bigquery_models import Column, QueryJobReference, QueryResult

MAX_SAFE_INTEGER = 2**53 - 1

_INT_TYPES = {"INT64", "INTEGER"}
_FLOAT_TYPES = {"FLOAT", "FLOAT64", "NUMERIC", "BIGNUMERIC"}
_BOOL_TYPES = {"BOOL", "BOOLEAN"}
_RECORD_TYPES = {"RECORD", "STRUCT"}


def format_field_type(field: dict[str, Any]) -> str:
    """Human-readable type, e.g. ARRAY<RECORD<name:STRING,score:FLOAT>>."""
    sub_fields = field.get("fields")
    if field.get("type") in _RECORD_TYPES and isinstance(sub_fields, list):
        inner = ",".join(f"{f.get('name')}:{format_field_type(f)}" for f in sub_fields)
        base = f"RECORD<{inner}>"
    else:
        base = field.get("type")

    if field.get("mode") == "REPEATED":
        return f"ARRAY<{base}>"
    return base


def _unwrap(cell: Any) -> Any:
    if isinstance(cell, dict) and "v" in cell:
        return cell["v"]
    return cell


def _cell_value(cells: list[Any], i: int) -> Any:
    if i < len(cells) and isinstance(cells[i], dict):
        return cells[i].get("v")
    return None


def _parse_int(raw: Any) -> int | str:
    try:
        value = int(str(raw).strip())
    except ValueError:
        try:
            as_float = float(raw)
        except (TypeError, ValueError):
            return str(raw)
        if not math.isfinite(as_float) or not as_float.is_integer():
            return str(raw)
        value = int(as_float)
    if abs(value) > MAX_SAFE_INTEGER:
        return str(raw)
    return value


def _parse_float(raw: Any) -> float | str:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return str(raw)
    return value if math.isfinite(value) else str(raw)


def parse_field_value(field: dict[str, Any], raw: Any) -> Any:
    if raw is None:
        return None

    if field.get("mode") == "REPEATED":
        items = raw if isinstance(raw, list) else []
        item_field = {**field, "mode": "NULLABLE"}
        return [parse_field_value(item_field, _unwrap(item)) for item in items]

    field_type = field.get("type")

    if field_type in _RECORD_TYPES:
        sub_fields = field.get("fields") or []
        cells = raw.get("f") if isinstance(raw, dict) else None
        if not isinstance(cells, list):
            cells = []
        out = {}
        for i, sub in enumerate(sub_fields):
            out[sub.get("name")] = parse_field_value(sub, _cell_value(cells, i))
        return out

    if field_type in _BOOL_TYPES:
        return raw is True or raw == "true"
    if field_type in _INT_TYPES:
        return _parse_int(raw)
    if field_type in _FLOAT_TYPES:
        return _parse_float(raw)
    return raw


def parse_rows(schema_fields: list[dict[str, Any]], rows: list[dict[str, Any]]) -> list[list[Any]]:
    if not isinstance(schema_fields, list) or not isinstance(rows, list):
        return []
    parsed = []
    for row in rows:
        cells = row.get("f") if isinstance(row, dict) else None
        if not isinstance(cells, list):
            cells = []
        parsed.append([
            parse_field_value(field, _cell_value(cells, i))
            for i, field in enumerate(schema_fields)
        ])
    return parsed


def columns_for(schema_fields: list[dict[str, Any]]) -> list[Column]:
    return [Column(name=f.get("name"), type=format_field_type(f)) for f in schema_fields]


def normalize_query_response(raw: dict[str, Any] | None) -> QueryResult:
    raw = raw or {}
    schema_fields = (raw.get("schema") or {}).get("fields") or []
    rows = parse_rows(schema_fields, raw.get("rows") or [])

    job_ref = raw.get("jobReference")
    job = None
    if job_ref:
        job = QueryJobReference(
            job_id=job_ref.get("jobId"),
            project_id=job_ref.get("projectId"),
            location=job_ref.get("location") or None,
        )

    return QueryResult(
        job_complete=bool(raw.get("jobComplete")),
        job=job,
        columns=columns_for(schema_fields),
        rows=rows,
        row_count=int(raw.get("totalRows") or len(rows) or 0),
        truncated=bool(raw.get("pageToken")),
        page_token=raw.get("pageToken") or None,
        total_bytes_processed=raw.get("totalBytesProcessed") or None,
        cache_hit=raw.get("cacheHit") is True,
    )
