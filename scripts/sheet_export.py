#!/usr/bin/env python3
"""
Parse Google Sheets gviz exports into lists of sparse row records.

Two export formats are supported, selected by tag through EXPORT_FORMATS:
- csv:  gviz/tq?tqx=out:csv, parsed by parse_csv
- json: gviz/tq?tqx=out:json, parsed by parse_gviz (wrapped in a
        google.visualization.Query.setResponse(...) callback)

Each record only carries keys whose cell had data.
"""
import json
import re
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

EMPTY_ROW_LIMIT = 10
GVIZ_WRAPPER = re.compile(r"google\.visualization\.Query\.setResponse\((.*)\);?\s*$", re.DOTALL)


def split_csv_lines(text: str) -> List[str]:
    """Split CSV text into logical lines, keeping newlines inside quoted fields."""
    lines: List[str] = []
    current: List[str] = []
    in_quotes = False
    pos = 0
    while pos < len(text):
        ch = text[pos]
        if ch == '"':
            if in_quotes and text[pos + 1 : pos + 2] == '"':
                # escaped quote, left for parse_csv_row to unescape
                current.append('""')
                pos += 2
                continue
            in_quotes = not in_quotes
            current.append(ch)
        elif ch == "\n" and not in_quotes:
            line = "".join(current)
            if line.strip():
                lines.append(line)
            current = []
        elif ch == "\r" and not in_quotes:
            pass
        else:
            current.append(ch)
        pos += 1
    line = "".join(current)
    if line.strip():
        lines.append(line)
    return lines


def parse_csv_row(row: str) -> List[str]:
    values: List[str] = []
    current: List[str] = []
    in_quotes = False
    pos = 0
    while pos < len(row):
        ch = row[pos]
        if ch == '"':
            if in_quotes and row[pos + 1 : pos + 2] == '"':
                current.append('"')
                pos += 2
                continue
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            values.append("".join(current))
            current = []
        else:
            current.append(ch)
        pos += 1
    values.append("".join(current))
    return values


def parse_csv(text: str) -> List[dict]:
    lines = split_csv_lines(text)
    if len(lines) < 2:
        return []
    headers = [h.strip() for h in parse_csv_row(lines[0])]
    records: List[dict] = []
    for line in lines[1:]:
        values = parse_csv_row(line)
        record = {}
        for header, value in zip(headers, values):
            value = value.strip()
            if header and value:
                record[header] = value
        if record:
            records.append(record)
    return records


def extract_gviz_payload(text: str) -> dict:
    """Pull the JSON object out of the setResponse(...) callback wrapper."""
    m = GVIZ_WRAPPER.search(text)
    if not m:
        raise RuntimeError("setResponse wrapper not found in gviz response")
    payload = json.loads(m.group(1))
    if not isinstance(payload, dict):
        raise RuntimeError(f"gviz response is not a JSON object (got {type(payload).__name__})")
    if payload.get("status") == "error":
        errors = payload.get("errors")
        if not isinstance(errors, list):
            errors = []
        details = "; ".join(
            str(e.get("detailed_message") or e.get("message") or "unknown error") if isinstance(e, dict) else str(e)
            for e in errors
        )
        raise RuntimeError(f"gviz query failed: {details or 'unknown error'}")
    return payload


def _cell_value(cells: List[Optional[dict]], index: int) -> Any:
    if index >= len(cells):
        return None
    cell = cells[index]
    if not cell:
        return None
    value = cell.get("v")
    if value is None:
        value = cell.get("f")
    return value


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def parse_gviz(text: str) -> List[dict]:
    """
    Parse a gviz JSON export into records.

    Rows are read until EMPTY_ROW_LIMIT consecutive rows have an empty first
    labelled column; everything after that is treated as blank padding.
    A table, column, row or cell of the wrong JSON type raises RuntimeError.
    """
    payload = extract_gviz_payload(text)
    try:
        return _gviz_records(payload.get("table") or {})
    except (AttributeError, TypeError, KeyError) as exc:
        raise RuntimeError(f"malformed gviz table: {exc}") from exc


def _gviz_records(table: dict) -> List[dict]:
    columns: List[Tuple[int, str]] = []
    for idx, col in enumerate(table.get("cols") or []):
        label = ((col or {}).get("label") or "").strip()
        if label:
            columns.append((idx, label))
    if not columns:
        return []

    first_idx = columns[0][0]
    rows = table.get("rows") or []
    records: List[dict] = []
    empty_run = 0
    for pos, row in enumerate(rows):
        cells = (row or {}).get("c") or []
        if _is_empty(_cell_value(cells, first_idx)):
            empty_run += 1
            if empty_run >= EMPTY_ROW_LIMIT:
                _warn_dropped_rows(rows[pos + 1 :], first_idx)
                break
            continue
        empty_run = 0
        record = {}
        for idx, label in columns:
            value = _cell_value(cells, idx)
            if not _is_empty(value):
                record[label] = value
        records.append(record)
    return records


def _warn_dropped_rows(remaining: List[Optional[dict]], first_idx: int) -> None:
    dropped = sum(
        1 for row in remaining if not _is_empty(_cell_value((row or {}).get("c") or [], first_idx))
    )
    if dropped:
        print(
            f"[WARN] Stopped after {EMPTY_ROW_LIMIT} consecutive empty rows; "
            f"{dropped} later row(s) with data were dropped.",
            file=sys.stderr,
        )


@dataclass(frozen=True)
class ExportFormat:
    tqx: str
    parse: Callable[[str], List[dict]]


EXPORT_FORMATS: Dict[str, ExportFormat] = {
    "csv": ExportFormat(tqx="out:csv", parse=parse_csv),
    "json": ExportFormat(tqx="out:json", parse=parse_gviz),
}


def export_format(tag: str) -> ExportFormat:
    fmt = EXPORT_FORMATS.get(tag.strip().lower())
    if fmt is None:
        raise ValueError(f"unknown sheet format {tag!r} (expected one of: {', '.join(EXPORT_FORMATS)})")
    return fmt
