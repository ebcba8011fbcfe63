#!/usr/bin/env python3
"""
Fetches the report tabs from the Google Sheet via the public gviz export and writes public/report-data.json.
Relies on GOOGLE_SHEET_ID in the environment or scripts/secret.env.

Usage:
    python scripts/build_report_data.py
    SHEET_FORMAT=json REPORT_PRETTY=1 python scripts/build_report_data.py
"""
import json
import os
import sys
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from sheet_export import ExportFormat, export_format

ROOT = Path(__file__).resolve().parents[1]
SECRETS_ENV = ROOT / "scripts" / "secret.env"
OUTPUT_PATH = ROOT / "public" / "report-data.json"
EXPORT_BASE = "https://docs.google.com/spreadsheets/d"
SCHEMA_VERSION = "2.0"
DEFAULT_TIMEOUT = 30.0

# (tab name, key under "sheets" in the output)
SHEETS: Tuple[Tuple[str, str], ...] = (
    ("Locations Metadata", "locations"),
    ("Yearly Funding Data", "yearly_funding"),
    ("Quarterly Funding Data", "quarterly_funding"),
    ("Yearly Enterprise Value", "yearly_ev"),
    ("Top Industries, Tags, Rounds", "top_industries_tags"),
    ("Top Rounds", "top_rounds"),
    ("Regional Comparison", "regional_comparison"),
)

# Frontend flags, not derived from the sheet.
REPORT_CONFIG = {
    "map_enabled": False,
    "share_preview_enabled": True,
    "default_location_id": "london",
}


def load_local_env(env_path: Path) -> None:
    """Load simple KEY=VALUE lines into os.environ if not already set."""
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = val


def export_url(sheet_id: str, sheet_name: str, tqx: str) -> str:
    return f"{EXPORT_BASE}/{sheet_id}/gviz/tq?tqx={tqx}&sheet={quote(sheet_name, safe='')}"


def fetch_sheet(sheet_id: str, sheet_name: str, fmt: ExportFormat, timeout: float = DEFAULT_TIMEOUT) -> List[dict]:
    """HTTP GET one tab and parse it, no retry."""
    resp = requests.get(export_url(sheet_id, sheet_name, fmt.tqx), timeout=timeout)
    if not resp.ok:
        raise RuntimeError(f'Failed to fetch sheet "{sheet_name}": {resp.status_code} {resp.reason}')
    return fmt.parse(resp.text)


def fetch_all_sheets(
    sheet_id: str,
    fmt: ExportFormat,
    fetch: Callable[..., List[dict]] = fetch_sheet,
    **fetch_kwargs,
) -> Dict[str, List[dict]]:
    """
    Fetch every tab in SHEETS concurrently.
    Fails on the first error; tabs still in flight are left to finish on their own.
    """
    executor = ThreadPoolExecutor(max_workers=len(SHEETS))
    try:
        futures = [executor.submit(fetch, sheet_id, name, fmt, **fetch_kwargs) for name, _ in SHEETS]
        done, _ = wait(futures, return_when=FIRST_EXCEPTION)
        for future in futures:
            if future in done and future.exception() is not None:
                raise future.exception()
        return {key: future.result() for (_, key), future in zip(SHEETS, futures)}
    finally:
        executor.shutdown(wait=False)


def reporting_period(now: datetime) -> Tuple[int, int, str]:
    quarter = (now.month + 2) // 3
    return now.year, quarter, f"{now.year}Q{quarter}"


def build_report(sheet_id: str, sheets: Dict[str, List[dict]], now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    year, quarter, label = reporting_period(now)
    generated_at = now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return {
        "meta": {
            "generated_at": generated_at,
            "source_sheet_id": sheet_id,
            "reporting_quarter": label,
            "reporting_year": year,
            "reporting_quarter_number": quarter,
            "schema_version": SCHEMA_VERSION,
        },
        "sheets": {key: sheets[key] for _, key in SHEETS},
        "config": dict(REPORT_CONFIG),
    }


def render_report(report: dict, pretty: bool = False) -> str:
    if pretty:
        return json.dumps(report, ensure_ascii=False, indent=2) + "\n"
    return json.dumps(report, ensure_ascii=False, separators=(",", ":"))


def write_report(payload: str, path: Path) -> None:
    """Write via a sibling temp file so a failed write never leaves a partial report."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def summarize(sheets: Dict[str, List[dict]], payload: str, label: str) -> None:
    print(f"   Locations: {len(sheets['locations'])}")
    print(f"   Reporting: {label}")
    for name, key in SHEETS:
        rows = sheets[key]
        size = len(json.dumps(rows, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))
        print(f"   {name}: {len(rows)} rows, {size / 1024:.1f} KB")
    print(f"   Total size: {len(payload.encode('utf-8')) / 1024 / 1024:.2f} MB")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


def main() -> int:
    load_local_env(SECRETS_ENV)
    sheet_id = os.environ.get("GOOGLE_SHEET_ID")
    if not sheet_id:
        print("ERROR: GOOGLE_SHEET_ID is not set. Populate scripts/secret.env.", file=sys.stderr)
        return 1
    try:
        fmt = export_format(os.environ.get("SHEET_FORMAT", "csv"))
        timeout = float(os.environ.get("REQUEST_TIMEOUT", DEFAULT_TIMEOUT))
        if not timeout > 0:
            raise ValueError(f"REQUEST_TIMEOUT must be positive, got {timeout:g}")
    except ValueError as exc:
        print(f"ERROR: invalid configuration: {exc}", file=sys.stderr)
        return 1
    output_path = Path(os.environ.get("REPORT_DATA_PATH") or OUTPUT_PATH)

    print(f"Fetching {len(SHEETS)} Google Sheets tabs via {fmt.tqx} export...")
    try:
        sheets = fetch_all_sheets(sheet_id, fmt, timeout=timeout)
        report = build_report(sheet_id, sheets)
        payload = render_report(report, pretty=_env_flag("REPORT_PRETTY"))
        write_report(payload, output_path)
    except (requests.RequestException, RuntimeError, ValueError, OSError) as exc:
        print(f"ERROR: report build failed: {exc}", file=sys.stderr)
        return 1

    print(f"Wrote {output_path}")
    summarize(sheets, payload, report["meta"]["reporting_quarter"])
    return 0


def run() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    run()
