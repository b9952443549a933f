"""Structural parsing of uploaded workbooks and archives.

Parsing only checks container shape and headers and returns raw rows.
Row-level validation happens in ``services.importer``.
"""

import csv
import io
import json
import re
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from openpyxl import load_workbook

from services.clock import to_iso
from services.error_handler import InvalidInputError
from services.export import EXPORT_HEADERS, EXPORT_SHEETS

TABLE_SHEETS = tuple(name for name in EXPORT_SHEETS if name != "Manifest")

# Normalized CSV base name -> table
CSV_TABLES = {
    "projects": "Projects",
    "tasks": "Tasks",
    "sessions": "Sessions",
    "pomodoroevents": "PomodoroEvents",
    "sessionpomodoroevents": "PomodoroEvents",
    "queue": "Queue",
    "settings": "Settings",
}


class ImportParseError(InvalidInputError):
    """An upload that cannot be read as an export; ``code`` names why."""

    def __init__(self, code: str, message: str, details: Any = None):
        super().__init__(message, details=details, code=code)


@dataclass
class RawImportData:
    manifest: Optional[dict] = None
    tables: dict[str, list[dict]] = field(default_factory=lambda: {name: [] for name in TABLE_SHEETS})

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])


def _normalize_cell(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def assert_headers(actual: Optional[list[str]], expected: tuple[str, ...], target: str) -> None:
    actual = list(actual or [])
    if actual != list(expected):
        raise ImportParseError(
            "invalid_headers",
            f"Invalid headers for {target}.",
            {"target": target, "expected": list(expected), "actual": actual},
        )


def _header_row(sheet) -> list[str]:
    first = next(sheet.iter_rows(min_row=1, max_row=1, values_only=True), ())
    headers = ["" if value is None else str(_normalize_cell(value)).strip() for value in first]
    while headers and headers[-1] == "":
        headers.pop()
    return headers


def _sheet_rows(sheet, headers: tuple[str, ...]) -> list[dict]:
    rows = []
    for values in sheet.iter_rows(min_row=2, values_only=True):
        record = {}
        for index, header in enumerate(headers):
            record[header] = _normalize_cell(values[index]) if index < len(values) else None
        if any(not _is_blank(value) for value in record.values()):
            rows.append(record)
    return rows


def _sheet_manifest(sheet) -> dict:
    manifest = {}
    for values in sheet.iter_rows(min_row=2, values_only=True):
        if not values:
            continue
        key = values[0]
        value = _normalize_cell(values[1]) if len(values) > 1 else None
        if isinstance(key, str) and key.strip():
            manifest[key.strip()] = value
    return manifest


def parse_workbook(content: bytes) -> RawImportData:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise ImportParseError("invalid_xlsx", "File is not a valid XLSX workbook.", {"reason": str(e)}) from e

    try:
        for name in EXPORT_SHEETS:
            if name not in workbook.sheetnames:
                raise ImportParseError("missing_sheet", f"Missing required sheet: {name}.", {"sheet": name})
        for name in EXPORT_SHEETS:
            assert_headers(_header_row(workbook[name]), EXPORT_HEADERS[name], name)

        data = RawImportData(manifest=_sheet_manifest(workbook["Manifest"]))
        for name in TABLE_SHEETS:
            data.tables[name] = _sheet_rows(workbook[name], EXPORT_HEADERS[name])
        return data
    finally:
        workbook.close()


def _file_key(name: str) -> str:
    base = re.sub(r"\.[^.]+$", "", name.lower())
    return re.sub(r"[^a-z0-9]", "", base)


def _read_csv(text: str, target: str, error_code: str = "invalid_csv") -> tuple[list[str], list[dict]]:
    try:
        reader = csv.DictReader(io.StringIO(text, newline=""), strict=True)
        headers = [name.strip() for name in (reader.fieldnames or [])]
        rows = []
        for row in reader:
            if None in row:
                raise csv.Error(f"row {reader.line_num} has more fields than the header")
            if all(_is_blank(value) for value in row.values()):
                continue
            rows.append(row)
    except csv.Error as e:
        raise ImportParseError(error_code, f"Invalid CSV in {target}.", {"target": target, "reason": str(e)}) from e
    return headers, rows


def _csv_manifest(text: str) -> Optional[dict]:
    headers, rows = _read_csv(text, "Manifest.csv", error_code="invalid_manifest")
    assert_headers(headers, EXPORT_HEADERS["Manifest"], "Manifest.csv")
    manifest = {}
    for row in rows:
        key = row.get("key")
        if isinstance(key, str) and key.strip():
            manifest[key.strip()] = row.get("value")
    return manifest or None


def parse_archive(content: bytes) -> RawImportData:
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except (zipfile.BadZipFile, ValueError) as e:
        raise ImportParseError("invalid_zip", "File is not a valid ZIP archive.", {"reason": str(e)}) from e

    data = RawImportData()
    seen: set[str] = set()
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            base = info.filename.rsplit("/", 1)[-1]
            key = _file_key(base)
            lower = base.lower()
            if lower.endswith(".json") and "manifest" in key:
                try:
                    manifest = json.loads(archive.read(info).decode("utf-8-sig"))
                except (ValueError, UnicodeDecodeError) as e:
                    raise ImportParseError("invalid_manifest", "manifest.json is not valid JSON.") from e
                if not isinstance(manifest, dict):
                    raise ImportParseError("invalid_manifest", "manifest.json is not valid JSON.")
                data.manifest = manifest
                continue
            if not lower.endswith(".csv"):
                continue

            try:
                text = archive.read(info).decode("utf-8-sig")
            except UnicodeDecodeError as e:
                raise ImportParseError("invalid_csv", f"Invalid CSV in {base}.", {"target": base}) from e
            if "manifest" in key:
                data.manifest = _csv_manifest(text)
                continue
            table = CSV_TABLES.get(key)
            if table is None:
                continue
            target = f"{table}.csv"
            headers, rows = _read_csv(text, target)
            assert_headers(headers, EXPORT_HEADERS[table], target)
            expected = EXPORT_HEADERS[table]
            data.tables[table].extend({header: row.get(header) for header in expected} for row in rows)
            seen.add(table)

    if not data.manifest:
        raise ImportParseError("missing_manifest", "ZIP must contain manifest.json or Manifest.csv.")
    missing = [f"{name}.csv" for name in TABLE_SHEETS if name not in seen]
    if missing:
        raise ImportParseError("missing_csv_files", "ZIP is missing required CSV files.", {"missing": missing})
    return data
