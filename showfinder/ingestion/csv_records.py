from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from showfinder.services.normalizer import normalize_date_range

REQUIRED_COLUMNS = ("title", "address", "start_date", "end_date")
OPTIONAL_COLUMNS = ("city", "state", "zip", "location", "description", "entry_fee", "website_url")


@dataclass(slots=True)
class CsvShowRecord:
    row_number: int
    values: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def title(self) -> str:
        return self.values.get("title", "").strip()

    def full_address(self) -> str:
        address = self.values.get("address", "").strip()
        for column in ("city", "state"):
            value = self.values.get(column, "").strip()
            if value:
                address = f"{address}, {value}" if address else value
        zip_code = self.values.get("zip", "").strip()
        if zip_code:
            address = f"{address} {zip_code}"
        return address

    def to_raw_payload(self) -> dict[str, Any]:
        def value(column: str) -> str | None:
            text = self.values.get(column, "").strip()
            return text or None

        return {
            "name": value("title"),
            "startDate": value("start_date"),
            "endDate": value("end_date") or value("start_date"),
            "venueName": value("location"),
            "address": value("address"),
            "city": value("city"),
            "state": value("state"),
            "entryFee": value("entry_fee"),
            "description": value("description"),
            "url": value("website_url"),
            "contactInfo": None,
            "zip": value("zip"),
        }


def read_show_csv(path: str | Path) -> list[CsvShowRecord]:
    """Read a show CSV with case-insensitive headers.

    Rows failing validation are returned with ``error`` set rather than raised,
    so the caller can count them as skipped.
    """
    csv_path = Path(path)
    if not csv_path.is_file():
        raise FileNotFoundError(f"File not found: {csv_path}")

    records: list[CsvShowRecord] = []
    with csv_path.open(newline="", encoding="utf-8-sig") as handle:
        reader = csv.DictReader(handle)
        for row_number, row in enumerate(reader, start=1):
            values = {
                (key or "").strip().lower(): (value or "").strip()
                for key, value in row.items()
                if key is not None and isinstance(value, str)
            }
            if not any(values.values()):
                continue
            records.append(CsvShowRecord(row_number=row_number, values=values, error=validate_record(values)))
    return records


def validate_record(values: dict[str, str]) -> str | None:
    for column in REQUIRED_COLUMNS:
        if not values.get(column, "").strip():
            return f"Missing required field: {column}"
    for column in ("start_date", "end_date"):
        start, _ = normalize_date_range(values[column])
        if start is None:
            return f"Invalid date format for {column}: {values[column]}"
    fee = values.get("entry_fee", "").strip()
    if fee:
        try:
            float(fee.lstrip("$"))
        except ValueError:
            return f"Entry fee must be a number, got: {fee}"
    return None
