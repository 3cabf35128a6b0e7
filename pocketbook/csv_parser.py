from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from pocketbook.errors import ParseError

logger = logging.getLogger(__name__)

RawRow = Mapping[str, str]


@dataclass(frozen=True)
class RawTable:
    headers: tuple[str, ...]
    rows: tuple[RawRow, ...]


def decode_csv_bytes(data: bytes) -> str:
    for encoding in ("utf-8-sig", "utf-8"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    # Older bank exports are often Windows-1252/latin-1; latin-1 never fails.
    return data.decode("latin-1")


def parse_raw_table(contents: str, max_bytes: int | None = None) -> RawTable:
    if max_bytes is not None and len(contents.encode("utf-8")) > max_bytes:
        raise ParseError(f"CSV file exceeds the {max_bytes} byte upload limit.")

    reader = csv.reader(io.StringIO(contents))
    try:
        rows = list(reader)
    except csv.Error as exc:
        raise ParseError(f"CSV could not be parsed: {exc}") from exc

    rows = [row for row in rows if row]
    if not rows:
        raise ParseError("CSV missing header row.")

    headers = normalize_headers(rows[0])
    data_rows = [row_to_dict(headers, row) for row in rows[1:]]
    data_rows = [row for row in data_rows if not is_blank_row(row)]
    if not data_rows:
        raise ParseError("CSV contains a header row but no data rows.")

    logger.info(
        "Parsed CSV upload",
        extra={"row_count": len(data_rows), "column_count": len(headers)},
    )
    return RawTable(
        headers=tuple(headers),
        rows=tuple(MappingProxyType(row) for row in data_rows),
    )


def normalize_headers(header_row: list[str]) -> list[str]:
    headers: list[str] = []
    for position, value in enumerate(header_row, start=1):
        base = clean_text(value) or f"column_{position}"
        name = base
        suffix = 1
        while name in headers:
            suffix += 1
            name = f"{base}_{suffix}"
        headers.append(name)
    return headers


def row_to_dict(fieldnames: list[str], row: list[str]) -> dict[str, str]:
    if len(row) < len(fieldnames):
        row = row + [""] * (len(fieldnames) - len(row))
    if len(row) > len(fieldnames):
        row = row[: len(fieldnames)]
    return dict(zip(fieldnames, row))


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def is_blank_row(row: Mapping[str, str | None]) -> bool:
    return all(not clean_text(value) for value in row.values())
