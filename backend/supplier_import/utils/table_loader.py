"""Turn uploaded supplier files into a ragged matrix of raw cells."""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from pathlib import Path

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from supplier_import.core.errors import TableParseError
from supplier_import.utils.cells import Cell

logger = logging.getLogger(__name__)

WORKBOOK_SUFFIXES = {".xlsx", ".xlsm"}
DELIMITED_SUFFIXES = {".csv", ".txt", ".tsv"}
DEFAULT_DELIMITER = ";"
TEXT_ENCODINGS = ("utf-8-sig", "cp1252", "latin-1")


def detect_delimiter(first_line: str, fallback: str = DEFAULT_DELIMITER) -> str:
    """Pick ``,`` only when it clearly dominates ``;`` on the first line."""
    if "\t" in first_line and first_line.count("\t") > first_line.count(";"):
        return "\t"
    comma_count = first_line.count(",")
    semicolon_count = first_line.count(";")
    if comma_count > 3 and comma_count > semicolon_count:
        return ","
    return fallback


def decode_text(content: bytes) -> str:
    for encoding in TEXT_ENCODINGS:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise TableParseError("File encoding is not supported")


def parse_delimited(content: bytes | str, delimiter: str | None = None) -> list[list[Cell]]:
    """Parse delimited text; rows whose cells are all blank are dropped, rows stay ragged.

    Quoted cells may span lines and keep their line breaks.
    """
    text = content if isinstance(content, str) else decode_text(content)
    text = text.lstrip("\ufeff")
    first_line = next((line for line in text.split("\n") if line.strip()), None)
    if first_line is None:
        return []

    resolved = delimiter or detect_delimiter(first_line)
    try:
        reader = csv.reader(io.StringIO(text, newline=""), delimiter=resolved)
        rows = [list(row) for row in reader if any(cell.strip() for cell in row)]
    except csv.Error as e:
        raise TableParseError(f"CSV parsing error: {str(e)}") from e
    logger.info(f"Parsed delimited text with delimiter {resolved!r} ({len(rows)} rows)")
    return rows


def parse_workbook(content: bytes) -> list[list[Cell]]:
    """Read the first worksheet of a binary workbook (values only)."""
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as e:
        raise TableParseError(f"Unable to read workbook: {str(e)}") from e

    try:
        sheet = workbook.worksheets[0]
        rows: list[list[Cell]] = []
        for values in sheet.iter_rows(values_only=True):
            row = list(values)
            # read_only sheets pad rows to the sheet width; trim the tail
            while row and row[-1] is None:
                row.pop()
            rows.append(row)
    finally:
        workbook.close()

    while rows and not rows[-1]:
        rows.pop()
    return rows


def parse_spreadsheet(
    content: bytes,
    filename: str | None = None,
    delimiter: str | None = None,
) -> list[list[Cell]]:
    """Dispatch on file name (or zip magic bytes) to the matching parser."""
    if not content:
        return []

    suffix = Path(filename or "").suffix.lower()
    if suffix in WORKBOOK_SUFFIXES or (not suffix and content[:2] == b"PK"):
        return parse_workbook(content)
    if suffix and suffix not in DELIMITED_SUFFIXES:
        raise TableParseError(f"Unsupported file format: {filename}")
    if suffix == ".tsv" and delimiter is None:
        delimiter = "\t"
    return parse_delimited(content, delimiter)
