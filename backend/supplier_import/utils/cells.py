"""Helpers for raw spreadsheet cells (str, int, float, None)."""

from __future__ import annotations

import unicodedata
from typing import Any, Sequence

Cell = Any
Row = Sequence[Cell]


def cell_text(value: Cell) -> str:
    """Render a cell the way users see it in the sheet."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def is_blank(value: Cell) -> bool:
    return cell_text(value).strip() == ""


def non_empty_count(row: Row | None) -> int:
    if not row:
        return 0
    return sum(1 for cell in row if not is_blank(cell))


def row_text(row: Row) -> str:
    """Lower-cased, space-joined text of a row, used by skip patterns."""
    return " ".join(cell_text(cell) for cell in row).lower()


def normalize_label(value: Cell) -> str:
    """Lower-case, strip accents and collapse whitespace of a header label."""
    text = cell_text(value).strip().lower()
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return " ".join(text.split())


def cell_at(row: Row | None, index: int) -> Cell:
    """Return the cell at ``index`` treating missing cells of ragged rows as empty."""
    if row is None or index < 0 or index >= len(row):
        return None
    return row[index]
