"""Locate the header row of a supplier sheet."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from supplier_import.core.config import get_settings
from supplier_import.utils.cells import (
    Row,
    cell_at,
    cell_text,
    is_blank,
    non_empty_count,
    normalize_label,
)

logger = logging.getLogger(__name__)

# Accent-free, lower-case; supplier files are mostly French.
HEADER_KEYWORDS = (
    "prix", "tarif", "reference", "ref", "code", "ean", "produit", "article",
    "designation", "description", "stock", "quantite", "quantity", "qte",
    "marque", "categorie", "category", "brand", "price", "product", "name",
    "pau", "ppi", "disponibilite", "statut", "tva",
)


def keyword_hits(row: Row | None) -> int:
    """Number of cells whose label contains at least one header keyword."""
    if not row:
        return 0
    hits = 0
    for cell in row:
        label = normalize_label(cell)
        if label and any(keyword in label for keyword in HEADER_KEYWORDS):
            hits += 1
    return hits


def detect_header_row(
    rows: Sequence[Row],
    *,
    scan_limit: int | None = None,
    min_columns: int | None = None,
    min_keywords: int | None = None,
) -> int:
    """Return the index of the most likely header row, 0 when nothing qualifies.

    A row qualifies when it has at least ``min_columns`` non-empty cells,
    ``min_keywords`` keyword cells and is followed by a row holding data.
    """
    if not rows:
        return 0

    settings = get_settings()
    scan_limit = scan_limit if scan_limit is not None else settings.header_scan_limit
    min_columns = min_columns if min_columns is not None else settings.header_min_columns
    min_keywords = min_keywords if min_keywords is not None else settings.header_min_keywords

    for index in range(min(len(rows), scan_limit)):
        row = rows[index]
        columns = non_empty_count(row)
        if columns < min_columns:
            continue

        matches = keyword_hits(row)
        if matches < min_keywords:
            continue

        if index + 1 < len(rows) and non_empty_count(rows[index + 1]) > 0:
            logger.info(
                f"Header detected at row {index} with {matches} keywords and {columns} columns"
            )
            return index

    logger.info("No clear header detected, using row 0")
    return 0


def looks_like_header(row: Row | None) -> bool:
    """Whether a row reads like field names rather than data.

    Used on row 0 when the detector found nothing better: a header has at
    least one keyword cell and more text cells than numeric ones.
    """
    if not row or non_empty_count(row) == 0:
        return False
    if keyword_hits(row) == 0:
        return False

    numeric = 0
    textual = 0
    for cell in row:
        if is_blank(cell):
            continue
        if _is_number(cell):
            numeric += 1
        else:
            textual += 1
    return textual > numeric


def _is_number(value) -> bool:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return True
    try:
        float(cell_text(value).replace(",", ".").replace(" ", ""))
    except ValueError:
        return False
    return True


@dataclass
class HeaderChoice:
    """Header row decision plus what the wizard derives from it."""

    has_header: bool
    header_row_index: int | None
    skip_rows: int
    labels: list[str]
    low_confidence: bool = False
    warnings: list[str] = field(default_factory=list)


def header_labels(rows: Sequence[Row], header_row_index: int | None) -> list[str]:
    """Labels of the header row, or ``Column N`` names when there is none."""
    if header_row_index is not None and header_row_index < len(rows):
        header = rows[header_row_index] or []
        width = max((len(row or []) for row in rows), default=0)
        return [
            cell_text(cell_at(header, index)).strip() or f"Column {index + 1}"
            for index in range(max(width, len(header)))
        ]
    width = max((len(row or []) for row in rows), default=0)
    return [f"Column {index + 1}" for index in range(width)]


def resolve_header(rows: Sequence[Row], has_header: bool | None = None) -> HeaderChoice:
    """Combine the detector with the "file has a header row" toggle.

    ``has_header=None`` lets the heuristics decide; an explicit value is the
    user's toggle and re-derives the header index and default skip count.
    """
    warnings: list[str] = []
    if not rows:
        return HeaderChoice(
            has_header=False,
            header_row_index=None,
            skip_rows=0,
            labels=[],
            low_confidence=True,
            warnings=["The file contains no rows"],
        )

    detected = detect_header_row(rows)
    confident = detected > 0 or keyword_hits(rows[0]) >= get_settings().header_min_keywords

    if has_header is None:
        has_header = detected > 0 or looks_like_header(rows[0])

    if not has_header:
        return HeaderChoice(
            has_header=False,
            header_row_index=None,
            skip_rows=0,
            labels=header_labels(rows, None),
            low_confidence=not confident,
            warnings=warnings,
        )

    if not confident:
        warnings.append("No header row could be identified with confidence; using row 1")
        logger.warning("Header detection fell back to row 0 with low confidence")

    return HeaderChoice(
        has_header=True,
        header_row_index=detected,
        skip_rows=detected + 1,
        labels=header_labels(rows, detected),
        low_confidence=not confident,
        warnings=warnings,
    )
