"""Row and column filtering applied between header detection and mapping."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Iterable, Mapping, Sequence

from supplier_import.core.config import get_settings
from supplier_import.utils.cells import Row, cell_at, row_text

logger = logging.getLogger(__name__)


@dataclass
class FilterConfig:
    skip_rows_top: int = 0
    skip_rows_bottom: int = 0
    skip_patterns: list[str] = field(default_factory=list)
    excluded_columns: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.skip_rows_top = max(0, int(self.skip_rows_top or 0))
        self.skip_rows_bottom = max(0, int(self.skip_rows_bottom or 0))
        self.skip_patterns = [str(p) for p in (self.skip_patterns or [])]
        self.excluded_columns = [str(c) for c in (self.excluded_columns or [])]

    @classmethod
    def from_profile(cls, skip_config: Mapping[str, Any] | None, excluded_columns: Iterable[str] | None) -> "FilterConfig":
        skip_config = skip_config or {}
        return cls(
            skip_rows_top=skip_config.get("skip_rows_top", 0),
            skip_rows_bottom=skip_config.get("skip_rows_bottom", 0),
            skip_patterns=list(skip_config.get("skip_patterns") or []),
            excluded_columns=list(excluded_columns or []),
        )

    def skip_config(self) -> dict[str, Any]:
        """Shape persisted on the mapping profile."""
        return {
            "skip_rows_top": self.skip_rows_top,
            "skip_rows_bottom": self.skip_rows_bottom,
            "skip_patterns": list(self.skip_patterns),
        }


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """``*`` becomes ``.*``; anything else is kept as regular-expression text.

    Text that does not compile is matched literally.
    """
    source = pattern.replace("*", ".*")
    try:
        return re.compile(source, re.IGNORECASE)
    except re.error:
        logger.warning(f"Skip pattern {pattern!r} is not a valid expression; matching literally")
        literal = ".*".join(re.escape(part) for part in pattern.split("*"))
        return re.compile(literal, re.IGNORECASE)


def active_patterns(patterns: Iterable[str]) -> list[re.Pattern[str]]:
    # A blank pattern would match every row.
    return [compile_pattern(p.strip()) for p in patterns if p and p.strip()]


def rows_after_header(raw_rows: Sequence[Row], header_row_index: int | None) -> list[Row]:
    """Every row below the header (all rows when the file has no header)."""
    if header_row_index is None:
        return list(raw_rows)
    return list(raw_rows[header_row_index + 1:])


def get_filtered_rows(
    raw_rows: Sequence[Row],
    header_row_index: int | None,
    config: FilterConfig,
) -> list[Row]:
    """Apply header cut, top/bottom skips and skip patterns, in that order."""
    filtered = rows_after_header(raw_rows, header_row_index)

    if config.skip_rows_top > 0:
        filtered = filtered[config.skip_rows_top:]
    if config.skip_rows_bottom > 0:
        filtered = filtered[: max(0, len(filtered) - config.skip_rows_bottom)]

    patterns = active_patterns(config.skip_patterns)
    if patterns:
        filtered = [
            row for row in filtered
            if not any(p.search(row_text(row)) for p in patterns)
        ]
    return filtered


def get_detected_columns(headers: Sequence[str], excluded_columns: Iterable[str]) -> list[str]:
    """Header labels left once excluded columns are removed."""
    excluded = set(excluded_columns)
    return [label for label in headers if label not in excluded]


def included_column_indexes(headers: Sequence[str], excluded_columns: Iterable[str]) -> list[int]:
    excluded = set(excluded_columns)
    return [index for index, label in enumerate(headers) if label not in excluded]


def project_rows(rows: Iterable[Row], indexes: Sequence[int]) -> list[list[Any]]:
    """Keep only the given columns of each row; missing cells become ``None``."""
    return [[cell_at(row, index) for index in indexes] for row in rows]


@dataclass
class FilterSummary:
    total_rows: int
    filtered_rows: int
    ignored_rows_count: int
    ignored_ratio: float
    is_aggressive: bool

    @property
    def ignored_percent(self) -> int:
        return round(self.ignored_ratio * 100)


def summarize_filter(
    raw_rows: Sequence[Row],
    header_row_index: int | None,
    config: FilterConfig,
    filtered: Sequence[Row] | None = None,
) -> FilterSummary:
    """Counts shown next to the filter settings; recomputed on every change."""
    total = len(rows_after_header(raw_rows, header_row_index))
    if filtered is None:
        filtered = get_filtered_rows(raw_rows, header_row_index, config)
    ignored = total - len(filtered)
    ratio = ignored / total if total else 0.0
    aggressive = ratio > get_settings().filter_warning_ratio
    if aggressive:
        logger.warning(f"Filters ignore {ignored}/{total} rows ({ratio:.0%})")
    return FilterSummary(
        total_rows=total,
        filtered_rows=len(filtered),
        ignored_rows_count=ignored,
        ignored_ratio=ratio,
        is_aggressive=aggressive,
    )
