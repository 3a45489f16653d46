"""Assemble the mapping wizard state for a raw supplier sheet."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from supplier_import.services.column_mapping import (
    ColumnMapping,
    ConfidenceMap,
    MappingPolicy,
    mapping_quality,
    missing_fields,
    suggest_with_confidence,
)
from supplier_import.services.header_detection import HeaderChoice, resolve_header
from supplier_import.services.row_filter import (
    FilterConfig,
    FilterSummary,
    get_detected_columns,
    get_filtered_rows,
    included_column_indexes,
    project_rows,
    summarize_filter,
)
from supplier_import.utils.cells import Row

logger = logging.getLogger(__name__)

PREVIEW_ROWS = 10


@dataclass
class PreparedDataset:
    """Filtered rows projected onto the included columns.

    Column indexes of a mapping always refer to ``labels`` here, i.e. to the
    included columns, not to the raw sheet.
    """

    header: HeaderChoice
    labels: list[str]
    rows: list[list[Any]]
    summary: FilterSummary


@dataclass
class MappingPreview:
    header: HeaderChoice
    detected_columns: list[str]
    included_columns: list[str]
    mapping: ColumnMapping
    confidence: ConfidenceMap
    quality: float
    summary: FilterSummary
    preview_rows: list[list[Any]]
    missing_required: list[str]
    missing_for_import: list[str]
    warnings: list[str] = field(default_factory=list)

    @property
    def can_continue(self) -> bool:
        return not self.missing_required

    @property
    def can_import(self) -> bool:
        return not self.missing_for_import


def prepare_dataset(
    raw_rows: Sequence[Row],
    config: FilterConfig,
    has_header: bool | None = None,
) -> PreparedDataset:
    """Header choice, filters and column projection in one pass."""
    header = resolve_header(raw_rows, has_header)
    filtered = get_filtered_rows(raw_rows, header.header_row_index, config)
    indexes = included_column_indexes(header.labels, config.excluded_columns)
    return PreparedDataset(
        header=header,
        labels=get_detected_columns(header.labels, config.excluded_columns),
        rows=project_rows(filtered, indexes),
        summary=summarize_filter(raw_rows, header.header_row_index, config, filtered),
    )


def build_preview(
    raw_rows: Sequence[Row],
    config: FilterConfig | None = None,
    *,
    has_header: bool | None = None,
    mapping: Mapping[str, Any] | None = None,
) -> MappingPreview:
    """Run detector, filter and mapper; ``mapping`` pre-seeds user choices."""
    config = config or FilterConfig()
    dataset = prepare_dataset(raw_rows, config, has_header)
    sample = dataset.rows[:PREVIEW_ROWS]

    suggested, confidence = suggest_with_confidence(dataset.labels, sample, existing=mapping)

    warnings = list(dataset.header.warnings)
    if not dataset.rows:
        warnings.append("No data rows remain after filtering")
    if dataset.summary.is_aggressive:
        warnings.append(
            f"{dataset.summary.ignored_percent}% of rows are ignored; check the skip settings"
        )

    return MappingPreview(
        header=dataset.header,
        detected_columns=dataset.header.labels,
        included_columns=dataset.labels,
        mapping=suggested,
        confidence=confidence,
        quality=mapping_quality(confidence, suggested),
        summary=dataset.summary,
        preview_rows=sample,
        missing_required=missing_fields(suggested, MappingPolicy.REQUIRED_FIELDS),
        missing_for_import=missing_fields(suggested, MappingPolicy.REQUIRED_WITH_IDENTIFIER),
        warnings=warnings,
    )


