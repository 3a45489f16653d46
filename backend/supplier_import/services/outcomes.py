"""Classify finished imports, including the zero-product outcomes."""

from __future__ import annotations

from enum import Enum

from supplier_import.core.config import get_settings


class ImportOutcome(str, Enum):
    SUCCESS = "success"
    NO_PRODUCTS_INVALID_MAPPING = "no-products-invalid-mapping"
    NO_PRODUCTS_OTHER = "no-products-other"
    FAILED = "failed"


REMEDIATION_MESSAGES = {
    ImportOutcome.SUCCESS: "Import finished.",
    ImportOutcome.NO_PRODUCTS_INVALID_MAPPING: (
        "No product was imported: almost every row was skipped. The column "
        "mapping is probably wrong; check the product name, price and EAN or "
        "reference columns, then run the import again."
    ),
    ImportOutcome.NO_PRODUCTS_OTHER: (
        "No product was imported although rows were read. Check the file "
        "itself: empty identifiers, prices that are not numbers, or a layout "
        "different from the saved profile."
    ),
    ImportOutcome.FAILED: "The import stopped because of an error.",
}


def classify_outcome(
    status: str,
    processed: int,
    success: int,
    skipped: int,
    skip_ratio_threshold: float | None = None,
) -> ImportOutcome | None:
    """Outcome category of a terminal job; ``None`` while it is still running."""
    if status == "failed":
        return ImportOutcome.FAILED
    if status != "completed":
        return None
    if success > 0:
        return ImportOutcome.SUCCESS

    threshold = (
        skip_ratio_threshold
        if skip_ratio_threshold is not None
        else get_settings().invalid_mapping_skip_ratio
    )
    if processed > 0 and skipped / processed >= threshold:
        return ImportOutcome.NO_PRODUCTS_INVALID_MAPPING
    return ImportOutcome.NO_PRODUCTS_OTHER


def is_degenerate(outcome: ImportOutcome | None) -> bool:
    return outcome in (ImportOutcome.NO_PRODUCTS_INVALID_MAPPING, ImportOutcome.NO_PRODUCTS_OTHER)


def remediation_message(outcome: ImportOutcome | None) -> str | None:
    if outcome is None:
        return None
    return REMEDIATION_MESSAGES[outcome]
