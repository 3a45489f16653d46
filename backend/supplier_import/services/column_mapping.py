"""Map raw header labels onto canonical product fields.

A mapping is a dict ``{field: column_index | None}`` over every canonical
field. Whatever produces or edits it, one column index feeds at most one
field.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from supplier_import.core.errors import InvalidMappingError
from supplier_import.utils.cells import Row, cell_at, cell_text, is_blank, normalize_label

logger = logging.getLogger(__name__)

ColumnMapping = dict[str, int | None]
ConfidenceMap = dict[str, int]


class CanonicalField(str, Enum):
    PRODUCT_NAME = "product_name"
    PURCHASE_PRICE = "purchase_price"
    EAN = "ean"
    SUPPLIER_REFERENCE = "supplier_reference"
    STOCK_QUANTITY = "stock_quantity"
    DESCRIPTION = "description"
    BRAND = "brand"
    CATEGORY = "category"


FIELD_ORDER: tuple[str, ...] = tuple(f.value for f in CanonicalField)
REQUIRED_FIELDS: tuple[str, ...] = (
    CanonicalField.PRODUCT_NAME.value,
    CanonicalField.PURCHASE_PRICE.value,
)
IDENTIFIER_FIELDS: tuple[str, ...] = (
    CanonicalField.EAN.value,
    CanonicalField.SUPPLIER_REFERENCE.value,
)

FIELD_LABELS = {
    "product_name": "Product name",
    "purchase_price": "Purchase price",
    "ean": "EAN code",
    "supplier_reference": "Supplier reference",
    "stock_quantity": "Stock quantity",
    "description": "Description",
    "brand": "Brand",
    "category": "Category",
}

# Accent-free keywords; a label matches when it contains one of them.
FIELD_KEYWORDS: dict[str, tuple[str, ...]] = {
    "product_name": ("nom", "name", "libelle", "designation", "titre", "title"),
    "purchase_price": ("prix", "price", "cout", "cost", "tarif", "achat"),
    "ean": ("ean", "barcode", "gtin", "code barre", "code-barre", "upc"),
    "supplier_reference": ("ref", "sku", "code"),
    "stock_quantity": ("stock", "quantite", "quantity", "qte", "qty"),
    "description": ("desc", "detail"),
    "brand": ("marque", "brand", "fabricant", "manufacturer"),
    "category": ("categorie", "category", "famille", "gamme"),
}

# Labels a field must never claim even if a keyword matches.
FIELD_EXCLUSIONS: dict[str, tuple[str, ...]] = {
    "supplier_reference": ("ean", "barre", "gtin", "barcode"),
}

HEADER_EXACT_POINTS = 40
HEADER_PARTIAL_POINTS = 25
DATA_POINTS = 60
MIN_SUGGESTION_SCORE = 30

EAN_PATTERN = re.compile(r"^\d{13}$")


class MappingPolicy(str, Enum):
    """Which fields an import needs before it may start.

    Both policies are in use: the mapping wizard only insists on the two
    required fields, launching an import also needs an identifier.
    """

    REQUIRED_FIELDS = "required_fields"
    REQUIRED_WITH_IDENTIFIER = "required_with_identifier"


def empty_mapping() -> ColumnMapping:
    return {name: None for name in FIELD_ORDER}


def _match_strength(field_name: str, label: str) -> int:
    """0 for no match, 1 for a substring hit, 2 for a whole-word hit."""
    if not label:
        return 0
    if any(excluded in label for excluded in FIELD_EXCLUSIONS.get(field_name, ())):
        return 0
    words = set(re.split(r"[^a-z0-9]+", label))
    best = 0
    for keyword in FIELD_KEYWORDS[field_name]:
        if keyword not in label:
            continue
        if keyword in words or label == keyword:
            return 2
        best = 1
    return best


def normalize_mapping(raw: Mapping[str, Any] | None, column_count: int | None = None) -> ColumnMapping:
    """Coerce an external mapping (profile, request body) into a clean one.

    Unknown fields are dropped, indexes are coerced to ``int``, out-of-range
    indexes become ``None`` and duplicated columns keep their first field.
    """
    mapping = empty_mapping()
    if not raw:
        return mapping

    claimed: set[int] = set()
    for name in FIELD_ORDER:
        value = raw.get(name)
        if value is None or value == "":
            continue
        try:
            index = int(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric column index {value!r} for {name}")
            continue
        if index < 0 or (column_count is not None and index >= column_count):
            continue
        if index in claimed:
            logger.warning(f"Column {index} already mapped; clearing {name}")
            continue
        mapping[name] = index
        claimed.add(index)
    return mapping


def suggest_mapping(
    headers: Sequence[Any],
    existing: Mapping[str, Any] | None = None,
) -> ColumnMapping:
    """Fill unmapped fields from header keywords.

    Values already present in ``existing`` (a manual edit or a loaded
    profile) are kept and their columns are not offered to other fields.
    """
    mapping = normalize_mapping(existing, column_count=len(headers))
    claimed = {index for index in mapping.values() if index is not None}
    labels = [normalize_label(header) for header in headers]

    for name in FIELD_ORDER:
        if mapping[name] is not None:
            continue
        for index, label in enumerate(labels):
            if index in claimed:
                continue
            if _match_strength(name, label):
                mapping[name] = index
                claimed.add(index)
                break

    logger.info(f"Suggested mapping: {mapping}")
    return mapping


def apply_manual_edit(
    mapping: Mapping[str, Any],
    field_name: str,
    column_index: int | None,
) -> ColumnMapping:
    """Return a new mapping with ``field_name`` pointed at ``column_index``.

    Any other field already using that column is cleared.
    """
    if field_name not in FIELD_ORDER:
        raise ValueError(f"Unknown canonical field: {field_name}")

    updated = normalize_mapping(mapping)
    if column_index is None:
        updated[field_name] = None
        return updated

    column_index = int(column_index)
    if column_index < 0:
        raise ValueError(f"Column index must be >= 0, got {column_index}")

    for other in FIELD_ORDER:
        if other != field_name and updated[other] == column_index:
            updated[other] = None
    updated[field_name] = column_index
    return updated


def _parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = cell_text(value).strip().replace(" ", "").replace(",", ".")
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def is_valid_format(field_name: str, value: Any) -> bool:
    """Whether a sample value looks right for the field."""
    if is_blank(value):
        return False
    if field_name == "purchase_price":
        return _parse_number(value) is not None
    if field_name == "ean":
        return bool(EAN_PATTERN.match(cell_text(value).strip()))
    if field_name == "stock_quantity":
        number = _parse_number(value)
        return number is not None and number.is_integer()
    return True


def confidence_for(field_name: str, label: Any, values: Sequence[Any] = ()) -> int:
    """Score 0-100: header keyword certainty plus sample data agreement."""
    strength = _match_strength(field_name, normalize_label(label))
    score = {2: HEADER_EXACT_POINTS, 1: HEADER_PARTIAL_POINTS}.get(strength, 0)

    present = [value for value in values if not is_blank(value)]
    if not present:
        return score

    if field_name in ("purchase_price", "ean", "stock_quantity"):
        valid = sum(1 for value in present if is_valid_format(field_name, value))
        score += round(valid / len(present) * DATA_POINTS)
    else:
        score += round(len(present) / len(values) * DATA_POINTS)
    return min(100, score)


def column_values(rows: Iterable[Row], index: int) -> list[Any]:
    return [cell_at(row, index) for row in rows]


def score_mapping(
    mapping: Mapping[str, int | None],
    headers: Sequence[Any],
    sample_rows: Sequence[Row] = (),
) -> ConfidenceMap:
    """Per-field confidence for a mapping; unmapped fields score 0."""
    confidence: ConfidenceMap = {}
    for name in FIELD_ORDER:
        index = mapping.get(name)
        if index is None or index >= len(headers):
            confidence[name] = 0
            continue
        confidence[name] = confidence_for(name, headers[index], column_values(sample_rows, index))
    return confidence


def suggest_with_confidence(
    headers: Sequence[Any],
    sample_rows: Sequence[Row] = (),
    existing: Mapping[str, Any] | None = None,
) -> tuple[ColumnMapping, ConfidenceMap]:
    """Keyword suggestion plus scores.

    Auto-detected fields whose score stays under the minimum are dropped;
    fields coming from ``existing`` are never dropped.
    """
    kept = normalize_mapping(existing, column_count=len(headers))
    mapping = suggest_mapping(headers, existing=kept)
    confidence = score_mapping(mapping, headers, sample_rows)
    for name in FIELD_ORDER:
        auto_detected = kept[name] is None and mapping[name] is not None
        if auto_detected and confidence[name] < MIN_SUGGESTION_SCORE:
            mapping[name] = None
            confidence[name] = 0
    return mapping, confidence


def mapping_quality(confidence: Mapping[str, int], mapping: Mapping[str, int | None] | None = None) -> float:
    """Arithmetic mean of per-field scores, over mapped fields when a mapping is given."""
    if mapping is not None:
        scores = [confidence.get(name, 0) for name, index in mapping.items() if index is not None]
    else:
        scores = list(confidence.values())
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 1)


def missing_fields(mapping: Mapping[str, Any], policy: MappingPolicy) -> list[str]:
    """Fields (or the identifier pair) the policy still needs."""
    missing = [name for name in REQUIRED_FIELDS if mapping.get(name) is None]
    if policy is MappingPolicy.REQUIRED_WITH_IDENTIFIER:
        if all(mapping.get(name) is None for name in IDENTIFIER_FIELDS):
            missing.append(" or ".join(IDENTIFIER_FIELDS))
    return missing


def is_mapping_valid(mapping: Mapping[str, Any], policy: MappingPolicy) -> bool:
    return not missing_fields(mapping, policy)


def ensure_mapping_valid(mapping: Mapping[str, Any], policy: MappingPolicy) -> None:
    missing = missing_fields(mapping, policy)
    if missing:
        raise InvalidMappingError(missing, policy.value)
