"""Filtered supplier rows staged on disk between the API and the workers."""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from supplier_import.storage.uploads import staging_path
from supplier_import.utils.cells import cell_text

logger = logging.getLogger(__name__)

STAGED_DELIMITER = ";"


def write_staged_rows(labels: Sequence[str], rows: Iterable[Sequence[Any]]) -> Path:
    """Write the included labels and the projected rows to a new CSV file.

    Column positions in the file match the mapping indexes, so workers can
    apply the mapping without knowing the original sheet layout.
    """
    path = staging_path(default_suffix=".csv")
    count = 0
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, delimiter=STAGED_DELIMITER)
        writer.writerow(labels)
        for row in rows:
            writer.writerow([cell_text(cell) for cell in row])
            count += 1
    logger.info(f"Staged {count} rows to {path}")
    return path


def _reader(handle) -> Iterator[list[str]]:
    """Every staged row, blank ones included; the job total counts them all."""
    reader = csv.reader(handle, delimiter=STAGED_DELIMITER)
    next(reader, None)
    yield from reader


def iter_staged_chunks(file_path: Path, chunk_size: int) -> Iterator[list[list[str]]]:
    """Yield data rows (header excluded) in batches of ``chunk_size``."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    try:
        with Path(file_path).open("r", encoding="utf-8", newline="") as handle:
            batch: list[list[str]] = []
            for row in _reader(handle):
                batch.append(row)
                if len(batch) >= chunk_size:
                    yield batch
                    batch = []
            if batch:
                yield batch
    except FileNotFoundError:
        raise ValueError(f"Staged file not found: {file_path}")
    except csv.Error as e:
        raise ValueError(f"Staged file is not valid CSV: {e}") from e


def read_staged_rows(file_path: Path) -> list[list[str]]:
    return [row for chunk in iter_staged_chunks(file_path, 1000) for row in chunk]


def count_rows(file_path: Path) -> int:
    """Number of data rows in a staged file (header excluded)."""
    try:
        with Path(file_path).open("r", encoding="utf-8", newline="") as handle:
            return sum(1 for _ in _reader(handle))
    except FileNotFoundError:
        raise ValueError(f"Staged file not found: {file_path}")
    except csv.Error as e:
        raise ValueError(f"Staged file is not valid CSV: {e}") from e
