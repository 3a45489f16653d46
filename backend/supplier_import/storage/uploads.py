"""Local staging area for supplier files awaiting import."""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from supplier_import.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()
UPLOADS_DIR = Path(settings.uploads_dir).resolve()
UPLOADS_DIR.mkdir(parents=True, exist_ok=True)


def staging_path(original_name: str | None = None, default_suffix: str = ".csv") -> Path:
    """Fresh absolute path inside the uploads directory."""
    suffix = Path(original_name or "").suffix or default_suffix
    return (UPLOADS_DIR / f"{uuid.uuid4()}{suffix}").resolve()


def save_upload(file_obj: BinaryIO, original_name: str | None = None) -> Path:
    """Persist an uploaded file to local disk and return the absolute path."""
    target_path = staging_path(original_name)
    file_obj.seek(0)
    with target_path.open("wb") as destination:
        shutil.copyfileobj(file_obj, destination)
    return target_path


def delete_upload(uri: str | Path) -> None:
    """Remove a staged file once its import is over."""
    path = Path(uri)
    if not path.is_absolute():
        path = path.resolve()
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not delete staged file {path}: {e}")
