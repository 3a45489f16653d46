"""Load and save supplier mapping profiles."""

from __future__ import annotations

import logging
from typing import Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from supplier_import.db.models.mapping_profile import MappingProfile
from supplier_import.services.column_mapping import normalize_mapping
from supplier_import.services.row_filter import FilterConfig

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_NAME = "Default"


def get_default_profile(db: Session, supplier_id: str) -> MappingProfile | None:
    """Return the supplier's default profile, if any."""
    return db.scalar(
        select(MappingProfile)
        .where(MappingProfile.supplier_id == supplier_id, MappingProfile.is_default.is_(True))
        .order_by(MappingProfile.id.desc())
        .limit(1)
    )


def save_default_profile(
    db: Session,
    supplier_id: str,
    column_mapping: Mapping[str, int | None],
    filter_config: FilterConfig,
    *,
    owner_id: str | None = None,
    profile_name: str | None = None,
    source_type: str = "file",
) -> MappingProfile:
    """Upsert the supplier's default profile.

    Any other profile still flagged default for the supplier is demoted, so
    exactly one default remains.
    """
    mapping = normalize_mapping(column_mapping)
    try:
        existing = get_default_profile(db, supplier_id)
        if existing:
            existing.column_mapping = mapping
            existing.skip_config = filter_config.skip_config()
            existing.excluded_columns = list(filter_config.excluded_columns)
            existing.source_type = source_type
            if profile_name:
                existing.profile_name = profile_name
            if owner_id:
                existing.owner_id = owner_id
            profile = existing
            logger.info(f"Updated default mapping profile for supplier={supplier_id}")
        else:
            profile = MappingProfile(
                owner_id=owner_id,
                supplier_id=supplier_id,
                profile_name=profile_name or DEFAULT_PROFILE_NAME,
                source_type=source_type,
                skip_config=filter_config.skip_config(),
                excluded_columns=list(filter_config.excluded_columns),
                column_mapping=mapping,
                is_default=True,
            )
            db.add(profile)
            logger.info(f"Created default mapping profile for supplier={supplier_id}")

        db.flush()
        db.execute(
            update(MappingProfile)
            .where(
                MappingProfile.supplier_id == supplier_id,
                MappingProfile.is_default.is_(True),
                MappingProfile.id != profile.id,
            )
            .values(is_default=False)
        )
        db.commit()
        db.refresh(profile)
        return profile
    except IntegrityError:
        db.rollback()
        logger.error(f"Integrity error saving profile for supplier={supplier_id}", exc_info=True)
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error saving profile for supplier={supplier_id}: {e}", exc_info=True)
        raise


def profile_filter_config(profile: MappingProfile | None) -> FilterConfig:
    if profile is None:
        return FilterConfig()
    return FilterConfig.from_profile(profile.skip_config, profile.excluded_columns)
