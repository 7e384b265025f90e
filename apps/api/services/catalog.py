"""Operation catalog lookups (credit cost per operation type)."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.operation_catalog import CatalogOperation
from services.errors import UnknownOperation

logger = logging.getLogger(__name__)


def _display_name(operation_type: str) -> str:
    return operation_type.replace("_", " ").title()


async def get_enabled_operation(operation_type: str, db: AsyncSession) -> CatalogOperation:
    """Return the enabled catalog entry for ``operation_type`` or raise ``UnknownOperation``."""
    result = await db.execute(
        select(CatalogOperation).where(
            CatalogOperation.operation_type == operation_type,
            CatalogOperation.enabled.is_(True),
        )
    )
    item = result.scalar_one_or_none()
    if item is None or int(item.credit_cost) <= 0:
        raise UnknownOperation(
            f"Operation '{operation_type}' is not available.",
            operation_type=operation_type,
        )
    return item


async def list_catalog(db: AsyncSession, *, enabled_only: bool = False) -> List[CatalogOperation]:
    stmt = select(CatalogOperation).order_by(CatalogOperation.operation_type.asc())
    if enabled_only:
        stmt = stmt.where(CatalogOperation.enabled.is_(True))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def seed_default_catalog(db: AsyncSession, costs: Optional[Dict[str, int]] = None) -> int:
    """Insert configured operation types that are missing from the catalog.

    Existing rows are left alone so cost/enabled edits made in the database
    survive restarts.
    """
    configured = costs if costs is not None else settings.DEFAULT_OPERATION_COSTS
    result = await db.execute(select(CatalogOperation.operation_type))
    existing = set(result.scalars().all())
    created = 0
    for operation_type, credit_cost in configured.items():
        if operation_type in existing:
            continue
        db.add(
            CatalogOperation(
                operation_type=operation_type,
                name=_display_name(operation_type),
                credit_cost=max(int(credit_cost), 1),
                enabled=True,
            )
        )
        created += 1
    if created:
        await db.commit()
        logger.info("Seeded %d operation catalog entries", created)
    return created
