"""Lightweight helper for recording activity log entries.

Usage:
    await log_activity(
        db, actor, action="created", entity_type="blend",
        entity_id=blend.id, entity_code=blend.lot_number,
        summary="Created blend HG-2510-MFI-07003 (30 bags)",
    )

The row is written inside a SAVEPOINT and committed with the enclosing
transaction.  A failed log write is logged and dropped; it never undoes the
action it describes.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


async def log_activity(
    db: AsyncSession,
    actor: str,
    *,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    entity_code: str | None = None,
    summary: str | None = None,
    details: dict | None = None,
) -> None:
    """Append an activity log entry to the current DB session."""
    entry = ActivityLog(
        actor=actor or "system",
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_code=entity_code,
        summary=summary,
        details=details,
    )
    try:
        async with db.begin_nested():
            db.add(entry)
    except SQLAlchemyError:
        logger.exception(
            "Failed to record activity %s on %s %s", action, entity_type, entity_id
        )
