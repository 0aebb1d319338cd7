"""
Append-only activity log for audit runs.
"""
import json
import logging
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.models import ActivityType, AuditRunActivity

logger = logging.getLogger(__name__)


def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dump_value(value: Any) -> Optional[str]:
    """Serialize an old/new value for storage; None stays None"""
    if value is None:
        return None
    return json.dumps(value, default=_json_default, sort_keys=True)


def load_value(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        # Legacy rows may carry plain text
        return raw


def snapshot(entity: Any, fields: Optional[Iterable[str]] = None) -> dict:
    """
    Column values of an ORM object as a plain dict.

    With fields=None every mapped column is included.
    """
    if fields is None:
        fields = [column.key for column in entity.__table__.columns]
    return {name: getattr(entity, name) for name in fields}


async def record_activity(
    db: AsyncSession,
    audit_run_id: uuid.UUID,
    activity_type: ActivityType,
    performed_by: uuid.UUID,
    target_entity: str,
    old_value: Any = None,
    new_value: Any = None,
) -> AuditRunActivity:
    """Stage one activity row; the caller commits it with the change it describes"""
    activity = AuditRunActivity(
        audit_run_id=audit_run_id,
        activity_type=activity_type,
        performed_by=performed_by,
        target_entity=target_entity,
        old_value=dump_value(old_value),
        new_value=dump_value(new_value),
        timestamp=datetime.utcnow(),
    )
    db.add(activity)
    logger.info(f"Audit run {audit_run_id}: {activity_type.value} on {target_entity} by {performed_by}")
    return activity


async def list_activity(
    db: AsyncSession,
    audit_run_id: uuid.UUID,
    page: int = 1,
    limit: int | None = None,
) -> tuple[list[AuditRunActivity], int]:
    """Most recent first; limit is capped at ACTIVITY_PAGE_CAP"""
    cap = settings.ACTIVITY_PAGE_CAP
    limit = min(limit or cap, cap)
    page = max(page, 1)

    total = await db.scalar(
        select(func.count()).select_from(AuditRunActivity).where(AuditRunActivity.audit_run_id == audit_run_id)
    )
    result = await db.execute(
        select(AuditRunActivity)
        .where(AuditRunActivity.audit_run_id == audit_run_id)
        .order_by(AuditRunActivity.timestamp.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total or 0
