"""
Work items spawned by the audit workflow.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.errors import NotFound, RunLocked, ValidationFailed
from app.core.security import Identity
from app.db.models import ActivityType, AuditRunActivity, Task, TaskStatus
from app.services import permissions
from app.services.activity import record_activity, snapshot
from app.services.queries import TaskQuery

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("status", "priority", "assignee_id", "due_date", "comments")


async def list_tasks(
    db: AsyncSession,
    identity: Identity,
    query: TaskQuery,
) -> tuple[list[Task], int]:
    await permissions.require_permission(db, identity, query.organization_id)

    now = datetime.utcnow()
    where = query.conditions(now=now)
    total = await db.scalar(select(func.count()).select_from(Task).where(*where))
    result = await db.execute(
        select(Task)
        .where(*where)
        .order_by(*query.order_by())
        .offset(query.offset)
        .limit(query.limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all()), total or 0


async def update_task(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    task_id: uuid.UUID,
    changes: Mapping[str, Any],
) -> tuple[Task, Optional[AuditRunActivity]]:
    """
    Update a task. Tasks under a locked run are frozen like the run itself.
    Completing a task stamps completed_by / completed_at.
    """
    await permissions.require_permission(db, identity, organization_id)

    result = await db.execute(
        select(Task)
        .options(selectinload(Task.audit_run))
        .execution_options(populate_existing=True)
        .where(Task.id == task_id, Task.organization_id == organization_id)
    )
    task = result.scalar_one_or_none()
    if task is None:
        raise NotFound("Task not found")
    if task.audit_run is not None and task.audit_run.is_locked:
        raise RunLocked()

    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationFailed(f"Unknown fields: {', '.join(sorted(unknown))}")
    for required in ("status", "priority"):
        if required in changes and not changes[required]:
            raise ValidationFailed(f"{required} must not be empty")

    before = snapshot(task, changes.keys())
    for name, value in changes.items():
        setattr(task, name, value)

    now = datetime.utcnow()
    if "status" in changes:
        if task.status == TaskStatus.COMPLETED and before["status"] != TaskStatus.COMPLETED:
            task.completed_by = identity.user_id
            task.completed_at = now
        elif task.status != TaskStatus.COMPLETED:
            task.completed_by = None
            task.completed_at = None
    task.updated_at = now

    activity = None
    if task.audit_run_id is not None:
        activity = await record_activity(
            db,
            audit_run_id=task.audit_run_id,
            activity_type=ActivityType.TASK_UPDATED,
            performed_by=identity.user_id,
            target_entity="task",
            old_value={"id": task.id, **before},
            new_value={"id": task.id, **snapshot(task, changes.keys())},
        )
    await db.flush()
    logger.info(f"Task {task.id} updated by {identity.user_id}")
    return task, activity
