"""
Task routes (evidence collection, remediation, review)
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.schemas.audit import TaskResponse, TaskUpdate
from app.api.validation import get_broadcaster, require_organization_id
from app.api.routes.auth import verify_session
from app.core.security import Identity
from app.db import get_db
from app.db.models import TaskPriority, TaskStatus, TaskType
from app.services import tasks
from app.services.broadcast import ActivityBroadcaster
from app.services.queries import TaskQuery

router = APIRouter()


@router.get("")
async def list_tasks(
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    audit_run_id: Optional[uuid.UUID] = Query(None, alias="auditRunId"),
    status: Optional[TaskStatus] = Query(None),
    priority: Optional[TaskPriority] = Query(None),
    task_type: Optional[TaskType] = Query(None, alias="type"),
    assignee_id: Optional[uuid.UUID] = Query(None, alias="assigneeId"),
    control_id: Optional[uuid.UUID] = Query(None, alias="controlId"),
    search: Optional[str] = Query(None),
    overdue: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
):
    """Tasks by priority, then nearest due date"""
    query = TaskQuery(
        organization_id=require_organization_id(organization_id),
        audit_run_id=audit_run_id,
        status=status,
        priority=priority,
        type=task_type,
        assignee_id=assignee_id,
        control_id=control_id,
        search=search,
        overdue=overdue,
        page=page,
        limit=limit,
    )
    rows, total = await tasks.list_tasks(db, identity, query)
    return {
        "tasks": [TaskResponse.from_model(t) for t in rows],
        "pagination": query.pagination(total),
    }


@router.patch("/{task_id}")
async def update_task(
    task_id: uuid.UUID,
    data: TaskUpdate,
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    organization_id = require_organization_id(data.organizationId)
    task, activity = await tasks.update_task(db, identity, organization_id, task_id, data.to_changes())
    await db.commit()
    broadcaster.publish_activity(organization_id, activity)

    return {"task": TaskResponse.from_model(task), "message": "Task updated successfully"}
