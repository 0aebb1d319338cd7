"""
Audit run lifecycle: create, read, update, lock, delete.

A run in LOCKED status is frozen: every mutation of the run or of its
children is rejected with RunLocked.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.errors import Forbidden, NotFound, RunLocked, ValidationFailed
from app.core.security import Identity
from app.db.models import (
    ActivityType, AuditControl, AuditEvidenceLink, AuditFinding, AuditRun,
    AuditRunActivity, AuditRunStatus, AuditType, Task,
)
from app.services import permissions
from app.services.activity import list_activity, record_activity, snapshot
from app.services.audit_controls import assign_controls, get_run_in_organization
from app.services.queries import AuditRunQuery

logger = logging.getLogger(__name__)

# Columns a client may change through update_audit_run
UPDATABLE_FIELDS = (
    "name",
    "description",
    "scope",
    "framework_id",
    "audit_type",
    "status",
    "start_date",
    "end_date",
    "external_auditor_info",
)

# Columns that may be changed but never cleared
REQUIRED_FIELDS = ("name", "status", "audit_type", "start_date", "end_date")


@dataclass
class AuditRunDetail:
    """A run with its children, as returned by get_audit_run"""

    audit_run: AuditRun
    recent_activity: list[AuditRunActivity]
    counts: dict[str, int] = field(default_factory=dict)


async def create_audit_run(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    name: str,
    start_date: datetime,
    end_date: datetime,
    description: Optional[str] = None,
    framework_id: Optional[uuid.UUID] = None,
    scope: Optional[str] = None,
    audit_type: Optional[AuditType] = None,
    status: Optional[AuditRunStatus] = None,
    external_auditor_info: Optional[dict] = None,
    control_ids: Optional[Sequence[uuid.UUID]] = None,
    reviewer_assignments: Optional[Mapping[uuid.UUID, uuid.UUID]] = None,
    approver_assignments: Optional[Mapping[uuid.UUID, uuid.UUID]] = None,
) -> tuple[AuditRun, AuditRunActivity]:
    """Create a run, optionally attaching controls, and log CREATED"""
    if not name or start_date is None or end_date is None:
        raise ValidationFailed("Organization ID, name, start date, and end date are required")
    if end_date < start_date:
        raise ValidationFailed("End date must not be before start date")
    if status == AuditRunStatus.LOCKED:
        # Locking is a separate step once the run has its children
        raise ValidationFailed("Audit runs cannot be created locked")

    await permissions.require_permission(db, identity, organization_id)

    audit_run = AuditRun(
        organization_id=organization_id,
        name=name,
        description=description,
        framework_id=framework_id,
        scope=scope,
        created_by=identity.user_id,
        start_date=start_date,
        end_date=end_date,
        audit_type=audit_type or AuditType.INTERNAL,
        status=status or AuditRunStatus.DRAFT,
        external_auditor_info=external_auditor_info,
    )
    db.add(audit_run)
    await db.flush()  # Flush to get the run ID

    if control_ids:
        await assign_controls(
            db, identity, audit_run, control_ids, reviewer_assignments, approver_assignments
        )

    activity = await record_activity(
        db,
        audit_run_id=audit_run.id,
        activity_type=ActivityType.CREATED,
        performed_by=identity.user_id,
        target_entity="audit_run",
        new_value={"name": name, "status": audit_run.status},
    )
    await db.flush()
    logger.info(f"Created audit run {audit_run.id} in organization {organization_id}")
    return audit_run, activity


async def list_audit_runs(
    db: AsyncSession,
    identity: Identity,
    query: AuditRunQuery,
) -> tuple[list[tuple[AuditRun, dict[str, int]]], int]:
    """Page of runs with per-run child counts"""
    await permissions.require_permission(db, identity, query.organization_id)

    where = query.conditions()
    total = await db.scalar(select(func.count()).select_from(AuditRun).where(*where))
    result = await db.execute(
        select(AuditRun)
        .options(selectinload(AuditRun.framework))
        .where(*where)
        .order_by(*query.order_by())
        .offset(query.offset)
        .limit(query.limit)
    )
    runs = list(result.scalars().all())

    counts = await _child_counts(db, [audit_run.id for audit_run in runs])
    return [(audit_run, counts[audit_run.id]) for audit_run in runs], total or 0


async def _child_counts(db: AsyncSession, audit_run_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, dict[str, int]]:
    """
    Child row counts per run, one grouped query per child table
    (avoids a count query per run when listing).
    """
    counts = {
        run_id: {"auditControls": 0, "auditFindings": 0, "tasks": 0, "auditEvidenceLinks": 0}
        for run_id in audit_run_ids
    }
    if not counts:
        return counts

    for key, model in (
        ("auditControls", AuditControl),
        ("auditFindings", AuditFinding),
        ("tasks", Task),
        ("auditEvidenceLinks", AuditEvidenceLink),
    ):
        result = await db.execute(
            select(model.audit_run_id, func.count())
            .where(model.audit_run_id.in_(list(counts)))
            .group_by(model.audit_run_id)
        )
        for run_id, count in result.all():
            counts[run_id][key] = count
    return counts


async def get_audit_run(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
) -> AuditRunDetail:
    """Run with controls, findings, tasks and the most recent activity"""
    await permissions.require_permission(db, identity, organization_id)

    result = await db.execute(
        select(AuditRun)
        .options(
            selectinload(AuditRun.framework),
            selectinload(AuditRun.audit_controls).selectinload(AuditControl.control),
            selectinload(AuditRun.audit_controls).selectinload(AuditControl.findings),
            selectinload(AuditRun.findings).selectinload(AuditFinding.control),
            selectinload(AuditRun.tasks),
        )
        .where(
            AuditRun.id == audit_run_id,
            AuditRun.organization_id == organization_id,
        )
        .execution_options(populate_existing=True)
    )
    audit_run = result.scalar_one_or_none()
    if audit_run is None:
        raise NotFound("Audit run not found")

    recent, _ = await list_activity(db, audit_run.id)
    counts = await _child_counts(db, [audit_run.id])
    return AuditRunDetail(
        audit_run=audit_run,
        recent_activity=recent,
        counts=counts[audit_run.id],
    )


async def update_audit_run(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
    changes: Mapping[str, Any],
) -> tuple[AuditRun, AuditRunActivity]:
    """
    Write the supplied fields and log UPDATED with full before/after
    snapshots. Unknown keys are rejected.
    """
    if not await permissions.can_modify_audit_run(db, identity, organization_id, audit_run_id):
        raise Forbidden("Cannot modify this audit run")

    audit_run = await get_run_in_organization(db, organization_id, audit_run_id)
    if audit_run.is_locked:
        raise RunLocked()

    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationFailed(f"Unknown fields: {', '.join(sorted(unknown))}")
    for name in REQUIRED_FIELDS:
        if name in changes and changes[name] in (None, ""):
            raise ValidationFailed(f"{name} must not be empty")

    start_date = changes.get("start_date", audit_run.start_date)
    end_date = changes.get("end_date", audit_run.end_date)
    if end_date < start_date:
        raise ValidationFailed("End date must not be before start date")

    before = snapshot(audit_run)
    for name, value in changes.items():
        setattr(audit_run, name, value)

    now = datetime.utcnow()
    if audit_run.status == AuditRunStatus.LOCKED and audit_run.locked_at is None:
        audit_run.locked_at = now
    audit_run.updated_at = now
    await db.flush()

    activity = await record_activity(
        db,
        audit_run_id=audit_run.id,
        activity_type=ActivityType.UPDATED,
        performed_by=identity.user_id,
        target_entity="audit_run",
        old_value=before,
        new_value=snapshot(audit_run),
    )
    await db.flush()
    return audit_run, activity


async def lock_audit_run(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
) -> tuple[AuditRun, AuditRunActivity]:
    """Move a run to LOCKED; nothing under it can change afterwards"""
    if not await permissions.can_modify_audit_run(db, identity, organization_id, audit_run_id):
        raise Forbidden("Cannot lock this audit run")

    audit_run = await get_run_in_organization(db, organization_id, audit_run_id)
    if audit_run.is_locked:
        raise RunLocked("Audit run is already locked")

    old_status = audit_run.status
    now = datetime.utcnow()
    audit_run.status = AuditRunStatus.LOCKED
    audit_run.locked_at = now
    audit_run.updated_at = now

    activity = await record_activity(
        db,
        audit_run_id=audit_run.id,
        activity_type=ActivityType.AUDIT_LOCKED,
        performed_by=identity.user_id,
        target_entity="audit_run",
        old_value={"status": old_status},
        new_value={"status": AuditRunStatus.LOCKED, "lockedAt": now},
    )
    await db.flush()
    logger.info(f"Locked audit run {audit_run.id}")
    return audit_run, activity


async def delete_audit_run(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
) -> None:
    """Delete an unlocked run; the database cascade removes its children"""
    await permissions.require_permission(db, identity, organization_id)

    if not await permissions.can_modify_audit_run(db, identity, organization_id, audit_run_id):
        raise Forbidden("Cannot delete this audit run")

    audit_run = await get_run_in_organization(db, organization_id, audit_run_id)
    if audit_run.is_locked:
        raise RunLocked("Cannot delete locked audit run")

    await db.delete(audit_run)
    await db.flush()
    logger.info(f"Deleted audit run {audit_run_id} by {identity.user_id}")


async def get_activity_page(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
    page: int = 1,
    limit: Optional[int] = None,
) -> tuple[list[AuditRunActivity], int]:
    await permissions.require_permission(db, identity, organization_id)
    await get_run_in_organization(db, organization_id, audit_run_id)
    return await list_activity(db, audit_run_id, page=page, limit=limit)
