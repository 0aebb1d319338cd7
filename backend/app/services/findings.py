"""
Audit findings and the remediation tasks they spawn.
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
from app.db.models import (
    ActivityType, AuditControl, AuditFinding, AuditPhase, AuditRun, AuditRunActivity, Control,
    FindingSeverity, FindingStatus, OrganizationUser, Task, TaskPriority, TaskStatus, TaskType,
)
from app.services import permissions
from app.services.activity import record_activity, snapshot
from app.services.audit_controls import get_run_in_organization
from app.services.queries import FindingQuery

logger = logging.getLogger(__name__)

# Remediation task priority by finding severity
SEVERITY_TO_PRIORITY = {
    FindingSeverity.CRITICAL: TaskPriority.HIGH,
    FindingSeverity.HIGH: TaskPriority.HIGH,
    FindingSeverity.MEDIUM: TaskPriority.MEDIUM,
    FindingSeverity.LOW: TaskPriority.MEDIUM,
}

UPDATABLE_FIELDS = (
    "severity",
    "title",
    "description",
    "remediation_plan",
    "status",
    "owner_id",
    "due_date",
    "control_id",
    "audit_control_id",
)


def remediation_priority(severity: FindingSeverity) -> TaskPriority:
    return SEVERITY_TO_PRIORITY.get(severity, TaskPriority.MEDIUM)


async def _resolve_control(
    db: AsyncSession,
    audit_run: AuditRun,
    audit_control_id: Optional[uuid.UUID],
    control_id: Optional[uuid.UUID],
) -> Optional[uuid.UUID]:
    """
    The audit control must belong to the run and the control to the run's
    organization. Returns the control id, filled in from the audit control
    when the caller left it out.
    """
    if audit_control_id is not None:
        audit_control = await db.scalar(
            select(AuditControl).where(
                AuditControl.id == audit_control_id,
                AuditControl.audit_run_id == audit_run.id,
            )
        )
        if audit_control is None:
            raise NotFound("Audit control not found")
        if control_id is not None and control_id != audit_control.control_id:
            raise ValidationFailed("Control does not match the audit control")
        return audit_control.control_id

    if control_id is not None:
        found = await db.scalar(
            select(Control.id).where(
                Control.id == control_id,
                Control.organization_id == audit_run.organization_id,
            )
        )
        if found is None:
            raise NotFound(f"Control not found or access denied: {control_id}")
    return control_id


async def _check_owner(db: AsyncSession, organization_id: uuid.UUID, owner_id: Optional[uuid.UUID]) -> None:
    """Owners must be members of the organization that owns the run"""
    if owner_id is None:
        return
    membership = await db.scalar(
        select(OrganizationUser.id).where(
            OrganizationUser.organization_id == organization_id,
            OrganizationUser.user_id == owner_id,
        )
    )
    if membership is None:
        raise NotFound("Owner not found in organization")


async def create_finding(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
    severity: FindingSeverity,
    title: str,
    description: str,
    control_id: Optional[uuid.UUID] = None,
    audit_control_id: Optional[uuid.UUID] = None,
    remediation_plan: Optional[str] = None,
    owner_id: Optional[uuid.UUID] = None,
    due_date: Optional[datetime] = None,
) -> tuple[AuditFinding, Optional[Task], AuditRunActivity]:
    """
    Record an OPEN finding. When an owner is given, one GAP_REMEDIATION
    task is created for them with a priority derived from the severity.
    """
    if not audit_run_id or not severity or not title or not description:
        raise ValidationFailed(
            "Organization ID, audit run ID, severity, title, and description are required"
        )

    await permissions.require_permission(db, identity, organization_id)

    audit_run = await get_run_in_organization(db, organization_id, audit_run_id)
    if audit_run.is_locked:
        raise RunLocked()

    control_id = await _resolve_control(db, audit_run, audit_control_id, control_id)
    await _check_owner(db, organization_id, owner_id)

    finding = AuditFinding(
        audit_run_id=audit_run.id,
        control_id=control_id,
        audit_control_id=audit_control_id,
        severity=severity,
        title=title,
        description=description,
        remediation_plan=remediation_plan,
        owner_id=owner_id,
        due_date=due_date,
        status=FindingStatus.OPEN,
    )
    db.add(finding)
    await db.flush()

    task = None
    if owner_id:
        task = Task(
            organization_id=organization_id,
            audit_run_id=audit_run.id,
            control_id=control_id,
            type=TaskType.GAP_REMEDIATION,
            audit_phase=AuditPhase.REMEDIATION,
            assignee_id=owner_id,
            status=TaskStatus.OPEN,
            priority=remediation_priority(severity),
            comments=f"Remediate finding: {title}",
            due_date=due_date,
            created_by=identity.user_id,
        )
        db.add(task)

    activity = await record_activity(
        db,
        audit_run_id=audit_run.id,
        activity_type=ActivityType.FINDING_CREATED,
        performed_by=identity.user_id,
        target_entity="audit_finding",
        new_value={
            "id": finding.id,
            "title": title,
            "severity": severity,
            "status": FindingStatus.OPEN,
        },
    )
    await db.flush()
    return finding, task, activity


async def list_findings(
    db: AsyncSession,
    identity: Identity,
    query: FindingQuery,
) -> tuple[list[AuditFinding], int]:
    await permissions.require_permission(db, identity, query.organization_id)

    where = query.conditions()
    total = await db.scalar(
        select(func.count())
        .select_from(AuditFinding)
        .join(AuditRun, AuditFinding.audit_run_id == AuditRun.id)
        .where(*where)
    )
    result = await db.execute(
        select(AuditFinding)
        .join(AuditRun, AuditFinding.audit_run_id == AuditRun.id)
        .options(
            selectinload(AuditFinding.audit_run),
            selectinload(AuditFinding.control),
            selectinload(AuditFinding.audit_control),
        )
        .execution_options(populate_existing=True)
        .where(*where)
        .order_by(*query.order_by())
        .offset(query.offset)
        .limit(query.limit)
    )
    return list(result.scalars().all()), total or 0


async def update_finding(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    finding_id: uuid.UUID,
    changes: Mapping[str, Any],
) -> tuple[AuditFinding, AuditRunActivity]:
    """Write any supplied fields; status moves freely between values"""
    await permissions.require_permission(db, identity, organization_id)

    result = await db.execute(
        select(AuditFinding)
        .join(AuditRun, AuditFinding.audit_run_id == AuditRun.id)
        .options(selectinload(AuditFinding.audit_run))
        .execution_options(populate_existing=True)
        .where(
            AuditFinding.id == finding_id,
            AuditRun.organization_id == organization_id,
        )
    )
    finding = result.scalar_one_or_none()
    if finding is None:
        raise NotFound("Audit finding not found")
    if finding.audit_run.is_locked:
        raise RunLocked()

    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationFailed(f"Unknown fields: {', '.join(sorted(unknown))}")
    for required in ("severity", "title", "description", "status"):
        if required in changes and not changes[required]:
            raise ValidationFailed(f"{required} must not be empty")

    changes = dict(changes)
    if "audit_control_id" in changes or "control_id" in changes:
        audit_control_id = changes.get("audit_control_id", finding.audit_control_id)
        if "control_id" in changes:
            control_id = changes["control_id"]
        else:
            # A new audit control brings its own control
            control_id = None if audit_control_id else finding.control_id
        changes["control_id"] = await _resolve_control(db, finding.audit_run, audit_control_id, control_id)
    if "owner_id" in changes:
        await _check_owner(db, organization_id, changes["owner_id"])

    before = snapshot(finding, changes.keys())
    for name, value in changes.items():
        setattr(finding, name, value)
    finding.updated_at = datetime.utcnow()

    activity = await record_activity(
        db,
        audit_run_id=finding.audit_run_id,
        activity_type=ActivityType.FINDING_UPDATED,
        performed_by=identity.user_id,
        target_entity="audit_finding",
        old_value={"id": finding.id, **before},
        new_value={"id": finding.id, **snapshot(finding, changes.keys())},
    )
    await db.flush()
    return finding, activity
