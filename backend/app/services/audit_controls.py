"""
Attaching controls to audit runs, and the review/approval flow on them.
"""
import logging
import uuid
from datetime import datetime
from typing import Mapping, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.errors import Forbidden, NotFound, RunLocked, ValidationFailed
from app.core.security import Identity
from app.db.models import (
    ActivityType, AuditControl, AuditEvidenceLink, AuditPhase, AuditRun,
    AuditRunActivity, Control, ControlStatus, Task, TaskPriority, TaskStatus, TaskType,
)
from app.services import permissions
from app.services.activity import record_activity
from app.services.queries import AuditControlQuery

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = ("approve", "reject")


def _lookup(assignments: Optional[Mapping[uuid.UUID, uuid.UUID]], control_id: uuid.UUID) -> Optional[uuid.UUID]:
    if not assignments:
        return None
    return assignments.get(control_id)


async def get_run_in_organization(
    db: AsyncSession,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
) -> AuditRun:
    """Runs of other organizations are reported as missing"""
    result = await db.execute(
        select(AuditRun).where(
            AuditRun.id == audit_run_id,
            AuditRun.organization_id == organization_id,
        )
        .execution_options(populate_existing=True)
    )
    audit_run = result.scalar_one_or_none()
    if audit_run is None:
        raise NotFound("Audit run not found")
    return audit_run


async def assign_controls(
    db: AsyncSession,
    identity: Identity,
    audit_run: AuditRun,
    control_ids: Sequence[uuid.UUID],
    reviewer_assignments: Optional[Mapping[uuid.UUID, uuid.UUID]] = None,
    approver_assignments: Optional[Mapping[uuid.UUID, uuid.UUID]] = None,
) -> list[AuditControl]:
    """
    Stage AuditControl rows plus one evidence-collection Task each.

    Pairs already attached to the run, and repeats inside the batch, are
    skipped. Returns only the newly created audit controls.
    """
    requested = list(dict.fromkeys(control_ids))
    if not requested:
        return []

    known = await db.execute(
        select(Control.id).where(
            Control.id.in_(requested),
            Control.organization_id == audit_run.organization_id,
        )
    )
    known_ids = set(known.scalars().all())
    missing = [str(cid) for cid in requested if cid not in known_ids]
    if missing:
        raise NotFound(f"Control not found or access denied: {', '.join(missing)}")

    existing = await db.execute(
        select(AuditControl.control_id).where(
            AuditControl.audit_run_id == audit_run.id,
            AuditControl.control_id.in_(requested),
        )
    )
    already_attached = set(existing.scalars().all())

    created: list[AuditControl] = []
    for control_id in requested:
        if control_id in already_attached:
            continue
        reviewer_id = _lookup(reviewer_assignments, control_id)
        audit_control = AuditControl(
            audit_run_id=audit_run.id,
            control_id=control_id,
            reviewer_id=reviewer_id,
            approver_id=_lookup(approver_assignments, control_id),
            status=ControlStatus.NOT_STARTED,
        )
        db.add(audit_control)
        db.add(Task(
            organization_id=audit_run.organization_id,
            audit_run_id=audit_run.id,
            control_id=control_id,
            type=TaskType.EVIDENCE_COLLECTION,
            audit_phase=AuditPhase.EXECUTION,
            assignee_id=reviewer_id,
            status=TaskStatus.OPEN,
            priority=TaskPriority.MEDIUM,
            comments=f"Collect evidence for audit: {audit_run.name}",
            created_by=identity.user_id,
        ))
        created.append(audit_control)

    skipped = len(control_ids) - len(created)
    if skipped:
        logger.info(f"Audit run {audit_run.id}: skipped {skipped} already attached control(s)")
    return created


async def add_controls(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
    control_ids: Sequence[uuid.UUID],
    reviewer_assignments: Optional[Mapping[uuid.UUID, uuid.UUID]] = None,
    approver_assignments: Optional[Mapping[uuid.UUID, uuid.UUID]] = None,
) -> tuple[list[AuditControl], AuditRunActivity]:
    """Bulk-attach controls to an unlocked run and log one ASSIGNED entry"""
    if control_ids is None:
        raise ValidationFailed("Organization ID and control IDs are required")

    await permissions.require_permission(db, identity, organization_id)

    audit_run = await get_run_in_organization(db, organization_id, audit_run_id)
    if audit_run.is_locked:
        raise RunLocked()

    created = await assign_controls(
        db, identity, audit_run, control_ids, reviewer_assignments, approver_assignments
    )

    activity = await record_activity(
        db,
        audit_run_id=audit_run.id,
        activity_type=ActivityType.ASSIGNED,
        performed_by=identity.user_id,
        target_entity="audit_controls",
        new_value={"controlIds": list(control_ids), "count": len(control_ids)},
    )
    await db.flush()
    return created, activity


async def list_audit_controls(
    db: AsyncSession,
    identity: Identity,
    query: AuditControlQuery,
) -> list[AuditControl]:
    await permissions.require_permission(db, identity, query.organization_id)

    result = await db.execute(
        select(AuditControl)
        .join(AuditRun, AuditControl.audit_run_id == AuditRun.id)
        .join(Control, AuditControl.control_id == Control.id)
        .options(selectinload(AuditControl.control), selectinload(AuditControl.findings))
        .execution_options(populate_existing=True)
        .where(*query.conditions())
        .order_by(*query.order_by())
    )
    return list(result.scalars().all())


async def _get_audit_control(
    db: AsyncSession,
    organization_id: uuid.UUID,
    audit_control_id: uuid.UUID,
) -> AuditControl:
    result = await db.execute(
        select(AuditControl)
        .join(AuditRun, AuditControl.audit_run_id == AuditRun.id)
        .options(selectinload(AuditControl.audit_run), selectinload(AuditControl.control))
        .execution_options(populate_existing=True)
        .where(
            AuditControl.id == audit_control_id,
            AuditRun.organization_id == organization_id,
        )
    )
    audit_control = result.scalar_one_or_none()
    if audit_control is None:
        raise NotFound("Audit control not found")
    return audit_control


async def review_control(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_control_id: uuid.UUID,
    status: ControlStatus,
    notes: Optional[str] = None,
    evidence_ids: Optional[Sequence[uuid.UUID]] = None,
) -> tuple[AuditControl, AuditRunActivity]:
    """
    Reviewer submits a status for an audit control.

    A supplied evidence list replaces the run's links for that control.
    Moving to SUBMITTED completes the control's evidence-collection tasks.
    """
    if not await permissions.can_review_control(db, identity, organization_id, audit_control_id):
        raise Forbidden("Cannot review this control")

    audit_control = await _get_audit_control(db, organization_id, audit_control_id)
    if audit_control.audit_run.is_locked:
        raise RunLocked()

    now = datetime.utcnow()
    old_status = audit_control.status
    audit_control.status = status
    audit_control.notes = notes
    audit_control.submitted_at = now
    audit_control.updated_at = now

    if evidence_ids is not None:
        await db.execute(
            delete(AuditEvidenceLink).where(
                AuditEvidenceLink.audit_run_id == audit_control.audit_run_id,
                AuditEvidenceLink.control_id == audit_control.control_id,
            )
        )
        for evidence_id in dict.fromkeys(evidence_ids):
            db.add(AuditEvidenceLink(
                audit_run_id=audit_control.audit_run_id,
                control_id=audit_control.control_id,
                evidence_id=evidence_id,
                linked_by=identity.user_id,
            ))

    if status == ControlStatus.SUBMITTED:
        await db.execute(
            update(Task)
            .where(
                Task.audit_run_id == audit_control.audit_run_id,
                Task.control_id == audit_control.control_id,
                Task.type == TaskType.EVIDENCE_COLLECTION,
            )
            .values(
                status=TaskStatus.COMPLETED,
                completed_by=identity.user_id,
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    activity = await record_activity(
        db,
        audit_run_id=audit_control.audit_run_id,
        activity_type=ActivityType.REVIEWED,
        performed_by=identity.user_id,
        target_entity="audit_control",
        old_value={"status": old_status},
        new_value={"status": status, "notes": notes},
    )
    await db.flush()
    return audit_control, activity


async def decide_control(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_control_id: uuid.UUID,
    action: str,
    comments: Optional[str] = None,
) -> tuple[AuditControl, AuditRunActivity]:
    """Approver turns a SUBMITTED control into MET (approve) or GAP (reject)"""
    if action not in REVIEW_ACTIONS:
        raise ValidationFailed("Action must be 'approve' or 'reject'")

    if not await permissions.can_approve_control(db, identity, organization_id, audit_control_id):
        raise Forbidden("Cannot approve this control")

    audit_control = await _get_audit_control(db, organization_id, audit_control_id)
    if audit_control.audit_run.is_locked:
        raise RunLocked()
    if audit_control.status != ControlStatus.SUBMITTED:
        raise ValidationFailed("Control must be submitted before approval")

    approved = action == "approve"
    old_status = audit_control.status
    new_status = ControlStatus.MET if approved else ControlStatus.GAP
    rejection_reason = None if approved else comments

    now = datetime.utcnow()
    audit_control.status = new_status
    audit_control.approved_at = now if approved else None
    audit_control.rejection_reason = rejection_reason
    audit_control.updated_at = now

    activity = await record_activity(
        db,
        audit_run_id=audit_control.audit_run_id,
        activity_type=ActivityType.APPROVED if approved else ActivityType.REJECTED,
        performed_by=identity.user_id,
        target_entity="audit_control",
        old_value={"status": old_status},
        new_value={"status": new_status, "action": action, "comments": rejection_reason},
    )
    await db.flush()
    return audit_control, activity
