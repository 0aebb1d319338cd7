"""
Audit run routes: lifecycle, controls attached to a run, activity trail
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.schemas.audit import (
    ActivityResponse, AddControlsRequest, AuditControlResponse, AuditRunCreate, AuditRunResponse,
    AuditRunUpdate, FindingResponse, GuestAuditorInvite, GuestAuditorResponse, TaskResponse,
)
from app.api.validation import get_broadcaster, require_organization_id
from app.api.routes.auth import verify_session
from app.core.config import settings
from app.core.errors import ValidationFailed
from app.core.security import Identity
from app.db import get_db
from app.db.models import AuditRunStatus, AuditType, ControlStatus
from app.services import audit_controls, audit_runs, guest_auditors
from app.services.broadcast import ActivityBroadcaster
from app.services.queries import AuditControlQuery, AuditRunQuery, PageSpec

router = APIRouter()


@router.get("")
async def list_audit_runs(
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    status: Optional[AuditRunStatus] = Query(None),
    audit_type: Optional[AuditType] = Query(None, alias="auditType"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
):
    """List audit runs of an organization, newest first"""
    query = AuditRunQuery(
        organization_id=require_organization_id(organization_id),
        status=status,
        audit_type=audit_type,
        page=page,
        limit=limit,
    )
    rows, total = await audit_runs.list_audit_runs(db, identity, query)
    return {
        "auditRuns": [AuditRunResponse.from_model(run, counts) for run, counts in rows],
        "pagination": query.pagination(total),
    }


@router.post("", status_code=201)
async def create_audit_run(
    data: AuditRunCreate,
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    """Create an audit run, optionally scoping controls into it"""
    if not data.organizationId or not data.name or not data.startDate or not data.endDate:
        raise ValidationFailed("Organization ID, name, start date, and end date are required")

    audit_run, activity = await audit_runs.create_audit_run(
        db,
        identity,
        organization_id=data.organizationId,
        name=data.name,
        description=data.description,
        framework_id=data.frameworkId,
        scope=data.scope,
        start_date=data.startDate,
        end_date=data.endDate,
        audit_type=data.auditType,
        status=data.status,
        external_auditor_info=data.externalAuditorInfo,
        control_ids=data.controlIds,
        reviewer_assignments=data.reviewerAssignments,
        approver_assignments=data.approverAssignments,
    )
    await db.commit()
    broadcaster.publish_activity(audit_run.organization_id, activity)

    return {
        "auditRun": AuditRunResponse.from_model(audit_run),
        "message": "Audit run created successfully",
    }


@router.get("/{audit_run_id}")
async def get_audit_run(
    audit_run_id: uuid.UUID,
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
):
    """Audit run with controls, findings, tasks and the most recent activity"""
    detail = await audit_runs.get_audit_run(
        db, identity, require_organization_id(organization_id), audit_run_id
    )
    run = detail.audit_run
    payload = AuditRunResponse.from_model(run, detail.counts).model_dump()
    payload.update({
        "auditControls": [AuditControlResponse.from_model(ac, with_children=True) for ac in run.audit_controls],
        "auditFindings": [FindingResponse.from_model(f) for f in run.findings],
        "tasks": [TaskResponse.from_model(t) for t in run.tasks],
        "auditActivities": [ActivityResponse.from_model(a) for a in detail.recent_activity],
    })
    return {"auditRun": payload}


@router.put("/{audit_run_id}")
async def update_audit_run(
    audit_run_id: uuid.UUID,
    data: AuditRunUpdate,
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    """Update an unlocked audit run (creator only)"""
    organization_id = require_organization_id(data.organizationId)
    audit_run, activity = await audit_runs.update_audit_run(
        db, identity, organization_id, audit_run_id, data.to_changes()
    )
    await db.commit()
    broadcaster.publish_activity(organization_id, activity)

    return {
        "auditRun": AuditRunResponse.from_model(audit_run),
        "message": "Audit run updated successfully",
    }


@router.delete("/{audit_run_id}")
async def delete_audit_run(
    audit_run_id: uuid.UUID,
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
):
    """Delete an unlocked audit run and everything under it"""
    await audit_runs.delete_audit_run(
        db, identity, require_organization_id(organization_id), audit_run_id
    )
    await db.commit()
    return {"message": "Audit run deleted successfully"}


@router.post("/{audit_run_id}/lock")
async def lock_audit_run(
    audit_run_id: uuid.UUID,
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    """Freeze an audit run; no further changes are accepted under it"""
    organization_id = require_organization_id(organization_id)
    audit_run, activity = await audit_runs.lock_audit_run(db, identity, organization_id, audit_run_id)
    await db.commit()
    broadcaster.publish_activity(organization_id, activity)

    return {
        "auditRun": AuditRunResponse.from_model(audit_run),
        "message": "Audit run locked successfully",
    }


@router.get("/{audit_run_id}/activity")
async def list_audit_run_activity(
    audit_run_id: uuid.UUID,
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
):
    """Activity trail, most recent first (capped page size)"""
    activities, total = await audit_runs.get_activity_page(
        db, identity, require_organization_id(organization_id), audit_run_id, page=page, limit=limit
    )
    cap = settings.ACTIVITY_PAGE_CAP
    page_spec = PageSpec(page=page, limit=min(limit or cap, cap))
    return {
        "activities": [ActivityResponse.from_model(a) for a in activities],
        "pagination": page_spec.pagination(total),
    }


@router.get("/{audit_run_id}/controls")
async def list_audit_controls(
    audit_run_id: uuid.UUID,
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    status: Optional[ControlStatus] = Query(None),
    reviewer_id: Optional[uuid.UUID] = Query(None, alias="reviewerId"),
    approver_id: Optional[uuid.UUID] = Query(None, alias="approverId"),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
):
    """Controls scoped into the run, most critical first"""
    query = AuditControlQuery(
        organization_id=require_organization_id(organization_id),
        audit_run_id=audit_run_id,
        status=status,
        reviewer_id=reviewer_id,
        approver_id=approver_id,
    )
    controls = await audit_controls.list_audit_controls(db, identity, query)
    return {"auditControls": [AuditControlResponse.from_model(ac, with_children=True) for ac in controls]}


@router.post("/{audit_run_id}/controls", status_code=201)
async def add_audit_controls(
    audit_run_id: uuid.UUID,
    data: AddControlsRequest,
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    """Attach controls to the run; pairs already attached are skipped"""
    if not data.organizationId or data.controlIds is None:
        raise ValidationFailed("Organization ID and control IDs are required")

    created, activity = await audit_controls.add_controls(
        db,
        identity,
        organization_id=data.organizationId,
        audit_run_id=audit_run_id,
        control_ids=data.controlIds,
        reviewer_assignments=data.reviewerAssignments,
        approver_assignments=data.approverAssignments,
    )
    await db.commit()
    broadcaster.publish_activity(data.organizationId, activity)

    return {
        "message": f"{len(created)} controls added to audit successfully",
        "addedCount": len(created),
        "auditControls": [AuditControlResponse.from_model(ac) for ac in created],
    }


@router.get("/{audit_run_id}/guest-auditors")
async def list_guest_auditors(
    audit_run_id: uuid.UUID,
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
):
    guests = await guest_auditors.list_guest_auditors(
        db, identity, require_organization_id(organization_id), audit_run_id
    )
    return {"guestAuditors": [GuestAuditorResponse.from_model(g) for g in guests]}


@router.post("/{audit_run_id}/guest-auditors", status_code=201)
async def invite_guest_auditor(
    audit_run_id: uuid.UUID,
    data: GuestAuditorInvite,
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    """Invite an external auditor; the invitation token is only returned here"""
    organization_id = require_organization_id(data.organizationId)
    guest, token, activity = await guest_auditors.invite_guest_auditor(
        db,
        identity,
        organization_id=organization_id,
        audit_run_id=audit_run_id,
        email=data.email,
        name=data.name,
        role=data.role,
        access_level=data.accessLevel,
        expires_in_days=data.expiresInDays,
    )
    await db.commit()
    broadcaster.publish_activity(organization_id, activity)

    return {
        "guestAuditor": {**GuestAuditorResponse.from_model(guest).model_dump(), "invitationToken": token},
        "message": "Guest auditor invited successfully",
    }


@router.delete("/{audit_run_id}/guest-auditors/{guest_id}")
async def revoke_guest_auditor(
    audit_run_id: uuid.UUID,
    guest_id: uuid.UUID,
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    organization_id = require_organization_id(organization_id)
    _, activity = await guest_auditors.revoke_guest_auditor(
        db, identity, organization_id, audit_run_id, guest_id
    )
    await db.commit()
    broadcaster.publish_activity(organization_id, activity)
    return {"message": "Guest auditor access revoked successfully"}
