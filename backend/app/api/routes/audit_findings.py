"""
Audit findings routes
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.schemas.audit import FindingCreate, FindingResponse, FindingUpdate, TaskResponse
from app.api.validation import get_broadcaster, require_organization_id
from app.api.routes.auth import verify_session
from app.core.errors import ValidationFailed
from app.core.security import Identity
from app.db import get_db
from app.db.models import FindingSeverity, FindingStatus
from app.services import findings
from app.services.broadcast import ActivityBroadcaster
from app.services.queries import FindingQuery

router = APIRouter()


@router.get("")
async def list_findings(
    organization_id: Optional[uuid.UUID] = Query(None, alias="organizationId"),
    audit_run_id: Optional[uuid.UUID] = Query(None, alias="auditRunId"),
    severity: Optional[FindingSeverity] = Query(None),
    status: Optional[FindingStatus] = Query(None),
    owner_id: Optional[uuid.UUID] = Query(None, alias="ownerId"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
):
    """Findings, most severe first"""
    query = FindingQuery(
        organization_id=require_organization_id(organization_id),
        audit_run_id=audit_run_id,
        severity=severity,
        status=status,
        owner_id=owner_id,
        page=page,
        limit=limit,
    )
    rows, total = await findings.list_findings(db, identity, query)
    return {
        "findings": [FindingResponse.from_model(f) for f in rows],
        "pagination": query.pagination(total),
    }


@router.post("", status_code=201)
async def create_finding(
    data: FindingCreate,
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    """Record a finding; an owner gets a remediation task"""
    organization_id = data.organizationId
    if not organization_id:
        raise ValidationFailed(
            "Organization ID, audit run ID, severity, title, and description are required"
        )

    finding, task, activity = await findings.create_finding(
        db,
        identity,
        organization_id=organization_id,
        audit_run_id=data.auditRunId,
        severity=data.severity,
        title=data.title,
        description=data.description,
        control_id=data.controlId,
        audit_control_id=data.auditControlId,
        remediation_plan=data.remediationPlan,
        owner_id=data.ownerId,
        due_date=data.dueDate,
    )
    await db.commit()
    broadcaster.publish_activity(organization_id, activity)

    return {
        "finding": FindingResponse.from_model(finding),
        "remediationTask": TaskResponse.from_model(task) if task else None,
        "message": "Audit finding created successfully",
    }


@router.put("/{finding_id}")
async def update_finding(
    finding_id: uuid.UUID,
    data: FindingUpdate,
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    organization_id = require_organization_id(data.organizationId)
    finding, activity = await findings.update_finding(
        db, identity, organization_id, finding_id, data.to_changes()
    )
    await db.commit()
    broadcaster.publish_activity(organization_id, activity)

    return {
        "finding": FindingResponse.from_model(finding),
        "message": "Audit finding updated successfully",
    }
