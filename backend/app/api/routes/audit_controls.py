"""
Review and approval of controls scoped into an audit run
"""
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.schemas.audit import AuditControlResponse, ControlDecisionRequest, ControlReviewRequest
from app.api.validation import get_broadcaster, require_organization_id
from app.api.routes.auth import verify_session
from app.core.errors import ValidationFailed
from app.core.security import Identity
from app.db import get_db
from app.services import audit_controls
from app.services.broadcast import ActivityBroadcaster

router = APIRouter()


@router.put("/{audit_control_id}/review")
async def review_audit_control(
    audit_control_id: uuid.UUID,
    data: ControlReviewRequest,
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    """Assigned reviewer (or approver) submits a status for the control"""
    organization_id = require_organization_id(data.organizationId)
    if data.status is None:
        raise ValidationFailed("Status is required")

    audit_control, activity = await audit_controls.review_control(
        db,
        identity,
        organization_id=organization_id,
        audit_control_id=audit_control_id,
        status=data.status,
        notes=data.notes,
        evidence_ids=data.evidenceLinks,
    )
    await db.commit()
    broadcaster.publish_activity(organization_id, activity)

    return {
        "auditControl": AuditControlResponse.from_model(audit_control),
        "message": "Control review submitted successfully",
    }


@router.post("/{audit_control_id}/approve")
async def decide_audit_control(
    audit_control_id: uuid.UUID,
    data: ControlDecisionRequest,
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
    broadcaster: ActivityBroadcaster = Depends(get_broadcaster),
):
    """Assigned approver accepts (MET) or rejects (GAP) a submitted control"""
    organization_id = require_organization_id(data.organizationId)

    audit_control, activity = await audit_controls.decide_control(
        db,
        identity,
        organization_id=organization_id,
        audit_control_id=audit_control_id,
        action=data.action,
        comments=data.comments,
    )
    await db.commit()
    broadcaster.publish_activity(organization_id, activity)

    verb = "approved" if data.action == "approve" else "rejected"
    return {
        "auditControl": AuditControlResponse.from_model(audit_control),
        "message": f"Control {verb} successfully",
    }
