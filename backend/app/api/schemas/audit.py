"""
Pydantic schemas for the audit admin API (camelCase on the wire)
"""
from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Dict, List, Optional
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict

from app.db.models import (
    AuditControl, AuditFinding, AuditRun, AuditRunActivity, AuditRunStatus,
    AuditType, Control, ControlStatus, FindingSeverity, FindingStatus, GuestAccessLevel,
    GuestAuditor, Task, TaskPriority, TaskStatus,
)
from app.services.activity import load_value


def _to_naive_utc(value: datetime) -> datetime:
    """Columns are timezone-naive UTC; normalise aware input to match"""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_to_naive_utc)]


def _changes(payload: BaseModel, field_map: Dict[str, str]) -> Dict[str, Any]:
    """Explicitly set fields of payload, renamed to model column names"""
    data = payload.model_dump(exclude_unset=True)
    return {field_map[key]: value for key, value in data.items() if key in field_map}


# === Requests ===

class AuditRunCreate(BaseModel):
    organizationId: Optional[UUID] = None
    name: Optional[str] = None
    description: Optional[str] = None
    frameworkId: Optional[UUID] = None
    scope: Optional[str] = None
    startDate: Optional[UtcDatetime] = None
    endDate: Optional[UtcDatetime] = None
    auditType: Optional[AuditType] = None
    status: Optional[AuditRunStatus] = None
    externalAuditorInfo: Optional[Dict[str, Any]] = None
    controlIds: Optional[List[UUID]] = None
    reviewerAssignments: Optional[Dict[UUID, UUID]] = None
    approverAssignments: Optional[Dict[UUID, UUID]] = None


class AuditRunUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    organizationId: Optional[UUID] = None
    name: Optional[str] = None
    description: Optional[str] = None
    frameworkId: Optional[UUID] = None
    scope: Optional[str] = None
    startDate: Optional[UtcDatetime] = None
    endDate: Optional[UtcDatetime] = None
    auditType: Optional[AuditType] = None
    status: Optional[AuditRunStatus] = None
    externalAuditorInfo: Optional[Dict[str, Any]] = None

    FIELDS: ClassVar[Dict[str, str]] = {
        "name": "name",
        "description": "description",
        "frameworkId": "framework_id",
        "scope": "scope",
        "startDate": "start_date",
        "endDate": "end_date",
        "auditType": "audit_type",
        "status": "status",
        "externalAuditorInfo": "external_auditor_info",
    }

    def to_changes(self) -> Dict[str, Any]:
        return _changes(self, self.FIELDS)


class AddControlsRequest(BaseModel):
    organizationId: Optional[UUID] = None
    controlIds: Optional[List[UUID]] = None
    reviewerAssignments: Optional[Dict[UUID, UUID]] = None
    approverAssignments: Optional[Dict[UUID, UUID]] = None


class ControlReviewRequest(BaseModel):
    organizationId: Optional[UUID] = None
    status: Optional[ControlStatus] = None
    notes: Optional[str] = None
    evidenceLinks: Optional[List[UUID]] = None


class ControlDecisionRequest(BaseModel):
    organizationId: Optional[UUID] = None
    action: Optional[str] = None  # approve | reject
    comments: Optional[str] = None


class FindingCreate(BaseModel):
    organizationId: Optional[UUID] = None
    auditRunId: Optional[UUID] = None
    controlId: Optional[UUID] = None
    auditControlId: Optional[UUID] = None
    severity: Optional[FindingSeverity] = None
    title: Optional[str] = None
    description: Optional[str] = None
    remediationPlan: Optional[str] = None
    ownerId: Optional[UUID] = None
    dueDate: Optional[UtcDatetime] = None


class FindingUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    organizationId: Optional[UUID] = None
    controlId: Optional[UUID] = None
    auditControlId: Optional[UUID] = None
    severity: Optional[FindingSeverity] = None
    title: Optional[str] = None
    description: Optional[str] = None
    remediationPlan: Optional[str] = None
    status: Optional[FindingStatus] = None
    ownerId: Optional[UUID] = None
    dueDate: Optional[UtcDatetime] = None

    FIELDS: ClassVar[Dict[str, str]] = {
        "controlId": "control_id",
        "auditControlId": "audit_control_id",
        "severity": "severity",
        "title": "title",
        "description": "description",
        "remediationPlan": "remediation_plan",
        "status": "status",
        "ownerId": "owner_id",
        "dueDate": "due_date",
    }

    def to_changes(self) -> Dict[str, Any]:
        return _changes(self, self.FIELDS)


class TaskUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    organizationId: Optional[UUID] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigneeId: Optional[UUID] = None
    dueDate: Optional[UtcDatetime] = None
    comments: Optional[str] = None

    FIELDS: ClassVar[Dict[str, str]] = {
        "status": "status",
        "priority": "priority",
        "assigneeId": "assignee_id",
        "dueDate": "due_date",
        "comments": "comments",
    }

    def to_changes(self) -> Dict[str, Any]:
        return _changes(self, self.FIELDS)


class GuestAuditorInvite(BaseModel):
    organizationId: Optional[UUID] = None
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    accessLevel: Optional[GuestAccessLevel] = None
    expiresInDays: Optional[int] = None


# === Responses ===

class ControlSummary(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    criticality: str

    @classmethod
    def from_model(cls, control: Control) -> "ControlSummary":
        return cls(
            id=control.id,
            name=control.name,
            description=control.description,
            category=control.category,
            criticality=control.criticality.value,
        )


class FindingSummary(BaseModel):
    id: UUID
    severity: str
    title: str
    status: str


class AuditRunResponse(BaseModel):
    id: UUID
    organizationId: UUID
    frameworkId: Optional[UUID] = None
    name: str
    description: Optional[str] = None
    scope: Optional[str] = None
    auditType: str
    status: str
    externalAuditorInfo: Optional[Dict[str, Any]] = None
    startDate: datetime
    endDate: datetime
    createdBy: UUID
    lockedAt: Optional[datetime] = None
    createdAt: datetime
    updatedAt: datetime
    count: Optional[Dict[str, int]] = None

    @classmethod
    def from_model(cls, run: AuditRun, counts: Optional[Dict[str, int]] = None) -> "AuditRunResponse":
        return cls(
            id=run.id,
            organizationId=run.organization_id,
            frameworkId=run.framework_id,
            name=run.name,
            description=run.description,
            scope=run.scope,
            auditType=run.audit_type.value,
            status=run.status.value,
            externalAuditorInfo=run.external_auditor_info,
            startDate=run.start_date,
            endDate=run.end_date,
            createdBy=run.created_by,
            lockedAt=run.locked_at,
            createdAt=run.created_at,
            updatedAt=run.updated_at,
            count=counts,
        )


class AuditControlResponse(BaseModel):
    id: UUID
    auditRunId: UUID
    controlId: UUID
    reviewerId: Optional[UUID] = None
    approverId: Optional[UUID] = None
    status: str
    notes: Optional[str] = None
    rejectionReason: Optional[str] = None
    submittedAt: Optional[datetime] = None
    approvedAt: Optional[datetime] = None
    control: Optional[ControlSummary] = None
    auditFindings: Optional[List[FindingSummary]] = None

    @classmethod
    def from_model(cls, audit_control: AuditControl, with_children: bool = False) -> "AuditControlResponse":
        findings = None
        control = None
        if with_children:
            control = ControlSummary.from_model(audit_control.control)
            findings = [
                FindingSummary(id=f.id, severity=f.severity.value, title=f.title, status=f.status.value)
                for f in audit_control.findings
            ]
        return cls(
            id=audit_control.id,
            auditRunId=audit_control.audit_run_id,
            controlId=audit_control.control_id,
            reviewerId=audit_control.reviewer_id,
            approverId=audit_control.approver_id,
            status=audit_control.status.value,
            notes=audit_control.notes,
            rejectionReason=audit_control.rejection_reason,
            submittedAt=audit_control.submitted_at,
            approvedAt=audit_control.approved_at,
            control=control,
            auditFindings=findings,
        )


class FindingResponse(BaseModel):
    id: UUID
    auditRunId: UUID
    controlId: Optional[UUID] = None
    auditControlId: Optional[UUID] = None
    severity: str
    title: str
    description: str
    remediationPlan: Optional[str] = None
    status: str
    ownerId: Optional[UUID] = None
    dueDate: Optional[datetime] = None
    createdAt: datetime
    updatedAt: datetime

    @classmethod
    def from_model(cls, finding: AuditFinding) -> "FindingResponse":
        return cls(
            id=finding.id,
            auditRunId=finding.audit_run_id,
            controlId=finding.control_id,
            auditControlId=finding.audit_control_id,
            severity=finding.severity.value,
            title=finding.title,
            description=finding.description,
            remediationPlan=finding.remediation_plan,
            status=finding.status.value,
            ownerId=finding.owner_id,
            dueDate=finding.due_date,
            createdAt=finding.created_at,
            updatedAt=finding.updated_at,
        )


class TaskResponse(BaseModel):
    id: UUID
    organizationId: UUID
    auditRunId: Optional[UUID] = None
    controlId: Optional[UUID] = None
    type: str
    auditPhase: Optional[str] = None
    status: str
    priority: str
    assigneeId: Optional[UUID] = None
    comments: Optional[str] = None
    dueDate: Optional[datetime] = None
    createdBy: UUID
    completedBy: Optional[UUID] = None
    completedAt: Optional[datetime] = None
    createdAt: datetime

    @classmethod
    def from_model(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            organizationId=task.organization_id,
            auditRunId=task.audit_run_id,
            controlId=task.control_id,
            type=task.type.value,
            auditPhase=task.audit_phase.value if task.audit_phase else None,
            status=task.status.value,
            priority=task.priority.value,
            assigneeId=task.assignee_id,
            comments=task.comments,
            dueDate=task.due_date,
            createdBy=task.created_by,
            completedBy=task.completed_by,
            completedAt=task.completed_at,
            createdAt=task.created_at,
        )


class ActivityResponse(BaseModel):
    id: UUID
    auditRunId: UUID
    activityType: str
    performedBy: UUID
    targetEntity: str
    oldValue: Optional[Any] = None
    newValue: Optional[Any] = None
    timestamp: datetime

    @classmethod
    def from_model(cls, activity: AuditRunActivity) -> "ActivityResponse":
        return cls(
            id=activity.id,
            auditRunId=activity.audit_run_id,
            activityType=activity.activity_type.value,
            performedBy=activity.performed_by,
            targetEntity=activity.target_entity,
            oldValue=load_value(activity.old_value),
            newValue=load_value(activity.new_value),
            timestamp=activity.timestamp,
        )


class GuestAuditorResponse(BaseModel):
    id: UUID
    auditRunId: UUID
    email: str
    name: str
    role: Optional[str] = None
    accessLevel: str
    invitedBy: UUID
    inviter: Optional[Dict[str, Any]] = None
    invitedAt: datetime
    expiresAt: datetime
    acceptedAt: Optional[datetime] = None
    lastAccessAt: Optional[datetime] = None
    isActive: bool

    @classmethod
    def from_model(cls, guest: GuestAuditor) -> "GuestAuditorResponse":
        inviter = guest.inviter
        return cls(
            id=guest.id,
            auditRunId=guest.audit_run_id,
            email=guest.email,
            name=guest.name,
            role=guest.role,
            accessLevel=guest.access_level.value,
            invitedBy=guest.invited_by,
            inviter={"id": inviter.id, "name": inviter.name, "email": inviter.email} if inviter else None,
            invitedAt=guest.invited_at,
            expiresAt=guest.expires_at,
            acceptedAt=guest.accepted_at,
            lastAccessAt=guest.last_access_at,
            isActive=guest.is_active,
        )
