"""
Database models for audit runs and the reference tables they point at
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    Boolean, String, Text, DateTime, ForeignKey, JSON, UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID

from app.db.database import Base


# === ENUMS ===

class PlatformRole(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    USER = "USER"


class OrganizationRole(str, Enum):
    ADMIN = "ADMIN"
    AUDIT_MANAGER = "AUDIT_MANAGER"
    COMPLIANCE_OFFICER = "COMPLIANCE_OFFICER"
    CONTRIBUTOR = "CONTRIBUTOR"
    VIEWER = "VIEWER"


class Criticality(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditType(str, Enum):
    INTERNAL = "INTERNAL"
    EXTERNAL = "EXTERNAL"
    SELF_ASSESSMENT = "SELF_ASSESSMENT"


class AuditRunStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    IN_PROGRESS = "IN_PROGRESS"
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"
    LOCKED = "LOCKED"  # Terminal: freezes the run and all children


class ControlStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    MET = "MET"
    GAP = "GAP"
    NOT_APPLICABLE = "NOT_APPLICABLE"


class FindingSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class FindingStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    MITIGATED = "MITIGATED"
    RESOLVED = "RESOLVED"
    ACCEPTED = "ACCEPTED"
    CLOSED = "CLOSED"


class TaskType(str, Enum):
    EVIDENCE_COLLECTION = "EVIDENCE_COLLECTION"
    GAP_REMEDIATION = "GAP_REMEDIATION"
    REVIEW = "REVIEW"


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditPhase(str, Enum):
    PLANNING = "PLANNING"
    EXECUTION = "EXECUTION"
    REMEDIATION = "REMEDIATION"
    REPORTING = "REPORTING"


class GuestAccessLevel(str, Enum):
    READ_ONLY = "READ_ONLY"
    REVIEW = "REVIEW"
    COMMENT = "COMMENT"
    FULL = "FULL"


class ActivityType(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    ASSIGNED = "ASSIGNED"
    FINDING_CREATED = "FINDING_CREATED"
    FINDING_UPDATED = "FINDING_UPDATED"
    REVIEWED = "REVIEWED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AUDIT_LOCKED = "AUDIT_LOCKED"
    TASK_UPDATED = "TASK_UPDATED"


# Sort weights for enum columns ordered "most severe first"
SEVERITY_RANK = {
    FindingSeverity.LOW: 1,
    FindingSeverity.MEDIUM: 2,
    FindingSeverity.HIGH: 3,
    FindingSeverity.CRITICAL: 4,
}

PRIORITY_RANK = {
    TaskPriority.LOW: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.HIGH: 3,
    TaskPriority.CRITICAL: 4,
}


# === REFERENCE MODELS ===

class User(Base):
    """Platform user; credentials are checked by the auth routes"""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    platform_role: Mapped[PlatformRole] = mapped_column(SQLEnum(PlatformRole), default=PlatformRole.USER)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    memberships: Mapped[List["OrganizationUser"]] = relationship(back_populates="user", cascade="all, delete-orphan")


class Organization(Base):
    """Tenant boundary: every audit run belongs to exactly one organization"""
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    members: Mapped[List["OrganizationUser"]] = relationship(back_populates="organization", cascade="all, delete-orphan")


class OrganizationUser(Base):
    """Membership of a user in an organization with an organization-scoped role"""
    __tablename__ = "organization_users"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_users_org_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[OrganizationRole] = mapped_column(SQLEnum(OrganizationRole), default=OrganizationRole.VIEWER)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    organization: Mapped["Organization"] = relationship(back_populates="members")
    user: Mapped["User"] = relationship(back_populates="memberships")


class Framework(Base):
    """Compliance framework (SOC 2, ISO 27001, ...)"""
    __tablename__ = "frameworks"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    controls: Mapped[List["Control"]] = relationship(back_populates="framework")


class Control(Base):
    """Compliance requirement tracked per framework"""
    __tablename__ = "controls"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    framework_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("frameworks.id"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    criticality: Mapped[Criticality] = mapped_column(SQLEnum(Criticality), default=Criticality.MEDIUM)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    framework: Mapped[Optional["Framework"]] = relationship(back_populates="controls")


# === AUDIT MODELS ===

class AuditRun(Base):
    """Bounded audit engagement scoping a set of controls and findings"""
    __tablename__ = "audit_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    framework_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("frameworks.id"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scope: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_type: Mapped[AuditType] = mapped_column(SQLEnum(AuditType), default=AuditType.INTERNAL)
    status: Mapped[AuditRunStatus] = mapped_column(SQLEnum(AuditRunStatus), default=AuditRunStatus.DRAFT)
    external_auditor_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Children are removed by the database cascade when the run is deleted
    framework: Mapped[Optional["Framework"]] = relationship()
    audit_controls: Mapped[List["AuditControl"]] = relationship(
        back_populates="audit_run", cascade="all, delete-orphan", passive_deletes=True
    )
    findings: Mapped[List["AuditFinding"]] = relationship(
        back_populates="audit_run", cascade="all, delete-orphan", passive_deletes=True
    )
    tasks: Mapped[List["Task"]] = relationship(
        back_populates="audit_run", cascade="all, delete-orphan", passive_deletes=True
    )
    activities: Mapped[List["AuditRunActivity"]] = relationship(
        back_populates="audit_run", cascade="all, delete-orphan", passive_deletes=True
    )
    guest_auditors: Mapped[List["GuestAuditor"]] = relationship(
        back_populates="audit_run", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def is_locked(self) -> bool:
        return self.status == AuditRunStatus.LOCKED


class AuditControl(Base):
    """A control scoped into an audit run, with its reviewer and approver"""
    __tablename__ = "audit_controls"
    __table_args__ = (
        UniqueConstraint("audit_run_id", "control_id", name="uq_audit_controls_run_control"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False
    )
    control_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("controls.id", ondelete="CASCADE"), nullable=False
    )
    reviewer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    approver_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    status: Mapped[ControlStatus] = mapped_column(SQLEnum(ControlStatus), default=ControlStatus.NOT_STARTED)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    audit_run: Mapped["AuditRun"] = relationship(back_populates="audit_controls")
    control: Mapped["Control"] = relationship()
    findings: Mapped[List["AuditFinding"]] = relationship(back_populates="audit_control", passive_deletes=True)


class AuditFinding(Base):
    """Recorded deficiency against a control within an audit run"""
    __tablename__ = "audit_findings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False
    )
    control_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("controls.id", ondelete="SET NULL"), nullable=True
    )
    audit_control_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("audit_controls.id", ondelete="SET NULL"), nullable=True
    )
    severity: Mapped[FindingSeverity] = mapped_column(SQLEnum(FindingSeverity), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    remediation_plan: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[FindingStatus] = mapped_column(SQLEnum(FindingStatus), default=FindingStatus.OPEN)
    owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    audit_run: Mapped["AuditRun"] = relationship(back_populates="findings")
    control: Mapped[Optional["Control"]] = relationship()
    audit_control: Mapped[Optional["AuditControl"]] = relationship(back_populates="findings")


class Task(Base):
    """Generic work item, spawned by control assignment and finding creation"""
    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    audit_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=True
    )
    control_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("controls.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[TaskType] = mapped_column(SQLEnum(TaskType), nullable=False)
    audit_phase: Mapped[Optional[AuditPhase]] = mapped_column(SQLEnum(AuditPhase), nullable=True)
    status: Mapped[TaskStatus] = mapped_column(SQLEnum(TaskStatus), default=TaskStatus.OPEN)
    priority: Mapped[TaskPriority] = mapped_column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM)
    assignee_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    audit_run: Mapped[Optional["AuditRun"]] = relationship(back_populates="tasks")


class AuditEvidenceLink(Base):
    """Evidence artifact attached to a control within a run (artifact lives in the evidence store)"""
    __tablename__ = "audit_evidence_links"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False
    )
    control_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("controls.id", ondelete="CASCADE"), nullable=False
    )
    evidence_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    linked_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class GuestAuditor(Base):
    """
    External auditor invited to a single run.

    Only a digest of the invitation token is stored; revoking access
    deactivates the row so the trail keeps who was invited.
    """
    __tablename__ = "guest_auditors"
    __table_args__ = (
        UniqueConstraint("audit_run_id", "email", name="uq_guest_auditors_run_email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    access_level: Mapped[GuestAccessLevel] = mapped_column(
        SQLEnum(GuestAccessLevel), default=GuestAccessLevel.READ_ONLY
    )
    invitation_token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    invited_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    invited_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_access_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    audit_run: Mapped["AuditRun"] = relationship(back_populates="guest_auditors")
    inviter: Mapped["User"] = relationship()


class AuditRunActivity(Base):
    """
    Append-only audit trail entry.

    old_value/new_value hold JSON-serialized snapshots. Rows are never
    updated; they only disappear through the audit run's delete cascade.
    """
    __tablename__ = "audit_run_activities"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    activity_type: Mapped[ActivityType] = mapped_column(SQLEnum(ActivityType), nullable=False)
    performed_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    target_entity: Mapped[str] = mapped_column(String(50), nullable=False)
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    audit_run: Mapped["AuditRun"] = relationship(back_populates="activities")
