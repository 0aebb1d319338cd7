"""
Typed query objects, one per listable resource.

Each query carries a ``resource`` tag, validates its own filters and turns
them into SQLAlchemy conditions, so routes never assemble ad-hoc filter
dicts.
"""
import uuid
from datetime import datetime
from math import ceil
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import case

from app.core.config import settings
from app.db.models import (
    AuditControl, AuditFinding, AuditRun, AuditRunStatus, AuditType, Control,
    ControlStatus, Criticality, FindingSeverity, FindingStatus, Task,
    TaskPriority, TaskStatus, TaskType, SEVERITY_RANK, PRIORITY_RANK,
)


class PageSpec(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default_factory=lambda: settings.DEFAULT_PAGE_SIZE, ge=1)

    @field_validator("limit")
    @classmethod
    def _cap_limit(cls, value: int) -> int:
        return min(value, settings.MAX_PAGE_SIZE)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def pagination(self, total: int) -> dict:
        pages = ceil(total / self.limit) if total else 0
        return {
            "page": self.page,
            "limit": self.limit,
            "total": total,
            "pages": pages,
            "hasNext": self.page < pages,
            "hasPrev": self.page > 1,
        }


class AuditRunQuery(PageSpec):
    resource: Literal["audit_runs"] = "audit_runs"
    organization_id: uuid.UUID
    status: Optional[AuditRunStatus] = None
    audit_type: Optional[AuditType] = None

    def conditions(self) -> list:
        where = [AuditRun.organization_id == self.organization_id]
        if self.status:
            where.append(AuditRun.status == self.status)
        if self.audit_type:
            where.append(AuditRun.audit_type == self.audit_type)
        return where

    def order_by(self) -> list:
        return [AuditRun.created_at.desc()]


class AuditControlQuery(BaseModel):
    resource: Literal["audit_controls"] = "audit_controls"
    organization_id: uuid.UUID
    audit_run_id: uuid.UUID
    status: Optional[ControlStatus] = None
    reviewer_id: Optional[uuid.UUID] = None
    approver_id: Optional[uuid.UUID] = None

    def conditions(self) -> list:
        where = [
            AuditControl.audit_run_id == self.audit_run_id,
            AuditRun.organization_id == self.organization_id,
        ]
        if self.status:
            where.append(AuditControl.status == self.status)
        if self.reviewer_id:
            where.append(AuditControl.reviewer_id == self.reviewer_id)
        if self.approver_id:
            where.append(AuditControl.approver_id == self.approver_id)
        return where

    def order_by(self) -> list:
        criticality_rank = case(
            {level: rank for rank, level in enumerate(Criticality, start=1)},
            value=Control.criticality,
            else_=0,
        )
        return [criticality_rank.desc(), Control.name.asc()]


class FindingQuery(PageSpec):
    resource: Literal["audit_findings"] = "audit_findings"
    organization_id: uuid.UUID
    audit_run_id: Optional[uuid.UUID] = None
    severity: Optional[FindingSeverity] = None
    status: Optional[FindingStatus] = None
    owner_id: Optional[uuid.UUID] = None

    def conditions(self) -> list:
        where = [AuditRun.organization_id == self.organization_id]
        if self.audit_run_id:
            where.append(AuditFinding.audit_run_id == self.audit_run_id)
        if self.severity:
            where.append(AuditFinding.severity == self.severity)
        if self.status:
            where.append(AuditFinding.status == self.status)
        if self.owner_id:
            where.append(AuditFinding.owner_id == self.owner_id)
        return where

    def order_by(self) -> list:
        severity_rank = case(SEVERITY_RANK, value=AuditFinding.severity, else_=0)
        return [severity_rank.desc(), AuditFinding.created_at.desc()]


class TaskQuery(PageSpec):
    resource: Literal["tasks"] = "tasks"
    limit: int = Field(default=50, ge=1)
    organization_id: uuid.UUID
    audit_run_id: Optional[uuid.UUID] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    type: Optional[TaskType] = None
    assignee_id: Optional[uuid.UUID] = None
    control_id: Optional[uuid.UUID] = None
    search: Optional[str] = None
    overdue: bool = False

    def conditions(self, now: Optional[datetime] = None) -> list:
        where = [Task.organization_id == self.organization_id]
        if self.audit_run_id:
            where.append(Task.audit_run_id == self.audit_run_id)
        if self.status:
            where.append(Task.status == self.status)
        if self.priority:
            where.append(Task.priority == self.priority)
        if self.type:
            where.append(Task.type == self.type)
        if self.assignee_id:
            where.append(Task.assignee_id == self.assignee_id)
        if self.control_id:
            where.append(Task.control_id == self.control_id)
        if self.search:
            where.append(Task.comments.ilike(f"%{self.search}%"))
        if self.overdue:
            where.append(Task.due_date < (now or datetime.utcnow()))
            where.append(Task.status != TaskStatus.COMPLETED)
        return where

    def order_by(self) -> list:
        priority_rank = case(PRIORITY_RANK, value=Task.priority, else_=0)
        # NULL due dates sort last on both PostgreSQL and SQLite
        return [priority_rank.desc(), Task.due_date.is_(None), Task.due_date.asc(), Task.created_at.desc()]
