"""
Organization-scoped permission gate for audit resources.

All checks are pure reads. Super admins bypass every check; everyone else
is judged by their OrganizationUser role or by assignment on the record.
"""
import logging
import uuid

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InsufficientPermissions
from app.core.security import Identity
from app.db.models import AuditControl, AuditRun, OrganizationRole, OrganizationUser

logger = logging.getLogger(__name__)

# Organization roles allowed to read and mutate audit runs
AUDIT_ROLES = frozenset({OrganizationRole.AUDIT_MANAGER, OrganizationRole.COMPLIANCE_OFFICER})


async def get_membership(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
) -> OrganizationUser | None:
    result = await db.execute(
        select(OrganizationUser).where(
            OrganizationUser.organization_id == organization_id,
            OrganizationUser.user_id == identity.user_id,
        )
    )
    return result.scalar_one_or_none()


async def check_permission(db: AsyncSession, identity: Identity, organization_id: uuid.UUID) -> bool:
    """True when the caller may work with audit resources of the organization"""
    if identity.is_super_admin:
        return True

    membership = await get_membership(db, identity, organization_id)
    if membership is None:
        return False
    return membership.role in AUDIT_ROLES


async def require_permission(db: AsyncSession, identity: Identity, organization_id: uuid.UUID) -> None:
    """Raise InsufficientPermissions unless check_permission passes"""
    if not await check_permission(db, identity, organization_id):
        logger.warning(f"Audit permission denied for user {identity.user_id} in organization {organization_id}")
        raise InsufficientPermissions()


async def can_modify_audit_run(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
) -> bool:
    """Only the creator of a run (or a super admin) may update, delete or lock it"""
    if identity.is_super_admin:
        return True

    result = await db.execute(
        select(AuditRun.id).where(
            AuditRun.id == audit_run_id,
            AuditRun.organization_id == organization_id,
            AuditRun.created_by == identity.user_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def can_review_control(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_control_id: uuid.UUID,
) -> bool:
    """Assigned reviewer or approver of the audit control"""
    if identity.is_super_admin:
        return True

    result = await db.execute(
        select(AuditControl.id)
        .join(AuditRun, AuditControl.audit_run_id == AuditRun.id)
        .where(
            AuditControl.id == audit_control_id,
            AuditRun.organization_id == organization_id,
            or_(
                AuditControl.reviewer_id == identity.user_id,
                AuditControl.approver_id == identity.user_id,
            ),
        )
    )
    return result.scalar_one_or_none() is not None


async def can_approve_control(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_control_id: uuid.UUID,
) -> bool:
    """Assigned approver of the audit control"""
    if identity.is_super_admin:
        return True

    result = await db.execute(
        select(AuditControl.id)
        .join(AuditRun, AuditControl.audit_run_id == AuditRun.id)
        .where(
            AuditControl.id == audit_control_id,
            AuditRun.organization_id == organization_id,
            AuditControl.approver_id == identity.user_id,
        )
    )
    return result.scalar_one_or_none() is not None
