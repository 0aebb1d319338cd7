"""
Guest auditors: external people invited to look at a single audit run.

The plain invitation token is returned once to the inviter; the database
keeps only its sha256 digest.
"""
import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.errors import Conflict, NotFound, RunLocked, ValidationFailed
from app.core.security import Identity
from app.db.models import ActivityType, AuditRunActivity, GuestAccessLevel, GuestAuditor
from app.services import permissions
from app.services.activity import record_activity
from app.services.audit_controls import get_run_in_organization

logger = logging.getLogger(__name__)


def hash_invitation_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def list_guest_auditors(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
) -> list[GuestAuditor]:
    """Guests of the run, most recently invited first (revoked ones included)"""
    await permissions.require_permission(db, identity, organization_id)
    await get_run_in_organization(db, organization_id, audit_run_id)

    result = await db.execute(
        select(GuestAuditor)
        .options(selectinload(GuestAuditor.inviter))
        .where(GuestAuditor.audit_run_id == audit_run_id)
        .order_by(GuestAuditor.invited_at.desc())
    )
    return list(result.scalars().all())


async def invite_guest_auditor(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
    email: str,
    name: str,
    role: Optional[str] = None,
    access_level: Optional[GuestAccessLevel] = None,
    expires_in_days: Optional[int] = None,
) -> tuple[GuestAuditor, str, AuditRunActivity]:
    """
    Invite a guest to the run. Returns the guest, the plain invitation
    token (not stored) and the ASSIGNED activity.
    """
    email = (email or "").strip().lower()
    name = (name or "").strip()
    if not email or not name:
        raise ValidationFailed("Email and name are required")

    days = settings.GUEST_INVITE_DEFAULT_DAYS if expires_in_days is None else expires_in_days
    if not 1 <= days <= settings.GUEST_INVITE_MAX_DAYS:
        raise ValidationFailed(f"expiresInDays must be between 1 and {settings.GUEST_INVITE_MAX_DAYS}")

    await permissions.require_permission(db, identity, organization_id)

    audit_run = await get_run_in_organization(db, organization_id, audit_run_id)
    if audit_run.is_locked:
        raise RunLocked()

    existing = await db.scalar(
        select(GuestAuditor.id).where(
            GuestAuditor.audit_run_id == audit_run.id,
            GuestAuditor.email == email,
        )
    )
    if existing is not None:
        raise Conflict("Guest auditor already invited")

    token = secrets.token_urlsafe(32)
    now = datetime.utcnow()
    guest = GuestAuditor(
        audit_run_id=audit_run.id,
        email=email,
        name=name,
        role=role,
        access_level=access_level or GuestAccessLevel.READ_ONLY,
        invitation_token_hash=hash_invitation_token(token),
        invited_by=identity.user_id,
        invited_at=now,
        expires_at=now + timedelta(days=days),
        is_active=True,
    )
    db.add(guest)
    await db.flush()

    activity = await record_activity(
        db,
        audit_run_id=audit_run.id,
        activity_type=ActivityType.ASSIGNED,
        performed_by=identity.user_id,
        target_entity="guest_auditor",
        new_value={
            "id": guest.id,
            "email": email,
            "name": name,
            "role": role,
            "accessLevel": guest.access_level,
            "expiresAt": guest.expires_at,
        },
    )
    await db.flush()
    await db.refresh(guest, attribute_names=["inviter"])
    logger.info(f"Invited guest auditor {email} to audit run {audit_run.id}")
    return guest, token, activity


async def revoke_guest_auditor(
    db: AsyncSession,
    identity: Identity,
    organization_id: uuid.UUID,
    audit_run_id: uuid.UUID,
    guest_id: uuid.UUID,
) -> tuple[GuestAuditor, AuditRunActivity]:
    """Deactivate a guest's access; the row stays for the audit trail"""
    await permissions.require_permission(db, identity, organization_id)

    audit_run = await get_run_in_organization(db, organization_id, audit_run_id)
    if audit_run.is_locked:
        raise RunLocked()

    guest = await db.scalar(
        select(GuestAuditor).where(
            GuestAuditor.id == guest_id,
            GuestAuditor.audit_run_id == audit_run.id,
        )
    )
    if guest is None:
        raise NotFound("Guest auditor not found")
    if not guest.is_active:
        raise ValidationFailed("Guest auditor access already revoked")

    revoked_at = datetime.utcnow()
    guest.is_active = False

    activity = await record_activity(
        db,
        audit_run_id=audit_run.id,
        activity_type=ActivityType.ASSIGNED,
        performed_by=identity.user_id,
        target_entity="guest_auditor_revoked",
        new_value={"id": guest.id, "email": guest.email, "name": guest.name, "revokedAt": revoked_at},
    )
    await db.flush()
    logger.info(f"Revoked guest auditor {guest.id} on audit run {audit_run.id}")
    return guest, activity
