"""
End-to-end audit workflow: run, controls, findings, tasks, lock
"""
import json
import uuid
from datetime import datetime

import pytest
from httpx import AsyncClient
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound
from app.db.models import (
    ActivityType, AuditControl, AuditFinding, AuditRun, AuditRunActivity, FindingStatus,
    Task, TaskPriority, TaskType,
)
from app.services import audit_runs
from app.services.broadcast import ActivityBroadcaster


async def _count(db: AsyncSession, model, *where) -> int:
    return await db.scalar(select(func.count()).select_from(model).where(*where))


class TestAuditLifecycle:
    """The full path through the audit admin API"""

    @pytest.mark.asyncio
    async def test_create_then_add_two_controls(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, controls, auth_headers
    ):
        created = await client.post(
            "/api/admin/audit-runs",
            json={
                "organizationId": str(organization.id),
                "name": "HIPAA 2026",
                "startDate": "2026-06-01T00:00:00",
                "endDate": "2026-08-31T00:00:00",
            },
            headers=auth_headers(manager),
        )
        run_id = uuid.UUID(created.json()["auditRun"]["id"])

        added = await client.post(
            f"/api/admin/audit-runs/{run_id}/controls",
            json={"organizationId": str(organization.id), "controlIds": [str(controls[0].id), str(controls[1].id)]},
            headers=auth_headers(manager),
        )

        assert added.json()["addedCount"] == 2
        assert await _count(db_session, AuditControl, AuditControl.audit_run_id == run_id) == 2
        assert await _count(db_session, Task, Task.audit_run_id == run_id) == 2
        assigned = (await db_session.execute(
            select(AuditRunActivity.new_value).where(
                AuditRunActivity.audit_run_id == run_id,
                AuditRunActivity.activity_type == ActivityType.ASSIGNED,
            )
        )).scalars().all()
        assert len(assigned) == 1
        assert json.loads(assigned[0])["count"] == 2

    @pytest.mark.asyncio
    async def test_critical_finding_with_owner(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, officer, audit_run, auth_headers
    ):
        response = await client.post(
            "/api/admin/audit-findings",
            json={
                "organizationId": str(organization.id),
                "auditRunId": str(audit_run.id),
                "severity": "CRITICAL",
                "title": "Unencrypted backups",
                "description": "Nightly backups are stored in plaintext",
                "ownerId": str(officer.id),
            },
            headers=auth_headers(manager),
        )

        assert response.status_code == 201
        tasks = (await db_session.execute(
            select(Task.type, Task.priority, Task.assignee_id).where(Task.audit_run_id == audit_run.id)
        )).all()
        assert tasks == [(TaskType.GAP_REMEDIATION, TaskPriority.HIGH, officer.id)]

    @pytest.mark.asyncio
    async def test_low_finding_without_owner(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, audit_run, auth_headers
    ):
        response = await client.post(
            "/api/admin/audit-findings",
            json={
                "organizationId": str(organization.id),
                "auditRunId": str(audit_run.id),
                "severity": "LOW",
                "title": "Outdated policy header",
                "description": "Policy document lists last year's owner",
            },
            headers=auth_headers(manager),
        )

        assert response.status_code == 201
        assert await _count(db_session, Task, Task.audit_run_id == audit_run.id) == 0
        status = await db_session.scalar(select(AuditFinding.status).where(AuditFinding.audit_run_id == audit_run.id))
        assert status == FindingStatus.OPEN

    @pytest.mark.asyncio
    async def test_lock_then_put_changes_nothing(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, audit_run, auth_headers
    ):
        run_id = audit_run.id
        await client.post(
            f"/api/admin/audit-runs/{run_id}/lock",
            params={"organizationId": str(organization.id)},
            headers=auth_headers(manager),
        )
        activity_count = await _count(db_session, AuditRunActivity, AuditRunActivity.audit_run_id == run_id)

        response = await client.put(
            f"/api/admin/audit-runs/{run_id}",
            json={"organizationId": str(organization.id), "name": "Too late", "endDate": "2027-01-01T00:00:00"},
            headers=auth_headers(manager),
        )

        assert response.status_code == 400
        assert "locked" in response.json()["error"]
        name, end_date = (await db_session.execute(
            select(AuditRun.name, AuditRun.end_date).where(AuditRun.id == run_id)
        )).one()
        assert name == "SOC 2 Type II 2026"
        assert end_date == datetime(2026, 4, 1)
        assert await _count(db_session, AuditRunActivity, AuditRunActivity.audit_run_id == run_id) == activity_count

    @pytest.mark.asyncio
    async def test_every_change_logs_one_entry_by_actor(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, officer, audit_run,
        controls, auth_headers
    ):
        org = str(organization.id)
        await client.post(
            f"/api/admin/audit-runs/{audit_run.id}/controls",
            json={"organizationId": org, "controlIds": [str(controls[0].id)]},
            headers=auth_headers(manager),
        )
        finding = await client.post(
            "/api/admin/audit-findings",
            json={
                "organizationId": org, "auditRunId": str(audit_run.id), "severity": "HIGH",
                "title": "Shared accounts", "description": "Ops uses a shared root login",
            },
            headers=auth_headers(officer),
        )
        await client.put(
            f"/api/admin/audit-findings/{finding.json()['finding']['id']}",
            json={"organizationId": org, "status": "MITIGATED"},
            headers=auth_headers(officer),
        )
        await client.put(
            f"/api/admin/audit-runs/{audit_run.id}",
            json={"organizationId": org, "status": "UNDER_REVIEW"},
            headers=auth_headers(manager),
        )

        rows = (await db_session.execute(
            select(AuditRunActivity.activity_type, AuditRunActivity.performed_by)
            .where(AuditRunActivity.audit_run_id == audit_run.id)
            .order_by(AuditRunActivity.timestamp)
        )).all()
        assert rows == [
            (ActivityType.ASSIGNED, manager.id),
            (ActivityType.FINDING_CREATED, officer.id),
            (ActivityType.FINDING_UPDATED, officer.id),
            (ActivityType.UPDATED, manager.id),
        ]


class TestAtomicity:
    """A failing step leaves nothing behind once the request rolls back"""

    @pytest.mark.asyncio
    async def test_create_with_foreign_control_rolls_back(
        self, db_session: AsyncSession, organization, manager, controls, foreign_control, identity_of
    ):
        identity = identity_of(manager)
        organization_id = organization.id
        control_ids = [controls[0].id, foreign_control.id]

        with pytest.raises(NotFound):
            await audit_runs.create_audit_run(
                db_session,
                identity,
                organization_id=organization_id,
                name="Half-built run",
                start_date=datetime(2026, 1, 1),
                end_date=datetime(2026, 2, 1),
                control_ids=control_ids,
            )
        await db_session.rollback()

        assert await _count(db_session, AuditRun, AuditRun.organization_id == organization_id) == 0
        assert await _count(db_session, AuditControl) == 0
        assert await _count(db_session, Task) == 0
        assert await _count(db_session, AuditRunActivity) == 0


class TestLiveActivity:
    """Committed activity is pushed to the organization's subscribers"""

    @pytest.mark.asyncio
    async def test_subscribers_receive_created_event(
        self, client: AsyncClient, broadcaster: ActivityBroadcaster, organization, other_organization,
        manager, auth_headers
    ):
        own = broadcaster.subscribe(organization.id)
        other = broadcaster.subscribe(other_organization.id)

        response = await client.post(
            "/api/admin/audit-runs",
            json={
                "organizationId": str(organization.id),
                "name": "Streamed run",
                "startDate": "2026-01-01T00:00:00",
                "endDate": "2026-02-01T00:00:00",
            },
            headers=auth_headers(manager),
        )

        event = await own.get()
        assert event["activityType"] == "CREATED"
        assert event["auditRunId"] == response.json()["auditRun"]["id"]
        assert event["performedBy"] == str(manager.id)
        assert event["newValue"] == {"name": "Streamed run", "status": "DRAFT"}
        assert other.queue.empty()

    @pytest.mark.asyncio
    async def test_failed_request_publishes_nothing(
        self, client: AsyncClient, broadcaster: ActivityBroadcaster, organization, manager, locked_run, auth_headers
    ):
        subscription = broadcaster.subscribe(organization.id)

        response = await client.put(
            f"/api/admin/audit-runs/{locked_run.id}",
            json={"organizationId": str(organization.id), "name": "Nope"},
            headers=auth_headers(manager),
        )

        assert response.status_code == 400
        assert subscription.queue.empty()
