"""
Tests for control assignment, review and approval routes
"""
import json
import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import (
    ActivityType, AuditControl, AuditEvidenceLink, AuditRunActivity, ControlStatus,
    Task, TaskStatus, TaskType,
)


def _controls_url(audit_run) -> str:
    return f"/api/admin/audit-runs/{audit_run.id}/controls"


async def _attach(client, audit_run, organization, manager, auth_headers, control_ids, **extra) -> dict:
    payload = {"organizationId": str(organization.id), "controlIds": [str(cid) for cid in control_ids]}
    payload.update(extra)
    response = await client.post(_controls_url(audit_run), json=payload, headers=auth_headers(manager))
    assert response.status_code == 201, response.text
    return response.json()


class TestAddControls:
    """POST /api/admin/audit-runs/{id}/controls"""

    @pytest.mark.asyncio
    async def test_add_controls(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, audit_run, controls, auth_headers
    ):
        data = await _attach(client, audit_run, organization, manager, auth_headers, [c.id for c in controls[:2]])

        assert data["addedCount"] == 2
        assert data["message"] == "2 controls added to audit successfully"

        tasks = (await db_session.execute(
            select(Task.type, Task.status, Task.priority).where(Task.audit_run_id == audit_run.id)
        )).all()
        assert len(tasks) == 2
        assert all(t.type == TaskType.EVIDENCE_COLLECTION and t.status == TaskStatus.OPEN for t in tasks)

    @pytest.mark.asyncio
    async def test_assigned_activity_summarizes_batch(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, audit_run, controls, auth_headers
    ):
        ids = [c.id for c in controls[:2]]
        await _attach(client, audit_run, organization, manager, auth_headers, ids)

        activities = (await db_session.execute(
            select(AuditRunActivity.activity_type, AuditRunActivity.new_value, AuditRunActivity.performed_by)
            .where(AuditRunActivity.audit_run_id == audit_run.id)
        )).all()
        assert len(activities) == 1
        assert activities[0].activity_type == ActivityType.ASSIGNED
        assert activities[0].performed_by == manager.id
        new_value = json.loads(activities[0].new_value)
        assert new_value == {"controlIds": [str(cid) for cid in ids], "count": 2}

    @pytest.mark.asyncio
    async def test_resubmission_is_idempotent(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, audit_run, controls, auth_headers
    ):
        ids = [controls[0].id, controls[1].id]
        await _attach(client, audit_run, organization, manager, auth_headers, ids)
        data = await _attach(client, audit_run, organization, manager, auth_headers, ids + [controls[0].id])

        assert data["addedCount"] == 0
        count = await db_session.scalar(
            select(func.count()).select_from(AuditControl).where(AuditControl.audit_run_id == audit_run.id)
        )
        assert count == 2
        task_count = await db_session.scalar(
            select(func.count()).select_from(Task).where(Task.audit_run_id == audit_run.id)
        )
        assert task_count == 2

    @pytest.mark.asyncio
    async def test_duplicates_within_batch(
        self, client: AsyncClient, organization, manager, audit_run, controls, auth_headers
    ):
        data = await _attach(
            client, audit_run, organization, manager, auth_headers, [controls[2].id, controls[2].id]
        )

        assert data["addedCount"] == 1

    @pytest.mark.asyncio
    async def test_control_of_other_organization(
        self, client: AsyncClient, organization, manager, audit_run, foreign_control, auth_headers
    ):
        response = await client.post(
            _controls_url(audit_run),
            json={"organizationId": str(organization.id), "controlIds": [str(foreign_control.id)]},
            headers=auth_headers(manager),
        )

        assert response.status_code == 404
        assert response.json()["error"].startswith("Control not found or access denied")

    @pytest.mark.asyncio
    async def test_locked_run(self, client: AsyncClient, organization, manager, locked_run, controls, auth_headers):
        response = await client.post(
            _controls_url(locked_run),
            json={"organizationId": str(organization.id), "controlIds": [str(controls[0].id)]},
            headers=auth_headers(manager),
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Cannot modify locked audit run"}

    @pytest.mark.asyncio
    async def test_missing_run(self, client: AsyncClient, organization, manager, controls, auth_headers):
        response = await client.post(
            f"/api/admin/audit-runs/{uuid.uuid4()}/controls",
            json={"organizationId": str(organization.id), "controlIds": [str(controls[0].id)]},
            headers=auth_headers(manager),
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_control_ids_required(self, client: AsyncClient, organization, manager, audit_run, auth_headers):
        response = await client.post(
            _controls_url(audit_run),
            json={"organizationId": str(organization.id)},
            headers=auth_headers(manager),
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Organization ID and control IDs are required"}


class TestListControls:
    """GET /api/admin/audit-runs/{id}/controls"""

    @pytest.mark.asyncio
    async def test_most_critical_first(
        self, client: AsyncClient, organization, manager, audit_run, controls, auth_headers
    ):
        await _attach(client, audit_run, organization, manager, auth_headers, [c.id for c in controls])

        response = await client.get(
            _controls_url(audit_run),
            params={"organizationId": str(organization.id)},
            headers=auth_headers(manager),
        )

        assert response.status_code == 200
        names = [ac["control"]["name"] for ac in response.json()["auditControls"]]
        assert names == ["Encryption at Rest", "Change Management", "Access Review"]

    @pytest.mark.asyncio
    async def test_filter_by_reviewer(
        self, client: AsyncClient, organization, manager, reviewer, audit_run, controls, auth_headers
    ):
        await _attach(
            client, audit_run, organization, manager, auth_headers, [c.id for c in controls],
            reviewerAssignments={str(controls[0].id): str(reviewer.id)},
        )

        response = await client.get(
            _controls_url(audit_run),
            params={"organizationId": str(organization.id), "reviewerId": str(reviewer.id)},
            headers=auth_headers(manager),
        )

        controls_json = response.json()["auditControls"]
        assert [ac["controlId"] for ac in controls_json] == [str(controls[0].id)]


class TestReviewAndApproval:
    """PUT /review and POST /approve on audit controls"""

    async def _assigned_control(self, client, db_session, organization, manager, reviewer, approver, audit_run,
                                control, auth_headers):
        await _attach(
            client, audit_run, organization, manager, auth_headers, [control.id],
            reviewerAssignments={str(control.id): str(reviewer.id)},
            approverAssignments={str(control.id): str(approver.id)},
        )
        return await db_session.scalar(
            select(AuditControl.id).where(
                AuditControl.audit_run_id == audit_run.id, AuditControl.control_id == control.id
            )
        )

    @pytest.mark.asyncio
    async def test_submit_completes_evidence_tasks(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, reviewer, approver,
        audit_run, controls, auth_headers
    ):
        audit_control_id = await self._assigned_control(
            client, db_session, organization, manager, reviewer, approver, audit_run, controls[0], auth_headers
        )
        evidence = [uuid.uuid4(), uuid.uuid4()]

        response = await client.put(
            f"/api/admin/audit-controls/{audit_control_id}/review",
            json={
                "organizationId": str(organization.id),
                "status": "SUBMITTED",
                "notes": "Quarterly review exported",
                "evidenceLinks": [str(e) for e in evidence],
            },
            headers=auth_headers(reviewer),
        )

        assert response.status_code == 200
        assert response.json()["auditControl"]["status"] == "SUBMITTED"
        assert response.json()["auditControl"]["submittedAt"] is not None

        task_status = await db_session.scalar(
            select(Task.status).where(Task.audit_run_id == audit_run.id, Task.control_id == controls[0].id)
        )
        assert task_status == TaskStatus.COMPLETED
        linked = (await db_session.execute(
            select(AuditEvidenceLink.evidence_id).where(AuditEvidenceLink.audit_run_id == audit_run.id)
        )).scalars().all()
        assert set(linked) == set(evidence)

        activity_types = (await db_session.execute(
            select(AuditRunActivity.activity_type).where(AuditRunActivity.audit_run_id == audit_run.id)
        )).scalars().all()
        assert ActivityType.REVIEWED in activity_types

    @pytest.mark.asyncio
    async def test_non_reviewer_cannot_review(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, reviewer, approver,
        officer, audit_run, controls, auth_headers
    ):
        audit_control_id = await self._assigned_control(
            client, db_session, organization, manager, reviewer, approver, audit_run, controls[0], auth_headers
        )

        response = await client.put(
            f"/api/admin/audit-controls/{audit_control_id}/review",
            json={"organizationId": str(organization.id), "status": "SUBMITTED"},
            headers=auth_headers(officer),
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Cannot review this control"}

    @pytest.mark.asyncio
    async def test_approve_submitted_control(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, reviewer, approver,
        audit_run, controls, auth_headers
    ):
        audit_control_id = await self._assigned_control(
            client, db_session, organization, manager, reviewer, approver, audit_run, controls[0], auth_headers
        )
        await client.put(
            f"/api/admin/audit-controls/{audit_control_id}/review",
            json={"organizationId": str(organization.id), "status": "SUBMITTED"},
            headers=auth_headers(reviewer),
        )

        response = await client.post(
            f"/api/admin/audit-controls/{audit_control_id}/approve",
            json={"organizationId": str(organization.id), "action": "approve"},
            headers=auth_headers(approver),
        )

        assert response.status_code == 200
        assert response.json()["auditControl"]["status"] == "MET"
        assert response.json()["auditControl"]["approvedAt"] is not None

    @pytest.mark.asyncio
    async def test_reject_records_reason(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, reviewer, approver,
        audit_run, controls, auth_headers
    ):
        audit_control_id = await self._assigned_control(
            client, db_session, organization, manager, reviewer, approver, audit_run, controls[0], auth_headers
        )
        await client.put(
            f"/api/admin/audit-controls/{audit_control_id}/review",
            json={"organizationId": str(organization.id), "status": "SUBMITTED"},
            headers=auth_headers(reviewer),
        )

        response = await client.post(
            f"/api/admin/audit-controls/{audit_control_id}/approve",
            json={"organizationId": str(organization.id), "action": "reject", "comments": "Evidence is stale"},
            headers=auth_headers(approver),
        )

        assert response.status_code == 200
        body = response.json()["auditControl"]
        assert body["status"] == "GAP"
        assert body["rejectionReason"] == "Evidence is stale"
        last = await db_session.scalar(
            select(AuditRunActivity.activity_type)
            .where(AuditRunActivity.audit_run_id == audit_run.id)
            .order_by(AuditRunActivity.timestamp.desc())
        )
        assert last == ActivityType.REJECTED

    @pytest.mark.asyncio
    async def test_approval_requires_submission(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, reviewer, approver,
        audit_run, controls, auth_headers
    ):
        audit_control_id = await self._assigned_control(
            client, db_session, organization, manager, reviewer, approver, audit_run, controls[0], auth_headers
        )

        response = await client.post(
            f"/api/admin/audit-controls/{audit_control_id}/approve",
            json={"organizationId": str(organization.id), "action": "approve"},
            headers=auth_headers(approver),
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Control must be submitted before approval"}

    @pytest.mark.asyncio
    async def test_reviewer_cannot_approve(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, reviewer, approver,
        audit_run, controls, auth_headers
    ):
        audit_control_id = await self._assigned_control(
            client, db_session, organization, manager, reviewer, approver, audit_run, controls[0], auth_headers
        )

        response = await client.post(
            f"/api/admin/audit-controls/{audit_control_id}/approve",
            json={"organizationId": str(organization.id), "action": "approve"},
            headers=auth_headers(reviewer),
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_action(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, reviewer, approver,
        audit_run, controls, auth_headers
    ):
        audit_control_id = await self._assigned_control(
            client, db_session, organization, manager, reviewer, approver, audit_run, controls[0], auth_headers
        )

        response = await client.post(
            f"/api/admin/audit-controls/{audit_control_id}/approve",
            json={"organizationId": str(organization.id), "action": "escalate"},
            headers=auth_headers(approver),
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Action must be 'approve' or 'reject'"}

    @pytest.mark.asyncio
    async def test_review_after_lock(
        self, client: AsyncClient, db_session: AsyncSession, organization, manager, reviewer, approver,
        audit_run, controls, auth_headers
    ):
        audit_control_id = await self._assigned_control(
            client, db_session, organization, manager, reviewer, approver, audit_run, controls[0], auth_headers
        )
        await client.post(
            f"/api/admin/audit-runs/{audit_run.id}/lock",
            params={"organizationId": str(organization.id)},
            headers=auth_headers(manager),
        )

        response = await client.put(
            f"/api/admin/audit-controls/{audit_control_id}/review",
            json={"organizationId": str(organization.id), "status": "SUBMITTED"},
            headers=auth_headers(reviewer),
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Cannot modify locked audit run"}
        status = await db_session.scalar(select(AuditControl.status).where(AuditControl.id == audit_control_id))
        assert status == ControlStatus.NOT_STARTED
