"""Initial audit schema (organizations, controls, audit runs and their children)

Revision ID: audit_initial_001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = 'audit_initial_001'
down_revision = None
branch_labels = None
depends_on = None


PLATFORM_ROLE = sa.Enum('SUPER_ADMIN', 'PLATFORM_ADMIN', 'USER', name='platformrole')
ORGANIZATION_ROLE = sa.Enum(
    'ADMIN', 'AUDIT_MANAGER', 'COMPLIANCE_OFFICER', 'CONTRIBUTOR', 'VIEWER', name='organizationrole'
)
CRITICALITY = sa.Enum('LOW', 'MEDIUM', 'HIGH', 'CRITICAL', name='criticality')
AUDIT_TYPE = sa.Enum('INTERNAL', 'EXTERNAL', 'SELF_ASSESSMENT', name='audittype')
AUDIT_RUN_STATUS = sa.Enum(
    'DRAFT', 'ACTIVE', 'IN_PROGRESS', 'UNDER_REVIEW', 'COMPLETED', 'LOCKED', name='auditrunstatus'
)
CONTROL_STATUS = sa.Enum(
    'NOT_STARTED', 'IN_PROGRESS', 'SUBMITTED', 'MET', 'GAP', 'NOT_APPLICABLE', name='controlstatus'
)
FINDING_SEVERITY = sa.Enum('LOW', 'MEDIUM', 'HIGH', 'CRITICAL', name='findingseverity')
FINDING_STATUS = sa.Enum(
    'OPEN', 'IN_PROGRESS', 'MITIGATED', 'RESOLVED', 'ACCEPTED', 'CLOSED', name='findingstatus'
)
TASK_TYPE = sa.Enum('EVIDENCE_COLLECTION', 'GAP_REMEDIATION', 'REVIEW', name='tasktype')
TASK_STATUS = sa.Enum('OPEN', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED', name='taskstatus')
TASK_PRIORITY = sa.Enum('LOW', 'MEDIUM', 'HIGH', 'CRITICAL', name='taskpriority')
AUDIT_PHASE = sa.Enum('PLANNING', 'EXECUTION', 'REMEDIATION', 'REPORTING', name='auditphase')
ACTIVITY_TYPE = sa.Enum(
    'CREATED', 'UPDATED', 'ASSIGNED', 'FINDING_CREATED', 'FINDING_UPDATED',
    'REVIEWED', 'APPROVED', 'REJECTED', 'AUDIT_LOCKED', 'TASK_UPDATED',
    name='activitytype',
)


def upgrade() -> None:
    # === reference tables ===
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('platform_role', PLATFORM_ROLE, nullable=False, server_default='USER'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'organizations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'organization_users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', ORGANIZATION_ROLE, nullable=False, server_default='VIEWER'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('organization_id', 'user_id', name='uq_organization_users_org_user'),
    )

    op.create_table(
        'frameworks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('type', sa.String(50), nullable=True),
        sa.Column('version', sa.String(50), nullable=True),
    )

    op.create_table(
        'controls',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('framework_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('frameworks.id'), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('criticality', CRITICALITY, nullable=False, server_default='MEDIUM'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_controls_organization_id', 'controls', ['organization_id'])

    # === audit_runs table ===
    op.create_table(
        'audit_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('framework_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('frameworks.id'), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('scope', sa.Text(), nullable=True),
        sa.Column('audit_type', AUDIT_TYPE, nullable=False, server_default='INTERNAL'),
        sa.Column('status', AUDIT_RUN_STATUS, nullable=False, server_default='DRAFT'),
        sa.Column('external_auditor_info', sa.JSON(), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_runs_organization_created', 'audit_runs', ['organization_id', 'created_at'])

    # === audit_controls table ===
    op.create_table(
        'audit_controls',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('audit_run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('audit_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('control_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('controls.id', ondelete='CASCADE'), nullable=False),
        sa.Column('reviewer_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approver_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('status', CONTROL_STATUS, nullable=False, server_default='NOT_STARTED'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        # Authoritative guard against concurrent duplicate assignment
        sa.UniqueConstraint('audit_run_id', 'control_id', name='uq_audit_controls_run_control'),
    )

    # === audit_findings table ===
    op.create_table(
        'audit_findings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('audit_run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('audit_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('control_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('controls.id', ondelete='SET NULL'), nullable=True),
        sa.Column('audit_control_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('audit_controls.id', ondelete='SET NULL'), nullable=True),
        sa.Column('severity', FINDING_SEVERITY, nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('remediation_plan', sa.Text(), nullable=True),
        sa.Column('status', FINDING_STATUS, nullable=False, server_default='OPEN'),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_findings_audit_run_id', 'audit_findings', ['audit_run_id'])

    # === tasks table ===
    op.create_table(
        'tasks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('audit_run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('audit_runs.id', ondelete='CASCADE'), nullable=True),
        sa.Column('control_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('controls.id', ondelete='SET NULL'), nullable=True),
        sa.Column('type', TASK_TYPE, nullable=False),
        sa.Column('audit_phase', AUDIT_PHASE, nullable=True),
        sa.Column('status', TASK_STATUS, nullable=False, server_default='OPEN'),
        sa.Column('priority', TASK_PRIORITY, nullable=False, server_default='MEDIUM'),
        sa.Column('assignee_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('comments', sa.Text(), nullable=True),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('completed_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_tasks_organization_id', 'tasks', ['organization_id'])
    op.create_index('ix_tasks_audit_run_control', 'tasks', ['audit_run_id', 'control_id'])

    # === audit_evidence_links table ===
    op.create_table(
        'audit_evidence_links',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('audit_run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('audit_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('control_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('controls.id', ondelete='CASCADE'), nullable=False),
        sa.Column('evidence_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('linked_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_evidence_links_run_control', 'audit_evidence_links', ['audit_run_id', 'control_id'])

    # === audit_run_activities table (append only) ===
    op.create_table(
        'audit_run_activities',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('audit_run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('audit_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('activity_type', ACTIVITY_TYPE, nullable=False),
        sa.Column('performed_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('target_entity', sa.String(50), nullable=False),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_run_activities_audit_run_id', 'audit_run_activities', ['audit_run_id'])
    op.create_index('ix_audit_run_activities_timestamp', 'audit_run_activities', ['timestamp'])


def downgrade() -> None:
    op.drop_index('ix_audit_run_activities_timestamp', table_name='audit_run_activities')
    op.drop_index('ix_audit_run_activities_audit_run_id', table_name='audit_run_activities')
    op.drop_table('audit_run_activities')

    op.drop_index('ix_audit_evidence_links_run_control', table_name='audit_evidence_links')
    op.drop_table('audit_evidence_links')

    op.drop_index('ix_tasks_audit_run_control', table_name='tasks')
    op.drop_index('ix_tasks_organization_id', table_name='tasks')
    op.drop_table('tasks')

    op.drop_index('ix_audit_findings_audit_run_id', table_name='audit_findings')
    op.drop_table('audit_findings')

    op.drop_table('audit_controls')

    op.drop_index('ix_audit_runs_organization_created', table_name='audit_runs')
    op.drop_table('audit_runs')

    op.drop_index('ix_controls_organization_id', table_name='controls')
    op.drop_table('controls')
    op.drop_table('frameworks')
    op.drop_table('organization_users')
    op.drop_table('organizations')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (
        ACTIVITY_TYPE, AUDIT_PHASE, TASK_PRIORITY, TASK_STATUS, TASK_TYPE,
        FINDING_STATUS, FINDING_SEVERITY, CONTROL_STATUS, AUDIT_RUN_STATUS,
        AUDIT_TYPE, CRITICALITY, ORGANIZATION_ROLE, PLATFORM_ROLE,
    ):
        enum_type.drop(bind, checkfirst=True)
