"""Add guest_auditors table

Revision ID: add_guest_auditors_002
Revises: audit_initial_001
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = 'add_guest_auditors_002'
down_revision = 'audit_initial_001'
branch_labels = None
depends_on = None

GUEST_ACCESS_LEVEL = sa.Enum('READ_ONLY', 'REVIEW', 'COMMENT', 'FULL', name='guestaccesslevel')


def upgrade() -> None:
    op.create_table(
        'guest_auditors',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('audit_run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('audit_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(100), nullable=True),
        sa.Column('access_level', GUEST_ACCESS_LEVEL, nullable=False, server_default='READ_ONLY'),
        sa.Column('invitation_token_hash', sa.String(64), nullable=False),
        sa.Column('invited_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('invited_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('accepted_at', sa.DateTime(), nullable=True),
        sa.Column('last_access_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('audit_run_id', 'email', name='uq_guest_auditors_run_email'),
        sa.UniqueConstraint('invitation_token_hash', name='uq_guest_auditors_invitation_token_hash'),
    )
    op.create_index('ix_guest_auditors_audit_run_id', 'guest_auditors', ['audit_run_id'])


def downgrade() -> None:
    op.drop_index('ix_guest_auditors_audit_run_id', table_name='guest_auditors')
    op.drop_table('guest_auditors')
    GUEST_ACCESS_LEVEL.drop(op.get_bind(), checkfirst=True)
