"""BugBoard initial schema (users, teams, issues, attachments, audit log)

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19T09:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1b2c3d4e5f6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names, matching SQLAlchemy's default for Python enums
USER_ROLE = sa.Enum('ADMIN', 'USER', name='userrole')
ISSUE_PRIORITY = sa.Enum('NONE', 'LOW', 'MEDIUM', 'HIGH', 'CRITICAL', name='issuepriority')
ISSUE_STATUS = sa.Enum('TODO', 'IN_PROGRESS', 'DONE', name='issuestatus')
ISSUE_TYPE = sa.Enum('BUG', 'FEATURE', 'QUESTION', 'DOCUMENTATION', name='issuetype')
AUDIT_EVENT_TYPE = sa.Enum(
    'USER_LOGIN', 'PASSWORD_CHANGED', 'PASSWORD_RECOVERED',
    'USER_CREATED', 'USER_UPDATED', 'USER_ROLE_CHANGED', 'USER_DEACTIVATED', 'USER_REACTIVATED',
    'ISSUE_CREATED', 'ISSUE_UPDATED', 'ISSUE_ARCHIVED', 'ISSUE_UNARCHIVED', 'ISSUE_DELETED',
    'ISSUE_ASSIGNED', 'ISSUE_UNASSIGNED',
    'ATTACHMENT_UPLOADED', 'ATTACHMENT_DELETED',
    'TEAM_CREATED', 'TEAM_UPDATED', 'TEAM_DELETED',
    name='auditeventtype',
)


def upgrade() -> None:
    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('role', USER_ROLE, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('creator_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # --- teams ---
    op.create_table(
        'teams',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('creator_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_teams_name', 'teams', ['name'], unique=True)
    op.create_index('ix_teams_creator_id', 'teams', ['creator_id'])

    op.create_table(
        'team_members',
        sa.Column('team_id', sa.Integer(), sa.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('team_id', 'user_id'),
    )

    # --- issues ---
    op.create_table(
        'issues',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('priority', ISSUE_PRIORITY, nullable=False),
        sa.Column('status', ISSUE_STATUS, nullable=False),
        sa.Column('type', ISSUE_TYPE, nullable=False),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_by_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('creator_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('team_id', sa.Integer(), sa.ForeignKey('teams.id', ondelete='SET NULL'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_issues_title', 'issues', ['title'], unique=True)
    op.create_index('ix_issues_priority', 'issues', ['priority'])
    op.create_index('ix_issues_status', 'issues', ['status'])
    op.create_index('ix_issues_type', 'issues', ['type'])
    op.create_index('ix_issues_is_archived', 'issues', ['is_archived'])
    op.create_index('ix_issues_updated_at', 'issues', ['updated_at'])
    op.create_index('ix_issues_creator_id', 'issues', ['creator_id'])
    op.create_index('ix_issues_team_id', 'issues', ['team_id'])
    op.create_index('idx_issue_archived_status', 'issues', ['is_archived', 'status'])

    op.create_table(
        'issue_assignees',
        sa.Column('issue_id', sa.Integer(), sa.ForeignKey('issues.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('issue_id', 'user_id'),
    )

    # --- attachments ---
    op.create_table(
        'attachments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('issue_id', sa.Integer(), sa.ForeignKey('issues.id', ondelete='CASCADE'), nullable=False),
        sa.Column('uploader_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('filename', sa.String(255), nullable=False),
        sa.Column('content_type', sa.String(255), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('storage_key', sa.String(255), nullable=False),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('storage_key'),
    )
    op.create_index('ix_attachments_issue_id', 'attachments', ['issue_id'])

    # --- audit_logs ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('event_type', AUDIT_EVENT_TYPE, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('resource_type', sa.String(50), nullable=True),
        sa.Column('resource_id', sa.String(50), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('request_id', sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'])
    op.create_index('idx_audit_event_timestamp', 'audit_logs', ['event_type', 'timestamp'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('attachments')
    op.drop_table('issue_assignees')
    op.drop_table('issues')
    op.drop_table('team_members')
    op.drop_table('teams')
    op.drop_table('users')
    bind = op.get_bind()
    for enum in (AUDIT_EVENT_TYPE, ISSUE_TYPE, ISSUE_STATUS, ISSUE_PRIORITY, USER_ROLE):
        enum.drop(bind, checkfirst=True)
