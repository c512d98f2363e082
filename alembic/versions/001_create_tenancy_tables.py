"""Create tenancy tables

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _uuid(name, *args, **kwargs):
    return sa.Column(name, postgresql.UUID(as_uuid=True), *args, **kwargs)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    ]


def upgrade() -> None:
    """Create workspace, invitation, subscription and outbox tables."""
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # Plans (reference data)
    op.create_table(
        'plans',
        _uuid('id', primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('tier', sa.String(10), nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('limits', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
        *_timestamps(),
        sa.UniqueConstraint('tier', 'version', name='uq_plans_tier_version'),
        sa.CheckConstraint('price >= 0', name='plan_price_non_negative'),
    )

    # Users and workspaces reference each other; the workspace -> user FKs are added below
    op.create_table(
        'users',
        _uuid('id', primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(100), nullable=False, server_default=''),
        _uuid('workspace_id', nullable=True),
        sa.Column('workspace_role', sa.String(10), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_workspace_id', 'users', ['workspace_id'])

    op.create_table(
        'workspaces',
        _uuid('id', primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('name', sa.String(255), nullable=False),
        _uuid('owner_id', sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('max_pending_invites', sa.Integer, nullable=False, server_default='20'),
        _uuid('current_plan_id', sa.ForeignKey('plans.id', ondelete='SET NULL'), nullable=True),
        _uuid('current_subscription_id', nullable=True),
        sa.Column('subscription_status', sa.String(8), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('LENGTH(name) > 0', name='workspace_name_not_empty'),
        sa.CheckConstraint('max_pending_invites >= 0', name='workspace_max_pending_non_negative'),
    )
    op.create_index('ix_workspaces_owner_id', 'workspaces', ['owner_id'])
    op.create_foreign_key(
        'users_workspace_id_fkey', 'users', 'workspaces', ['workspace_id'], ['id'], ondelete='SET NULL'
    )

    op.create_table(
        'workspace_members',
        _uuid('workspace_id', sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('joined_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('workspace_id', 'user_id', name='uq_workspace_members_workspace_user'),
    )
    op.create_index('ix_workspace_members_workspace_id', 'workspace_members', ['workspace_id'])

    # Subscriptions
    op.create_table(
        'subscriptions',
        _uuid('id', primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        _uuid('plan_id', sa.ForeignKey('plans.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('tier', sa.String(10), nullable=False),
        sa.Column('status', sa.String(8), nullable=False),
        sa.Column('price_at_purchase', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('grace_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scheduled_downgrade', postgresql.JSONB, nullable=True),
        sa.Column('limits', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('trial_warning_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('renewal_warning_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('superseded_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "(status = 'past_due') = (grace_period_end IS NOT NULL)",
            name='subscription_grace_period_iff_past_due',
        ),
    )
    op.create_index('ix_subscriptions_workspace_id', 'subscriptions', ['workspace_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_status_superseded', 'subscriptions', ['status', 'superseded_at'])
    op.create_foreign_key(
        'workspaces_current_subscription_id_fkey',
        'workspaces',
        'subscriptions',
        ['current_subscription_id'],
        ['id'],
        ondelete='SET NULL',
    )

    # Invitations
    op.create_table(
        'invitations',
        _uuid('id', primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('code', sa.String(8), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        _uuid('invited_by', sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.String(10), nullable=False),
        sa.Column('status', sa.String(8), nullable=False, server_default='active'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        _uuid('used_by', sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('status_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reminder_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata_json', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
        sa.CheckConstraint(
            "(status = 'used') = (used_at IS NOT NULL AND used_by IS NOT NULL)",
            name='invitation_used_fields_iff_used',
        ),
        sa.CheckConstraint('email = LOWER(email)', name='invitation_email_lowercase'),
    )
    op.create_index('ix_invitations_code', 'invitations', ['code'], unique=True)
    op.create_index('ix_invitations_workspace_id', 'invitations', ['workspace_id'])
    op.create_index('ix_invitations_expires_at', 'invitations', ['expires_at'])
    op.create_index('ix_invitations_status_expires_at', 'invitations', ['status', 'expires_at'])
    op.create_index(
        'uq_invitations_active_workspace_email',
        'invitations',
        ['workspace_id', 'email'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # Notification outbox
    op.create_table(
        'notifications',
        _uuid('id', primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('kind', sa.String(23), nullable=False),
        sa.Column('recipient', sa.String(255), nullable=False),
        sa.Column('payload', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('status', sa.String(7), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dedupe_key', sa.String(255), nullable=True, unique=True),
        *_timestamps(),
    )
    op.create_index('ix_notifications_status_next_attempt', 'notifications', ['status', 'next_attempt_at'])

    # Audit trail
    op.create_table(
        'audit_events',
        _uuid('id', primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        _uuid('user_id', sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        _uuid('entity_id', nullable=False),
        sa.Column('diff_json', postgresql.JSONB, nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_audit_events_workspace_id', 'audit_events', ['workspace_id'])
    op.create_index('ix_audit_events_user_id', 'audit_events', ['user_id'])


def downgrade() -> None:
    """Drop tenancy tables."""
    op.drop_table('audit_events')
    op.drop_table('notifications')
    op.drop_table('invitations')
    op.drop_constraint('workspaces_current_subscription_id_fkey', 'workspaces', type_='foreignkey')
    op.drop_table('subscriptions')
    op.drop_table('workspace_members')
    op.drop_constraint('users_workspace_id_fkey', 'users', type_='foreignkey')
    op.drop_table('workspaces')
    op.drop_table('users')
    op.drop_table('plans')
