"""Create users, workspaces, workspace_members and stripe_webhook_events

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19

WHAT:
    Initial schema for the billing API:
    - users and workspaces (with stripe_customer_id and access_enabled)
    - workspace_members with admin/member roles
    - stripe_webhook_events (idempotency for webhook deliveries)

WHY:
    The subscription itself lives in Stripe. Locally we only keep the
    customer id, the derived access gate, and the processed event ids that
    stop a replayed `customer.subscription.deleted` from materializing a
    scheduled downgrade twice.

REFERENCES:
    - backend/stackcore/models.py (Workspace, WorkspaceMember, StripeWebhookEvent)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'workspaces',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('is_team', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('access_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('deactivated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_workspaces_stripe_customer_id', 'workspaces', ['stripe_customer_id'], unique=True)

    role_enum = postgresql.ENUM('admin', 'member', name='roleenum')
    role_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'workspace_members',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('workspace_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('role', postgresql.ENUM('admin', 'member', name='roleenum', create_type=False), nullable=False),
        sa.Column('status', sa.String(), server_default='active'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('workspace_id', 'user_id', name='uq_workspace_member'),
    )

    op.create_table(
        'stripe_webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('stripe_object_id', sa.String(), nullable=True),
        sa.Column('payload_json', postgresql.JSON(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('processing_result', sa.String(), server_default='processed'),
    )
    op.create_index('ix_stripe_webhook_events_event_id', 'stripe_webhook_events', ['event_id'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_stripe_webhook_events_event_id', table_name='stripe_webhook_events')
    op.drop_table('stripe_webhook_events')

    op.drop_table('workspace_members')
    postgresql.ENUM('admin', 'member', name='roleenum').drop(op.get_bind(), checkfirst=True)

    op.drop_index('ix_workspaces_stripe_customer_id', table_name='workspaces')
    op.drop_table('workspaces')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
