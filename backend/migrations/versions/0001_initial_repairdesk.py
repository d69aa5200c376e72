"""initial repairdesk schema

Revision ID: 0001_initial_repairdesk
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial_repairdesk'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('departments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False, unique=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('monitor_id', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_departments_monitor_id', 'departments', ['monitor_id'])

    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=64), nullable=False, unique=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=128)),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='technician'),
        sa.Column('permissions', sa.JSON(), nullable=True),
        sa.Column('legacy_perms', sa.JSON(), nullable=True),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('is_seed_admin', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('commission_pct', sa.Float(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_users_username', 'users', ['username'])
    op.create_index('ix_users_department_id', 'users', ['department_id'])
    op.create_index('ix_users_is_seed_admin', 'users', ['is_seed_admin'])

    op.create_table('counters',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=64), nullable=False, unique=True),
        sa.Column('seq', sa.Integer(), nullable=False, server_default=sa.text('0'))
    )

    op.create_table('repair_tickets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_number', sa.Integer(), nullable=False, unique=True),
        sa.Column('customer_name', sa.String(length=120), nullable=False),
        sa.Column('phone', sa.String(length=32)),
        sa.Column('device_type', sa.String(length=80), nullable=False),
        sa.Column('color', sa.String(length=40)),
        sa.Column('issue', sa.String(length=255)),
        sa.Column('notes', sa.Text()),
        sa.Column('notes_public', sa.String(length=255)),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('final_price', sa.Float(), nullable=True),
        sa.Column('eta', sa.DateTime(timezone=True), nullable=True),
        sa.Column('has_warranty', sa.Boolean(), nullable=True),
        sa.Column('warranty_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('warranty_notes', sa.String(length=255)),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('technician_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('recipient_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        sa.Column('current_department_id', sa.Integer(), sa.ForeignKey('departments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('active_stage_index', sa.Integer(), nullable=True),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('returned', sa.Boolean(), nullable=True),
        sa.Column('return_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_device_location', sa.String(length=32), nullable=True),
        sa.Column('tracking_enabled', sa.Boolean(), nullable=True),
        sa.Column('tracking_token', sa.String(length=64), nullable=True, unique=True),
        sa.Column('tracking_show_price', sa.Boolean(), nullable=True),
        sa.Column('tracking_show_eta', sa.Boolean(), nullable=True),
        sa.Column('tracking_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tracking_views', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('tracking_last_viewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sqlite_autoincrement=True
    )
    op.create_index('ix_repair_tickets_ticket_number', 'repair_tickets', ['ticket_number'])
    op.create_index('ix_repair_tickets_status', 'repair_tickets', ['status'])
    op.create_index('ix_repair_tickets_technician_id', 'repair_tickets', ['technician_id'])
    op.create_index('ix_repair_tickets_current_department_id', 'repair_tickets', ['current_department_id'])
    op.create_index('ix_repair_tickets_delivery_date', 'repair_tickets', ['delivery_date'])
    op.create_index('ix_repair_tickets_tracking_token', 'repair_tickets', ['tracking_token'])
    op.create_index('ix_repair_tickets_created_at', 'repair_tickets', ['created_at'])

    op.create_table('repair_flow_stages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('repair_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('technician_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='waiting'),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('notes', sa.Text()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True)
    )
    with op.batch_alter_table('repair_flow_stages') as batch_op:
        batch_op.create_unique_constraint('uq_stage_position', ['ticket_id', 'position'])
    op.create_index('ix_repair_flow_stages_ticket_id', 'repair_flow_stages', ['ticket_id'])
    op.create_index('ix_repair_flow_stages_department_id', 'repair_flow_stages', ['department_id'])
    op.create_index('ix_repair_flow_stages_technician_id', 'repair_flow_stages', ['technician_id'])

    op.create_table('repair_parts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('repair_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('source', sa.String(length=120)),
        sa.Column('supplier', sa.String(length=120)),
        sa.Column('cost', sa.Float(), nullable=True),
        sa.Column('qty', sa.Integer(), nullable=True),
        sa.Column('paid', sa.Boolean(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_by', sa.Integer(), nullable=True)
    )
    op.create_index('ix_repair_parts_ticket_id', 'repair_parts', ['ticket_id'])

    # no FK to repair_tickets: events outlive a deleted ticket
    op.create_table('repair_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), nullable=False),
        sa.Column('ticket_number', sa.Integer(), nullable=True),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True)
    )
    op.create_index('ix_repair_events_ticket_id', 'repair_events', ['ticket_id'])
    op.create_index('ix_repair_events_type', 'repair_events', ['type'])
    op.create_index('ix_repair_events_actor_id', 'repair_events', ['actor_id'])

    op.create_table('notification_outbox',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('kind', sa.String(length=32), nullable=False, server_default='repair'),
        sa.Column('recipients', sa.JSON(), nullable=True),
        sa.Column('message', sa.String(length=255), nullable=False),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('delivered_channels', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True)
    )
    op.create_index('ix_notification_outbox_status', 'notification_outbox', ['status'])

    op.create_table('notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('message', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=True, server_default=sa.text('0')),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])

    op.create_table('push_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('endpoint', sa.String(length=512), nullable=False, unique=True),
        sa.Column('p256dh', sa.String(length=255)),
        sa.Column('auth', sa.String(length=255)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_push_subscriptions_user_id', 'push_subscriptions', ['user_id'])


def downgrade():
    for tbl in ['push_subscriptions', 'notifications', 'notification_outbox', 'repair_events', 'repair_parts',
                'repair_flow_stages', 'repair_tickets', 'counters', 'users', 'departments']:
        op.drop_table(tbl)
