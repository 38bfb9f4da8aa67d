"""Initial schema: accounts, pharmacies, orders, refill requests, notifications

Revision ID: 0001a7c3e9b2
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '0001a7c3e9b2'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_uuid_pk = lambda: sa.Column(  # noqa: E731
    'id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'),
)
_created_at = lambda: sa.Column(  # noqa: E731
    'created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False,
)


def upgrade() -> None:
    op.create_table(
        'users',
        _uuid_pk(),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('role', sa.String(length=20), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        _created_at(),
    )

    op.create_table(
        'pharmacies',
        _uuid_pk(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('pharmacy_name', sa.String(length=200), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('address', sa.String(length=500), nullable=True),
        _created_at(),
    )

    op.create_table(
        'prescriptions',
        _uuid_pk(),
        sa.Column('patient_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('pharmacy_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('pharmacies.id'), nullable=True),
        sa.Column('medications', postgresql.JSON(), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=True, server_default='pending'),
        _created_at(),
    )
    op.create_index('ix_prescriptions_patient_id', 'prescriptions', ['patient_id'])
    op.create_index('ix_prescriptions_pharmacy_id', 'prescriptions', ['pharmacy_id'])

    op.create_table(
        'orders',
        _uuid_pk(),
        sa.Column('order_number', sa.String(length=40), nullable=False, unique=True),
        sa.Column('patient_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('pharmacy_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('pharmacies.id'), nullable=False),
        sa.Column('prescription_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('prescriptions.id'), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='placed'),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_orders_patient_id', 'orders', ['patient_id'])
    op.create_index('ix_orders_pharmacy_id', 'orders', ['pharmacy_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    op.create_table(
        'refill_requests',
        _uuid_pk(),
        sa.Column('original_order_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('prescription_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('prescriptions.id'), nullable=False),
        sa.Column('patient_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('pharmacy_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('pharmacies.id'), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('medications', postgresql.JSON(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('response_message', sa.Text(), nullable=True),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('responded_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_refill_requests_patient_id', 'refill_requests', ['patient_id'])
    op.create_index('ix_refill_requests_pharmacy_status', 'refill_requests', ['pharmacy_id', 'status'])
    op.create_index(
        'uq_refill_requests_pending_order',
        'refill_requests',
        ['original_order_id'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        'notifications',
        _uuid_pk(),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.String(length=1000), nullable=False),
        sa.Column('type', sa.String(length=40), nullable=False),
        sa.Column('priority', sa.String(length=20), nullable=False, server_default='medium'),
        sa.Column('reference_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('reference_type', sa.String(length=40), nullable=True),
        sa.Column('reference_metadata', postgresql.JSON(), nullable=True),
        sa.Column('channels', postgresql.JSON(), nullable=False),
        sa.Column('action_button', postgresql.JSON(), nullable=True),
        sa.Column('tags', postgresql.JSON(), nullable=True),
        sa.Column('created_by_user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_by_role', sa.String(length=20), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        _created_at(),
    )
    op.create_index('ix_notifications_type', 'notifications', ['type'])

    op.create_table(
        'notification_recipients',
        _uuid_pk(),
        sa.Column('notification_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('notifications.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_role', sa.String(length=20), nullable=False),
        sa.Column('delivery_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_notification_recipients_notification_id', 'notification_recipients', ['notification_id'])
    op.create_index('ix_notification_recipients_user_id', 'notification_recipients', ['user_id'])

    op.create_table(
        'audit_logs',
        _uuid_pk(),
        sa.Column('pharmacy_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=True),
        sa.Column('entity_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('old_value', postgresql.JSON(), nullable=True),
        sa.Column('new_value', postgresql.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        _created_at(),
    )


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_index('ix_notification_recipients_user_id', table_name='notification_recipients')
    op.drop_index('ix_notification_recipients_notification_id', table_name='notification_recipients')
    op.drop_table('notification_recipients')
    op.drop_index('ix_notifications_type', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('uq_refill_requests_pending_order', table_name='refill_requests')
    op.drop_index('ix_refill_requests_pharmacy_status', table_name='refill_requests')
    op.drop_index('ix_refill_requests_patient_id', table_name='refill_requests')
    op.drop_table('refill_requests')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_pharmacy_id', table_name='orders')
    op.drop_index('ix_orders_patient_id', table_name='orders')
    op.drop_table('orders')
    op.drop_index('ix_prescriptions_pharmacy_id', table_name='prescriptions')
    op.drop_index('ix_prescriptions_patient_id', table_name='prescriptions')
    op.drop_table('prescriptions')
    op.drop_table('pharmacies')
    op.drop_table('users')
