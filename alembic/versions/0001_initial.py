"""Initial schema - branches, policies, appointments, queue, reminders

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

Creates the branch catalog, per-branch policy, appointment lifecycle,
queue ticketing and reminder tables.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    """Create all engine tables."""

    # ==========================================================================
    # Branch catalog
    # ==========================================================================
    op.create_table(
        'branches',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('address', sa.Text, nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('timezone', sa.String(50), nullable=False, server_default='UTC'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_table(
        'services',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('duration_minutes', sa.Integer, nullable=False, server_default='30'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_table(
        'service_points',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('branch_id', sa.Integer, sa.ForeignKey('branches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index('idx_service_points_branch', 'service_points', ['branch_id', 'is_active'])
    op.create_table(
        'service_point_services',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('service_point_id', sa.Integer, sa.ForeignKey('service_points.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.Integer, sa.ForeignKey('services.id', ondelete='CASCADE'), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('service_point_id', 'service_id', name='uq_service_point_service'),
    )
    op.create_table(
        'users',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='user'),
        sa.Column('branch_id', sa.Integer, sa.ForeignKey('branches.id', ondelete='SET NULL'), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )

    # ==========================================================================
    # Branch policy
    # ==========================================================================
    op.create_table(
        'branch_policies',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('branch_id', sa.Integer, sa.ForeignKey('branches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('cancellation_hours', sa.Integer, nullable=False),
        sa.Column('reschedule_time_limit_hours', sa.Integer, nullable=False),
        sa.Column('max_reschedules', sa.Integer, nullable=False),
        sa.Column('max_advance_booking_days', sa.Integer, nullable=False),
        sa.Column('reminders_enabled', sa.Boolean, nullable=False),
        sa.Column('reminder_offsets_hours', sa.JSON, nullable=False),
        sa.Column('reminder_message_template', sa.Text, nullable=True),
        sa.Column('emergency_mode', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('created_by', sa.Integer, nullable=True),
        sa.Column('updated_by', sa.Integer, nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
        sa.UniqueConstraint('branch_id', name='uq_branch_policy_branch'),
        sa.CheckConstraint('cancellation_hours >= 0', name='ck_policy_cancellation_hours'),
        sa.CheckConstraint('reschedule_time_limit_hours >= 0', name='ck_policy_reschedule_limit'),
        sa.CheckConstraint('max_reschedules >= 1', name='ck_policy_max_reschedules'),
        sa.CheckConstraint('max_advance_booking_days >= 1', name='ck_policy_max_advance'),
    )

    # ==========================================================================
    # Appointments
    # ==========================================================================
    op.create_table(
        'appointments',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('branch_id', sa.Integer, sa.ForeignKey('branches.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('service_id', sa.Integer, sa.ForeignKey('services.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('service_point_id', sa.Integer, sa.ForeignKey('service_points.id', ondelete='SET NULL'), nullable=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('guest_name', sa.String(255), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('confirmation_code', sa.String(16), nullable=False, unique=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='scheduled'),
        sa.Column('scheduled_at', TS, nullable=False),
        sa.Column('original_scheduled_at', TS, nullable=True),
        sa.Column('attended_at', TS, nullable=True),
        sa.Column('no_show_marked_at', TS, nullable=True),
        sa.Column('auto_marked_as_no_show', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('rescheduled_by_id', sa.Integer, nullable=True),
        sa.Column('rescheduled_at', TS, nullable=True),
        sa.Column('reschedule_reason', sa.Text, nullable=True),
        sa.Column('cancelled_at', TS, nullable=True),
        sa.Column('cancelled_by_id', sa.Integer, nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
    )
    op.create_index(
        'idx_appointments_branch_status_time',
        'appointments',
        ['branch_id', 'status', 'scheduled_at'],
    )
    op.create_index(
        'uq_appointments_active_slot',
        'appointments',
        ['branch_id', 'service_id', 'scheduled_at'],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
        sqlite_where=sa.text("status <> 'cancelled'"),
    )
    op.create_table(
        'appointment_reschedules',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('appointment_id', sa.Integer, sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('previous_scheduled_at', TS, nullable=False),
        sa.Column('new_scheduled_at', TS, nullable=False),
        sa.Column('actor_id', sa.Integer, nullable=True),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('idx_appointment_reschedules_appt', 'appointment_reschedules', ['appointment_id'])

    # ==========================================================================
    # Queue
    # ==========================================================================
    op.create_table(
        'queue_tickets',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('appointment_id', sa.Integer, sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('branch_id', sa.Integer, sa.ForeignKey('branches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_point_id', sa.Integer, sa.ForeignKey('service_points.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('service_day', sa.Date, nullable=False),
        sa.Column('ticket_number', sa.Integer, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='waiting'),
        sa.Column('called_at', TS, nullable=True),
        sa.Column('completed_at', TS, nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.UniqueConstraint('appointment_id', name='uq_queue_ticket_appointment'),
        sa.UniqueConstraint('branch_id', 'service_day', 'ticket_number', name='uq_queue_ticket_number'),
    )
    op.create_index('idx_queue_tickets_branch_day', 'queue_tickets', ['branch_id', 'service_day', 'status'])
    op.create_table(
        'ticket_counters',
        sa.Column('branch_id', sa.Integer, sa.ForeignKey('branches.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('service_day', sa.Date, primary_key=True),
        sa.Column('last_number', sa.Integer, nullable=False, server_default='0'),
    )

    # ==========================================================================
    # Reminders
    # ==========================================================================
    op.create_table(
        'appointment_reminders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('appointment_id', sa.Integer, sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('offset_hours', sa.Integer, nullable=False),
        sa.Column('target_scheduled_at', TS, nullable=False),
        sa.Column('scheduled_send_at', TS, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('email_address', sa.String(255), nullable=True),
        sa.Column('sent_at', TS, nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('retry_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('claimed_at', TS, nullable=False),
        sa.Column('created_at', TS, nullable=False),
        sa.UniqueConstraint(
            'appointment_id', 'offset_hours', 'target_scheduled_at',
            name='uq_appointment_reminder_offset',
        ),
    )
    op.create_index('idx_appointment_reminders_status', 'appointment_reminders', ['appointment_id', 'status'])


def downgrade() -> None:
    for table in (
        'appointment_reminders',
        'ticket_counters',
        'queue_tickets',
        'appointment_reschedules',
        'appointments',
        'branch_policies',
        'users',
        'service_point_services',
        'service_points',
        'services',
        'branches',
    ):
        op.drop_table(table)
