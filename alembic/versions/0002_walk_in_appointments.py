"""Walk-in appointments

Revision ID: 0002_walk_in_appointments
Revises: 0001_initial
Create Date: 2026-10-19

Adds appointments.appointment_type and narrows the active-slot unique index
to booked appointments, since walk-ins are created at "now" and are not
slot-bound.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0002_walk_in_appointments'
down_revision: Union[str, Sequence[str], None] = '0001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OLD_SLOT_WHERE = "status <> 'cancelled'"
NEW_SLOT_WHERE = "status <> 'cancelled' AND appointment_type = 'booking'"


def _create_slot_index(where: str) -> None:
    op.create_index(
        'uq_appointments_active_slot',
        'appointments',
        ['branch_id', 'service_id', 'scheduled_at'],
        unique=True,
        postgresql_where=sa.text(where),
        sqlite_where=sa.text(where),
    )


def upgrade() -> None:
    with op.batch_alter_table('appointments') as batch_op:
        batch_op.add_column(
            sa.Column('appointment_type', sa.String(20), nullable=False, server_default='booking')
        )
    op.drop_index('uq_appointments_active_slot', table_name='appointments')
    _create_slot_index(NEW_SLOT_WHERE)


def downgrade() -> None:
    op.drop_index('uq_appointments_active_slot', table_name='appointments')
    _create_slot_index(OLD_SLOT_WHERE)
    with op.batch_alter_table('appointments') as batch_op:
        batch_op.drop_column('appointment_type')
