"""Initial salon booking and waitlist schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

UUID = postgresql.UUID(as_uuid=True)


def _id() -> sa.Column:
    return sa.Column('id', UUID, server_default=sa.text('gen_random_uuid()'), nullable=False)


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False)


def _updated_at() -> sa.Column:
    return sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False)


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table('salons',
        _id(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        _created_at(),
        sa.CheckConstraint('length(slug) > 0', name='ck_salon_slug_not_empty'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug')
    )
    op.create_index(op.f('ix_salons_slug'), 'salons', ['slug'], unique=False)

    op.create_table('employees',
        _id(),
        sa.Column('salon_id', UUID, nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['salon_id'], ['salons.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_employees_salon_id'), 'employees', ['salon_id'], unique=False)

    op.create_table('services',
        _id(),
        sa.Column('salon_id', UUID, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('prep_minutes', sa.Integer(), server_default='0', nullable=False),
        sa.Column('cleanup_minutes', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        _created_at(),
        sa.CheckConstraint('duration_minutes > 0', name='ck_service_duration_positive'),
        sa.CheckConstraint('prep_minutes >= 0', name='ck_service_prep_non_negative'),
        sa.CheckConstraint('cleanup_minutes >= 0', name='ck_service_cleanup_non_negative'),
        sa.ForeignKeyConstraint(['salon_id'], ['salons.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_services_salon_id'), 'services', ['salon_id'], unique=False)

    op.create_table('employee_services',
        sa.Column('employee_id', UUID, nullable=False),
        sa.Column('service_id', UUID, nullable=False),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('employee_id', 'service_id')
    )

    op.create_table('opening_hours',
        _id(),
        sa.Column('salon_id', UUID, nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('opens_at', sa.Time(), nullable=False),
        sa.Column('closes_at', sa.Time(), nullable=False),
        sa.CheckConstraint('weekday >= 0 AND weekday <= 6', name='ck_opening_hours_weekday'),
        sa.CheckConstraint('opens_at < closes_at', name='ck_opening_hours_window'),
        sa.ForeignKeyConstraint(['salon_id'], ['salons.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_opening_hours_salon_id'), 'opening_hours', ['salon_id'], unique=False)

    op.create_table('shifts',
        _id(),
        sa.Column('employee_id', UUID, nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('starts_at', sa.Time(), nullable=False),
        sa.Column('ends_at', sa.Time(), nullable=False),
        sa.CheckConstraint('weekday >= 0 AND weekday <= 6', name='ck_shift_weekday'),
        sa.CheckConstraint('starts_at < ends_at', name='ck_shift_window'),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_shifts_employee_id'), 'shifts', ['employee_id'], unique=False)

    op.create_table('employee_breaks',
        _id(),
        sa.Column('employee_id', UUID, nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=True),
        sa.Column('starts_at', sa.Time(), nullable=False),
        sa.Column('ends_at', sa.Time(), nullable=False),
        sa.Column('label', sa.String(length=128), server_default='Break', nullable=False),
        sa.CheckConstraint('starts_at < ends_at', name='ck_break_window'),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_employee_breaks_employee_id'), 'employee_breaks', ['employee_id'], unique=False)

    op.create_table('time_blocks',
        _id(),
        sa.Column('salon_id', UUID, nullable=False),
        sa.Column('employee_id', UUID, nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        _created_at(),
        sa.CheckConstraint('start_time < end_time', name='ck_time_block_window'),
        sa.ForeignKeyConstraint(['salon_id'], ['salons.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_time_blocks_salon_id'), 'time_blocks', ['salon_id'], unique=False)
    op.create_index(op.f('ix_time_blocks_employee_id'), 'time_blocks', ['employee_id'], unique=False)
    op.create_index(op.f('ix_time_blocks_start_time'), 'time_blocks', ['start_time'], unique=False)
    op.create_index(op.f('ix_time_blocks_end_time'), 'time_blocks', ['end_time'], unique=False)

    op.create_table('waitlist_entries',
        _id(),
        sa.Column('salon_id', UUID, nullable=False),
        sa.Column('service_id', UUID, nullable=False),
        sa.Column('employee_id', UUID, nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('preferred_date', sa.Date(), nullable=False),
        sa.Column('preferred_time_start', sa.Time(), nullable=True),
        sa.Column('preferred_time_end', sa.Time(), nullable=True),
        sa.Column('status', sa.String(length=20), server_default='waiting', nullable=False),
        sa.Column('notified_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint('length(customer_name) > 0', name='ck_waitlist_customer_name_not_empty'),
        sa.ForeignKeyConstraint(['salon_id'], ['salons.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_waitlist_entries_salon_id'), 'waitlist_entries', ['salon_id'], unique=False)
    op.create_index(op.f('ix_waitlist_entries_service_id'), 'waitlist_entries', ['service_id'], unique=False)
    op.create_index(op.f('ix_waitlist_entries_preferred_date'), 'waitlist_entries', ['preferred_date'], unique=False)
    op.create_index(op.f('ix_waitlist_entries_status'), 'waitlist_entries', ['status'], unique=False)
    op.create_index(op.f('ix_waitlist_entries_created_at'), 'waitlist_entries', ['created_at'], unique=False)

    op.create_table('bookings',
        _id(),
        sa.Column('salon_id', UUID, nullable=False),
        sa.Column('employee_id', UUID, nullable=False),
        sa.Column('service_id', UUID, nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='confirmed', nullable=False),
        sa.Column('is_walk_in', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('waitlist_entry_id', UUID, nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint('start_time < end_time', name='ck_booking_window'),
        sa.CheckConstraint('length(customer_name) > 0', name='ck_booking_customer_name_not_empty'),
        sa.ForeignKeyConstraint(['salon_id'], ['salons.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['waitlist_entry_id'], ['waitlist_entries.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_bookings_salon_id'), 'bookings', ['salon_id'], unique=False)
    op.create_index(op.f('ix_bookings_status'), 'bookings', ['status'], unique=False)
    op.create_index('ix_bookings_employee_window', 'bookings', ['employee_id', 'start_time', 'end_time'], unique=False)

    op.create_table('waitlist_offers',
        _id(),
        sa.Column('salon_id', UUID, nullable=False),
        sa.Column('waitlist_entry_id', UUID, nullable=False),
        sa.Column('service_id', UUID, nullable=False),
        sa.Column('employee_id', UUID, nullable=False),
        sa.Column('slot_date', sa.Date(), nullable=False),
        sa.Column('slot_start', sa.DateTime(), nullable=False),
        sa.Column('slot_end', sa.DateTime(), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('token_expires_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=32), server_default='pending', nullable=False),
        sa.Column('attempt_no', sa.Integer(), server_default='1', nullable=False),
        sa.Column('trigger', sa.String(length=32), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('responded_at', sa.DateTime(), nullable=True),
        sa.Column('response_channel', sa.String(length=32), nullable=True),
        sa.Column('reminder_sent_at', sa.DateTime(), nullable=True),
        sa.Column('booking_id', UUID, nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint('attempt_no > 0', name='ck_offer_attempt_positive'),
        sa.CheckConstraint('slot_start < slot_end', name='ck_offer_slot_window'),
        sa.ForeignKeyConstraint(['salon_id'], ['salons.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['waitlist_entry_id'], ['waitlist_entries.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token_hash'),
        sa.UniqueConstraint('waitlist_entry_id', 'slot_start', 'attempt_no', name='uq_offer_entry_slot_attempt')
    )
    op.create_index(op.f('ix_waitlist_offers_salon_id'), 'waitlist_offers', ['salon_id'], unique=False)
    op.create_index(op.f('ix_waitlist_offers_waitlist_entry_id'), 'waitlist_offers', ['waitlist_entry_id'], unique=False)
    op.create_index(op.f('ix_waitlist_offers_status'), 'waitlist_offers', ['status'], unique=False)
    op.create_index(op.f('ix_waitlist_offers_token_expires_at'), 'waitlist_offers', ['token_expires_at'], unique=False)
    # At most one pending offer per freed slot and per entry
    op.create_index(
        'uq_offer_pending_slot', 'waitlist_offers', ['salon_id', 'employee_id', 'slot_start'],
        unique=True, postgresql_where=sa.text("status = 'pending'")
    )
    op.create_index(
        'uq_offer_pending_entry', 'waitlist_offers', ['waitlist_entry_id'],
        unique=True, postgresql_where=sa.text("status = 'pending'")
    )

    op.create_table('waitlist_lifecycle_events',
        _id(),
        sa.Column('waitlist_entry_id', UUID, nullable=False),
        sa.Column('salon_id', UUID, nullable=False),
        sa.Column('from_status', sa.String(length=20), nullable=True),
        sa.Column('to_status', sa.String(length=20), nullable=False),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['waitlist_entry_id'], ['waitlist_entries.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_waitlist_lifecycle_events_waitlist_entry_id'), 'waitlist_lifecycle_events', ['waitlist_entry_id'], unique=False)
    op.create_index(op.f('ix_waitlist_lifecycle_events_salon_id'), 'waitlist_lifecycle_events', ['salon_id'], unique=False)
    op.create_index(op.f('ix_waitlist_lifecycle_events_created_at'), 'waitlist_lifecycle_events', ['created_at'], unique=False)

    op.create_table('waitlist_policies',
        _id(),
        sa.Column('salon_id', UUID, nullable=False),
        sa.Column('service_id', UUID, nullable=True),
        sa.Column('claim_expiry_minutes', sa.Integer(), nullable=True),
        sa.Column('requeue_on_decline', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('requeue_on_expiry', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.CheckConstraint('claim_expiry_minutes IS NULL OR claim_expiry_minutes > 0', name='ck_policy_claim_expiry_positive'),
        sa.ForeignKeyConstraint(['salon_id'], ['salons.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('salon_id', 'service_id', name='uq_policy_salon_service')
    )
    op.create_index(op.f('ix_waitlist_policies_salon_id'), 'waitlist_policies', ['salon_id'], unique=False)

    op.create_table('sms_deliveries',
        _id(),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('salon_id', UUID, nullable=True),
        sa.Column('recipient', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('provider_sid', sa.String(length=64), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        _created_at(),
        sa.CheckConstraint('length(idempotency_key) > 0', name='ck_sms_idempotency_key_not_empty'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key')
    )
    op.create_index(op.f('ix_sms_deliveries_salon_id'), 'sms_deliveries', ['salon_id'], unique=False)

    op.create_table('idempotency_records',
        _id(),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('method', sa.String(length=100), nullable=False),
        sa.Column('request_body_hash', sa.String(length=64), nullable=False),
        sa.Column('response_status_code', sa.Integer(), nullable=False),
        sa.Column('response_body', sa.Text(), nullable=False),
        sa.Column('response_headers', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        _created_at(),
        sa.CheckConstraint('length(idempotency_key) > 0', name='ck_idempotency_key_not_empty'),
        sa.CheckConstraint('length(request_body_hash) = 64', name='ck_idempotency_hash_length'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', 'method', name='uq_idempotency_key_method')
    )
    op.create_index(op.f('ix_idempotency_records_idempotency_key'), 'idempotency_records', ['idempotency_key'], unique=False)
    op.create_index(op.f('ix_idempotency_records_expires_at'), 'idempotency_records', ['expires_at'], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table('idempotency_records')
    op.drop_table('sms_deliveries')
    op.drop_table('waitlist_policies')
    op.drop_table('waitlist_lifecycle_events')
    op.drop_index('uq_offer_pending_entry', table_name='waitlist_offers')
    op.drop_index('uq_offer_pending_slot', table_name='waitlist_offers')
    op.drop_table('waitlist_offers')
    op.drop_table('bookings')
    op.drop_table('waitlist_entries')
    op.drop_table('time_blocks')
    op.drop_table('employee_breaks')
    op.drop_table('shifts')
    op.drop_table('opening_hours')
    op.drop_table('employee_services')
    op.drop_table('services')
    op.drop_table('employees')
    op.drop_table('salons')
