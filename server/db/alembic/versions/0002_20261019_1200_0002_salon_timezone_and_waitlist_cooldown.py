"""Salon timezone and waitlist cooldown

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19 12:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = '0002'
down_revision: str | None = '0001'
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade database schema."""
    op.add_column('salons',
        sa.Column('timezone', sa.String(length=64), server_default='UTC', nullable=False)
    )

    op.add_column('waitlist_entries',
        sa.Column('decline_count', sa.Integer(), server_default='0', nullable=False)
    )
    op.add_column('waitlist_entries', sa.Column('cooldown_until', sa.DateTime(), nullable=True))
    op.create_index(op.f('ix_waitlist_entries_cooldown_until'), 'waitlist_entries', ['cooldown_until'], unique=False)
    op.create_check_constraint(
        'ck_waitlist_decline_count_non_negative', 'waitlist_entries', 'decline_count >= 0'
    )

    op.add_column('waitlist_policies', sa.Column('cooldown_minutes', sa.Integer(), nullable=True))
    op.add_column('waitlist_policies', sa.Column('passive_decline_threshold', sa.Integer(), nullable=True))
    op.add_column('waitlist_policies', sa.Column('passive_cooldown_minutes', sa.Integer(), nullable=True))
    op.create_check_constraint(
        'ck_policy_cooldown_non_negative', 'waitlist_policies',
        'cooldown_minutes IS NULL OR cooldown_minutes >= 0'
    )
    op.create_check_constraint(
        'ck_policy_passive_threshold_positive', 'waitlist_policies',
        'passive_decline_threshold IS NULL OR passive_decline_threshold > 0'
    )
    op.create_check_constraint(
        'ck_policy_passive_cooldown_non_negative', 'waitlist_policies',
        'passive_cooldown_minutes IS NULL OR passive_cooldown_minutes >= 0'
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_constraint('ck_policy_passive_cooldown_non_negative', 'waitlist_policies', type_='check')
    op.drop_constraint('ck_policy_passive_threshold_positive', 'waitlist_policies', type_='check')
    op.drop_constraint('ck_policy_cooldown_non_negative', 'waitlist_policies', type_='check')
    op.drop_column('waitlist_policies', 'passive_cooldown_minutes')
    op.drop_column('waitlist_policies', 'passive_decline_threshold')
    op.drop_column('waitlist_policies', 'cooldown_minutes')

    op.execute("UPDATE waitlist_entries SET status = 'waiting' WHERE status = 'cooldown'")
    op.drop_constraint('ck_waitlist_decline_count_non_negative', 'waitlist_entries', type_='check')
    op.drop_index(op.f('ix_waitlist_entries_cooldown_until'), table_name='waitlist_entries')
    op.drop_column('waitlist_entries', 'cooldown_until')
    op.drop_column('waitlist_entries', 'decline_count')

    op.drop_column('salons', 'timezone')
