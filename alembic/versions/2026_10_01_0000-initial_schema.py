"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create user_accounts table
    # ========================================================================
    op.create_table(
        'user_accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('plan', sa.String(32), nullable=False, server_default='FREE_TRIAL'),
        sa.Column('search_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credit_topups', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('monthly_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('billing_month', sa.String(7), nullable=True),
        sa.Column('referral_code', sa.String(16), nullable=True),
        sa.Column('referred_by_id', UUID(as_uuid=True), nullable=True),
        sa.Column('referral_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('referral_credits_earned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('phone_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('phone_pending', sa.String(20), nullable=True),
        sa.Column('phone_verification_code', sa.String(8), nullable=True),
        sa.Column('phone_code_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credit_topups >= 0', name='ck_credit_topups_non_negative'),
        sa.CheckConstraint('search_count >= 0', name='ck_search_count_non_negative'),
        sa.CheckConstraint('monthly_used >= 0', name='ck_monthly_used_non_negative'),
        sa.CheckConstraint('referral_count >= 0', name='ck_referral_count_non_negative'),
        sa.CheckConstraint(
            "plan IN ('FREE_TRIAL', 'STARTER_PACK', 'BULK_PACK', 'PRO', 'UNLIMITED_PRO')",
            name='plan_type',
        ),
        sa.UniqueConstraint('referral_code', name='uq_user_accounts_referral_code'),
    )

    op.create_index('idx_user_accounts_updated_at', 'user_accounts', ['updated_at'])

    # ========================================================================
    # Create search_records table
    # ========================================================================
    op.create_table(
        'search_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('address', sa.Text(), nullable=False),
        sa.Column('searched_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.ForeignKeyConstraint(['user_id'], ['user_accounts.id'], name='fk_search_records_user', ondelete='RESTRICT'),
    )

    op.create_index(
        'idx_search_records_user_address_time', 'search_records', ['user_id', 'address', 'searched_at']
    )
    op.create_index('idx_search_records_user_time', 'search_records', ['user_id', 'searched_at'])

    # ========================================================================
    # Create referrals table
    # ========================================================================
    op.create_table(
        'referrals',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('referrer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('referred_id', UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credited_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.UniqueConstraint('referred_id', name='uq_referral_referred'),
        sa.CheckConstraint('referrer_id <> referred_id', name='ck_referral_not_self'),
        sa.CheckConstraint("status IN ('pending', 'verified', 'credited')", name='referral_status'),
        sa.ForeignKeyConstraint(['referrer_id'], ['user_accounts.id'], name='fk_referrals_referrer', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['referred_id'], ['user_accounts.id'], name='fk_referrals_referred', ondelete='RESTRICT'),
    )

    op.create_index('idx_referrals_referrer_status', 'referrals', ['referrer_id', 'status'])

    # ========================================================================
    # Create notifications table
    # ========================================================================
    op.create_table(
        'notifications',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('reward_credits', sa.Integer(), nullable=True),
        sa.Column('counterpart_user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('milestone', sa.Integer(), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "type IN ('referral_signup', 'referral_credited', 'welcome_bonus', 'referral_milestone')",
            name='notification_type',
        ),
        sa.ForeignKeyConstraint(['user_id'], ['user_accounts.id'], name='fk_notifications_user', ondelete='RESTRICT'),
    )

    op.create_index('idx_notifications_user_created', 'notifications', ['user_id', 'created_at'])

    # ========================================================================
    # Create reminder_jobs table
    # ========================================================================
    op.create_table(
        'reminder_jobs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('kind', sa.String(32), nullable=False),
        sa.Column('contact', sa.String(20), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('send_after', sa.DateTime(timezone=True), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("kind IN ('referral_reminder', 'verification_code')", name='reminder_kind'),
        sa.ForeignKeyConstraint(['user_id'], ['user_accounts.id'], name='fk_reminder_jobs_user', ondelete='RESTRICT'),
    )

    op.create_index(
        'idx_reminder_jobs_due', 'reminder_jobs', ['send_after'],
        postgresql_where=sa.text('sent_at IS NULL'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('idx_reminder_jobs_due', table_name='reminder_jobs')
    op.drop_table('reminder_jobs')
    op.drop_index('idx_notifications_user_created', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('idx_referrals_referrer_status', table_name='referrals')
    op.drop_table('referrals')
    op.drop_index('idx_search_records_user_time', table_name='search_records')
    op.drop_index('idx_search_records_user_address_time', table_name='search_records')
    op.drop_table('search_records')
    op.drop_index('idx_user_accounts_updated_at', table_name='user_accounts')
    op.drop_table('user_accounts')
