"""Create inheritance engine tables.

Revision ID: create_engine_tables
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'create_engine_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('global_plan_id', sa.Integer(), nullable=True, unique=True),
        sa.Column('user_plan_id', sa.Integer(), nullable=True),
        sa.Column('tx_hash', sa.String(100), nullable=True),
        sa.Column('owner_address', sa.String(100), nullable=False),
        sa.Column('owner_email', sa.String(200), nullable=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('asset_type', sa.String(20), nullable=False),
        sa.Column('asset_amount', sa.String(80), nullable=False),
        sa.Column('asset_amount_wei', sa.String(80), nullable=False),
        sa.Column('distribution_method', sa.String(20), nullable=False),
        sa.Column('transfer_date', sa.DateTime(), nullable=False),
        sa.Column('periodic_percentage', sa.Integer(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('proof_of_life_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('early_claim_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('verification_token', sa.String(100), nullable=True, unique=True),
        sa.Column('last_verification_sent', sa.DateTime(), nullable=True),
        sa.Column('last_verification_at', sa.DateTime(), nullable=True),
        sa.Column('verification_fail_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notify_beneficiaries', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
        sa.Column('is_claimed_fully', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('idx_plan_status', 'plans', ['status'])
    op.create_index('idx_plan_owner', 'plans', ['owner_address'])
    op.create_index('idx_plan_transfer_date', 'plans', ['transfer_date'])

    op.create_table(
        'plan_beneficiaries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('beneficiary_index', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(200), nullable=False),
        sa.Column('relationship', sa.String(50), nullable=False),
        sa.Column('name_hash', sa.String(66), nullable=False),
        sa.Column('email_hash', sa.String(66), nullable=False),
        sa.Column('relationship_hash', sa.String(66), nullable=False),
        sa.Column('combined_hash', sa.String(66), nullable=False),
        sa.Column('allocated_percentage', sa.Integer(), nullable=False),
        sa.Column('allocated_amount', sa.String(80), nullable=False),
        sa.Column('claim_code_encrypted', sa.Text(), nullable=False),
        sa.Column('claim_code_hash', sa.String(66), nullable=False),
        sa.Column('has_claimed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_by_address', sa.String(100), nullable=True),
        sa.Column('claimed_amount', sa.String(80), nullable=True),
        sa.Column('claim_tx_hash', sa.String(100), nullable=True),
        sa.Column('notification_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('notification_sent_at', sa.DateTime(), nullable=True),
        sa.Column('notification_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('plan_id', 'beneficiary_index', name='uq_beneficiary_plan_index'),
    )
    op.create_index('idx_beneficiary_email_hash', 'plan_beneficiaries', ['email_hash'])

    op.create_table(
        'plan_distributions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('period_number', sa.Integer(), nullable=False),
        sa.Column('amount', sa.String(80), nullable=False),
        sa.Column('scheduled_date', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
        sa.Column('tx_hash', sa.String(100), nullable=True),
        sa.Column('notified_at', sa.DateTime(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('plan_id', 'period_number', name='uq_distribution_plan_period'),
    )
    op.create_index('idx_distribution_due', 'plan_distributions', ['status', 'scheduled_date'])

    op.create_table(
        'distribution_releases',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('distribution_id', sa.Integer(), sa.ForeignKey('plan_distributions.id'), nullable=False),
        sa.Column('beneficiary_index', sa.Integer(), nullable=False),
        sa.Column('amount', sa.String(80), nullable=False),
        sa.Column('tx_hash', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('distribution_id', 'beneficiary_index', name='uq_release_distribution_beneficiary'),
    )

    op.create_table(
        'escrow_records',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id'), nullable=False, unique=True),
        sa.Column('amount_locked', sa.String(80), nullable=False),
        sa.Column('fee_bps', sa.Integer(), nullable=False),
        sa.Column('fee_amount', sa.String(80), nullable=False),
        sa.Column('locked_at', sa.DateTime(), nullable=False),
        sa.Column('release_conditions_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('released_amount', sa.String(80), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='LOCKED'),
        sa.Column('lock_tx_hash', sa.String(100), nullable=True),
        sa.Column('refund_tx_hash', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'plan_locks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('plan_id', sa.Integer(), nullable=False, unique=True),
        sa.Column('holder', sa.String(100), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'activity_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('actor', sa.String(100), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('activity_type', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('old_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('idx_activity_plan', 'activity_log', ['plan_id'])
    op.create_index('idx_activity_type', 'activity_log', ['activity_type'])
    op.create_index('idx_activity_created', 'activity_log', ['created_at'])

    op.create_table(
        'settings',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('key', sa.String(100), nullable=False, unique=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('value_type', sa.String(20), nullable=False, server_default='string'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Seed the creation fee so plan creation never falls back to the configured default
    op.execute(
        "INSERT INTO settings (key, value, value_type, created_at, updated_at) "
        "VALUES ('creation_fee_bps', '500', 'int', CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)"
    )


def downgrade() -> None:
    op.drop_table('settings')
    op.drop_index('idx_activity_created', 'activity_log')
    op.drop_index('idx_activity_type', 'activity_log')
    op.drop_index('idx_activity_plan', 'activity_log')
    op.drop_table('activity_log')
    op.drop_table('plan_locks')
    op.drop_table('escrow_records')
    op.drop_table('distribution_releases')
    op.drop_index('idx_distribution_due', 'plan_distributions')
    op.drop_table('plan_distributions')
    op.drop_index('idx_beneficiary_email_hash', 'plan_beneficiaries')
    op.drop_table('plan_beneficiaries')
    op.drop_index('idx_plan_transfer_date', 'plans')
    op.drop_index('idx_plan_owner', 'plans')
    op.drop_index('idx_plan_status', 'plans')
    op.drop_table('plans')
