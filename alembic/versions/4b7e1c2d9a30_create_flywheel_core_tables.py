"""create_flywheel_core_tables

Revision ID: 4b7e1c2d9a30
Revises:
Create Date: 2026-01-16 19:57:28.104311

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4b7e1c2d9a30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'user_tokens',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('token_mint_address', sa.String(64), nullable=False, comment='Token mint address (unique)'),
        sa.Column('token_symbol', sa.String(32), nullable=True),
        sa.Column('token_name', sa.String(255), nullable=True),
        sa.Column('token_image_url', sa.Text(), nullable=True),
        sa.Column('owner_id', sa.String(64), nullable=True, comment='Owning user reference (external id)'),
        sa.Column('dev_wallet_address', sa.String(64), nullable=False),
        sa.Column('dev_wallet_key_encrypted', sa.Text(), nullable=False),
        sa.Column('dev_encryption_iv', sa.String(64), nullable=False),
        sa.Column('dev_encryption_auth_tag', sa.String(64), nullable=False, server_default=''),
        sa.Column('ops_wallet_address', sa.String(64), nullable=False),
        sa.Column('ops_wallet_key_encrypted', sa.Text(), nullable=False),
        sa.Column('ops_encryption_iv', sa.String(64), nullable=False),
        sa.Column('ops_encryption_auth_tag', sa.String(64), nullable=False, server_default=''),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('launched_via_reconciler', sa.Boolean(), nullable=False, server_default=sa.false(),
                  comment='Created by launch reconciliation'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_user_tokens_token_mint_address'), 'user_tokens', ['token_mint_address'], unique=True)
    op.create_index(op.f('ix_user_tokens_owner_id'), 'user_tokens', ['owner_id'])
    op.create_index(op.f('ix_user_tokens_is_active'), 'user_tokens', ['is_active'])

    op.create_table(
        'token_configs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_token_id', sa.Integer(), nullable=False),
        sa.Column('flywheel_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('algorithm_mode', sa.String(20), nullable=False, server_default='simple', comment='simple | turbo'),
        sa.Column('cycle_size_buys', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('cycle_size_sells', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('job_interval_seconds', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('confirmation_timeout_seconds', sa.Integer(), nullable=False, server_default='45'),
        sa.Column('rate_limit_per_minute', sa.Integer(), nullable=False, server_default='30',
                  comment='Share of the global limiter (soft)'),
        sa.Column('batch_state_updates', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('slippage_bps', sa.Integer(), nullable=False, server_default='300'),
        sa.Column('buy_percent', sa.Float(), nullable=False, server_default='20'),
        sa.Column('sell_percent', sa.Float(), nullable=False, server_default='20'),
        sa.Column('auto_claim_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('auto_claim_threshold', sa.Float(), nullable=False, server_default='0.05'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_token_id'], ['user_tokens.id'], ondelete='CASCADE'),
        sa.CheckConstraint("algorithm_mode IN ('simple', 'turbo', 'rebalance')", name='ck_token_configs_algorithm_mode'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_token_configs_user_token_id'), 'token_configs', ['user_token_id'], unique=True)

    op.create_table(
        'cycle_states',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_token_id', sa.Integer(), nullable=False),
        sa.Column('cycle_phase', sa.String(10), nullable=False, server_default='buy', comment='buy | sell'),
        sa.Column('buy_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sell_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_trade_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_check_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_check_result', sa.String(32), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_token_id'], ['user_tokens.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_cycle_states_user_token_id'), 'cycle_states', ['user_token_id'], unique=True)

    op.create_table(
        'pending_launches',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('owner_id', sa.String(64), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='awaiting_deposit'),
        sa.Column('token_name', sa.String(255), nullable=False),
        sa.Column('token_symbol', sa.String(32), nullable=False),
        sa.Column('token_description', sa.Text(), nullable=True),
        sa.Column('token_image_url', sa.Text(), nullable=True),
        sa.Column('token_mint_address', sa.String(64), nullable=True, comment='Set once chain-confirmed'),
        sa.Column('dev_wallet_address', sa.String(64), nullable=False),
        sa.Column('dev_wallet_key_encrypted', sa.Text(), nullable=False),
        sa.Column('dev_encryption_iv', sa.String(64), nullable=False),
        sa.Column('dev_encryption_auth_tag', sa.String(64), nullable=True),
        sa.Column('ops_wallet_address', sa.String(64), nullable=False),
        sa.Column('ops_wallet_key_encrypted', sa.Text(), nullable=False),
        sa.Column('ops_encryption_iv', sa.String(64), nullable=False),
        sa.Column('ops_encryption_auth_tag', sa.String(64), nullable=True),
        sa.Column('user_token_id', sa.Integer(), nullable=True, comment='Lookup-only link to the resulting UserToken'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_token_id'], ['user_tokens.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_pending_launches_owner_id'), 'pending_launches', ['owner_id'])
    op.create_index(op.f('ix_pending_launches_status'), 'pending_launches', ['status'])
    op.create_index(op.f('ix_pending_launches_token_mint_address'), 'pending_launches', ['token_mint_address'])
    op.create_index(op.f('ix_pending_launches_user_token_id'), 'pending_launches', ['user_token_id'])
    op.create_index('idx_pending_launches_status_link', 'pending_launches', ['status', 'user_token_id'])

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('launch_id', sa.Integer(), nullable=True),
        sa.Column('user_token_id', sa.Integer(), nullable=True),
        sa.Column('owner_id', sa.String(64), nullable=True),
        sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_audit_events_event_type'), 'audit_events', ['event_type'])
    op.create_index(op.f('ix_audit_events_launch_id'), 'audit_events', ['launch_id'])
    op.create_index(op.f('ix_audit_events_user_token_id'), 'audit_events', ['user_token_id'])
    op.create_index(op.f('ix_audit_events_created_at'), 'audit_events', ['created_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('audit_events')
    op.drop_table('pending_launches')
    op.drop_table('cycle_states')
    op.drop_table('token_configs')
    op.drop_table('user_tokens')
