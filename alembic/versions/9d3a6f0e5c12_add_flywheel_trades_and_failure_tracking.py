"""add_flywheel_trades_and_failure_tracking

Revision ID: 9d3a6f0e5c12
Revises: 4b7e1c2d9a30
Create Date: 2026-01-17 05:15:00.418220

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '9d3a6f0e5c12'
down_revision: Union[str, Sequence[str], None] = '4b7e1c2d9a30'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Failure tracking / auto-pause
    op.add_column('cycle_states', sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'))
    op.add_column('cycle_states', sa.Column('total_failures', sa.Integer(), nullable=False, server_default='0'))
    op.add_column('cycle_states', sa.Column('last_failure_reason', sa.Text(), nullable=True))
    op.add_column('cycle_states', sa.Column('last_failure_at', sa.DateTime(timezone=True), nullable=True))
    op.add_column('cycle_states', sa.Column(
        'paused_until', sa.DateTime(timezone=True), nullable=True,
        comment='Flywheel paused until (NULL = not paused)'
    ))
    op.create_index('idx_cycle_states_paused', 'cycle_states', ['paused_until'])

    # Trade ledger
    op.create_table(
        'flywheel_trades',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_token_id', sa.Integer(), nullable=False),
        sa.Column('trade_type', sa.String(10), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.String(32), nullable=False),
        sa.Column('amount', sa.Float(), nullable=True),
        sa.Column('signature', sa.String(128), nullable=True),
        sa.Column('latency_ms', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_token_id'], ['user_tokens.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_flywheel_trades_user_token_id'), 'flywheel_trades', ['user_token_id'])
    op.create_index(op.f('ix_flywheel_trades_created_at'), 'flywheel_trades', ['created_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_flywheel_trades_created_at'), table_name='flywheel_trades')
    op.drop_index(op.f('ix_flywheel_trades_user_token_id'), table_name='flywheel_trades')
    op.drop_table('flywheel_trades')

    op.drop_index('idx_cycle_states_paused', table_name='cycle_states')
    op.drop_column('cycle_states', 'paused_until')
    op.drop_column('cycle_states', 'last_failure_at')
    op.drop_column('cycle_states', 'last_failure_reason')
    op.drop_column('cycle_states', 'total_failures')
    op.drop_column('cycle_states', 'consecutive_failures')
