"""create_kyc_tables

Revision ID: a1c3e5f7b9d1
Revises:
Create Date: 2026-10-12 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'a1c3e5f7b9d1'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema - KYC sessions and the nullifier ledger."""

    op.create_table(
        'kyc_sessions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('wallet_address', sa.String(), nullable=False),
        sa.Column('active_wallet', sa.String(), nullable=True),
        sa.Column('state', sa.String(), nullable=False),
        sa.Column('requirements', sa.JSON(), nullable=False),
        sa.Column('scope', sa.String(), nullable=False),
        sa.Column('config_id', sa.String(), nullable=False),
        sa.Column('attestation_id', sa.Integer(), nullable=True),
        sa.Column('nullifier', sa.String(), nullable=True),
        sa.Column('disclosed_attributes', sa.JSON(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('rejection_reason', sa.String(), nullable=True),
        sa.Column('rejection_detail', sa.String(), nullable=True),
        sa.Column('commit_status', sa.String(), nullable=True),
        sa.Column('commit_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_commit_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_commit_error', sa.Text(), nullable=True),
        sa.Column('committed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('session_id'),
        sa.UniqueConstraint('active_wallet'),
    )

    op.create_index('ix_kyc_sessions_wallet_address', 'kyc_sessions', ['wallet_address'])
    op.create_index('ix_kyc_sessions_nullifier', 'kyc_sessions', ['nullifier'])
    op.create_index('ix_kyc_sessions_wallet_state', 'kyc_sessions', ['wallet_address', 'state'])
    op.create_index('ix_kyc_sessions_state_expires', 'kyc_sessions', ['state', 'expires_at'])
    op.create_index('ix_kyc_sessions_commit', 'kyc_sessions', ['commit_status', 'next_commit_at'])
    op.create_index('ix_kyc_sessions_created', 'kyc_sessions', ['created_at'])

    op.create_table(
        'kyc_nullifiers',
        sa.Column('nullifier', sa.String(), nullable=False),
        sa.Column('consumed_by_session', sa.String(), nullable=False),
        sa.Column('wallet_address', sa.String(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('nullifier'),
    )
    op.create_index('ix_kyc_nullifiers_consumed_by_session', 'kyc_nullifiers', ['consumed_by_session'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_kyc_nullifiers_consumed_by_session', table_name='kyc_nullifiers')
    op.drop_table('kyc_nullifiers')

    op.drop_index('ix_kyc_sessions_created', table_name='kyc_sessions')
    op.drop_index('ix_kyc_sessions_commit', table_name='kyc_sessions')
    op.drop_index('ix_kyc_sessions_state_expires', table_name='kyc_sessions')
    op.drop_index('ix_kyc_sessions_wallet_state', table_name='kyc_sessions')
    op.drop_index('ix_kyc_sessions_nullifier', table_name='kyc_sessions')
    op.drop_index('ix_kyc_sessions_wallet_address', table_name='kyc_sessions')
    op.drop_table('kyc_sessions')
