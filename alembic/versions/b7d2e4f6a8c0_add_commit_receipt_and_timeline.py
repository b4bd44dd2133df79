"""add commit receipt and timeline to kyc_sessions

Revision ID: b7d2e4f6a8c0
Revises: a1c3e5f7b9d1
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'b7d2e4f6a8c0'
down_revision: Union[str, Sequence[str], None] = 'a1c3e5f7b9d1'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "kyc_sessions",
        sa.Column("commit_receipt", sa.JSON(), nullable=True),
    )
    op.add_column(
        "kyc_sessions",
        sa.Column("timeline", sa.JSON(), server_default=sa.text("'[]'"), nullable=False),
    )
    op.alter_column("kyc_sessions", "timeline", server_default=None)


def downgrade() -> None:
    op.drop_column("kyc_sessions", "timeline")
    op.drop_column("kyc_sessions", "commit_receipt")
