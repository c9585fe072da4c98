"""Add chat visitor token

Revision ID: b7e3f0a94c12
Revises: 8d4b1e6c2a90
Create Date: 2026-10-25 11:05:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "b7e3f0a94c12"
down_revision: str | Sequence[str] | None = "8d4b1e6c2a90"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("chat_sessions", sa.Column("visitor_token", sa.String(64), nullable=True))


def downgrade() -> None:
    op.drop_column("chat_sessions", "visitor_token")
