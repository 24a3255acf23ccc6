"""add ghl identifier columns

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("profiles", sa.Column("ghl_contact_id", sa.String(length=64), nullable=True))
    op.add_column("practitioners", sa.Column("ghl_opportunity_id", sa.String(length=64), nullable=True))
    op.add_column("patients", sa.Column("ghl_opportunity_id", sa.String(length=64), nullable=True))


def downgrade() -> None:
    op.drop_column("patients", "ghl_opportunity_id")
    op.drop_column("practitioners", "ghl_opportunity_id")
    op.drop_column("profiles", "ghl_contact_id")
