"""Bind one-time codes to the object they authorize.

Revision ID: 20261018_00
Revises: 20261008_00
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "20261018_00"
down_revision: str | None = "20261008_00"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "otp_verifications",
        sa.Column(
            "reference_id",
            sa.Integer(),
            nullable=True,
            comment="Object the code authorizes, e.g. a deletion request id",
        ),
    )


def downgrade() -> None:
    op.drop_column("otp_verifications", "reference_id")
