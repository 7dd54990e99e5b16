"""add_created_by_and_is_silent

Revision ID: 8e2d4b6f1a57
Revises: 3c1f0a7d2b94
Create Date: 2026-10-17 11:30:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8e2d4b6f1a57"
down_revision: str | None = "3c1f0a7d2b94"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Record who dispatched a notification and whether its push is silent.

    - created_by scopes the operator console (list, get, resend)
    - is_silent drops the sound from push messages
    """
    with op.batch_alter_table("notifications") as batch_op:
        batch_op.add_column(
            sa.Column(
                "created_by",
                sa.String(length=255),
                nullable=True,
                comment="User id of the operator or producer that dispatched it",
            )
        )
        batch_op.add_column(
            sa.Column(
                "is_silent",
                sa.Boolean(),
                server_default=sa.false(),
                nullable=False,
                comment="Push without sound",
            )
        )
        batch_op.create_index(batch_op.f("ix_notifications_created_by"), ["created_by"])


def downgrade() -> None:
    with op.batch_alter_table("notifications") as batch_op:
        batch_op.drop_index(batch_op.f("ix_notifications_created_by"))
        batch_op.drop_column("is_silent")
        batch_op.drop_column("created_by")
