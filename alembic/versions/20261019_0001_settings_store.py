"""Settings key/value store and prompt history (baseline)."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "settings",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "prompt_history",
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("prompt", name="uq_prompt_history_prompt"),
    )
    op.create_index("ix_prompt_history_used_at", "prompt_history", ["used_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_prompt_history_used_at", table_name="prompt_history")
    op.drop_table("prompt_history")
    op.drop_table("settings")
