"""Initial schema — users, direct_messages

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- users ---
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), nullable=False, primary_key=True, comment="Client-supplied stable identifier"),
        sa.Column("nickname", sa.String(), nullable=False),
        sa.Column("previous_nickname", sa.String(), nullable=True),
        sa.Column(
            "change_timestamps",
            sa.JSON(),
            nullable=False,
            server_default=sa.text("'[]'"),
            comment="Rename ledger (ISO-8601 UTC), append-only",
        ),
        sa.Column(
            "last_seen",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        # Authoritative guard against concurrent registrations/renames
        sa.UniqueConstraint("nickname", name="uq_users_nickname"),
    )

    # --- direct_messages ---
    op.create_table(
        "direct_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sender_id", sa.String(), nullable=False),
        sa.Column("receiver_id", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False, server_default="text", comment="text | image | link"),
        sa.Column(
            "sent_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["sender_id"], ["users.user_id"], name="fk_direct_messages_sender", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["receiver_id"], ["users.user_id"], name="fk_direct_messages_receiver", ondelete="CASCADE"
        ),
    )
    op.create_index("ix_direct_messages_pair", "direct_messages", ["sender_id", "receiver_id"])
    op.create_index("ix_direct_messages_receiver", "direct_messages", ["receiver_id"])


def downgrade() -> None:
    op.drop_index("ix_direct_messages_receiver", table_name="direct_messages")
    op.drop_index("ix_direct_messages_pair", table_name="direct_messages")
    op.drop_table("direct_messages")
    op.drop_table("users")
