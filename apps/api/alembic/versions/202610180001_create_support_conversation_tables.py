"""create support conversation tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "support_conversation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="OPEN"),
        sa.Column("channel", sa.String(length=16), nullable=False, server_default="WIDGET"),
        sa.Column("priority", sa.String(length=8), nullable=False, server_default="P2"),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("assignee_id", sa.String(length=128), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_support_conversation_user_status", "support_conversation", ["user_id", "status"])
    op.create_index("ix_support_conversation_status", "support_conversation", ["status", "priority"])

    op.create_table(
        "support_conversation_message",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("conversation_id", sa.Uuid(), nullable=False),
        sa.Column("sender_type", sa.String(length=16), nullable=False),
        sa.Column("sender_id", sa.String(length=128), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["support_conversation.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_support_conversation_message_conversation",
        "support_conversation_message",
        ["conversation_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_support_conversation_message_conversation", table_name="support_conversation_message")
    op.drop_table("support_conversation_message")
    op.drop_index("ix_support_conversation_status", table_name="support_conversation")
    op.drop_index("ix_support_conversation_user_status", table_name="support_conversation")
    op.drop_table("support_conversation")
