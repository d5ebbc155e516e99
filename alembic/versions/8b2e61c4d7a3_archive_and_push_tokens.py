"""archive_and_push_tokens

Revision ID: 8b2e61c4d7a3
Revises: 3f9c2a7d1b40
Create Date: 2026-10-19 12:00:00.000000

- users.fcm_token (device token for push notifications)
- messages_archive (messages moved out by the scheduled retention job)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '8b2e61c4d7a3'
down_revision: Union[str, None] = '3f9c2a7d1b40'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('users', sa.Column('fcm_token', sa.Text(), nullable=True))

    op.create_table('messages_archive',
        sa.Column('id', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=False),
        sa.Column('sender_id', sa.String(length=64), nullable=False),
        sa.Column('recipient_id', sa.String(length=64), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('is_from_page', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('agent_id', sa.Integer(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        op.f('ix_messages_archive_conversation_id'), 'messages_archive', ['conversation_id'], unique=False
    )
    op.create_index(op.f('ix_messages_archive_archived_at'), 'messages_archive', ['archived_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_messages_archive_archived_at'), table_name='messages_archive')
    op.drop_index(op.f('ix_messages_archive_conversation_id'), table_name='messages_archive')
    op.drop_table('messages_archive')
    op.drop_column('users', 'fcm_token')
