"""Chat schema: rooms, participants, messages, reactions, read markers

Revision ID: 001_chat_schema
Revises:
Create Date: 2026-10-12

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# Revision identifiers, used by Alembic.
revision: str = '001_chat_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists (init_db may have created it already)."""
    conn = op.get_bind()
    inspector = inspect(conn)
    return table_name in inspector.get_table_names()


def timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    if not table_exists('chat_rooms'):
        op.create_table(
            'chat_rooms',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('workspace_id', sa.String(length=64), nullable=False),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('description', sa.String(length=500), nullable=True),
            sa.Column('type', sa.String(length=20), nullable=False),
            sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_by', sa.String(length=64), nullable=False),
            sa.Column('allow_file_sharing', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('allow_reactions', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('retention_days', sa.Integer(), nullable=False, server_default='90'),
            sa.Column('notifications', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('last_message_content', sa.String(length=1000), nullable=True),
            sa.Column('last_message_sender_id', sa.String(length=64), nullable=True),
            sa.Column('last_message_sender_name', sa.String(length=255), nullable=True),
            sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_message_type', sa.String(length=20), nullable=True),
            *timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('workspace_id', 'type', 'name', name='uq_chat_room_workspace_type_name'),
        )
        op.create_index('ix_chat_rooms_workspace_type', 'chat_rooms', ['workspace_id', 'type'])
        op.create_index(
            'ix_chat_rooms_workspace_archived_last',
            'chat_rooms',
            ['workspace_id', 'is_archived', 'last_message_at'],
        )

    if not table_exists('chat_room_participants'):
        op.create_table(
            'chat_room_participants',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('chat_room_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
            *timestamps(),
            sa.ForeignKeyConstraint(['chat_room_id'], ['chat_rooms.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('chat_room_id', 'user_id', name='uq_chat_room_participant'),
        )
        op.create_index('ix_chat_room_participants_chat_room_id', 'chat_room_participants', ['chat_room_id'])
        op.create_index('ix_chat_room_participants_user_id', 'chat_room_participants', ['user_id'])

    if not table_exists('messages'):
        op.create_table(
            'messages',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('chat_room_id', sa.Integer(), nullable=False),
            sa.Column('content', sa.Text(), nullable=False),
            sa.Column('type', sa.String(length=20), nullable=False),
            sa.Column('sender_id', sa.String(length=64), nullable=False),
            sa.Column('sender_name', sa.String(length=255), nullable=False),
            sa.Column('sender_avatar', sa.Text(), nullable=True),
            sa.Column('file_url', sa.Text(), nullable=True),
            sa.Column('file_name', sa.String(length=255), nullable=True),
            sa.Column('file_size', sa.BigInteger(), nullable=True),
            sa.Column('is_edited', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('edited_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('reply_to_id', sa.Integer(), nullable=True),
            sa.Column('temp_id', sa.String(length=100), nullable=True),
            *timestamps(),
            sa.ForeignKeyConstraint(['chat_room_id'], ['chat_rooms.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_messages_room_created', 'messages', ['chat_room_id', 'created_at'])
        op.create_index('ix_messages_sender_created', 'messages', ['sender_id', 'created_at'])
        op.create_index('ix_messages_room_type', 'messages', ['chat_room_id', 'type'])
        op.create_index('ix_messages_temp_id', 'messages', ['temp_id'])

    if not table_exists('message_reactions'):
        op.create_table(
            'message_reactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('message_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('user_name', sa.String(length=255), nullable=False),
            sa.Column('emoji', sa.String(length=50), nullable=False),
            *timestamps(),
            sa.ForeignKeyConstraint(['message_id'], ['messages.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('message_id', 'user_id', 'emoji', name='uq_message_user_emoji'),
        )
        op.create_index('ix_message_reactions_message_id', 'message_reactions', ['message_id'])

    if not table_exists('message_reads'):
        op.create_table(
            'message_reads',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('message_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('read_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['message_id'], ['messages.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('message_id', 'user_id', name='uq_message_read_user'),
        )
        op.create_index('ix_message_reads_message_id', 'message_reads', ['message_id'])


def downgrade() -> None:
    op.drop_index('ix_message_reads_message_id', 'message_reads')
    op.drop_table('message_reads')
    op.drop_index('ix_message_reactions_message_id', 'message_reactions')
    op.drop_table('message_reactions')
    op.drop_index('ix_messages_temp_id', 'messages')
    op.drop_index('ix_messages_room_type', 'messages')
    op.drop_index('ix_messages_sender_created', 'messages')
    op.drop_index('ix_messages_room_created', 'messages')
    op.drop_table('messages')
    op.drop_index('ix_chat_room_participants_user_id', 'chat_room_participants')
    op.drop_index('ix_chat_room_participants_chat_room_id', 'chat_room_participants')
    op.drop_table('chat_room_participants')
    op.drop_index('ix_chat_rooms_workspace_archived_last', 'chat_rooms')
    op.drop_index('ix_chat_rooms_workspace_type', 'chat_rooms')
    op.drop_table('chat_rooms')
