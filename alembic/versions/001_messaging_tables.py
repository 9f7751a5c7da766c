"""Direct messaging tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001'
down_revision = None  # This is the first migration
branch_labels = None
depends_on = None


def upgrade():
    # Identity and friend graph, read by the messaging subsystem
    op.create_table(
        'user',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('profile_picture', sa.String(500), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_active_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_user_id', 'user', ['id'])
    op.create_index('ix_user_email', 'user', ['email'], unique=True)
    op.create_index('ix_user_last_active_at', 'user', ['last_active_at'])

    op.create_table(
        'friendships',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_one_id', sa.String(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('user_two_id', sa.String(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_one_id', 'user_two_id', name='uq_friendship_pair'),
    )
    op.create_index('ix_friendships_user_one_id', 'friendships', ['user_one_id'])
    op.create_index('ix_friendships_user_two_id', 'friendships', ['user_two_id'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('sender_id', sa.String(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('receiver_id', sa.String(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('message_type', sa.String(10), nullable=False, server_default='text'),
        sa.Column('file_url', sa.String(500), nullable=True),
        sa.Column('file_name', sa.String(255), nullable=True),
        sa.Column('reply_to_id', sa.Integer(), sa.ForeignKey('messages.id'), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('is_edited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('edited_at', sa.DateTime(), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_messages_sender_id', 'messages', ['sender_id'])
    op.create_index('ix_messages_receiver_id', 'messages', ['receiver_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])
    op.create_index('ix_messages_pair_created', 'messages', ['sender_id', 'receiver_id', 'created_at'])
    op.create_index('ix_messages_receiver_unread', 'messages', ['receiver_id', 'is_read'])

    op.create_table(
        'conversations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('participant_one_id', sa.String(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('participant_two_id', sa.String(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('participant_key', sa.String(255), nullable=False),
        sa.Column('conversation_type', sa.String(10), nullable=False, server_default='direct'),
        sa.Column('last_message_id', sa.Integer(), sa.ForeignKey('messages.id'), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('participant_key', 'conversation_type', name='uq_conversation_participants'),
    )
    op.create_index('ix_conversations_participant_one_id', 'conversations', ['participant_one_id'])
    op.create_index('ix_conversations_participant_two_id', 'conversations', ['participant_two_id'])
    op.create_index('ix_conversations_participant_key', 'conversations', ['participant_key'])
    op.create_index('ix_conversations_last_message_at', 'conversations', ['last_message_at'])

    op.create_table(
        'conversation_unread',
        sa.Column('conversation_id', sa.Uuid(), sa.ForeignKey('conversations.id'), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('user.id'), primary_key=True),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
    )


def downgrade():
    op.drop_table('conversation_unread')
    op.drop_table('conversations')
    op.drop_table('messages')
    op.drop_table('friendships')
    op.drop_table('user')
