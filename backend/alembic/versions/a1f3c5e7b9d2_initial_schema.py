"""Initial schema: identities, profiles, tasks, chat, uploads

Revision ID: a1f3c5e7b9d2
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates 6 tables:
- users, revoked_tokens (authentication)
- profiles (role and points balance)
- tasks (status lifecycle)
- chat_messages (direct messages)
- file_uploads (blob metadata)
"""
from alembic import op
import sqlalchemy as sa

revision = 'a1f3c5e7b9d2'
down_revision = None
branch_labels = None
depends_on = None

user_role = sa.Enum('intern', 'employee', 'admin', name='user_role')
task_status = sa.Enum('pending', 'in_progress', 'completed', 'overdue', name='task_status')
task_priority = sa.Enum('low', 'medium', 'high', name='task_priority')


def upgrade() -> None:
    # ---- users ----
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('user_metadata', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_is_active', 'users', ['is_active'])

    # ---- revoked_tokens ----
    op.create_table(
        'revoked_tokens',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('jti', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True)),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_revoked_tokens_jti', 'revoked_tokens', ['jti'], unique=True)

    # ---- profiles ----
    op.create_table(
        'profiles',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('role', user_role, nullable=False),
        sa.Column('department', sa.String(), nullable=True),
        sa.Column('bio', sa.Text(), nullable=True),
        sa.Column('avatar_url', sa.String(), nullable=True),
        sa.Column('points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('points >= 0', name='ck_profile_points_non_negative'),
    )
    op.create_index('ix_profiles_user_id', 'profiles', ['user_id'], unique=True)
    op.create_index('ix_profiles_role', 'profiles', ['role'])
    op.create_index('idx_profile_role_points', 'profiles', ['role', 'points'])

    # ---- tasks ----
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', task_status, nullable=False),
        sa.Column('priority', task_priority, nullable=False),
        sa.Column('points', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('assignee_id', sa.String(), sa.ForeignKey('profiles.user_id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_by', sa.String(), sa.ForeignKey('profiles.user_id', ondelete='SET NULL'), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('points > 0', name='ck_task_points_positive'),
        sa.CheckConstraint('length(trim(title)) > 0', name='ck_task_title_not_empty'),
        sa.CheckConstraint(
            "(status = 'completed' AND completed_at IS NOT NULL) OR "
            "(status <> 'completed' AND completed_at IS NULL)",
            name='ck_task_completed_at_matches_status',
        ),
    )
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('ix_tasks_assignee_id', 'tasks', ['assignee_id'])
    op.create_index('ix_tasks_created_by', 'tasks', ['created_by'])
    op.create_index('ix_tasks_created_at', 'tasks', ['created_at'])
    op.create_index('idx_task_status_due', 'tasks', ['status', 'due_date'])

    # ---- chat_messages ----
    op.create_table(
        'chat_messages',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('sender_id', sa.String(), sa.ForeignKey('profiles.user_id', ondelete='CASCADE'), nullable=False),
        sa.Column('receiver_id', sa.String(), sa.ForeignKey('profiles.user_id', ondelete='CASCADE'), nullable=False),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('length(trim(content)) > 0', name='ck_message_content_not_empty'),
    )
    op.create_index('ix_chat_messages_sender_id', 'chat_messages', ['sender_id'])
    op.create_index('ix_chat_messages_receiver_id', 'chat_messages', ['receiver_id'])
    op.create_index('ix_chat_messages_created_at', 'chat_messages', ['created_at'])
    op.create_index('idx_message_pair_time', 'chat_messages', ['sender_id', 'receiver_id', 'created_at'])

    # ---- file_uploads ----
    op.create_table(
        'file_uploads',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('filename', sa.String(), nullable=False),
        sa.Column('original_name', sa.String(), nullable=False),
        sa.Column('file_path', sa.String(), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('uploaded_by', sa.String(), sa.ForeignKey('profiles.user_id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('file_path', name='uq_file_uploads_file_path'),
        sa.CheckConstraint('file_size >= 0 AND file_size <= 5242880', name='ck_upload_size_ceiling'),
    )
    op.create_index('ix_file_uploads_uploaded_by', 'file_uploads', ['uploaded_by'])
    op.create_index('ix_file_uploads_task_id', 'file_uploads', ['task_id'])


def downgrade() -> None:
    op.drop_table('file_uploads')
    op.drop_table('chat_messages')
    op.drop_table('tasks')
    op.drop_table('profiles')
    op.drop_table('revoked_tokens')
    op.drop_table('users')
    task_priority.drop(op.get_bind(), checkfirst=True)
    task_status.drop(op.get_bind(), checkfirst=True)
    user_role.drop(op.get_bind(), checkfirst=True)
