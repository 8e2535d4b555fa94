"""Create account security tables

Revision ID: create_account_security_tables
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'create_account_security_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Subjects and their credential
    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('password_updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('is_superuser', sa.Boolean(), default=False),
        sa.Column('require_mfa', sa.Boolean(), default=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # Bounded password history
    op.create_table(
        'password_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('idx_password_history_user_created', 'password_history', ['user_id', 'created_at'])

    # Lockout records, keyed by identifier rather than subject
    op.create_table(
        'lockout_records',
        sa.Column('identifier', sa.String(320), primary_key=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, default=0),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # TOTP secrets
    op.create_table(
        'user_mfa_secrets',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('secret_key', sa.String(), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), default=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_step', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # MFA challenges
    op.create_table(
        'mfa_challenges',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('challenge_type', sa.String(10), nullable=False),
        sa.Column('code_hash', sa.String(64), nullable=True),
        sa.Column('action_context', sa.String(100), nullable=True),
        sa.Column('session_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('verified', sa.Boolean(), nullable=False, default=False),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, default=0),
        sa.Column('invalidated', sa.Boolean(), nullable=False, default=False),
        sa.Column('invalidated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('invalidation_reason', sa.String(50), nullable=True),
        sa.Column('expired', sa.Boolean(), nullable=False, default=False),
    )
    op.create_index('idx_mfa_challenges_user_context', 'mfa_challenges', ['user_id', 'action_context'])
    op.create_index('idx_mfa_challenges_expires', 'mfa_challenges', ['expires_at'])

    # Superuser sessions
    op.create_table(
        'superuser_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('ip_address', sa.String(45)),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('mfa_verified', sa.Boolean(), default=False),
        sa.Column('mfa_verified_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_superuser_sessions_user_id', 'superuser_sessions', ['user_id'])

    # Audit trail
    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('event_id', sa.String(36), nullable=False, unique=True),
        sa.Column('category', sa.String(30), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(10), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_audit_log_category_action', 'audit_log', ['category', 'action'])
    op.create_index('idx_audit_log_subject', 'audit_log', ['subject_id'])
    op.create_index('idx_audit_log_time', 'audit_log', ['timestamp'])


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('superuser_sessions')
    op.drop_table('mfa_challenges')
    op.drop_table('user_mfa_secrets')
    op.drop_table('lockout_records')
    op.drop_table('password_history')
    op.drop_table('users')
