"""create_identity_tables

Revision ID: 3c1f8e2a9b04
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '3c1f8e2a9b04'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('username', sa.String(length=20), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('avatar', sa.String(length=1024), nullable=True),
        sa.Column('provider_id', sa.String(length=255), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username', name='uq_users_username'),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sa.UniqueConstraint('provider_id', name='uq_users_provider_id'),
    )

    op.create_table(
        'sessions',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('identity_id', sa.Uuid(), nullable=True),
        sa.Column('alias_identity_ref', sa.String(length=64), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['identity_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sessions_identity_id', 'sessions', ['identity_id'])

    op.create_table(
        'oauth_states',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('csrf_hash', sa.String(length=64), nullable=False),
        sa.Column('session_id', sa.String(length=64), nullable=False),
        sa.Column('pending_username', sa.String(length=64), nullable=True),
        sa.Column('client_correlation', sa.String(length=128), nullable=True),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['session_id'], ['sessions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_oauth_states_csrf_hash', 'oauth_states', ['csrf_hash'], unique=True)
    op.create_index('ix_oauth_states_session_id', 'oauth_states', ['session_id'])


def downgrade() -> None:
    op.drop_index('ix_oauth_states_session_id', table_name='oauth_states')
    op.drop_index('ix_oauth_states_csrf_hash', table_name='oauth_states')
    op.drop_table('oauth_states')
    op.drop_index('ix_sessions_identity_id', table_name='sessions')
    op.drop_table('sessions')
    op.drop_table('users')
