"""Initial schema - secrets, rotation logs and key pools

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Secrets (values sealed by the application)
    op.create_table('secrets',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('key', sa.String(255), nullable=False, unique=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('previous_value', sa.Text(), nullable=True),
        sa.Column('previous_value_expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('idx_secrets_previous_expiry', 'secrets', ['previous_value_expires_at'])

    # Rotation audit trail
    op.create_table('rotation_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('secret_id', sa.Integer(), sa.ForeignKey('secrets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.SmallInteger(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('rotated_at', sa.DateTime(), nullable=False),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('rolled_back_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('idx_rotation_logs_secret_status', 'rotation_logs', ['secret_id', 'status'])
    op.create_index('idx_rotation_logs_rotated_at', 'rotation_logs', ['rotated_at'])

    # Key pools
    op.create_table('key_pools',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('secret_key', sa.String(255), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.SmallInteger(), nullable=False, server_default='0'),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_key_pools_secret_key', 'key_pools', ['secret_key'])
    op.create_index('idx_key_pools_secret_status', 'key_pools', ['secret_key', 'status'])
    op.create_index('idx_key_pools_secret_position', 'key_pools', ['secret_key', 'position'])
    op.create_index(
        'uq_key_pools_single_active', 'key_pools', ['secret_key'],
        unique=True,
        postgresql_where=sa.text('status = 1'),
        sqlite_where=sa.text('status = 1'),
    )

    op.create_table('key_pool_cursors',
        sa.Column('secret_key', sa.String(255), primary_key=True),
        sa.Column('next_position', sa.Integer(), nullable=False, server_default='0'),
    )


def downgrade() -> None:
    op.drop_table('key_pool_cursors')
    op.drop_index('uq_key_pools_single_active', table_name='key_pools')
    op.drop_index('idx_key_pools_secret_position', table_name='key_pools')
    op.drop_index('idx_key_pools_secret_status', table_name='key_pools')
    op.drop_index('ix_key_pools_secret_key', table_name='key_pools')
    op.drop_table('key_pools')
    op.drop_index('idx_rotation_logs_rotated_at', table_name='rotation_logs')
    op.drop_index('idx_rotation_logs_secret_status', table_name='rotation_logs')
    op.drop_table('rotation_logs')
    op.drop_index('idx_secrets_previous_expiry', table_name='secrets')
    op.drop_table('secrets')
