"""Create sites and sitepool tables

Revision ID: a7c3e91d2b40
Revises:
Create Date: 2026-10-19 09:12:41.503218

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a7c3e91d2b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _site_columns():
    return [
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('site_id', sa.String(32), nullable=False),
        sa.Column('containerid', sa.String(128), nullable=True),
        sa.Column('siteurl', sa.String(255), nullable=False),
        sa.Column('user', sa.String(64), nullable=False),
        sa.Column('password', sa.String(128), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('owner', sa.String(255), nullable=True),
        sa.Column('db_name', sa.String(64), nullable=False),
        sa.Column('db_user', sa.String(64), nullable=False),
        sa.Column('db_pass', sa.String(128), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='provisioning'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    # Allocated sites and the pre-provisioned pool share one shape
    for table in ('sites', 'sitepool'):
        op.create_table(table, *_site_columns())
        op.create_index(f'ix_{table}_site_id', table, ['site_id'], unique=True)
        op.create_index(f'ix_{table}_db_name', table, ['db_name'], unique=True)


def downgrade() -> None:
    """Downgrade schema."""
    for table in ('sitepool', 'sites'):
        op.drop_index(f'ix_{table}_db_name', table_name=table)
        op.drop_index(f'ix_{table}_site_id', table_name=table)
        op.drop_table(table)
