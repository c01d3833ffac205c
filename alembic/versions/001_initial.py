"""Initial schema: per-domain cache tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


CACHE_TABLES = (
    'profile_cache',
    'subscription_cache',
    'invoice_cache',
    'entitlement_cache',
)


def upgrade() -> None:
    for table in CACHE_TABLES:
        op.create_table(
            table,
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(64), nullable=False),
            sa.Column('user_id', sa.String(64), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
        op.create_index(f'ix_{table}_tenant_user', table, ['tenant_id', 'user_id'], unique=True)


def downgrade() -> None:
    for table in reversed(CACHE_TABLES):
        op.drop_index(f'ix_{table}_tenant_user', table_name=table)
        op.drop_table(table)
