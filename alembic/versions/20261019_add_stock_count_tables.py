"""Add stock count tables

Revision ID: 20261019_stock_count
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261019_stock_count'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Collaborators
    op.create_table(
        'count_users',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('code', sa.String(50)),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('idx_cu_name', 'count_users', ['name'])

    # Count Rounds
    op.create_table(
        'count_rounds',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('group_key', sa.String(64), nullable=False),
        sa.Column('round_number', sa.Integer, nullable=False),
        sa.Column('collaborator_id', sa.Uuid, sa.ForeignKey('count_users.id'), nullable=False),
        sa.Column('floor', sa.String(50)),
        sa.Column('mode', sa.String(20), nullable=False, server_default='scheduled'),
        sa.Column('released', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('closed_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('group_key', 'round_number', name='uq_cr_group_round'),
    )
    op.create_index('idx_cr_collaborator', 'count_rounds', ['collaborator_id'])
    op.create_index('idx_cr_created', 'count_rounds', ['created_at'])

    # Count Items
    op.create_table(
        'count_items',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('item_key', sa.String(80), nullable=False),
        sa.Column('key_slot', sa.Integer, nullable=False),
        sa.Column('group_key', sa.String(64), nullable=False),
        sa.Column('count_date', sa.Date, nullable=False),
        sa.Column('product_code', sa.Integer, nullable=False),
        sa.Column('description', sa.String(500), nullable=False, server_default=''),
        sa.Column('brand', sa.String(200)),
        sa.Column('manufacturer_ref', sa.String(100)),
        sa.Column('supplier_ref', sa.String(100)),
        sa.Column('location', sa.String(200)),
        sa.Column('unit', sa.String(20)),
        sa.Column('exit_quantity', sa.Integer, nullable=False, server_default='0'),
        sa.Column('stock_snapshot', sa.Integer, nullable=False, server_default='0'),
        sa.Column('reserved_quantity', sa.Integer, nullable=False, server_default='0'),
        sa.Column('needs_review', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('item_key', 'key_slot', name='uq_ci_key_slot'),
    )
    op.create_index('ix_count_items_item_key', 'count_items', ['item_key'])
    op.create_index('idx_ci_group', 'count_items', ['group_key'])
    op.create_index('idx_ci_product_date', 'count_items', ['product_code', 'count_date'])

    # Count Logs
    op.create_table(
        'count_logs',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('round_id', sa.Uuid, sa.ForeignKey('count_rounds.id'), nullable=False),
        sa.Column('item_id', sa.Uuid, sa.ForeignKey('count_items.id'), nullable=False),
        sa.Column('item_key', sa.String(80), nullable=False),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('count_users.id'), nullable=False),
        sa.Column('stock_at_time', sa.Integer, nullable=False, server_default='0'),
        sa.Column('counted', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('round_id', 'item_id', 'user_id', name='uq_cl_round_item_user'),
    )
    op.create_index('idx_cl_item_key', 'count_logs', ['item_key'])

    # Audits
    op.create_table(
        'count_audits',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('group_key', sa.String(64), nullable=False),
        sa.Column('product_code', sa.Integer, nullable=False),
        sa.Column('movement', sa.String(20), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False, server_default='0'),
        sa.Column('flagged_difference', sa.Integer, nullable=False, server_default='0'),
        sa.Column('note', sa.Text),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('count_users.id'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('voided_at', sa.DateTime),
    )
    op.create_index('idx_ca_product_status', 'count_audits', ['product_code', 'status'])
    op.create_index('idx_ca_group', 'count_audits', ['group_key'])


def downgrade() -> None:
    op.drop_table('count_audits')
    op.drop_table('count_logs')
    op.drop_table('count_items')
    op.drop_table('count_rounds')
    op.drop_table('count_users')
