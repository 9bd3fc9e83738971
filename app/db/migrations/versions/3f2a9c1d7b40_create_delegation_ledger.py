"""create_delegation_ledger

Revision ID: 3f2a9c1d7b40
Revises:
Create Date: 2026-10-12 10:21:07.114302
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. delegations: 委托额度
    op.create_table(
        'delegations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('delegator', sa.String(length=42), nullable=False, comment='委托人地址'),
        sa.Column('agent', sa.String(length=42), nullable=False, comment='被授权 Agent 地址'),
        sa.Column('gas_budget_wei', sa.Numeric(precision=78, scale=0), nullable=False, comment='Gas 总预算'),
        sa.Column('gas_budget_spent', sa.Numeric(precision=78, scale=0), nullable=False, comment='已花费'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='ACTIVE/REVOKED/EXPIRED/EXHAUSTED'),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        schema='sponsor_agent',
    )
    op.create_index('ix_sponsor_agent_delegations_delegator', 'delegations', ['delegator'], schema='sponsor_agent')
    op.create_index('ix_sponsor_agent_delegations_agent', 'delegations', ['agent'], schema='sponsor_agent')

    # 2. delegation_usages: 只追加的使用记录
    op.create_table(
        'delegation_usages',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('delegation_id', sa.String(length=36), nullable=False),
        sa.Column('gas_used', sa.BigInteger(), nullable=False, comment='消耗 Gas 单位'),
        sa.Column('gas_cost_wei', sa.Numeric(precision=78, scale=0), nullable=False, comment='实际花费'),
        sa.Column('tx_hash', sa.String(length=66), nullable=True, comment='交易哈希'),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('over_budget', sa.Boolean(), nullable=False, server_default=sa.false(), comment='交易已上链但超出剩余预算'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True, comment='创建时间'),
        sa.ForeignKeyConstraint(['delegation_id'], ['sponsor_agent.delegations.id']),
        sa.PrimaryKeyConstraint('id'),
        schema='sponsor_agent',
    )
    op.create_index(
        'ix_sponsor_agent_delegation_usages_delegation_id', 'delegation_usages', ['delegation_id'], schema='sponsor_agent'
    )
    op.create_index(
        'ix_sponsor_agent_delegation_usages_created_at', 'delegation_usages', ['created_at'], schema='sponsor_agent'
    )


def downgrade() -> None:
    op.drop_index('ix_sponsor_agent_delegation_usages_created_at', table_name='delegation_usages', schema='sponsor_agent')
    op.drop_index('ix_sponsor_agent_delegation_usages_delegation_id', table_name='delegation_usages', schema='sponsor_agent')
    op.drop_table('delegation_usages', schema='sponsor_agent')
    op.drop_index('ix_sponsor_agent_delegations_agent', table_name='delegations', schema='sponsor_agent')
    op.drop_index('ix_sponsor_agent_delegations_delegator', table_name='delegations', schema='sponsor_agent')
    op.drop_table('delegations', schema='sponsor_agent')
