"""Add address unlock, deal code, refund and activity tables

Revision ID: b7e4c19a2d3f
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'b7e4c19a2d3f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create unlock tables and link bookings to unlocks"""
    op.create_table(
        'deal_codes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('source_property_id', sa.Integer(), nullable=False, comment='Property whose unlock produced this code'),
        sa.Column('remaining_unlocks', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
    )
    op.create_index('ix_deal_codes_user_id', 'deal_codes', ['user_id'])

    op.create_table(
        'property_address_unlocks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('unlock_id', sa.String(64), nullable=False, comment='Public id, unlock-<ts>-<rand>'),
        sa.Column('property_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),

        # Commercial
        sa.Column('payment_method', sa.String(40), nullable=False, comment='non_refundable_fee, three_month_30_percent'),
        sa.Column('payment_amount_local', sa.Numeric(12, 2), nullable=False, comment='Charged amount in local currency'),
        sa.Column('payment_amount_usd', sa.Numeric(12, 2), nullable=False, comment='Charged amount in USD'),
        sa.Column('exchange_rate_used', sa.Numeric(14, 4), nullable=False, comment='USD->local rate applied'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='RWF'),

        # Payment rail
        sa.Column('payment_type', sa.String(20), nullable=False, comment='momo, cc, deal_code'),
        sa.Column('payment_provider', sa.String(40), nullable=False, comment='MTN_RW, XENTRIPAY_CARD, DEAL_CODE, ...'),
        sa.Column('transaction_reference', sa.String(128), nullable=False, comment='Gateway lookup key'),
        sa.Column('payment_url', sa.Text(), nullable=True),

        # Lifecycle
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('unlocked_at', sa.DateTime(timezone=True), nullable=True, comment='Set only on COMPLETED'),

        # Feedback
        sa.Column('appreciation_submitted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('appreciation_level', sa.String(20), nullable=True),
        sa.Column('appreciation_feedback', sa.Text(), nullable=True),
        sa.Column('appreciation_submitted_at', sa.DateTime(timezone=True), nullable=True),

        sa.Column('deal_code_id', sa.Integer(), nullable=True, comment='Deal code that paid for this unlock'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),

        sa.ForeignKeyConstraint(['property_id'], ['properties.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['deal_code_id'], ['deal_codes.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('unlock_id'),
        sa.UniqueConstraint('user_id', 'property_id', name='uq_unlock_user_property'),
    )
    op.create_index('ix_property_address_unlocks_property_id', 'property_address_unlocks', ['property_id'])
    op.create_index('ix_property_address_unlocks_user_id', 'property_address_unlocks', ['user_id'])
    op.create_index('ix_property_address_unlocks_transaction_reference', 'property_address_unlocks', ['transaction_reference'])
    op.create_index('ix_property_address_unlocks_payment_status', 'property_address_unlocks', ['payment_status'])
    op.create_index('idx_unlock_status_created', 'property_address_unlocks', ['payment_status', 'created_at'])

    op.create_table(
        'deal_code_usage',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('deal_code_id', sa.Integer(), nullable=False),
        sa.Column('unlock_id', sa.String(64), nullable=False),
        sa.Column('property_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['deal_code_id'], ['deal_codes.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('unlock_id'),
    )
    op.create_index('ix_deal_code_usage_deal_code_id', 'deal_code_usage', ['deal_code_id'])
    op.create_index('ix_deal_code_usage_user_id', 'deal_code_usage', ['user_id'])

    op.create_table(
        'address_unlock_refunds',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('unlock_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('refund_amount', sa.Numeric(12, 2), nullable=False, comment='Local currency, paid minus service fee'),
        sa.Column('refund_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('refund_method', sa.String(20), nullable=True),
        sa.Column('refund_reference', sa.String(128), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('unlock_id'),
    )
    op.create_index('ix_address_unlock_refunds_user_id', 'address_unlock_refunds', ['user_id'])

    op.create_table(
        'unlock_activity_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('unlock_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('property_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(40), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_unlock_activity_logs_unlock_id', 'unlock_activity_logs', ['unlock_id'])
    op.create_index('ix_unlock_activity_logs_user_id', 'unlock_activity_logs', ['user_id'])
    op.create_index('ix_unlock_activity_logs_property_id', 'unlock_activity_logs', ['property_id'])

    # Booking linkage: 30% unlock applied as deposit
    op.add_column('bookings', sa.Column('paid_amount', sa.Numeric(12, 2), nullable=False, server_default='0'))
    op.add_column('bookings', sa.Column('remaining_amount', sa.Numeric(12, 2), nullable=False, server_default='0'))
    op.add_column('bookings', sa.Column(
        'unlock_id', sa.String(64), nullable=True,
        comment='Address unlock whose 30% payment was applied as deposit',
    ))
    op.create_unique_constraint('uq_bookings_unlock_id', 'bookings', ['unlock_id'])


def downgrade() -> None:
    """Drop unlock tables and booking linkage"""
    op.drop_constraint('uq_bookings_unlock_id', 'bookings', type_='unique')
    op.drop_column('bookings', 'unlock_id')
    op.drop_column('bookings', 'remaining_amount')
    op.drop_column('bookings', 'paid_amount')

    op.drop_index('ix_unlock_activity_logs_property_id', table_name='unlock_activity_logs')
    op.drop_index('ix_unlock_activity_logs_user_id', table_name='unlock_activity_logs')
    op.drop_index('ix_unlock_activity_logs_unlock_id', table_name='unlock_activity_logs')
    op.drop_table('unlock_activity_logs')

    op.drop_index('ix_address_unlock_refunds_user_id', table_name='address_unlock_refunds')
    op.drop_table('address_unlock_refunds')

    op.drop_index('ix_deal_code_usage_user_id', table_name='deal_code_usage')
    op.drop_index('ix_deal_code_usage_deal_code_id', table_name='deal_code_usage')
    op.drop_table('deal_code_usage')

    op.drop_index('idx_unlock_status_created', table_name='property_address_unlocks')
    op.drop_index('ix_property_address_unlocks_payment_status', table_name='property_address_unlocks')
    op.drop_index('ix_property_address_unlocks_transaction_reference', table_name='property_address_unlocks')
    op.drop_index('ix_property_address_unlocks_user_id', table_name='property_address_unlocks')
    op.drop_index('ix_property_address_unlocks_property_id', table_name='property_address_unlocks')
    op.drop_table('property_address_unlocks')

    op.drop_index('ix_deal_codes_user_id', table_name='deal_codes')
    op.drop_table('deal_codes')
