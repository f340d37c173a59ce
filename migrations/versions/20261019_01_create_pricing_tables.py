"""Create effective-dated price, exchange rate and change log tables

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = '20261019_01'
down_revision = None
branch_labels = None
depends_on = None

CURRENCIES = ('IDR', 'CNY', 'USD', 'EUR')
SUBJECT_TYPES = ('PRICE', 'RATE')


def _temporal_columns(table):
    return [
        sa.Column('effective_from', sa.DateTime(), nullable=False),
        sa.Column('effective_to', sa.DateTime(), nullable=True),
        sa.Column('source', sa.Enum('MANUAL', 'IMPORT', name=f'{table}_source_enum'), nullable=False),
        sa.Column('source_reference', sa.String(length=128), nullable=True),
        sa.Column('change_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.String(length=128), nullable=True),
        sa.Column('is_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('approved_by', sa.String(length=128), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
    ]


def upgrade():
    op.create_table(
        'price_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('organization_id', sa.String(length=64), nullable=True),
        sa.Column('exchange_rate', sa.Numeric(24, 10), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('supersedes_id', sa.Integer(), sa.ForeignKey('price_records.id'), nullable=True),
        *_temporal_columns('price_records'),
    )
    op.create_index('ix_price_records_product_id', 'price_records', ['product_id'])
    op.create_index('ix_price_records_organization_id', 'price_records', ['organization_id'])
    op.create_index('ix_price_records_effective_from', 'price_records', ['effective_from'])

    op.create_table(
        'price_amounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('record_id', sa.Integer(), sa.ForeignKey('price_records.id'), nullable=False),
        sa.Column('price_type', sa.Enum('CHANNEL', 'DIRECT', 'LIST', name='price_type_enum'), nullable=False),
        sa.Column('currency', sa.Enum(*CURRENCIES, name='price_currency_enum'), nullable=False),
        sa.Column('amount', sa.Numeric(24, 4), nullable=True),
        sa.UniqueConstraint('record_id', 'price_type', 'currency', name='_price_amount_cell_uc'),
    )
    op.create_index('ix_price_amounts_record_id', 'price_amounts', ['record_id'])

    op.create_table(
        'exchange_rate_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('from_currency', sa.Enum(*CURRENCIES, name='rate_from_currency_enum'), nullable=False),
        sa.Column('to_currency', sa.Enum(*CURRENCIES, name='rate_to_currency_enum'), nullable=False),
        sa.Column('rate', sa.Numeric(24, 10), nullable=False),
        sa.Column('changed_by', sa.String(length=128), nullable=True),
        sa.Column('supersedes_id', sa.Integer(), sa.ForeignKey('exchange_rate_records.id'), nullable=True),
        *_temporal_columns('exchange_rate_records'),
    )
    op.create_index('ix_exchange_rate_records_effective_from', 'exchange_rate_records', ['effective_from'])
    op.create_index(
        'idx_exchange_rate_pair', 'exchange_rate_records', ['from_currency', 'to_currency', 'effective_from']
    )

    op.create_table(
        'subject_locks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subject_type', sa.Enum(*SUBJECT_TYPES, name='lock_subject_type_enum'), nullable=False),
        sa.Column('subject_key', sa.String(length=160), nullable=False),
        sa.Column('write_count', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('subject_type', 'subject_key', name='_subject_lock_uc'),
    )

    op.create_table(
        'change_log_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subject_type', sa.Enum(*SUBJECT_TYPES, name='change_subject_type_enum'), nullable=False),
        sa.Column('subject_id', sa.Integer(), nullable=False),
        sa.Column('subject_key', sa.String(length=160), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=True),
        sa.Column(
            'change_type',
            sa.Enum('CREATE', 'UPDATE', 'DELETE', 'ACTIVATE', 'DEACTIVATE', 'APPROVE', name='change_type_enum'),
            nullable=False,
        ),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=False),
        sa.Column('diff', sa.Text(), nullable=True),
        sa.Column('fields', sa.String(length=512), nullable=False),
        sa.Column('change_reason', sa.Text(), nullable=True),
        sa.Column('changed_by', sa.String(length=128), nullable=True),
        sa.Column('changed_at', sa.DateTime(), nullable=False),
    )
    for column in ('subject_type', 'subject_id', 'subject_key', 'product_id', 'change_type', 'changed_by', 'changed_at'):
        op.create_index(f'ix_change_log_entries_{column}', 'change_log_entries', [column])


def downgrade():
    op.drop_table('change_log_entries')
    op.drop_table('subject_locks')
    op.drop_table('exchange_rate_records')
    op.drop_table('price_amounts')
    op.drop_table('price_records')
