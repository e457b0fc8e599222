"""Create users, accounts and ledger entries

Revision ID: 20261018_0900_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261018_0900_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names, matching the ORM models
account_type = sa.Enum('SAVINGS', 'CHEQUE', 'CREDIT_CARD', 'LOAN', 'OTHER', name='accounttype')
entry_kind = sa.Enum('TRANSACTION', 'PAYMENT', name='entrykind')
entry_type = sa.Enum('DEBIT', 'CREDIT', name='entrytype')
entry_status = sa.Enum('PENDING', 'SCHEDULED', 'COMPLETED', 'FAILED', name='entrystatus')


def upgrade() -> None:
    # ============================================================
    # Users
    # ============================================================
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('hashed_password', sa.String(length=255), nullable=False),
        sa.Column('password_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column('phone_number', sa.String(length=20), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    # ============================================================
    # Accounts
    # ============================================================
    op.create_table('accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('account_number', sa.String(length=34), nullable=False),
        sa.Column('account_name', sa.String(length=100), nullable=False),
        sa.Column('institution', sa.String(length=100), nullable=False),
        sa.Column('account_type', account_type, nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='ZAR'),
        sa.Column('balance', sa.Numeric(precision=19, scale=4), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'account_number', name='uq_accounts_user_account_number')
    )
    op.create_index(op.f('ix_accounts_id'), 'accounts', ['id'], unique=False)
    op.create_index(op.f('ix_accounts_user_id'), 'accounts', ['user_id'], unique=False)

    # ============================================================
    # Ledger Entries (transactions and payments)
    # ============================================================
    op.create_table('ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('kind', entry_kind, nullable=False),
        sa.Column('entry_type', entry_type, nullable=False),
        sa.Column('amount', sa.Numeric(precision=19, scale=4), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', entry_status, nullable=False),
        sa.Column('balance_after', sa.Numeric(precision=19, scale=4), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reference', sa.String(length=100), nullable=True),
        sa.Column('category', sa.String(length=50), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'idempotency_key', name='uq_ledger_entries_account_idempotency_key')
    )
    op.create_index(op.f('ix_ledger_entries_id'), 'ledger_entries', ['id'], unique=False)
    op.create_index(op.f('ix_ledger_entries_account_id'), 'ledger_entries', ['account_id'], unique=False)
    op.create_index(op.f('ix_ledger_entries_user_id'), 'ledger_entries', ['user_id'], unique=False)
    op.create_index(op.f('ix_ledger_entries_kind'), 'ledger_entries', ['kind'], unique=False)
    op.create_index(op.f('ix_ledger_entries_status'), 'ledger_entries', ['status'], unique=False)
    op.create_index(op.f('ix_ledger_entries_category'), 'ledger_entries', ['category'], unique=False)
    op.create_index('ix_ledger_entries_account_occurred', 'ledger_entries', ['account_id', 'occurred_at', 'id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_ledger_entries_account_occurred', table_name='ledger_entries')
    op.drop_index(op.f('ix_ledger_entries_category'), table_name='ledger_entries')
    op.drop_index(op.f('ix_ledger_entries_status'), table_name='ledger_entries')
    op.drop_index(op.f('ix_ledger_entries_kind'), table_name='ledger_entries')
    op.drop_index(op.f('ix_ledger_entries_user_id'), table_name='ledger_entries')
    op.drop_index(op.f('ix_ledger_entries_account_id'), table_name='ledger_entries')
    op.drop_index(op.f('ix_ledger_entries_id'), table_name='ledger_entries')
    op.drop_table('ledger_entries')

    op.drop_index(op.f('ix_accounts_user_id'), table_name='accounts')
    op.drop_index(op.f('ix_accounts_id'), table_name='accounts')
    op.drop_table('accounts')

    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_index(op.f('ix_users_id'), table_name='users')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (entry_status, entry_type, entry_kind, account_type):
        enum_type.drop(bind, checkfirst=True)
