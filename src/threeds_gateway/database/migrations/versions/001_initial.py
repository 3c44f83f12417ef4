"""Initial migration - create callback_states, provider_logs, and payment_attempts tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create callback_states table
    op.create_table(
        'callback_states',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('token', sa.String(64), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('payment_id', sa.String(255), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('context_json', sa.Text(), nullable=False),
        sa.Column('resolve_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )

    op.create_index('ix_callback_states_token', 'callback_states', ['token'], unique=True)
    op.create_index('ix_callback_states_payment_id', 'callback_states', ['payment_id'])
    op.create_index('ix_callback_states_expires_at', 'callback_states', ['expires_at'])

    # Create provider_logs table
    op.create_table(
        'provider_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('method', sa.String(50), nullable=False),
        sa.Column('endpoint', sa.String(255), nullable=True),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=True),
        sa.Column('client_ip', sa.String(64), nullable=True),
        sa.Column('request_json', sa.Text(), nullable=True),
        sa.Column('response_json', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('processing_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_index('ix_provider_logs_provider', 'provider_logs', ['provider'])
    op.create_index('ix_provider_logs_payment_id', 'provider_logs', ['payment_id'])
    op.create_index('ix_provider_logs_provider_payment_id', 'provider_logs', ['provider', 'payment_id'])
    op.create_index('ix_provider_logs_created_at', 'provider_logs', ['created_at'])

    # Create payment_attempts table
    op.create_table(
        'payment_attempts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('payment_id', sa.String(255), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('is_3d', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('log_id', sa.Integer(), nullable=True),
        sa.Column('result_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('provider', 'payment_id', name='uq_payment_attempts_provider_payment_id'),
    )

    op.create_index('ix_payment_attempts_status', 'payment_attempts', ['status'])


def downgrade() -> None:
    op.drop_index('ix_payment_attempts_status', table_name='payment_attempts')
    op.drop_table('payment_attempts')

    op.drop_index('ix_provider_logs_created_at', table_name='provider_logs')
    op.drop_index('ix_provider_logs_provider_payment_id', table_name='provider_logs')
    op.drop_index('ix_provider_logs_payment_id', table_name='provider_logs')
    op.drop_index('ix_provider_logs_provider', table_name='provider_logs')
    op.drop_table('provider_logs')

    op.drop_index('ix_callback_states_expires_at', table_name='callback_states')
    op.drop_index('ix_callback_states_payment_id', table_name='callback_states')
    op.drop_index('ix_callback_states_token', table_name='callback_states')
    op.drop_table('callback_states')
