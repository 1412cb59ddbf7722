"""Initial vault schema.

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


def upgrade() -> None:
    # Phone identities
    op.create_table(
        'phone_identities',
        sa.Column('phone', sa.String(32), nullable=False),
        sa.Column('address', sa.String(66), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('public_key_x', sa.String(78), nullable=True),
        sa.Column('public_key_y', sa.String(78), nullable=True),
        sa.Column('deploy_tx_hash', sa.String(66), nullable=True),
        sa.Column('deploy_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('registered_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('phone'),
        sa.UniqueConstraint('address')
    )
    op.create_index('ix_phone_identities_address', 'phone_identities', ['address'])

    # OTP challenges (one per phone)
    op.create_table(
        'otp_challenges',
        sa.Column('phone', sa.String(32), nullable=False),
        sa.Column('challenge_id', sa.String(64), nullable=False),
        sa.Column('code_digest', sa.String(64), nullable=False),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('phone'),
        sa.UniqueConstraint('challenge_id')
    )

    # Claim links
    op.create_table(
        'claim_links',
        sa.Column('token', sa.String(64), nullable=False),
        sa.Column('creator_phone', sa.String(32), nullable=False),
        sa.Column('creator_address', sa.String(66), nullable=False),
        sa.Column('amount', sa.String(78), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('claimed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('claimant_phone', sa.String(32), nullable=True),
        sa.Column('claimant_address', sa.String(66), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('funding_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('funding_tx_hash', sa.String(66), nullable=True),
        sa.Column('transfer_tx_hash', sa.String(66), nullable=True),
        sa.Column('transfer_status', sa.String(20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('token')
    )
    op.create_index('ix_claim_links_creator_phone', 'claim_links', ['creator_phone'])

    # Relayer nonces
    op.create_table(
        'relay_nonces',
        sa.Column('account_address', sa.String(66), nullable=False),
        sa.Column('next_nonce', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('account_address')
    )

    # Relayed transactions
    op.create_table(
        'relayed_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tx_hash', sa.String(66), nullable=False),
        sa.Column('operation_key', sa.String(128), nullable=True),
        sa.Column('sender', sa.String(66), nullable=False),
        sa.Column('on_behalf_of', sa.String(66), nullable=True),
        sa.Column('nonce', sa.BigInteger(), nullable=False),
        sa.Column('max_fee', sa.String(78), nullable=False),
        sa.Column('calls', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash'),
        sa.UniqueConstraint('operation_key')
    )
    op.create_index('ix_relayed_tx_sender_nonce', 'relayed_transactions', ['sender', 'nonce'])

    # On-ramp webhook events
    op.create_table(
        'onramp_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('checkout_id', sa.String(128), nullable=False),
        sa.Column('status', sa.String(40), nullable=False),
        sa.Column('address', sa.String(66), nullable=True),
        sa.Column('raw_payload', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_onramp_checkout_status', 'onramp_events', ['checkout_id', 'status'], unique=True
    )


def downgrade() -> None:
    op.drop_table('onramp_events')
    op.drop_table('relayed_transactions')
    op.drop_table('relay_nonces')
    op.drop_table('claim_links')
    op.drop_table('otp_challenges')
    op.drop_table('phone_identities')
