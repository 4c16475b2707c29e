"""Initial schema for deposit addresses, deposits and watcher cursors.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "deposit_addresses",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("chain", sa.String(20), nullable=False),
        sa.Column("asset", sa.String(20), nullable=False),
        sa.Column("address", sa.String(64), nullable=False),
        sa.Column("encrypted_private_key", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("disabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain", "address", "asset", name="uq_deposit_addresses_chain_address_asset"),
    )
    op.create_index("idx_deposit_addresses_chain", "deposit_addresses", ["chain"])
    op.create_index("idx_deposit_addresses_user", "deposit_addresses", ["user_id"])

    op.create_table(
        "onchain_deposits",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("deposit_address_id", sa.Uuid(), nullable=False),
        sa.Column("chain", sa.String(20), nullable=False),
        sa.Column("asset", sa.String(20), nullable=False),
        sa.Column("tx_id", sa.String(128), nullable=False),
        sa.Column("amount", sa.Numeric(38, 18), nullable=False),
        sa.Column("from_address", sa.String(64), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("confirmations", sa.Integer(), nullable=False),
        sa.Column("required_confirmations", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("swept_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sweep_tx_id", sa.String(128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["deposit_address_id"], ["deposit_addresses.id"]),
        sa.UniqueConstraint("chain", "tx_id", name="uq_onchain_deposits_chain_tx"),
    )
    op.create_index("idx_onchain_deposits_chain_status", "onchain_deposits", ["chain", "status"])
    op.create_index("idx_onchain_deposits_user", "onchain_deposits", ["user_id"])

    op.create_table(
        "watcher_cursors",
        sa.Column("chain", sa.String(20), nullable=False),
        sa.Column("last_processed_height", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chain"),
    )


def downgrade() -> None:
    op.drop_table("watcher_cursors")
    op.drop_index("idx_onchain_deposits_user", table_name="onchain_deposits")
    op.drop_index("idx_onchain_deposits_chain_status", table_name="onchain_deposits")
    op.drop_table("onchain_deposits")
    op.drop_index("idx_deposit_addresses_user", table_name="deposit_addresses")
    op.drop_index("idx_deposit_addresses_chain", table_name="deposit_addresses")
    op.drop_table("deposit_addresses")
