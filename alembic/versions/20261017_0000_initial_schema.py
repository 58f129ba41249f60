"""Initial schema for vaults, sub-schedules, beneficiaries, claims and indexer state.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(36, 18)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "vaults",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("vault_address", sa.String(66), nullable=False),
        sa.Column("owner_address", sa.String(66), nullable=False),
        sa.Column("token_address", sa.String(66), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("total_amount", AMOUNT, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_block", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("vault_address"),
    )
    op.create_index("idx_vaults_owner", "vaults", ["owner_address"])
    op.create_index("idx_vaults_token", "vaults", ["token_address"])

    op.create_table(
        "sub_schedules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("vault_id", sa.Integer(), nullable=False),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column("cliff_duration", sa.Integer(), nullable=True),
        sa.Column("cliff_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("top_up_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("vesting_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("vesting_duration", sa.Integer(), nullable=False),
        sa.Column("amount_released", AMOUNT, nullable=False),
        sa.Column("transaction_hash", sa.String(128), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["vault_id"], ["vaults.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("transaction_hash"),
    )
    op.create_index("idx_sub_schedules_vault", "sub_schedules", ["vault_id"])
    op.create_index("idx_sub_schedules_block", "sub_schedules", ["block_number"])

    op.create_table(
        "beneficiaries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("vault_id", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(66), nullable=False),
        sa.Column("total_allocated", AMOUNT, nullable=False),
        sa.Column("total_withdrawn", AMOUNT, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["vault_id"], ["vaults.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("vault_id", "address", name="uq_beneficiaries_vault_address"),
    )
    op.create_index("idx_beneficiaries_address", "beneficiaries", ["address"])

    op.create_table(
        "claims_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_address", sa.String(66), nullable=False),
        sa.Column("token_address", sa.String(66), nullable=False),
        sa.Column("amount_claimed", AMOUNT, nullable=False),
        sa.Column("claim_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("transaction_hash", sa.String(128), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("price_at_claim_usd", AMOUNT, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_hash"),
    )
    op.create_index("idx_claims_user", "claims_history", ["user_address"])
    op.create_index("idx_claims_token", "claims_history", ["token_address"])
    op.create_index("idx_claims_timestamp", "claims_history", ["claim_timestamp"])
    op.create_index("idx_claims_block", "claims_history", ["block_number"])

    op.create_table(
        "indexer_state",
        sa.Column("service_name", sa.String(100), nullable=False),
        sa.Column("last_ingested_ledger", sa.BigInteger(), nullable=False),
        sa.Column("last_ingested_hash", sa.String(128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("service_name"),
    )

    op.create_table(
        "reconciliation_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("on_chain_count", sa.Integer(), nullable=False),
        sa.Column("db_count", sa.Integer(), nullable=False),
        sa.Column("mismatch", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("backfilled_count", sa.Integer(), nullable=False),
        sa.Column("error", sa.String(1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_reconciliation_events_created", "reconciliation_events", ["created_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_reconciliation_events_created", table_name="reconciliation_events")
    op.drop_table("reconciliation_events")
    op.drop_table("indexer_state")
    op.drop_index("idx_claims_block", table_name="claims_history")
    op.drop_index("idx_claims_timestamp", table_name="claims_history")
    op.drop_index("idx_claims_token", table_name="claims_history")
    op.drop_index("idx_claims_user", table_name="claims_history")
    op.drop_table("claims_history")
    op.drop_index("idx_beneficiaries_address", table_name="beneficiaries")
    op.drop_table("beneficiaries")
    op.drop_index("idx_sub_schedules_block", table_name="sub_schedules")
    op.drop_index("idx_sub_schedules_vault", table_name="sub_schedules")
    op.drop_table("sub_schedules")
    op.drop_index("idx_vaults_token", table_name="vaults")
    op.drop_index("idx_vaults_owner", table_name="vaults")
    op.drop_table("vaults")
