"""Add delegate_address to vaults for delegated releases.

Revision ID: 002_vault_delegates
Revises: 001_initial
Create Date: 2026-10-17 00:01:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002_vault_delegates"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("vaults") as batch_op:
        batch_op.add_column(sa.Column("delegate_address", sa.String(66), nullable=True))
        batch_op.create_index("idx_vaults_delegate", ["delegate_address"])


def downgrade() -> None:
    with op.batch_alter_table("vaults") as batch_op:
        batch_op.drop_index("idx_vaults_delegate")
        batch_op.drop_column("delegate_address")
