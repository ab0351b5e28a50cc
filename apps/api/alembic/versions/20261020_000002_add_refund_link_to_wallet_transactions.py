"""add refund link to wallet transactions

Revision ID: 20261020_000002
Revises: 20261019_000001
Create Date: 2026-10-20 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261020_000002"
down_revision: Union[str, None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("wallet_transactions", sa.Column("refund_of_id", sa.Integer(), nullable=True))
    op.create_foreign_key(
        "fk_wallet_transactions_refund_of_id",
        "wallet_transactions",
        "wallet_transactions",
        ["refund_of_id"],
        ["id"],
    )
    op.create_unique_constraint(
        "uq_wallet_transactions_refund_of_id",
        "wallet_transactions",
        ["refund_of_id"],
    )


def downgrade() -> None:
    op.drop_constraint("uq_wallet_transactions_refund_of_id", "wallet_transactions", type_="unique")
    op.drop_constraint("fk_wallet_transactions_refund_of_id", "wallet_transactions", type_="foreignkey")
    op.drop_column("wallet_transactions", "refund_of_id")
