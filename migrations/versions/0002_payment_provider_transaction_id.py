"""add provider transaction id to payment transactions

Revision ID: 0002_provider_tx_id
Revises: 0001_initial
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_provider_tx_id"
down_revision: Union[str, Sequence[str], None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("payment_transactions", sa.Column("provider_transaction_id", sa.String(length=64), nullable=True))
    op.create_index(
        "ux_payment_transactions_provider_tx",
        "payment_transactions",
        ["provider", "provider_transaction_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("ux_payment_transactions_provider_tx", table_name="payment_transactions")
    op.drop_column("payment_transactions", "provider_transaction_id")
