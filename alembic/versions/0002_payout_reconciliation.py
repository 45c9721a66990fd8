"""track signed payouts and unreconciled rounds

Revision ID: 0002_payout_reconciliation
Revises: 0001_draw_tables
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "0002_payout_reconciliation"
down_revision = "0001_draw_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("pending_draw_records") as batch_op:
        # Rows written before this revision were only queued after confirmation.
        batch_op.add_column(
            sa.Column(
                "payout_confirmed",
                sa.Boolean(),
                nullable=False,
                server_default=sa.true(),
            )
        )
    with op.batch_alter_table("draw_status") as batch_op:
        batch_op.add_column(
            sa.Column("unreconciled_round_id", sa.Integer(), nullable=True)
        )


def downgrade() -> None:
    with op.batch_alter_table("draw_status") as batch_op:
        batch_op.drop_column("unreconciled_round_id")
    with op.batch_alter_table("pending_draw_records") as batch_op:
        batch_op.drop_column("payout_confirmed")
