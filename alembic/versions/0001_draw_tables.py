"""draw status, draw records and the pending-record outbox

Revision ID: 0001_draw_tables
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_draw_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "draw_status",
        sa.Column("id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("phase", sa.String(length=40), nullable=True),
        sa.Column("last_draw_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('idle','running','error')",
            name=op.f("ck_draw_status_status_enum"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_draw_status")),
    )
    op.create_table(
        "draw_records",
        sa.Column("round_id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("winner", sa.String(length=42), nullable=False),
        sa.Column("bounty_tx_hash", sa.String(length=66), nullable=False),
        sa.Column("prize_amount", sa.String(length=78), nullable=False),
        sa.Column("burn_amount", sa.String(length=78), nullable=False),
        sa.Column("draw_date_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_tickets", sa.Integer(), nullable=False),
        sa.Column("participant_count", sa.Integer(), nullable=False),
        sa.Column("new_round_started", sa.Boolean(), nullable=False),
        sa.Column("new_round_tx_hash", sa.String(length=66), nullable=True),
        sa.Column("seed", sa.String(length=66), nullable=False),
        sa.Column("winner_index", sa.Integer(), nullable=False),
        sa.Column("report", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("round_id", name=op.f("pk_draw_records")),
        sa.UniqueConstraint("bounty_tx_hash", name=op.f("uq_draw_records_bounty_tx_hash")),
    )
    op.create_table(
        "pending_draw_records",
        sa.Column("round_id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("bounty_tx_hash", sa.String(length=66), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("new_round_started", sa.Boolean(), nullable=False),
        sa.Column("new_round_tx_hash", sa.String(length=66), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("round_id", name=op.f("pk_pending_draw_records")),
        sa.UniqueConstraint(
            "bounty_tx_hash", name=op.f("uq_pending_draw_records_bounty_tx_hash")
        ),
    )


def downgrade() -> None:
    op.drop_table("pending_draw_records")
    op.drop_table("draw_records")
    op.drop_table("draw_status")
