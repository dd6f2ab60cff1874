"""Create delivery run history table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "delivery_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("trigger", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notifier_failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("store_failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("carried_over_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("outcomes_json", sa.Text(), nullable=False, server_default="[]"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_delivery_runs_started_at", "delivery_runs", ["started_at"], unique=False)
    op.create_index("ix_delivery_runs_status", "delivery_runs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_delivery_runs_status", table_name="delivery_runs")
    op.drop_index("ix_delivery_runs_started_at", table_name="delivery_runs")
    op.drop_table("delivery_runs")
