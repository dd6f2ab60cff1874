"""Create letter recipient and letter tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "letter_users",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.UniqueConstraint("email", name="uq_letter_users_email"),
    )

    op.create_table(
        "letters",
        sa.Column("letter_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_state", sa.String(length=16), nullable=True, server_default="pending"),
        sa.Column("is_delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["letter_users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("letter_id"),
        sa.CheckConstraint("retry_count >= 0", name="ck_letters_retry_count_non_negative"),
        sa.CheckConstraint(
            "(is_delivered AND delivery_state = 'sent') OR (NOT is_delivered AND (delivery_state IS NULL OR delivery_state <> 'sent'))",
            name="ck_letters_delivered_matches_state",
        ),
    )
    op.create_index("ix_letters_user_id", "letters", ["user_id"], unique=False)
    op.create_index("ix_letters_due_at", "letters", ["due_at"], unique=False)
    op.create_index("ix_letters_is_delivered", "letters", ["is_delivered"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_letters_is_delivered", table_name="letters")
    op.drop_index("ix_letters_due_at", table_name="letters")
    op.drop_index("ix_letters_user_id", table_name="letters")
    op.drop_table("letters")
    op.drop_table("letter_users")
