"""Points ledger, achievements, leaderboard and audit tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261017_01_gamification_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "points_transactions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("course_slug", sa.String(length=128), nullable=True),
        sa.Column("award_key", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("user_id", "award_key", name="uq_points_transaction_award_key"),
    )
    op.create_index("ix_points_transactions_user_created", "points_transactions", ["user_id", "created_at"])
    op.create_index("ix_points_transactions_course", "points_transactions", ["course_slug"])

    op.create_table(
        "achievements",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("badge_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("rarity", sa.String(length=16), nullable=False),
        sa.Column("icon", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("earned_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("user_id", "badge_id", name="uq_achievement_user_badge"),
    )
    op.create_index("ix_achievements_user", "achievements", ["user_id"])

    op.create_table(
        "leaderboard_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("scope", sa.String(length=160), nullable=False),
        sa.Column("period_key", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rank", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("scope", "period_key", "user_id", name="uq_leaderboard_entry"),
    )
    op.create_index("ix_leaderboard_partition_rank", "leaderboard_entries", ["scope", "period_key", "rank"])

    op.create_table(
        "persistence_audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_persistence_audit_events_user", "persistence_audit_events", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_persistence_audit_events_user", table_name="persistence_audit_events")
    op.drop_table("persistence_audit_events")
    op.drop_index("ix_leaderboard_partition_rank", table_name="leaderboard_entries")
    op.drop_table("leaderboard_entries")
    op.drop_index("ix_achievements_user", table_name="achievements")
    op.drop_table("achievements")
    op.drop_index("ix_points_transactions_course", table_name="points_transactions")
    op.drop_index("ix_points_transactions_user_created", table_name="points_transactions")
    op.drop_table("points_transactions")
