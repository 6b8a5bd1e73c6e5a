"""Create sports_games, settlement_queue and job_locks."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sports_games",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("league", sa.String(20), nullable=False),
        sa.Column("external_game_id", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False, server_default="api-sports"),
        sa.Column("season", sa.Integer(), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("home_team", sa.String(200), nullable=True),
        sa.Column("away_team", sa.String(200), nullable=True),
        sa.Column("home_score", sa.Integer(), nullable=True),
        sa.Column("away_score", sa.Integer(), nullable=True),
        sa.Column("status_raw", sa.String(50), nullable=True),
        sa.Column("status_norm", sa.String(20), nullable=False, server_default="SCHEDULED"),
        sa.Column("winner_side", sa.String(10), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("league", "external_game_id", name="uq_sports_games_league_external_id"),
        sa.CheckConstraint(
            "status_norm IN ('SCHEDULED', 'LIVE', 'FINAL', 'CANCELLED')",
            name="ck_sports_games_status_norm",
        ),
    )
    op.create_index("ix_sports_games_league", "sports_games", ["league"])
    op.create_index("ix_sports_games_starts_at", "sports_games", ["starts_at"])
    op.create_index("ix_sports_games_status_norm", "sports_games", ["status_norm"])
    op.create_index("idx_sports_games_status_starts_at", "sports_games", ["status_norm", "starts_at"])

    op.create_table(
        "settlement_queue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "game_id",
            sa.Integer(),
            sa.ForeignKey("sports_games.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("league", sa.String(20), nullable=False),
        sa.Column("external_game_id", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False, server_default="api-sports"),
        sa.Column("status", sa.String(20), nullable=False, server_default="QUEUED"),
        sa.Column("outcome", sa.String(10), nullable=True),
        sa.Column("reason", sa.String(50), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(200), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('QUEUED', 'PROCESSING', 'DONE', 'FAILED', 'SKIPPED')",
            name="ck_settlement_queue_status",
        ),
    )
    op.create_index("ix_settlement_queue_status", "settlement_queue", ["status"])
    op.create_index("idx_settlement_queue_status_locked_at", "settlement_queue", ["status", "locked_at"])
    op.create_index("idx_settlement_queue_status_updated_at", "settlement_queue", ["status", "updated_at"])

    op.create_table(
        "job_locks",
        sa.Column("job_name", sa.String(50), primary_key=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_by", sa.String(200), nullable=True),
        sa.Column(
            "meta",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_job_locks_expires_at", "job_locks", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_job_locks_expires_at", table_name="job_locks")
    op.drop_table("job_locks")
    op.drop_index("idx_settlement_queue_status_updated_at", table_name="settlement_queue")
    op.drop_index("idx_settlement_queue_status_locked_at", table_name="settlement_queue")
    op.drop_index("ix_settlement_queue_status", table_name="settlement_queue")
    op.drop_table("settlement_queue")
    op.drop_index("idx_sports_games_status_starts_at", table_name="sports_games")
    op.drop_index("ix_sports_games_status_norm", table_name="sports_games")
    op.drop_index("ix_sports_games_starts_at", table_name="sports_games")
    op.drop_index("ix_sports_games_league", table_name="sports_games")
    op.drop_table("sports_games")
