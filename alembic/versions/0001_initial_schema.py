"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-03-14 12:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

LIFECYCLE_STATES = ("OFFLINE", "PROVISIONING", "RUNNING", "IDLE", "SUSPENDED", "TERMINATING")


def upgrade() -> None:
    op.create_table(
        "server_state",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "state",
            sa.Enum(*LIFECYCLE_STATES, name="lifecycle_state", native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column("vps_id", sa.String(64), nullable=True),
        sa.Column("vps_ip", sa.String(64), nullable=True),
        sa.Column("region", sa.String(8), nullable=True),
        sa.Column("server_type", sa.String(32), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dns_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("player_count", sa.Integer(), nullable=False),
        sa.Column("idle_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rcon_password", sa.String(128), nullable=True),
    )

    op.create_table(
        "sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("cost_usd", sa.Float(), nullable=True),
        sa.Column("max_players", sa.Integer(), nullable=False),
        sa.Column("region", sa.String(8), nullable=False),
        sa.Column("server_type", sa.String(32), nullable=False),
        sa.Column("vps_id", sa.String(64), nullable=True),
    )
    op.create_index("ix_sessions_ended_at", "sessions", ["ended_at"])

    op.create_table(
        "monthly_summary",
        sa.Column("month", sa.String(7), primary_key=True),
        sa.Column("total_hours", sa.Float(), nullable=False),
        sa.Column("total_cost", sa.Float(), nullable=False),
        sa.Column("session_count", sa.Integer(), nullable=False),
        sa.Column("eu_hours", sa.Float(), nullable=False),
        sa.Column("eu_cost", sa.Float(), nullable=False),
        sa.Column("us_hours", sa.Float(), nullable=False),
        sa.Column("us_cost", sa.Float(), nullable=False),
    )

    op.create_table(
        "backups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("sessions.id"), nullable=True),
        sa.Column("triggered_by", sa.String(16), nullable=False),
    )
    op.create_index("ix_backups_timestamp", "backups", ["timestamp"])

    op.create_table(
        "whitelist_cache",
        sa.Column("username", sa.String(16), primary_key=True),
        sa.Column("uuid", sa.String(36), nullable=True),
        sa.Column("added_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("added_by", sa.String(255), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("whitelist_cache")
    op.drop_index("ix_backups_timestamp", table_name="backups")
    op.drop_table("backups")
    op.drop_table("monthly_summary")
    op.drop_index("ix_sessions_ended_at", table_name="sessions")
    op.drop_table("sessions")
    op.drop_table("server_state")
