"""billing sync ledger: mappings, runs, run logs, sync state, synced events

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261016_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_mappings",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("steve_ocpp_tag_pk", sa.Integer(), nullable=False),
        sa.Column("steve_ocpp_id_tag", sa.String(length=255), nullable=False),
        sa.Column("lago_customer_external_id", sa.String(length=255), nullable=False),
        sa.Column("lago_subscription_external_id", sa.String(length=255), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("steve_ocpp_id_tag", name="uq_user_mappings_steve_ocpp_id_tag"),
    )
    op.create_index("ix_user_mappings_is_active", "user_mappings", ["is_active"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transactions_processed", sa.Integer(), server_default="0", nullable=False),
        sa.Column("events_created", sa.Integer(), server_default="0", nullable=False),
        sa.Column("tags_activated", sa.Integer(), server_default="0", nullable=False),
        sa.Column("tags_deactivated", sa.Integer(), server_default="0", nullable=False),
        sa.Column("tags_unchanged", sa.Integer(), server_default="0", nullable=False),
        sa.Column("tag_linking_status", sa.String(length=16), nullable=True),
        sa.Column("transaction_sync_status", sa.String(length=16), nullable=True),
        sa.Column("errors", sa.Text(), nullable=True),
        sa.CheckConstraint("status IN ('running','completed','failed')", name="ck_sync_runs_status"),
        sa.CheckConstraint(
            "tag_linking_status IS NULL OR tag_linking_status IN ('success','warning','error','skipped')",
            name="ck_sync_runs_tag_linking_status",
        ),
        sa.CheckConstraint(
            "transaction_sync_status IS NULL"
            " OR transaction_sync_status IN ('success','warning','error','skipped')",
            name="ck_sync_runs_transaction_sync_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_runs_started_at", "sync_runs", ["started_at"])
    op.execute("CREATE UNIQUE INDEX uq_sync_runs_single_running ON sync_runs (status) WHERE status = 'running'")

    op.create_table(
        "sync_run_logs",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("sync_run_id", sa.BigInteger(), nullable=False),
        sa.Column("segment", sa.String(length=32), nullable=False),
        sa.Column("level", sa.String(length=8), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("context", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("segment IN ('tag_linking','transaction_sync')", name="ck_sync_run_logs_segment"),
        sa.CheckConstraint("level IN ('debug','info','warn','error')", name="ck_sync_run_logs_level"),
        sa.ForeignKeyConstraint(["sync_run_id"], ["sync_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_run_logs_run_segment", "sync_run_logs", ["sync_run_id", "segment"])

    op.create_table(
        "transaction_sync_state",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("steve_transaction_id", sa.BigInteger(), nullable=False),
        sa.Column("last_synced_meter_value", sa.BigInteger(), nullable=False),
        sa.Column("total_kwh_billed", sa.Float(), server_default="0", nullable=False),
        sa.Column("last_sync_run_id", sa.BigInteger(), nullable=True),
        sa.Column("is_finalized", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["last_sync_run_id"], ["sync_runs.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("steve_transaction_id", name="uq_transaction_sync_state_steve_transaction_id"),
    )

    op.create_table(
        "synced_transaction_events",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("steve_transaction_id", sa.BigInteger(), nullable=False),
        sa.Column("transaction_sync_state_id", sa.BigInteger(), nullable=True),
        sa.Column("lago_event_transaction_id", sa.String(length=255), nullable=False),
        sa.Column("user_mapping_id", sa.BigInteger(), nullable=True),
        sa.Column("kwh_delta", sa.Float(), nullable=False),
        sa.Column("meter_value_from", sa.BigInteger(), nullable=False),
        sa.Column("meter_value_to", sa.BigInteger(), nullable=False),
        sa.Column("is_final", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_billable", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("sync_run_id", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(
            ["transaction_sync_state_id"],
            ["transaction_sync_state.id"],
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(["user_mapping_id"], ["user_mappings.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["sync_run_id"], ["sync_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "lago_event_transaction_id",
            name="uq_synced_transaction_events_lago_event_transaction_id",
        ),
    )
    op.create_index(
        "ix_synced_transaction_events_steve_transaction_id",
        "synced_transaction_events",
        ["steve_transaction_id"],
    )
    op.create_index("ix_synced_transaction_events_sync_run_id", "synced_transaction_events", ["sync_run_id"])


def downgrade() -> None:
    op.drop_index("ix_synced_transaction_events_sync_run_id", table_name="synced_transaction_events")
    op.drop_index("ix_synced_transaction_events_steve_transaction_id", table_name="synced_transaction_events")
    op.drop_table("synced_transaction_events")
    op.drop_table("transaction_sync_state")
    op.drop_index("ix_sync_run_logs_run_segment", table_name="sync_run_logs")
    op.drop_table("sync_run_logs")
    op.execute("DROP INDEX IF EXISTS uq_sync_runs_single_running")
    op.drop_index("ix_sync_runs_started_at", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_index("ix_user_mappings_is_active", table_name="user_mappings")
    op.drop_table("user_mappings")
