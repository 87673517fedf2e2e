from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Identity,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_sync.db.base import Base


class UserMapping(Base):
    __tablename__ = "user_mappings"
    __table_args__ = (
        UniqueConstraint("steve_ocpp_id_tag", name="uq_user_mappings_steve_ocpp_id_tag"),
        Index("ix_user_mappings_is_active", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    steve_ocpp_tag_pk: Mapped[int] = mapped_column(Integer, nullable=False)
    steve_ocpp_id_tag: Mapped[str] = mapped_column(String(255), nullable=False)
    lago_customer_external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    lago_subscription_external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class SyncRun(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('running','completed','failed')",
            name="ck_sync_runs_status",
        ),
        CheckConstraint(
            "tag_linking_status IS NULL OR tag_linking_status IN ('success','warning','error','skipped')",
            name="ck_sync_runs_tag_linking_status",
        ),
        CheckConstraint(
            "transaction_sync_status IS NULL"
            " OR transaction_sync_status IN ('success','warning','error','skipped')",
            name="ck_sync_runs_transaction_sync_status",
        ),
        Index(
            "uq_sync_runs_single_running",
            "status",
            unique=True,
            postgresql_where=text("status = 'running'"),
        ),
        Index("ix_sync_runs_started_at", "started_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transactions_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    events_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    tags_activated: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    tags_deactivated: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    tags_unchanged: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    tag_linking_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    transaction_sync_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    errors: Mapped[str | None] = mapped_column(Text, nullable=True)

    logs: Mapped[list["SyncRunLog"]] = relationship(
        back_populates="sync_run",
        cascade="all, delete-orphan",
        order_by="SyncRunLog.id",
    )


class SyncRunLog(Base):
    __tablename__ = "sync_run_logs"
    __table_args__ = (
        CheckConstraint(
            "segment IN ('tag_linking','transaction_sync')",
            name="ck_sync_run_logs_segment",
        ),
        CheckConstraint(
            "level IN ('debug','info','warn','error')",
            name="ck_sync_run_logs_level",
        ),
        Index("ix_sync_run_logs_run_segment", "sync_run_id", "segment"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    sync_run_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("sync_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    segment: Mapped[str] = mapped_column(String(32), nullable=False)
    level: Mapped[str] = mapped_column(String(8), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    sync_run: Mapped[SyncRun] = relationship(back_populates="logs")


class TransactionSyncState(Base):
    __tablename__ = "transaction_sync_state"
    __table_args__ = (
        UniqueConstraint("steve_transaction_id", name="uq_transaction_sync_state_steve_transaction_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    steve_transaction_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_synced_meter_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_kwh_billed: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    last_sync_run_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class SyncedTransactionEvent(Base):
    __tablename__ = "synced_transaction_events"
    __table_args__ = (
        UniqueConstraint(
            "lago_event_transaction_id",
            name="uq_synced_transaction_events_lago_event_transaction_id",
        ),
        Index("ix_synced_transaction_events_steve_transaction_id", "steve_transaction_id"),
        Index("ix_synced_transaction_events_sync_run_id", "sync_run_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    steve_transaction_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_sync_state_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("transaction_sync_state.id", ondelete="SET NULL"),
        nullable=True,
    )
    lago_event_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_mapping_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("user_mappings.id", ondelete="SET NULL"),
        nullable=True,
    )
    kwh_delta: Mapped[float] = mapped_column(Float, nullable=False)
    meter_value_from: Mapped[int] = mapped_column(BigInteger, nullable=False)
    meter_value_to: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    sync_run_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("sync_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
