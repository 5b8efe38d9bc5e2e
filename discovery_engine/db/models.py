"""SQLAlchemy database models.

All datetime columns hold naive UTC values.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from discovery_engine.utils.timeutils import to_db, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _now() -> datetime:
    return to_db(utcnow())


class ExecutionStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ClaimStatus(str, Enum):
    PENDING = "Pending"
    NOTIFICATION_SENT = "NotificationSent"
    FAILED = "Failed"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class FileCheckConfiguration(Base):
    """A tenant's declaration of where to look, for what, and when."""

    __tablename__ = "file_check_configurations"

    # Configuration ids are unique within a tenant only
    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    protocol: Mapped[str] = mapped_column(String(32), nullable=False)  # ftp, https, object_storage
    protocol_settings: Mapped[dict] = mapped_column(JSONType, nullable=False)  # secret names only

    path_pattern: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    name_pattern: Mapped[str] = mapped_column(String(255), nullable=False)
    file_extension: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    cron_expression: Mapped[str] = mapped_column(String(120), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    notification_targets: Mapped[list] = mapped_column(JSONType, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    next_scheduled_run: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Opaque concurrency token, replaced on every user-initiated write
    version: Mapped[str] = mapped_column(String(32), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_now, onupdate=_now, nullable=False
    )

    __table_args__ = (
        Index("ix_file_check_configurations_active", "is_active", "next_scheduled_run"),
    )


class CheckExecution(Base):
    """One run of a configuration's check, including its retries."""

    __tablename__ = "check_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    configuration_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ExecutionStatus.PENDING.value, nullable=False
    )
    trigger: Mapped[str] = mapped_column(String(16), default="scheduled", nullable=False)  # scheduled | manual
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    attempt_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    files_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    files_claimed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    error_category: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    resolved_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "configuration_id"],
            ["file_check_configurations.tenant_id", "file_check_configurations.id"],
        ),
        CheckConstraint("files_claimed <= files_found", name="ck_check_executions_claimed_le_found"),
        CheckConstraint("retry_count >= 0", name="ck_check_executions_retry_count"),
        Index(
            "ix_check_executions_tenant_config_created",
            "tenant_id",
            "configuration_id",
            "created_at",
        ),
        Index("ix_check_executions_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        if self.status == ExecutionStatus.COMPLETED.value:
            return True
        return self.status == ExecutionStatus.FAILED.value and self.completed_at is not None


class DiscoveredFile(Base):
    """Claim proving a file was reported for a given day."""

    __tablename__ = "discovered_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    configuration_id: Mapped[str] = mapped_column(String(64), nullable=False)
    execution_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("check_executions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_reference: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_name: Mapped[str] = mapped_column(String(512), nullable=False)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    last_modified: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    discovered_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)
    discovery_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=ClaimStatus.PENDING.value, nullable=False
    )
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "configuration_id"],
            ["file_check_configurations.tenant_id", "file_check_configurations.id"],
        ),
        UniqueConstraint(
            "tenant_id",
            "configuration_id",
            "file_reference",
            "discovery_date",
            name="uq_discovered_files_claim_key",
        ),
    )
