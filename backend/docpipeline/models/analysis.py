"""
SQLAlchemy ORM Models — Analysis Records

One row per submitted document analysis job. The row is the job's durable
state: status, retry bookkeeping, cost, result and an append-only audit
trail. It is created by the submission path, mutated only by the
orchestrator and the record store's bookkeeping methods, and removed only
by soft delete (deleted_at) so the audit trail survives.

Column types are portable: JSON maps to JSONB on PostgreSQL and Uuid to the
native UUID type, so the same model runs on SQLite (aiosqlite) in tests.

Tenant scope: organization_id is the immutable partition key. The ORM does
not add it implicitly; every query in services/analysis_store.py filters
on it explicitly.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from docpipeline.schemas.analysis import AnalysisStatus

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in AnalysisStatus)


# ---------------------------------------------------------------------------
# AnalysisRecord — analysis_records
# ---------------------------------------------------------------------------

class AnalysisRecord(Base):
    """
    Durable state of one analysis job.

    State machine (status column):
        PENDING    — queued; no worker owns it yet
        PROCESSING — one worker is driving the stages
        COMPLETED  — analysis_result attached (terminal)
        FAILED     — stage error recorded in metadata.error_details
        CANCELLED  — stopped by the caller (terminal)

    record_metadata layout:
        {
          "model_version":          str,
          "processing_steps":       [{stage, status, at, duration_ms}],
          "external_service_calls": [{service, duration_ms, success, cost, timestamp}],
          "error_details":          {stage, error_code, message, retryable, occurred_at} | absent,
          "progress":               int,
          "current_stage":          str | None,
          "degraded_stages":        [str],
          "quality_metrics":        {chunk_count, vector_count, ...}
        }
    """

    __tablename__ = "analysis_records"
    __table_args__ = (
        CheckConstraint(
            f"status IN ({_STATUS_VALUES})",
            name="analysis_records_status_check",
        ),
        CheckConstraint("retry_count >= 0", name="analysis_records_retry_count_check"),
        Index("idx_analysis_org_status",   "organization_id", "status"),
        Index("idx_analysis_org_created",  "organization_id", "created_at"),
        Index("idx_analysis_org_hash",     "organization_id", "document_hash"),
        Index("idx_analysis_next_retry",   "organization_id", "next_retry_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Tenant scope — never supplied by free-form input
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id:         Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Document identity
    document_name: Mapped[str] = mapped_column(Text, nullable=False)
    filename:      Mapped[str] = mapped_column(Text, nullable=False)
    document_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="sha256(content + filename + size) — dedup and similarity",
    )
    document_type: Mapped[str] = mapped_column(String(32), nullable=False)
    document_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_key:   Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="S3 key: tenants/<organization_id>/documents/<analysis_id><ext>",
    )

    analysis_type: Mapped[str] = mapped_column(String(40), nullable=False)

    # State machine
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=AnalysisStatus.PENDING.value,
    )
    retry_count:      Mapped[int]                = mapped_column(Integer, nullable=False, default=0)
    next_retry_at:    Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_requested: Mapped[bool]               = mapped_column(Boolean, nullable=False, default=False)
    error_message:    Mapped[Optional[str]]      = mapped_column(Text, nullable=True)

    # Outcome
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    confidence_level: Mapped[Optional[str]]   = mapped_column(String(16), nullable=True)
    analysis_result:  Mapped[Optional[dict]]  = mapped_column(JSONType, nullable=True)

    processing_options: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    record_metadata:    Mapped[dict] = mapped_column(
        "metadata",                 # column name stays 'metadata'
        JSONType,
        nullable=False,
        default=dict,
    )
    audit_trail: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Append-only list of {action, at, actor, details}",
    )

    # Accounting
    total_cost:         Mapped[Decimal]       = mapped_column(Numeric(12, 6), nullable=False, default=Decimal("0"))
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Timestamps
    created_at:   Mapped[datetime]           = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at:   Mapped[datetime]           = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at:    Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def status_enum(self) -> AnalysisStatus:
        return AnalysisStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status in (AnalysisStatus.PENDING.value, AnalysisStatus.PROCESSING.value)

    @property
    def progress(self) -> int:
        return int((self.record_metadata or {}).get("progress", 0))

    @property
    def error_details(self) -> dict | None:
        return (self.record_metadata or {}).get("error_details")

    def __repr__(self) -> str:
        return (
            f"<AnalysisRecord id={self.id} org={self.organization_id} "
            f"status={self.status} retries={self.retry_count}>"
        )
