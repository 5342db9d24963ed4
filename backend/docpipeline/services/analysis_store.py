"""
Analysis Record Store

Tenant-scoped persistence for AnalysisRecord:
  1. Every query filters on organization_id. There is no method that reads
     or writes records without it; cross-organization system jobs only
     enumerate organization ids (see workers/tasks.py).
  2. Every method opens its own short transaction from the injected
     session factory, so a worker never holds a transaction open across
     an external provider call.
  3. Status changes are compare-and-set under a row lock: the write only
     happens if the record is still in the expected status, so a duplicate
     queue delivery cannot drive the same job twice.
  4. JSON columns (metadata, audit_trail) are replaced with new objects,
     never mutated in place, so the ORM always sees the change.
  5. Records are never hard-deleted; soft_delete() sets deleted_at and the
     audit trail survives.

Admission runs inside create() in the same transaction as the INSERT: the
concurrency ceiling counts PROCESSING records (queued PENDING work does not
hold a slot) and the daily budget sums total_cost since UTC midnight. On
PostgreSQL a transaction-scoped advisory lock keyed by organization
serializes concurrent submissions across processes.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import Select, and_, func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipeline.core.errors import SubmissionErrors
from docpipeline.models.analysis import AnalysisRecord, utcnow
from docpipeline.schemas.analysis import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    AnalysisFilters,
    AnalysisListPage,
    AnalysisStats,
    AnalysisStatus,
    AnalysisSummary,
    DateRange,
)
from docpipeline.services.state_machine import assert_transition

logger = logging.getLogger(__name__)

# Caller-supplied sort fields are mapped through this allow-list only
SORT_FIELDS: dict[str, Any] = {
    "created_at":       AnalysisRecord.created_at,
    "updated_at":       AnalysisRecord.updated_at,
    "status":           AnalysisRecord.status,
    "analysis_type":    AnalysisRecord.analysis_type,
    "confidence_score": AnalysisRecord.confidence_score,
    "total_cost":       AnalysisRecord.total_cost,
}
DEFAULT_SORT = "created_at"

SIMILAR_SIZE_TOLERANCE = 0.2   # ±20 %


@dataclass(frozen=True)
class StoreConfig:
    default_page_size: int = DEFAULT_PAGE_SIZE
    max_page_size:     int = MAX_PAGE_SIZE
    retention_days:    int = 90

    @classmethod
    def from_settings(cls, settings) -> "StoreConfig":
        return cls(retention_days=settings.retention_days)


@dataclass(frozen=True)
class AdmissionLimits:
    max_processing: int
    max_daily_cost: float


def audit_entry(action: str, *, actor: str = "system", details: dict | None = None) -> dict:
    return {
        "action":  action,
        "at":      utcnow().isoformat(),
        "actor":   actor,
        "details": details or {},
    }


def _utc_day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class AnalysisRecordStore:
    """
    Usage:
        store  = AnalysisRecordStore(get_session_factory())
        record = await store.get(analysis_id, organization_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: StoreConfig | None = None,
    ) -> None:
        self._sessions = session_factory
        self._cfg = config or StoreConfig()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def document_hash(content: bytes, filename: str, size: int) -> str:
        """sha256(content + filename + size): dedup key and similarity anchor."""
        digest = hashlib.sha256()
        digest.update(content)
        digest.update(filename.encode("utf-8"))
        digest.update(str(size).encode("ascii"))
        return digest.hexdigest()

    @staticmethod
    def _scoped(organization_id: UUID, include_deleted: bool = False) -> Select:
        stmt = select(AnalysisRecord).where(AnalysisRecord.organization_id == organization_id)
        if not include_deleted:
            stmt = stmt.where(AnalysisRecord.deleted_at.is_(None))
        return stmt

    async def get_for_update(
        self,
        session:         AsyncSession,
        analysis_id:     UUID,
        organization_id: UUID,
    ) -> AnalysisRecord | None:
        """Row-locked read inside the caller's transaction (no-op lock on SQLite)."""
        stmt = (
            self._scoped(organization_id)
            .where(AnalysisRecord.id == analysis_id)
            .with_for_update()
        )
        return (await session.execute(stmt)).scalars().first()

    async def _lock_organization(self, session: AsyncSession, organization_id: UUID) -> None:
        if session.get_bind().dialect.name == "postgresql":
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:org))"),
                {"org": str(organization_id)},
            )

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        record: AnalysisRecord,
        limits: AdmissionLimits | None = None,
    ) -> AnalysisRecord:
        """
        Insert a new record. With `limits`, the concurrency and daily-cost
        gates are checked in the same transaction; a violation raises
        TenantLimitError and nothing is inserted.
        """
        org = record.organization_id
        async with self._sessions() as session, session.begin():
            if limits is not None:
                await self._lock_organization(session, org)

                processing = await self._count_processing(session, org)
                if processing >= limits.max_processing:
                    logger.warning(
                        "Admission rejected | org=%s processing=%d limit=%d",
                        org, processing, limits.max_processing,
                    )
                    raise SubmissionErrors.concurrency_limit(org, limits.max_processing)

                spent = await self._daily_cost(session, org, utcnow().date())
                if spent >= Decimal(str(limits.max_daily_cost)):
                    logger.warning(
                        "Admission rejected | org=%s daily_cost=%s limit=%.2f",
                        org, spent, limits.max_daily_cost,
                    )
                    raise SubmissionErrors.daily_cost_limit(org, limits.max_daily_cost)

            session.add(record)
            await session.flush()

        logger.info(
            "AnalysisRecord created | id=%s org=%s type=%s size=%d",
            record.id, org, record.analysis_type, record.document_size,
        )
        return record

    async def get(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        include_deleted: bool = False,
    ) -> AnalysisRecord | None:
        async with self._sessions() as session:
            stmt = self._scoped(organization_id, include_deleted).where(AnalysisRecord.id == analysis_id)
            return (await session.execute(stmt)).scalars().first()

    async def find_by_hash(self, organization_id: UUID, document_hash: str) -> list[AnalysisRecord]:
        async with self._sessions() as session:
            stmt = (
                self._scoped(organization_id)
                .where(AnalysisRecord.document_hash == document_hash)
                .order_by(AnalysisRecord.created_at.desc())
            )
            return list((await session.execute(stmt)).scalars().all())

    async def find_by_user(
        self,
        organization_id: UUID,
        user_id:         UUID,
        limit:           int = 50,
    ) -> list[AnalysisRecord]:
        async with self._sessions() as session:
            stmt = (
                self._scoped(organization_id)
                .where(AnalysisRecord.user_id == user_id)
                .order_by(AnalysisRecord.created_at.desc())
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def find_by_status(
        self,
        organization_id: UUID,
        status:          AnalysisStatus,
        limit:           int = 100,
    ) -> list[AnalysisRecord]:
        async with self._sessions() as session:
            stmt = (
                self._scoped(organization_id)
                .where(AnalysisRecord.status == AnalysisStatus(status).value)
                .order_by(AnalysisRecord.created_at.asc())
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def list(
        self,
        organization_id: UUID,
        filters:    AnalysisFilters | None = None,
        page:       int = 1,
        page_size:  int | None = None,
        sort_by:    str = DEFAULT_SORT,
        sort_order: str = "desc",
    ) -> AnalysisListPage:
        page      = max(1, page)
        page_size = page_size or self._cfg.default_page_size
        page_size = max(1, min(page_size, self._cfg.max_page_size))

        column = SORT_FIELDS.get(sort_by)
        if column is None:
            column, sort_order = SORT_FIELDS[DEFAULT_SORT], "desc"
        ordering = column.asc() if sort_order.lower() == "asc" else column.desc()

        base = self._apply_filters(self._scoped(organization_id), filters)

        async with self._sessions() as session:
            total = (
                await session.execute(select(func.count()).select_from(base.subquery()))
            ).scalar_one()
            rows = (
                await session.execute(
                    base.order_by(ordering, AnalysisRecord.id)
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
            ).scalars().all()

        return AnalysisListPage(
            items=[AnalysisSummary.model_validate(r) for r in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    @staticmethod
    def _apply_filters(stmt: Select, filters: AnalysisFilters | None) -> Select:
        if filters is None:
            return stmt
        if filters.status is not None:
            stmt = stmt.where(AnalysisRecord.status == filters.status.value)
        if filters.analysis_type is not None:
            stmt = stmt.where(AnalysisRecord.analysis_type == filters.analysis_type.value)
        if filters.confidence_level is not None:
            stmt = stmt.where(AnalysisRecord.confidence_level == filters.confidence_level.value)
        if filters.document_type is not None:
            stmt = stmt.where(AnalysisRecord.document_type == filters.document_type.value)
        if filters.date_range is not None:
            stmt = stmt.where(
                AnalysisRecord.created_at >= filters.date_range.start,
                AnalysisRecord.created_at <= filters.date_range.end,
            )
        if filters.min_confidence is not None:
            stmt = stmt.where(AnalysisRecord.confidence_score >= filters.min_confidence)
        if filters.max_cost is not None:
            stmt = stmt.where(AnalysisRecord.total_cost <= Decimal(str(filters.max_cost)))
        if filters.has_errors is True:
            stmt = stmt.where(
                or_(
                    AnalysisRecord.status == AnalysisStatus.FAILED.value,
                    AnalysisRecord.error_message.is_not(None),
                )
            )
        elif filters.has_errors is False:
            stmt = stmt.where(
                AnalysisRecord.status != AnalysisStatus.FAILED.value,
                AnalysisRecord.error_message.is_(None),
            )
        return stmt

    # ------------------------------------------------------------------
    # Admission counters
    # ------------------------------------------------------------------

    async def _count_processing(self, session: AsyncSession, organization_id: UUID) -> int:
        stmt = (
            select(func.count(AnalysisRecord.id))
            .where(
                AnalysisRecord.organization_id == organization_id,
                AnalysisRecord.deleted_at.is_(None),
                AnalysisRecord.status == AnalysisStatus.PROCESSING.value,
            )
        )
        return int((await session.execute(stmt)).scalar_one())

    async def _daily_cost(self, session: AsyncSession, organization_id: UUID, day: date) -> Decimal:
        start = _utc_day_start(day)
        stmt = (
            select(func.coalesce(func.sum(AnalysisRecord.total_cost), 0))
            .where(
                AnalysisRecord.organization_id == organization_id,
                AnalysisRecord.created_at >= start,
                AnalysisRecord.created_at < start + timedelta(days=1),
            )
        )
        return Decimal(str((await session.execute(stmt)).scalar_one() or 0))

    async def count_processing(self, organization_id: UUID) -> int:
        async with self._sessions() as session:
            return await self._count_processing(session, organization_id)

    async def daily_cost(self, organization_id: UUID, day: date | None = None) -> Decimal:
        async with self._sessions() as session:
            return await self._daily_cost(session, organization_id, day or utcnow().date())

    # ------------------------------------------------------------------
    # Scanner queries
    # ------------------------------------------------------------------

    async def find_pending_analyses(
        self,
        organization_id: UUID,
        now:             datetime | None = None,
        limit:           int = 50,
    ) -> list[AnalysisRecord]:
        """PENDING records whose next_retry_at has passed (enqueue was missed)."""
        now = now or utcnow()
        async with self._sessions() as session:
            stmt = (
                self._scoped(organization_id)
                .where(
                    AnalysisRecord.status == AnalysisStatus.PENDING.value,
                    AnalysisRecord.next_retry_at.is_not(None),
                    AnalysisRecord.next_retry_at <= now,
                )
                .order_by(AnalysisRecord.created_at.asc())
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def find_failed_analyses(
        self,
        organization_id: UUID,
        max_retries:     int,
        limit:           int = 50,
    ) -> list[AnalysisRecord]:
        """FAILED records that still have retry budget, newest failure first."""
        async with self._sessions() as session:
            stmt = (
                self._scoped(organization_id)
                .where(
                    AnalysisRecord.status == AnalysisStatus.FAILED.value,
                    AnalysisRecord.retry_count < max_retries,
                )
                .order_by(AnalysisRecord.failed_at.desc())
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def find_due_retries(
        self,
        organization_id: UUID,
        now:             datetime | None = None,
        limit:           int = 50,
    ) -> list[AnalysisRecord]:
        """FAILED records with a scheduled retry whose time has come."""
        now = now or utcnow()
        async with self._sessions() as session:
            stmt = (
                self._scoped(organization_id)
                .where(
                    AnalysisRecord.status == AnalysisStatus.FAILED.value,
                    AnalysisRecord.next_retry_at.is_not(None),
                    AnalysisRecord.next_retry_at <= now,
                )
                .order_by(AnalysisRecord.next_retry_at.asc())
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def is_retry_due(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        now:             datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        async with self._sessions() as session:
            stmt = (
                select(func.count(AnalysisRecord.id))
                .where(
                    AnalysisRecord.organization_id == organization_id,
                    AnalysisRecord.id == analysis_id,
                    AnalysisRecord.deleted_at.is_(None),
                    AnalysisRecord.status == AnalysisStatus.FAILED.value,
                    AnalysisRecord.next_retry_at.is_not(None),
                    AnalysisRecord.next_retry_at <= now,
                )
            )
            return bool((await session.execute(stmt)).scalar_one())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def transition(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        from_status:     AnalysisStatus,
        to_status:       AnalysisStatus,
        *,
        audit:           dict | None = None,
        metadata:        dict | None = None,
        **values: Any,
    ) -> AnalysisRecord | None:
        """
        Compare-and-set status change.

        Raises InvalidTransitionError for an illegal edge. Returns None when
        the record is missing or no longer in `from_status` (another worker
        or a cancel got there first).
        """
        from_status = AnalysisStatus(from_status)
        to_status   = AnalysisStatus(to_status)
        assert_transition(from_status, to_status)

        async with self._sessions() as session, session.begin():
            record = await self.get_for_update(session, analysis_id, organization_id)
            if record is None or record.status != from_status.value:
                logger.info(
                    "Transition skipped | id=%s %s→%s current=%s",
                    analysis_id, from_status.value, to_status.value,
                    record.status if record else None,
                )
                return None

            record.status = to_status.value
            for key, value in values.items():
                setattr(record, key, value)
            if metadata:
                record.record_metadata = {**(record.record_metadata or {}), **metadata}
            if audit:
                record.audit_trail = [*(record.audit_trail or []), audit]

        logger.info(
            "Transition | id=%s org=%s %s→%s",
            analysis_id, organization_id, from_status.value, to_status.value,
        )
        return record

    async def update_status(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        status:          AnalysisStatus,
        **values: Any,
    ) -> AnalysisRecord | None:
        """Move from whatever the current status is, if the edge is legal."""
        record = await self.get(analysis_id, organization_id)
        if record is None:
            return None
        return await self.transition(
            analysis_id, organization_id, AnalysisStatus(record.status), status, **values
        )

    async def _mutate(self, analysis_id: UUID, organization_id: UUID, fn) -> AnalysisRecord | None:
        async with self._sessions() as session, session.begin():
            record = await self.get_for_update(session, analysis_id, organization_id)
            if record is None:
                return None
            fn(record)
        return record

    async def update_metadata(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        updates:         dict,
        **values: Any,
    ) -> AnalysisRecord | None:
        def _apply(record: AnalysisRecord) -> None:
            record.record_metadata = {**(record.record_metadata or {}), **updates}
            for key, value in values.items():
                setattr(record, key, value)

        return await self._mutate(analysis_id, organization_id, _apply)

    async def set_next_retry_at(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        when:            datetime | None,
    ) -> AnalysisRecord | None:
        def _apply(record: AnalysisRecord) -> None:
            record.next_retry_at = when

        return await self._mutate(analysis_id, organization_id, _apply)

    async def request_cancel(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        actor:           str = "system",
    ) -> AnalysisRecord | None:
        """
        Flag a PROCESSING record for cooperative cancellation.
        Returns None if the record is not PROCESSING any more.
        """
        async with self._sessions() as session, session.begin():
            record = await self.get_for_update(session, analysis_id, organization_id)
            if record is None or record.status != AnalysisStatus.PROCESSING.value:
                return None
            record.cancel_requested = True
            record.audit_trail = [
                *(record.audit_trail or []),
                audit_entry("cancel_requested", actor=actor),
            ]
        return record

    async def increment_retry_count(self, analysis_id: UUID, organization_id: UUID) -> int:
        def _apply(record: AnalysisRecord) -> None:
            record.retry_count = (record.retry_count or 0) + 1

        record = await self._mutate(analysis_id, organization_id, _apply)
        return record.retry_count if record else 0

    async def add_external_service_call(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        entry:           dict,
        cost:            Decimal = Decimal("0"),
    ) -> AnalysisRecord | None:
        """Append to metadata.external_service_calls and add cost to total_cost."""
        def _apply(record: AnalysisRecord) -> None:
            meta  = dict(record.record_metadata or {})
            calls = [*meta.get("external_service_calls", []), entry]
            meta["external_service_calls"] = calls
            record.record_metadata = meta
            record.total_cost = Decimal(str(record.total_cost or 0)) + cost

        return await self._mutate(analysis_id, organization_id, _apply)

    async def append_audit(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        action:          str,
        *,
        actor:           str = "system",
        details:         dict | None = None,
    ) -> AnalysisRecord | None:
        entry = audit_entry(action, actor=actor, details=details)

        def _apply(record: AnalysisRecord) -> None:
            record.audit_trail = [*(record.audit_trail or []), entry]

        return await self._mutate(analysis_id, organization_id, _apply)

    async def set_error(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        error_details:   dict,
    ) -> AnalysisRecord | None:
        def _apply(record: AnalysisRecord) -> None:
            record.record_metadata = {**(record.record_metadata or {}), "error_details": error_details}
            record.error_message = error_details.get("message")

        return await self._mutate(analysis_id, organization_id, _apply)

    async def soft_delete(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        actor:           str = "system",
    ) -> bool:
        now = utcnow()

        def _apply(record: AnalysisRecord) -> None:
            record.deleted_at = now
            record.audit_trail = [*(record.audit_trail or []), audit_entry("soft_deleted", actor=actor)]

        return await self._mutate(analysis_id, organization_id, _apply) is not None

    async def cleanup_old_analyses(
        self,
        organization_id: UUID,
        days_old:        int | None = None,
        now:             datetime | None = None,
    ) -> int:
        """Soft-delete COMPLETED/FAILED records created before the cutoff."""
        days   = days_old if days_old is not None else self._cfg.retention_days
        cutoff = (now or utcnow()) - timedelta(days=days)

        async with self._sessions() as session, session.begin():
            stmt = (
                self._scoped(organization_id)
                .where(
                    AnalysisRecord.status.in_(
                        [AnalysisStatus.COMPLETED.value, AnalysisStatus.FAILED.value]
                    ),
                    AnalysisRecord.created_at < cutoff,
                )
                .with_for_update()
            )
            records = (await session.execute(stmt)).scalars().all()
            deleted_at = utcnow()
            for record in records:
                record.deleted_at = deleted_at
                record.audit_trail = [
                    *(record.audit_trail or []),
                    audit_entry("retention_cleanup", details={"days_old": days}),
                ]

        if records:
            logger.info(
                "Retention cleanup | org=%s soft_deleted=%d cutoff=%s",
                organization_id, len(records), cutoff.isoformat(),
            )
        return len(records)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_stats(
        self,
        organization_id: UUID,
        date_range:      DateRange | None = None,
    ) -> AnalysisStats:
        conditions = [
            AnalysisRecord.organization_id == organization_id,
            AnalysisRecord.deleted_at.is_(None),
        ]
        if date_range is not None:
            conditions += [
                AnalysisRecord.created_at >= date_range.start,
                AnalysisRecord.created_at <= date_range.end,
            ]
        where = and_(*conditions)

        async def _grouped(session: AsyncSession, column) -> dict[str, int]:
            rows = await session.execute(
                select(column, func.count(AnalysisRecord.id))
                .where(where, column.is_not(None))
                .group_by(column)
            )
            return {str(key): int(count) for key, count in rows.all()}

        async with self._sessions() as session:
            totals = (
                await session.execute(
                    select(
                        func.count(AnalysisRecord.id),
                        func.avg(AnalysisRecord.processing_time_ms),
                        func.coalesce(func.sum(AnalysisRecord.total_cost), 0),
                    ).where(where)
                )
            ).one()
            by_status     = await _grouped(session, AnalysisRecord.status)
            by_type       = await _grouped(session, AnalysisRecord.analysis_type)
            by_confidence = await _grouped(session, AnalysisRecord.confidence_level)

        total = int(totals[0] or 0)
        completed = by_status.get(AnalysisStatus.COMPLETED.value, 0)
        failed    = by_status.get(AnalysisStatus.FAILED.value, 0)

        return AnalysisStats(
            total=total,
            by_status=by_status,
            by_type=by_type,
            by_confidence=by_confidence,
            avg_processing_time_ms=float(totals[1] or 0.0),
            total_cost=Decimal(str(totals[2] or 0)),
            success_rate=round(completed / total * 100, 2) if total else 0.0,
            error_rate=round(failed / total * 100, 2) if total else 0.0,
        )

    async def find_similar_analyses(
        self,
        organization_id: UUID,
        document_type:   str,
        document_size:   int,
        limit:           int = 5,
        exclude_id:      UUID | None = None,
    ) -> list[AnalysisRecord]:
        """Completed analyses of the same document type within ±20 % size, best confidence first."""
        low  = int(document_size * (1 - SIMILAR_SIZE_TOLERANCE))
        high = int(document_size * (1 + SIMILAR_SIZE_TOLERANCE))

        stmt = (
            self._scoped(organization_id)
            .where(
                AnalysisRecord.status == AnalysisStatus.COMPLETED.value,
                AnalysisRecord.document_type == document_type,
                AnalysisRecord.document_size.between(low, high),
            )
            .order_by(AnalysisRecord.confidence_score.desc(), AnalysisRecord.created_at.desc())
            .limit(limit)
        )
        if exclude_id is not None:
            stmt = stmt.where(AnalysisRecord.id != exclude_id)

        async with self._sessions() as session:
            return list((await session.execute(stmt)).scalars().all())
