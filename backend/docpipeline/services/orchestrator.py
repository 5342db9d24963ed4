"""
Analysis Orchestrator

The submission and query surface of the pipeline:
  1. submit()   validate → store bytes → admission + INSERT (one transaction)
                → enqueue → return job id with status PENDING
  2. get_status() / get_result()   polling reads of the record
  3. cancel()   PENDING: CANCELLED at once and the queued task revoked
                PROCESSING: cancel_requested flag, honoured by the worker at
                the next stage boundary
  4. retry()    FAILED with retry budget left → PENDING, re-enqueued
  5. list_analyses(), get_stats(), find_similar(), cleanup_old_analyses()

Tenant limits:
  Admission counts PROCESSING jobs against the concurrency ceiling and
  sums today's cost against the daily budget. The gate runs in the INSERT
  transaction of AnalysisRecordStore.create(), serialized on PostgreSQL by an
  advisory lock per organization. Either gate failing raises
  TenantLimitError; no record is created and nothing is queued.

Broker failure after the INSERT is not fatal: the record is left PENDING
with next_retry_at set, and the dispatch scanner enqueues it.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from docpipeline.core.errors import InvalidStateError, SubmissionErrors
from docpipeline.models.analysis import AnalysisRecord, ensure_utc, utcnow
from docpipeline.processing.extractor import get_extension
from docpipeline.schemas.analysis import (
    ALLOWED_EXTENSIONS,
    MAX_FILE_SIZE_BYTES,
    AnalysisFilters,
    AnalysisListPage,
    AnalysisStats,
    AnalysisStatus,
    AnalysisStatusResponse,
    AnalysisSummary,
    DateRange,
    StructuredAnalysis,
    SubmissionRequest,
    SubmissionResponse,
)
from docpipeline.services.analysis_store import AdmissionLimits, AnalysisRecordStore, audit_entry
from docpipeline.services.queue import JobQueue, QueueUnavailableError
from docpipeline.services.state_machine import (
    COMPLETED_PROGRESS,
    current_step,
    estimated_completion,
)
from docpipeline.storage.s3 import DocumentStorage

logger = logging.getLogger(__name__)

_DOCUMENT_NAME_RE = re.compile(r"^[^\x00-\x1f]{1,255}$")


@dataclass(frozen=True)
class OrchestratorConfig:
    max_concurrent_analyses: int   = 10
    max_daily_cost:          float = 100.0
    max_cost_per_analysis:   float = 5.0
    max_retries:             int   = 3
    retry_base_delay:        float = 2.0
    max_file_size_bytes:     int   = MAX_FILE_SIZE_BYTES
    allow_partial_index:     bool  = False
    enqueue_countdown:       float = 1.0
    # a due retry still FAILED this long after next_retry_at lost its message
    dispatch_grace_seconds:  float = 60.0
    model_version:           str   = ""

    @classmethod
    def from_settings(cls, settings) -> "OrchestratorConfig":
        return cls(
            max_concurrent_analyses=settings.max_concurrent_analyses,
            max_daily_cost=settings.max_daily_cost,
            max_cost_per_analysis=settings.max_cost_per_analysis,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
            max_file_size_bytes=settings.max_file_size_bytes,
            allow_partial_index=settings.allow_partial_index,
            model_version=settings.llm_model,
        )

    @property
    def admission_limits(self) -> AdmissionLimits:
        return AdmissionLimits(
            max_processing=self.max_concurrent_analyses,
            max_daily_cost=self.max_daily_cost,
        )


class AnalysisOrchestrator:
    """
    Usage:
        orchestrator = AnalysisOrchestrator(store, storage, CeleryJobQueue(), config)
        accepted = await orchestrator.submit(SubmissionRequest(...))
        status   = await orchestrator.get_status(accepted.analysis_id, org_id)
    """

    def __init__(
        self,
        store:   AnalysisRecordStore,
        storage: DocumentStorage,
        queue:   JobQueue,
        config:  OrchestratorConfig | None = None,
    ) -> None:
        self._store   = store
        self._storage = storage
        self._queue   = queue
        self._cfg     = config or OrchestratorConfig()

    @property
    def config(self) -> OrchestratorConfig:
        return self._cfg

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def validate_submission(self, request: SubmissionRequest) -> str:
        """Return the document name to store; raise ValidationError otherwise."""
        if not request.content:
            raise SubmissionErrors.missing_file()

        ext = get_extension(request.filename)
        if ext not in ALLOWED_EXTENSIONS:
            raise SubmissionErrors.unsupported_file_type(request.filename, ext)

        size = len(request.content)
        if size > self._cfg.max_file_size_bytes:
            raise SubmissionErrors.file_too_large(size, self._cfg.max_file_size_bytes)

        name = request.document_name if request.document_name is not None else request.filename
        name = name.strip()
        if not _DOCUMENT_NAME_RE.match(name):
            raise SubmissionErrors.invalid_document_name(name)

        cost_limit = request.options.cost_limit
        if cost_limit is not None and cost_limit > self._cfg.max_cost_per_analysis:
            raise SubmissionErrors.cost_limit_too_high(cost_limit, self._cfg.max_cost_per_analysis)

        return name

    async def submit(self, request: SubmissionRequest) -> SubmissionResponse:
        """
        Accept a document for analysis.

        Raises:
            ValidationError:  bad input, nothing stored
            TenantLimitError: concurrency or daily-cost ceiling reached,
                              nothing stored
        """
        document_name = self.validate_submission(request)
        org = request.organization_id
        analysis_id = uuid.uuid4()
        size = len(request.content)

        # Cheap pre-check so a rejected submission never touches storage;
        # the authoritative check runs again inside create()
        await self._check_admission(org)

        stored = await self._storage.put_document(org, analysis_id, request.filename, request.content)

        record = AnalysisRecord(
            id=analysis_id,
            organization_id=org,
            user_id=request.user_id,
            document_name=document_name,
            filename=request.filename,
            document_hash=AnalysisRecordStore.document_hash(request.content, request.filename, size),
            document_type=request.document_type.value,
            document_size=size,
            storage_key=stored.key,
            analysis_type=request.analysis_type.value,
            status=AnalysisStatus.PENDING.value,
            retry_count=0,
            processing_options=request.options.model_dump(mode="json"),
            record_metadata={
                "model_version":          self._cfg.model_version,
                "progress":               0,
                "current_stage":          None,
                "processing_steps":       [],
                "external_service_calls": [],
                "degraded_stages":        [],
            },
            audit_trail=[
                audit_entry(
                    "analysis_created",
                    actor=str(request.user_id),
                    details={
                        "filename":      request.filename,
                        "document_size": size,
                        "analysis_type": request.analysis_type.value,
                    },
                )
            ],
            total_cost=Decimal("0"),
            created_at=utcnow(),
        )

        try:
            record = await self._store.create(record, self._cfg.admission_limits)
        except Exception:
            # no record means no job may reference the stored bytes
            await self._storage.delete_document(org, stored.key)
            raise

        await self._enqueue_or_schedule(analysis_id, org, self._cfg.enqueue_countdown)

        logger.info(
            "Analysis submitted | id=%s org=%s user=%s file=%s size=%d",
            analysis_id, org, request.user_id, request.filename, size,
        )
        return SubmissionResponse(
            analysis_id=analysis_id,
            status=AnalysisStatus.PENDING,
            progress=0,
            created_at=ensure_utc(record.created_at),
        )

    async def _check_admission(self, organization_id: UUID) -> None:
        processing = await self._store.count_processing(organization_id)
        if processing >= self._cfg.max_concurrent_analyses:
            raise SubmissionErrors.concurrency_limit(organization_id, self._cfg.max_concurrent_analyses)
        spent = await self._store.daily_cost(organization_id)
        if spent >= Decimal(str(self._cfg.max_daily_cost)):
            raise SubmissionErrors.daily_cost_limit(organization_id, self._cfg.max_daily_cost)

    async def _enqueue_or_schedule(self, analysis_id: UUID, organization_id: UUID, countdown: float) -> bool:
        try:
            await self._queue.enqueue(analysis_id, organization_id, countdown=countdown)
            return True
        except QueueUnavailableError:
            logger.warning(
                "Broker unavailable, leaving for dispatch scanner | analysis=%s", analysis_id,
            )
            await self._store.set_next_retry_at(analysis_id, organization_id, utcnow())
            return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _require(self, analysis_id: UUID, organization_id: UUID) -> AnalysisRecord:
        record = await self._store.get(analysis_id, organization_id)
        if record is None:
            raise SubmissionErrors.not_found(analysis_id)
        return record

    async def get_status(self, analysis_id: UUID, organization_id: UUID) -> AnalysisStatusResponse:
        record = await self._require(analysis_id, organization_id)
        return self.status_of(record)

    @staticmethod
    def status_of(record: AnalysisRecord) -> AnalysisStatusResponse:
        status = AnalysisStatus(record.status)
        meta = record.record_metadata or {}
        progress = COMPLETED_PROGRESS if status is AnalysisStatus.COMPLETED else record.progress

        return AnalysisStatusResponse(
            analysis_id=record.id,
            status=status,
            progress=progress,
            current_step=current_step(status, meta.get("current_stage"), record.cancel_requested),
            estimated_completion=estimated_completion(
                status, record.created_at, record.started_at, record.document_size,
            ),
            result=record.analysis_result if status is AnalysisStatus.COMPLETED else None,
            error=record.error_message if status is AnalysisStatus.FAILED else None,
            retry_count=record.retry_count,
            next_retry_at=ensure_utc(record.next_retry_at),
        )

    async def get_result(self, analysis_id: UUID, organization_id: UUID) -> StructuredAnalysis:
        record = await self._require(analysis_id, organization_id)
        if record.status != AnalysisStatus.COMPLETED.value or record.analysis_result is None:
            raise InvalidStateError(
                f"Analysis '{analysis_id}' is {record.status}; results are available once COMPLETED.",
                error_code="ANALYSIS_NOT_COMPLETED",
            )
        return StructuredAnalysis.model_validate(record.analysis_result)

    async def list_analyses(
        self,
        organization_id: UUID,
        filters:    AnalysisFilters | None = None,
        page:       int = 1,
        page_size:  int | None = None,
        sort_by:    str = "created_at",
        sort_order: str = "desc",
    ) -> AnalysisListPage:
        return await self._store.list(
            organization_id, filters, page=page, page_size=page_size,
            sort_by=sort_by, sort_order=sort_order,
        )

    async def get_stats(self, organization_id: UUID, date_range: DateRange | None = None) -> AnalysisStats:
        return await self._store.get_stats(organization_id, date_range)

    async def find_similar(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        limit:           int = 5,
    ) -> list[AnalysisSummary]:
        record = await self._require(analysis_id, organization_id)
        similar = await self._store.find_similar_analyses(
            organization_id,
            record.document_type,
            record.document_size,
            limit=limit,
            exclude_id=analysis_id,
        )
        return [AnalysisSummary.model_validate(r) for r in similar]

    # ------------------------------------------------------------------
    # Cancel / retry
    # ------------------------------------------------------------------

    async def cancel(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        actor:           str = "system",
    ) -> AnalysisStatusResponse:
        """
        Raises InvalidStateError if the job is not PENDING or PROCESSING.
        """
        record = await self._require(analysis_id, organization_id)

        if record.status == AnalysisStatus.PENDING.value:
            cancelled = await self._store.transition(
                analysis_id, organization_id,
                AnalysisStatus.PENDING, AnalysisStatus.CANCELLED,
                audit=audit_entry("cancelled", actor=actor, details={"while": "queued"}),
                cancelled_at=utcnow(),
                next_retry_at=None,
            )
            if cancelled is not None:
                try:
                    await self._queue.revoke(analysis_id)
                except QueueUnavailableError:
                    # the worker re-checks status and skips a CANCELLED record
                    logger.warning("Revoke failed, worker will skip | analysis=%s", analysis_id)
                logger.info("Analysis cancelled while queued | id=%s org=%s", analysis_id, organization_id)
                return self.status_of(cancelled)
            # picked up by a worker in the meantime
            record = await self._require(analysis_id, organization_id)

        if record.status == AnalysisStatus.PROCESSING.value:
            flagged = await self._store.request_cancel(analysis_id, organization_id, actor=actor)
            if flagged is not None:
                logger.info("Cancellation requested | id=%s org=%s", analysis_id, organization_id)
                return self.status_of(flagged)
            record = await self._require(analysis_id, organization_id)

        raise InvalidStateError(
            f"Analysis '{analysis_id}' is {record.status} and cannot be cancelled.",
            error_code="ANALYSIS_NOT_CANCELLABLE",
        )

    async def retry(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        actor:           str = "system",
    ) -> AnalysisStatusResponse:
        """
        Manually retry a FAILED job.

        A job whose automatic retry is already scheduled (next_retry_at set)
        has had that attempt counted when it failed; the manual retry takes
        its place without charging the budget again. The scheduled message
        is left alone: whichever delivery arrives second finds the job no
        longer PENDING and is skipped.

        Raises InvalidStateError if the job is not FAILED or its retry budget
        is spent.
        """
        record = await self._require(analysis_id, organization_id)

        if record.status != AnalysisStatus.FAILED.value:
            raise InvalidStateError(
                f"Analysis '{analysis_id}' is {record.status}; only FAILED analyses can be retried.",
                error_code="ANALYSIS_NOT_RETRYABLE",
            )

        scheduled = record.next_retry_at is not None
        if not scheduled and record.retry_count >= self._cfg.max_retries:
            raise InvalidStateError(
                f"Analysis '{analysis_id}' has used all {self._cfg.max_retries} retries.",
                error_code="RETRY_LIMIT_EXCEEDED",
            )
        retry_count = record.retry_count if scheduled else record.retry_count + 1

        retried = await self._store.transition(
            analysis_id, organization_id,
            AnalysisStatus.FAILED, AnalysisStatus.PENDING,
            audit=audit_entry(
                "manual_retry",
                actor=actor,
                details={"retry_count": retry_count, "replaced_scheduled_retry": scheduled},
            ),
            metadata={"error_details": None, "progress": 0, "current_stage": None},
            retry_count=retry_count,
            next_retry_at=None,
            error_message=None,
            cancel_requested=False,
        )
        if retried is None:
            raise InvalidStateError(
                f"Analysis '{analysis_id}' changed state during retry.",
                error_code="ANALYSIS_NOT_RETRYABLE",
            )

        enqueued = await self._enqueue_or_schedule(analysis_id, organization_id, self._cfg.enqueue_countdown)
        logger.info(
            "Manual retry | id=%s org=%s retry_count=%d",
            analysis_id, organization_id, retried.retry_count,
        )
        if enqueued:
            return self.status_of(retried)
        return await self.get_status(analysis_id, organization_id)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup_old_analyses(self, organization_id: UUID, days_old: int | None = None) -> int:
        return await self._store.cleanup_old_analyses(organization_id, days_old)
