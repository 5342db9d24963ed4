"""
Analysis Pipeline — worker side

Drives one analysis job end to end:

    FAILED (retry due) ─► PENDING ─► PROCESSING
        parse   (10 %)  storage bytes → DocumentChunker
        embed   (30 %)  Embedder, batched, all-or-nothing
        index   (50 %)  VectorIndex upsert; degraded when unconfigured
        analyze (70 %)  Analyzer → StructuredAnalysis + confidence
    ─► COMPLETED (100 %)

Rules:
  - Every status change is a compare-and-set in the record store; losing
    the race (duplicate delivery, concurrent cancel) ends the run quietly.
  - Cancellation is checked at every stage boundary; an in-flight stage
    call always completes first.
  - A StageError sends the job to FAILED with metadata.error_details and,
    while retry budget remains, schedules the next attempt with
    exponential back-off (base × 2^(n-1)).
  - Every external call is recorded through CostTracker.

Infrastructure failures outside the stages (database unreachable) are not
caught here; the Celery task retries them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Callable
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError

from docpipeline.core.errors import AnalyzerError, IndexingError, ParseError, StageError
from docpipeline.llm.analyzer import (
    Analyzer,
    ProviderUnavailable,
    SchemaError,
    confidence_level,
    resolve_confidence,
)
from docpipeline.models.analysis import AnalysisRecord, utcnow
from docpipeline.observability.cost_tracker import CostTracker
from docpipeline.processing.chunking import Chunk, ChunkKind, DocumentChunker
from docpipeline.processing.embeddings import Embedder, EmbeddingResult
from docpipeline.schemas.analysis import (
    AnalysisOptions,
    AnalysisStatus,
    DocumentType,
    PipelineStage,
    StructuredAnalysis,
)
from docpipeline.services.analysis_store import AnalysisRecordStore, audit_entry
from docpipeline.services.orchestrator import OrchestratorConfig
from docpipeline.services.queue import JobQueue, QueueUnavailableError
from docpipeline.services.state_machine import (
    COMPLETED_PROGRESS,
    STAGE_PROGRESS,
    next_retry_time,
    retry_delay_seconds,
)
from docpipeline.storage.s3 import DocumentStorage
from docpipeline.vectorstore.base import VectorIndexBase, build_vector_records

logger = logging.getLogger(__name__)

# Celery ETA and the stored next_retry_at are computed a few ms apart
RETRY_DUE_TOLERANCE = timedelta(seconds=1)

S = AnalysisStatus


@dataclass
class _Run:
    """Mutable state of one attempt. Only the owning worker touches it."""
    record:   AnalysisRecord
    started:  float = field(default_factory=time.monotonic)
    stage:    PipelineStage = PipelineStage.PARSE
    steps:    list[dict] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)
    cost:     Decimal = Decimal("0")
    chunks:   list[Chunk] = field(default_factory=list)
    embedding:      EmbeddingResult | None = None
    stored_vectors: int = 0
    llm_tokens:     int = 0

    @property
    def analysis_id(self) -> UUID:
        return self.record.id

    @property
    def organization_id(self) -> UUID:
        return self.record.organization_id

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class _Cancelled(Exception):
    """Raised at a stage boundary once cancel_requested is observed."""


class AnalysisPipeline:
    """
    Usage (worker):
        pipeline = AnalysisPipeline(store, storage, chunker, embedder,
                                    index_factory, analyzer, queue, config)
        outcome  = await pipeline.run(analysis_id, organization_id)
    """

    def __init__(
        self,
        store:         AnalysisRecordStore,
        storage:       DocumentStorage,
        chunker:       DocumentChunker,
        embedder:      Embedder,
        index_factory: Callable[[UUID], VectorIndexBase],
        analyzer:      Analyzer,
        queue:         JobQueue,
        config:        OrchestratorConfig | None = None,
        cost_tracker:  CostTracker | None = None,
    ) -> None:
        self._store    = store
        self._storage  = storage
        self._chunker  = chunker
        self._embedder = embedder
        self._index_factory = index_factory
        self._analyzer = analyzer
        self._queue    = queue
        self._cfg      = config or OrchestratorConfig()
        self._costs    = cost_tracker or CostTracker(store)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, analysis_id: UUID, organization_id: UUID) -> dict:
        record = await self._store.get(analysis_id, organization_id)
        if record is None:
            logger.error("Analysis not found | id=%s org=%s", analysis_id, organization_id)
            return {"status": "not_found", "analysis_id": str(analysis_id)}

        if record.status == S.FAILED.value:
            record = await self._promote_due_retry(record)
            if record is None:
                return {"status": "skipped", "reason": "retry_not_due", "analysis_id": str(analysis_id)}

        if record.status != S.PENDING.value:
            logger.warning(
                "Analysis already in status=%s, skipping | id=%s", record.status, analysis_id,
            )
            return {"status": "skipped", "current_status": record.status, "analysis_id": str(analysis_id)}

        claimed = await self._store.transition(
            analysis_id, organization_id, S.PENDING, S.PROCESSING,
            audit=audit_entry("processing_started", details={"attempt": record.retry_count + 1}),
            metadata={"progress": STAGE_PROGRESS[PipelineStage.PARSE], "current_stage": PipelineStage.PARSE.value},
            started_at=utcnow(),
            next_retry_at=None,
            cancel_requested=False,
        )
        if claimed is None:
            return {"status": "skipped", "reason": "claimed_elsewhere", "analysis_id": str(analysis_id)}

        run = _Run(record=claimed, steps=list((claimed.record_metadata or {}).get("processing_steps", [])))
        logger.info(
            "Processing | id=%s org=%s attempt=%d", analysis_id, organization_id, claimed.retry_count + 1,
        )

        try:
            analysis = await self._run_stages(run)
        except _Cancelled:
            return await self._finish_cancelled(run)
        except StageError as exc:
            if exc.stage is None:
                exc.stage = run.stage
            return await self._fail(run, exc)
        except Exception as exc:
            logger.exception("Unexpected stage failure | id=%s stage=%s", analysis_id, run.stage.value)
            wrapped = StageError(
                f"{type(exc).__name__}: {exc}",
                stage=run.stage,
                error_code="INTERNAL_ERROR",
            )
            return await self._fail(run, wrapped)

        return await self._complete(run, analysis)

    async def _promote_due_retry(self, record: AnalysisRecord) -> AnalysisRecord | None:
        due = await self._store.is_retry_due(
            record.id, record.organization_id, utcnow() + RETRY_DUE_TOLERANCE,
        )
        if not due:
            return None
        return await self._store.transition(
            record.id, record.organization_id, S.FAILED, S.PENDING,
            audit=audit_entry("retry_started", details={"retry_count": record.retry_count}),
            metadata={"error_details": None},
            next_retry_at=None,
            error_message=None,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_stages(self, run: _Run) -> StructuredAnalysis:
        options = AnalysisOptions.model_validate(run.record.processing_options or {})

        await self._stage(run, PipelineStage.PARSE, self._parse)
        await self._stage(run, PipelineStage.EMBED, self._embed)
        await self._stage(run, PipelineStage.INDEX, self._index)

        if options.cost_limit is not None and run.cost >= Decimal(str(options.cost_limit)):
            raise StageError(
                f"Cost limit of ${options.cost_limit:.2f} reached before analysis (spent ${run.cost}).",
                stage=PipelineStage.ANALYZE,
                retryable=False,
                error_code="COST_LIMIT_EXCEEDED",
            )

        analysis: list[StructuredAnalysis] = []

        async def analyze_stage(r: _Run) -> None:
            analysis.append(await self._analyze(r, options))

        await self._stage(run, PipelineStage.ANALYZE, analyze_stage)
        await self._check_cancel(run)
        return analysis[0]

    async def _stage(self, run: _Run, stage: PipelineStage, fn) -> None:
        await self._check_cancel(run)
        run.stage = stage
        if stage is not PipelineStage.PARSE:
            await self._store.update_metadata(
                run.analysis_id, run.organization_id,
                {"progress": STAGE_PROGRESS[stage], "current_stage": stage.value},
            )

        t0 = time.monotonic()
        status = "failed"
        try:
            await fn(run)
            status = "degraded" if stage.value in run.degraded else "completed"
        finally:
            run.steps.append({
                "stage":       stage.value,
                "status":      status,
                "at":          utcnow().isoformat(),
                "duration_ms": round((time.monotonic() - t0) * 1000, 1),
            })

    async def _check_cancel(self, run: _Run) -> None:
        current = await self._store.get(run.analysis_id, run.organization_id)
        if current is not None and current.cancel_requested:
            raise _Cancelled()

    async def _parse(self, run: _Run) -> None:
        record = run.record
        try:
            data = await self._storage.get_document(run.organization_id, record.storage_key)
        except FileNotFoundError as exc:
            raise ParseError(
                f"Stored document is missing: {record.storage_key}",
                retryable=False,
                error_code="DOCUMENT_MISSING",
            ) from exc
        except (ClientError, BotoCoreError) as exc:
            raise ParseError(
                f"Document storage unavailable: {exc}",
                error_code="DOCUMENT_UNAVAILABLE",
            ) from exc

        run.chunks = await asyncio.to_thread(
            self._chunker.parse, data, record.filename, str(record.id),
        )

    async def _embed(self, run: _Run) -> None:
        t0 = time.monotonic()
        try:
            result = await self._embedder.embed(run.chunks)
        except StageError as exc:
            if self._embedder.is_configured:
                await self._track(
                    run, service="embedding", model=self._embedder.model,
                    duration_ms=(time.monotonic() - t0) * 1000, success=False, error=exc.message,
                )
            raise

        run.embedding = result
        await self._track(
            run, service="embedding", model=result.model,
            input_tokens=result.total_tokens, duration_ms=result.elapsed_ms,
        )

    async def _index(self, run: _Run) -> None:
        index = self._index_factory(run.organization_id)
        if not index.is_ready:
            logger.warning("Vector index not configured, skipping | id=%s", run.analysis_id)
            run.degraded.append(PipelineStage.INDEX.value)
            return

        try:
            records = build_vector_records(run.organization_id, run.chunks, run.embedding.vectors)
        except ValueError as exc:
            raise IndexingError(str(exc), retryable=False, error_code="VECTOR_RECORD_MISMATCH") from exc

        t0 = time.monotonic()
        result = await index.upsert(str(run.analysis_id), records)
        duration_ms = (time.monotonic() - t0) * 1000

        if not result.configured:
            run.degraded.append(PipelineStage.INDEX.value)
            return

        await self._track(
            run, service="vector_index", model="pinecone",
            duration_ms=duration_ms, success=result.success, error=result.error,
        )
        run.stored_vectors = result.stored_count

        if result.success:
            return
        if result.is_partial and self._cfg.allow_partial_index:
            logger.warning(
                "Partial index accepted | id=%s stored=%d/%d",
                run.analysis_id, result.stored_count, result.attempted_count,
            )
            run.degraded.append(PipelineStage.INDEX.value)
            return
        raise IndexingError(
            f"Stored {result.stored_count}/{result.attempted_count} vectors: {result.error}",
            error_code="INDEX_PARTIAL_FAILURE" if result.is_partial else "INDEX_UPSERT_FAILED",
        )

    async def _analyze(self, run: _Run, options: AnalysisOptions) -> StructuredAnalysis:
        document_text = "\n\n".join(chunk.content for chunk in run.chunks)
        document_type = DocumentType(run.record.document_type)

        t0 = time.monotonic()
        try:
            result = await self._analyzer.analyze(document_text, options, document_type)
        except AnalyzerError as exc:
            await self._track(
                run, service="llm", model=self._analyzer.model,
                duration_ms=(time.monotonic() - t0) * 1000, success=False, error=exc.message,
            )
            raise

        if isinstance(result, ProviderUnavailable):
            raise AnalyzerError(
                result.content,
                error_code="ANALYZER_PROVIDER_UNAVAILABLE",
            )

        if isinstance(result, SchemaError):
            await self._track(
                run, service="llm", model=result.model or self._analyzer.model,
                input_tokens=result.usage.input_tokens, output_tokens=result.usage.output_tokens,
                duration_ms=(time.monotonic() - t0) * 1000, success=False, error=result.reason,
            )
            raise AnalyzerError(
                f"AI response failed schema validation: {result.reason}",
                error_code="ANALYZER_SCHEMA_ERROR",
            )

        run.llm_tokens = result.usage.total_tokens
        await self._track(
            run, service="llm", model=result.model,
            input_tokens=result.usage.input_tokens, output_tokens=result.usage.output_tokens,
            duration_ms=result.latency_ms,
        )
        return result.analysis

    async def _track(self, run: _Run, **call) -> None:
        run.cost += await self._costs.record_call(run.analysis_id, run.organization_id, **call)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _quality_metrics(self, run: _Run) -> dict:
        return {
            "chunk_count":      len(run.chunks),
            "heading_count":    sum(1 for c in run.chunks if c.kind is ChunkKind.HEADING),
            "vector_count":     len(run.embedding) if run.embedding else 0,
            "stored_vectors":   run.stored_vectors,
            "embedding_tokens": run.embedding.total_tokens if run.embedding else 0,
            "llm_tokens":       run.llm_tokens,
        }

    async def _complete(self, run: _Run, analysis: StructuredAnalysis) -> dict:
        score = resolve_confidence(analysis)
        level = confidence_level(score)

        done = await self._store.transition(
            run.analysis_id, run.organization_id, S.PROCESSING, S.COMPLETED,
            audit=audit_entry(
                "completed",
                details={"confidence_level": level.value, "cost": float(run.cost)},
            ),
            metadata={
                "progress":         COMPLETED_PROGRESS,
                "current_stage":    None,
                "processing_steps": run.steps,
                "degraded_stages":  run.degraded,
                "quality_metrics":  self._quality_metrics(run),
                "error_details":    None,
            },
            analysis_result=analysis.model_dump(mode="json", by_alias=True),
            confidence_score=score,
            confidence_level=level.value,
            completed_at=utcnow(),
            processing_time_ms=run.elapsed_ms,
            error_message=None,
        )
        if done is None:
            return {"status": "skipped", "reason": "state_changed", "analysis_id": str(run.analysis_id)}

        logger.info(
            "Analysis complete | id=%s chunks=%d confidence=%.2f (%s) cost=%s degraded=%s",
            run.analysis_id, len(run.chunks), score, level.value, run.cost, run.degraded,
        )
        return {
            "status":           S.COMPLETED.value,
            "analysis_id":      str(run.analysis_id),
            "chunk_count":      len(run.chunks),
            "confidence_level": level.value,
            "degraded_stages":  run.degraded,
        }

    async def _finish_cancelled(self, run: _Run) -> dict:
        done = await self._store.transition(
            run.analysis_id, run.organization_id, S.PROCESSING, S.CANCELLED,
            audit=audit_entry("cancelled", details={"at_stage": run.stage.value}),
            metadata={"current_stage": None, "processing_steps": run.steps},
            cancelled_at=utcnow(),
            processing_time_ms=run.elapsed_ms,
        )
        logger.info("Analysis cancelled at stage boundary | id=%s stage=%s", run.analysis_id, run.stage.value)
        if done is None:
            return {"status": "skipped", "reason": "state_changed", "analysis_id": str(run.analysis_id)}
        return {"status": S.CANCELLED.value, "analysis_id": str(run.analysis_id)}

    async def _fail(self, run: _Run, exc: StageError) -> dict:
        now = utcnow()
        retry_count = run.record.retry_count
        schedule = exc.retryable and retry_count < self._cfg.max_retries
        new_count = retry_count + 1 if schedule else retry_count
        next_at = next_retry_time(now, new_count, self._cfg.retry_base_delay) if schedule else None

        stage = exc.stage.value if exc.stage else run.stage.value
        error_details = {
            "stage":       stage,
            "error_code":  exc.error_code,
            "message":     exc.message,
            "retryable":   exc.retryable,
            "occurred_at": now.isoformat(),
        }

        failed = await self._store.transition(
            run.analysis_id, run.organization_id, S.PROCESSING, S.FAILED,
            audit=audit_entry("stage_failed", details=error_details),
            metadata={
                "error_details":    error_details,
                "processing_steps": run.steps,
                "degraded_stages":  run.degraded,
            },
            failed_at=now,
            error_message=exc.message,
            retry_count=new_count,
            next_retry_at=next_at,
            processing_time_ms=run.elapsed_ms,
        )
        if failed is None:
            return {"status": "skipped", "reason": "state_changed", "analysis_id": str(run.analysis_id)}

        logger.error(
            "Stage failed | id=%s stage=%s code=%s retryable=%s retry_count=%d msg=%s",
            run.analysis_id, stage, exc.error_code, exc.retryable, new_count, exc.message,
        )

        if schedule:
            delay = retry_delay_seconds(new_count, self._cfg.retry_base_delay)
            await self._store.append_audit(
                run.analysis_id, run.organization_id, "retry_scheduled",
                details={"retry_count": new_count, "next_retry_at": next_at.isoformat()},
            )
            try:
                await self._queue.enqueue(run.analysis_id, run.organization_id, countdown=delay)
            except QueueUnavailableError:
                logger.warning("Retry enqueue failed, scanner will dispatch | id=%s", run.analysis_id)
        else:
            await self._store.append_audit(
                run.analysis_id, run.organization_id, "retries_exhausted",
                details={"retry_count": new_count, "retryable": exc.retryable},
            )

        return {
            "status":        S.FAILED.value,
            "analysis_id":   str(run.analysis_id),
            "stage":         stage,
            "error_code":    exc.error_code,
            "retry_count":   new_count,
            "next_retry_at": next_at.isoformat() if next_at else None,
        }

    # ------------------------------------------------------------------
    # Scanner
    # ------------------------------------------------------------------

    async def dispatch_due(self, organization_id: UUID) -> dict[str, int]:
        """
        Re-enqueue work whose message never reached (or was lost by) the
        broker: PENDING records marked with next_retry_at, and due retries
        still FAILED after the grace period.
        """
        now = utcnow()
        pending = retries = 0

        for record in await self._store.find_pending_analyses(organization_id, now):
            try:
                await self._queue.enqueue(record.id, organization_id)
            except QueueUnavailableError:
                logger.warning("Broker still unavailable | org=%s", organization_id)
                return {"pending": pending, "retries": retries}
            await self._store.set_next_retry_at(record.id, organization_id, None)
            pending += 1

        stale_before = now - timedelta(seconds=self._cfg.dispatch_grace_seconds)
        for record in await self._store.find_due_retries(organization_id, stale_before):
            try:
                await self._queue.enqueue(record.id, organization_id)
            except QueueUnavailableError:
                logger.warning("Broker still unavailable | org=%s", organization_id)
                break
            # re-armed: dispatched again only if still FAILED after another grace period
            await self._store.set_next_retry_at(record.id, organization_id, now)
            retries += 1

        if pending or retries:
            logger.info(
                "Dispatched due work | org=%s pending=%d retries=%d", organization_id, pending, retries,
            )
        return {"pending": pending, "retries": retries}
