"""
Celery Tasks — Analysis Pipeline

Task: process_analysis
  Runs AnalysisPipeline.run() for one analysis id. Stage failures are
  recorded on the analysis record and retried through the record's own
  back-off; only infrastructure errors (database or broker unreachable)
  fall back to Celery's task.retry.

Task: dispatch_due_analyses  (beat, every 30 s)
  For every organization with due work: re-enqueue PENDING records whose
  original enqueue failed and due retries whose message was lost.

Task: cleanup_old_analyses   (beat, daily)
  Soft-deletes COMPLETED/FAILED records older than the retention window.

Task: health_check

The organization sweep is the only cross-organization query in the
project; it reads distinct organization ids through get_admin_db() and
then works through the tenant-scoped store, one organization at a time.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any

from celery import Task
from kombu.exceptions import OperationalError
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError

from docpipeline.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(asyncio.run, coro)
        return future.result()


async def _release_engine() -> None:
    # pooled connections belong to the loop that opened them
    from docpipeline.db.session import get_engine

    await get_engine().dispose()


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------

def build_store():
    from docpipeline.core.config import settings
    from docpipeline.db.session import get_session_factory
    from docpipeline.services.analysis_store import AnalysisRecordStore, StoreConfig

    return AnalysisRecordStore(get_session_factory(), StoreConfig.from_settings(settings))


def build_pipeline():
    """Wire every stage component from settings."""
    from docpipeline.core.config import settings
    from docpipeline.llm import Analyzer, LLMProvider, ProviderSettings
    from docpipeline.processing import DocumentChunker, Embedder, EmbedderConfig
    from docpipeline.services.orchestrator import OrchestratorConfig
    from docpipeline.services.pipeline import AnalysisPipeline
    from docpipeline.services.queue import CeleryJobQueue
    from docpipeline.storage.s3 import DocumentStorage, StorageConfig
    from docpipeline.vectorstore import VectorIndexConfig, get_vector_index

    index_config = VectorIndexConfig.from_settings(settings)

    return AnalysisPipeline(
        store=build_store(),
        storage=DocumentStorage(StorageConfig.from_settings(settings)),
        chunker=DocumentChunker(),
        embedder=Embedder(EmbedderConfig.from_settings(settings)),
        index_factory=lambda organization_id: get_vector_index(organization_id, index_config),
        analyzer=Analyzer(LLMProvider(ProviderSettings.from_settings(settings))),
        queue=CeleryJobQueue(),
        config=OrchestratorConfig.from_settings(settings),
    )


def build_orchestrator():
    """Submission-side wiring, for the process that accepts documents."""
    from docpipeline.core.config import settings
    from docpipeline.services.orchestrator import AnalysisOrchestrator, OrchestratorConfig
    from docpipeline.services.queue import CeleryJobQueue
    from docpipeline.storage.s3 import DocumentStorage, StorageConfig

    return AnalysisOrchestrator(
        store=build_store(),
        storage=DocumentStorage(StorageConfig.from_settings(settings)),
        queue=CeleryJobQueue(),
        config=OrchestratorConfig.from_settings(settings),
    )


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipeline.workers.tasks.process_analysis",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_analysis(
    self: Task,
    *,
    analysis_id:     str,
    organization_id: str,
) -> dict[str, Any]:
    """Drive one analysis through parse → embed → index → analyze."""
    try:
        return run_async(
            _process_analysis_async(uuid.UUID(analysis_id), uuid.UUID(organization_id))
        )
    except (SQLAlchemyError, OperationalError, OSError) as exc:
        logger.exception("Infrastructure error | analysis=%s", analysis_id)
        raise self.retry(exc=exc)


async def _process_analysis_async(analysis_id: uuid.UUID, organization_id: uuid.UUID) -> dict[str, Any]:
    try:
        return await build_pipeline().run(analysis_id, organization_id)
    finally:
        await _release_engine()


# ---------------------------------------------------------------------------
# Dispatch scanner — runs every 30 seconds via Celery Beat
# ---------------------------------------------------------------------------

async def organizations_with_due_work(session, now) -> list[uuid.UUID]:
    from docpipeline.models.analysis import AnalysisRecord
    from docpipeline.schemas.analysis import AnalysisStatus

    result = await session.execute(
        select(AnalysisRecord.organization_id)
        .where(
            AnalysisRecord.deleted_at.is_(None),
            AnalysisRecord.next_retry_at.is_not(None),
            AnalysisRecord.next_retry_at <= now,
            or_(
                AnalysisRecord.status == AnalysisStatus.PENDING.value,
                AnalysisRecord.status == AnalysisStatus.FAILED.value,
            ),
        )
        .distinct()
    )
    return list(result.scalars().all())


async def organizations_with_expired_records(session, cutoff) -> list[uuid.UUID]:
    from docpipeline.models.analysis import AnalysisRecord
    from docpipeline.schemas.analysis import AnalysisStatus

    result = await session.execute(
        select(AnalysisRecord.organization_id)
        .where(
            and_(
                AnalysisRecord.deleted_at.is_(None),
                AnalysisRecord.created_at < cutoff,
                AnalysisRecord.status.in_(
                    [AnalysisStatus.COMPLETED.value, AnalysisStatus.FAILED.value]
                ),
            )
        )
        .distinct()
    )
    return list(result.scalars().all())


@celery_app.task(
    name="docpipeline.workers.tasks.dispatch_due_analyses",
    bind=False,
    acks_late=True,
    soft_time_limit=25,
    time_limit=30,
)
def dispatch_due_analyses() -> dict[str, int]:
    return run_async(_dispatch_due_analyses_async())


async def _dispatch_due_analyses_async() -> dict[str, int]:
    from docpipeline.db.session import get_admin_db
    from docpipeline.models.analysis import utcnow

    totals = {"organizations": 0, "pending": 0, "retries": 0}
    try:
        async with get_admin_db() as db:
            organizations = await organizations_with_due_work(db, utcnow())

        pipeline = build_pipeline()
        for organization_id in organizations:
            counts = await pipeline.dispatch_due(organization_id)
            totals["organizations"] += 1
            totals["pending"] += counts["pending"]
            totals["retries"] += counts["retries"]
    finally:
        await _release_engine()

    if totals["organizations"]:
        logger.info("Dispatch scan | %s", totals)
    return totals


# ---------------------------------------------------------------------------
# Retention cleanup — daily via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipeline.workers.tasks.cleanup_old_analyses",
    bind=False,
    acks_late=True,
)
def cleanup_old_analyses(days_old: int | None = None) -> dict[str, int]:
    return run_async(_cleanup_old_analyses_async(days_old))


async def _cleanup_old_analyses_async(days_old: int | None = None) -> dict[str, int]:
    from docpipeline.core.config import settings
    from docpipeline.db.session import get_admin_db
    from docpipeline.models.analysis import utcnow

    days = days_old if days_old is not None else settings.retention_days
    cutoff = utcnow() - timedelta(days=days)
    deleted = 0
    try:
        async with get_admin_db() as db:
            organizations = await organizations_with_expired_records(db, cutoff)

        store = build_store()
        for organization_id in organizations:
            deleted += await store.cleanup_old_analyses(organization_id, days)
    finally:
        await _release_engine()

    logger.info("Retention cleanup | organizations=%d soft_deleted=%d", len(organizations), deleted)
    return {"organizations": len(organizations), "soft_deleted": deleted}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="docpipeline.workers.tasks.health_check")
def health_check() -> dict[str, Any]:
    from docpipeline.db.session import check_db_health

    async def _check() -> dict:
        try:
            return await check_db_health()
        finally:
            await _release_engine()

    return {"status": "ok", "worker": "healthy", "database": run_async(_check())}
