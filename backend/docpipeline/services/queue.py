"""
Job queue seam between the orchestrator and the Celery workers.

The payload is ids only: the worker reloads the record and the document
bytes itself. The Celery task id is the analysis id, so revoking a queued
job needs nothing but the id.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from uuid import UUID

from kombu.exceptions import OperationalError

from docpipeline.core.errors import PipelineError

logger = logging.getLogger(__name__)


class QueueUnavailableError(PipelineError):
    error_code = "QUEUE_UNAVAILABLE"


class JobQueue(ABC):

    @abstractmethod
    async def enqueue(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        countdown:       float = 0,
    ) -> None:
        """Raises QueueUnavailableError when the broker cannot be reached."""

    @abstractmethod
    async def revoke(self, analysis_id: UUID) -> None: ...


class CeleryJobQueue(JobQueue):
    """
    Sends process_analysis to the broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def enqueue(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        countdown:       float = 0,
    ) -> None:
        from docpipeline.workers.tasks import process_analysis

        loop = asyncio.get_running_loop()
        try:
            # apply_async blocks on the broker connection
            await loop.run_in_executor(
                None,
                lambda: process_analysis.apply_async(
                    kwargs={
                        "analysis_id":     str(analysis_id),
                        "organization_id": str(organization_id),
                    },
                    task_id=str(analysis_id),
                    countdown=max(0, countdown),
                ),
            )
        except (OperationalError, OSError) as exc:
            logger.error("Enqueue failed | analysis=%s error=%s", analysis_id, exc)
            raise QueueUnavailableError(f"Job queue unavailable: {exc}") from exc

        logger.info(
            "Analysis task published | analysis=%s org=%s countdown=%.1fs",
            analysis_id, organization_id, countdown,
        )

    async def revoke(self, analysis_id: UUID) -> None:
        from docpipeline.workers.celery_app import celery_app

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, lambda: celery_app.control.revoke(str(analysis_id)))
        except (OperationalError, OSError) as exc:
            raise QueueUnavailableError(f"Job queue unavailable: {exc}") from exc
        logger.info("Analysis task revoked | analysis=%s", analysis_id)
