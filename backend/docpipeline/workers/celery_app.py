"""
Celery Application Factory

Configures the Celery app that runs analysis jobs.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis (optional; job state lives in the analysis_records table).

Queue topology:
  analysis.process      pipeline jobs, one per analysis id
  analysis.maintenance  dispatch scanner and retention cleanup (beat)
  system.health         internal health-check tasks

Task payloads carry ids only. Document bytes stay in S3 and are loaded
inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docpipeline.core.config import settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

ANALYSIS_EXCHANGE = Exchange("analysis", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "analysis.process",
        exchange=ANALYSIS_EXCHANGE,
        routing_key="analysis.process",
        durable=True,
    ),
    Queue(
        "analysis.maintenance",
        exchange=ANALYSIS_EXCHANGE,
        routing_key="analysis.maintenance",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docpipeline.workers.tasks.process_analysis":       {"queue": "analysis.process"},
    "docpipeline.workers.tasks.dispatch_due_analyses":  {"queue": "analysis.maintenance"},
    "docpipeline.workers.tasks.cleanup_old_analyses":   {"queue": "analysis.maintenance"},
    "docpipeline.workers.tasks.health_check":           {"queue": "system.health"},
}

DISPATCH_INTERVAL_SECONDS = 30
CLEANUP_INTERVAL_SECONDS  = 24 * 60 * 60

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docpipeline")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="analysis.process",
        task_default_exchange="analysis",
        task_default_routing_key="analysis.process",

        # --- Reliability ---
        task_acks_late=True,           # ack only after the job finishes
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one job per worker process

        # --- Retries (infrastructure errors only; stage failures use the record) ---
        task_max_retries=3,
        task_default_retry_delay=30,

        # --- Timeouts ---
        task_soft_time_limit=600,
        task_time_limit=660,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "dispatch-due-analyses-every-30s": {
                "task":     "docpipeline.workers.tasks.dispatch_due_analyses",
                "schedule": DISPATCH_INTERVAL_SECONDS,
                "options":  {"queue": "analysis.maintenance"},
            },
            "cleanup-old-analyses-daily": {
                "task":     "docpipeline.workers.tasks.cleanup_old_analyses",
                "schedule": CLEANUP_INTERVAL_SECONDS,
                "options":  {"queue": "analysis.maintenance"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docpipeline.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — structured logging of every job
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_after_setup_logger(logger, *args, **kwargs):
    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s analysis=%s org=%s",
        task_id, task.name,
        kwargs.get("analysis_id", "?"),
        kwargs.get("organization_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s analysis=%s",
        task_id, task.name, state, kwargs.get("analysis_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s analysis=%s error=%s",
        task_id, (kwargs or {}).get("analysis_id", "?"), exception,
        exc_info=True,
    )
