"""
Analysis job state machine.

    PENDING ──► PROCESSING ──► COMPLETED
       │            ├────────► FAILED ──► PENDING   (retry)
       │            └────────► CANCELLED
       └──────────────────────► CANCELLED           (cancelled while queued)

COMPLETED and CANCELLED are terminal. FAILED is terminal only once the
retry budget is spent; a manual retry or the scanner moves it back to
PENDING.

Progress is a snapshot written at stage boundaries, not a measurement.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from docpipeline.core.errors import InvalidTransitionError
from docpipeline.models.analysis import ensure_utc
from docpipeline.schemas.analysis import AnalysisStatus, PipelineStage

S = AnalysisStatus

ALLOWED_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    S.PENDING:    frozenset({S.PROCESSING, S.CANCELLED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.FAILED:     frozenset({S.PENDING}),
    S.COMPLETED:  frozenset(),
    S.CANCELLED:  frozenset(),
}

TERMINAL_STATES    = frozenset({S.COMPLETED, S.CANCELLED})
CANCELLABLE_STATES = frozenset({S.PENDING, S.PROCESSING})
ACTIVE_STATES      = frozenset({S.PENDING, S.PROCESSING})

STAGE_ORDER = (
    PipelineStage.PARSE,
    PipelineStage.EMBED,
    PipelineStage.INDEX,
    PipelineStage.ANALYZE,
)

STAGE_PROGRESS: dict[PipelineStage, int] = {
    PipelineStage.PARSE:   10,
    PipelineStage.EMBED:   30,
    PipelineStage.INDEX:   50,
    PipelineStage.ANALYZE: 70,
}
COMPLETED_PROGRESS = 100

STAGE_STEPS: dict[PipelineStage, str] = {
    PipelineStage.PARSE:   "Parsing document",
    PipelineStage.EMBED:   "Generating embeddings",
    PipelineStage.INDEX:   "Indexing vectors",
    PipelineStage.ANALYZE: "Analyzing document",
}

STATUS_STEPS: dict[AnalysisStatus, str] = {
    S.PENDING:   "Queued for processing",
    S.COMPLETED: "Analysis completed",
    S.FAILED:    "Analysis failed",
    S.CANCELLED: "Analysis cancelled",
}
CANCEL_REQUESTED_STEP = "Cancellation requested"

# estimated completion = start + base + per-MB allowance
ESTIMATE_BASE_SECONDS   = 30
ESTIMATE_SECONDS_PER_MB = 10


def can_transition(current: AnalysisStatus, target: AnalysisStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[AnalysisStatus(current)]


def assert_transition(current: AnalysisStatus, target: AnalysisStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Illegal status transition {AnalysisStatus(current).value} → {AnalysisStatus(target).value}"
        )


def retry_delay_seconds(retry_count: int, base_delay: float = 2.0) -> float:
    """Back-off for the retry numbered `retry_count` (1-based): base × 2^(n-1)."""
    return base_delay * (2 ** max(retry_count - 1, 0))


def next_retry_time(now: datetime, retry_count: int, base_delay: float = 2.0) -> datetime:
    return now + timedelta(seconds=retry_delay_seconds(retry_count, base_delay))


def current_step(
    status:           AnalysisStatus,
    stage:            str | None = None,
    cancel_requested: bool = False,
) -> str:
    status = AnalysisStatus(status)
    if status is S.PROCESSING:
        if cancel_requested:
            return CANCEL_REQUESTED_STEP
        if stage:
            return STAGE_STEPS.get(PipelineStage(stage), "Processing")
        return "Processing"
    return STATUS_STEPS[status]


def estimated_completion(
    status:        AnalysisStatus,
    created_at:    datetime,
    started_at:    datetime | None,
    document_size: int,
) -> datetime | None:
    """Only active jobs get an estimate."""
    if AnalysisStatus(status) not in ACTIVE_STATES:
        return None
    start = ensure_utc(started_at or created_at)
    size_mb = document_size / (1024 * 1024)
    return start + timedelta(seconds=ESTIMATE_BASE_SECONDS + ESTIMATE_SECONDS_PER_MB * size_mb)
