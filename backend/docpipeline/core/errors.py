"""
Error taxonomy for the analysis pipeline.

  ValidationError        bad input (size, type, missing fields); raised
                         synchronously by submission, never retried
  TenantLimitError       organization concurrency or daily-cost ceiling;
                         synchronous, non-retryable, caller resubmits later
  NotFoundError          record absent in the caller's organization
  InvalidStateError      operation not allowed in the record's current status
  InvalidTransitionError illegal edge requested from the state machine
  StageError             parse / embed / index / analyze failure; recorded on
                         the record and retried with exponential back-off

Every error carries a stable `error_code` and renders into the uniform
ErrorResponse envelope with `to_response()`.

Degraded providers (no API key, vector index not configured) are NOT
exceptions; the affected component returns an explicit degraded result.
"""

from __future__ import annotations

from uuid import UUID

from docpipeline.schemas.analysis import (
    ALLOWED_EXTENSIONS,
    ErrorDetail,
    ErrorResponse,
    PipelineStage,
)


class PipelineError(Exception):
    """Base class. Subclasses set a default error_code."""

    error_code = "PIPELINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        details: list[ErrorDetail] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or []

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error_code=self.error_code,
            message=self.message,
            details=self.details,
        )


# ---------------------------------------------------------------------------
# Synchronous errors
# ---------------------------------------------------------------------------

class ValidationError(PipelineError):
    error_code = "VALIDATION_ERROR"


class TenantLimitError(PipelineError):
    error_code = "TENANT_LIMIT_EXCEEDED"


class NotFoundError(PipelineError):
    error_code = "ANALYSIS_NOT_FOUND"


class InvalidStateError(PipelineError):
    error_code = "INVALID_STATE"


class InvalidTransitionError(PipelineError):
    error_code = "INVALID_TRANSITION"


# ---------------------------------------------------------------------------
# Stage errors
# ---------------------------------------------------------------------------

class StageError(PipelineError):
    """
    Failure of one pipeline stage. `retryable=False` marks failures that a
    second attempt cannot fix (e.g. an unsupported file format).
    """

    error_code = "STAGE_ERROR"
    stage: PipelineStage | None = None

    def __init__(
        self,
        message: str,
        *,
        stage: PipelineStage | None = None,
        retryable: bool = True,
        error_code: str | None = None,
        details: list[ErrorDetail] | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
        if stage is not None:
            self.stage = stage
        self.retryable = retryable


class ParseError(StageError):
    error_code = "PARSE_ERROR"
    stage = PipelineStage.PARSE


class UnsupportedFormatError(ParseError):
    error_code = "UNSUPPORTED_FORMAT"

    def __init__(self, filename: str) -> None:
        super().__init__(
            f"Unsupported document format: '{filename}'. "
            f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}",
            retryable=False,
        )
        self.filename = filename


class EmbeddingError(StageError):
    error_code = "EMBEDDING_ERROR"
    stage = PipelineStage.EMBED


class IndexingError(StageError):
    error_code = "INDEXING_ERROR"
    stage = PipelineStage.INDEX


class AnalyzerError(StageError):
    error_code = "ANALYZER_ERROR"
    stage = PipelineStage.ANALYZE


# ---------------------------------------------------------------------------
# Pre-defined submission error factories (keeps the orchestrator thin)
# ---------------------------------------------------------------------------

class SubmissionErrors:
    """Factories for every documented synchronous submission failure."""

    @staticmethod
    def missing_file() -> ValidationError:
        return ValidationError(
            "No document content was provided.",
            error_code="MISSING_FILE",
            details=[ErrorDetail(field="content", message="Document bytes are required.", code="MISSING_FILE")],
        )

    @staticmethod
    def unsupported_file_type(filename: str, extension: str) -> ValidationError:
        return ValidationError(
            f"File type '{extension or 'unknown'}' is not supported.",
            error_code="UNSUPPORTED_FILE_TYPE",
            details=[
                ErrorDetail(
                    field="filename",
                    message=(
                        f"'{filename}' has an unsupported type. "
                        f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}."
                    ),
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ValidationError:
        max_mb = limit_bytes // (1024 * 1024)
        return ValidationError(
            f"Document exceeds the {max_mb} MB limit.",
            error_code="FILE_TOO_LARGE",
            details=[
                ErrorDetail(
                    field="content",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def invalid_document_name(name: str) -> ValidationError:
        return ValidationError(
            "The provided document_name is invalid.",
            error_code="INVALID_DOCUMENT_NAME",
            details=[
                ErrorDetail(
                    field="document_name",
                    message=f"'{name}' must be 1-255 characters.",
                    code="INVALID_DOCUMENT_NAME",
                )
            ],
        )

    @staticmethod
    def cost_limit_too_high(requested: float, maximum: float) -> ValidationError:
        return ValidationError(
            f"Cost limit exceeds maximum allowed cost of ${maximum:.2f}.",
            error_code="COST_LIMIT_TOO_HIGH",
            details=[
                ErrorDetail(
                    field="options.cost_limit",
                    message=f"Requested ${requested:.2f}; maximum is ${maximum:.2f}.",
                    code="COST_LIMIT_TOO_HIGH",
                )
            ],
        )

    @staticmethod
    def concurrency_limit(organization_id: UUID, limit: int) -> TenantLimitError:
        return TenantLimitError(
            f"Organization has reached the maximum limit of {limit} concurrent analyses.",
            error_code="CONCURRENCY_LIMIT_EXCEEDED",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Organization {organization_id} must wait for running analyses to finish.",
                    code="CONCURRENCY_LIMIT_EXCEEDED",
                )
            ],
        )

    @staticmethod
    def daily_cost_limit(organization_id: UUID, limit: float) -> TenantLimitError:
        return TenantLimitError(
            f"Organization has reached the daily cost limit of ${limit:.2f}.",
            error_code="DAILY_COST_LIMIT_EXCEEDED",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Organization {organization_id} can submit again after 00:00 UTC.",
                    code="DAILY_COST_LIMIT_EXCEEDED",
                )
            ],
        )

    @staticmethod
    def not_found(analysis_id: UUID) -> NotFoundError:
        return NotFoundError(f"Analysis '{analysis_id}' was not found in your organization.")
