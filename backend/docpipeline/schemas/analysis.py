"""
Document Analysis — Pydantic Schemas

Covers the full lifecycle of an analysis job:
  - Submission request / response (job id + initial PENDING status)
  - Status polling response (progress is a stage-boundary snapshot)
  - Paginated list and filter objects
  - Per-organization statistics
  - The StructuredAnalysis produced by the language model
  - Uniform error envelope (ErrorResponse / ErrorDetail)

Design decisions:
  - analysis_id is always server-generated (UUID4); never client-supplied.
  - organization_id is taken from the caller's verified identity, never
    from free-form input; every query is scoped by it.
  - StructuredAnalysis uses camelCase aliases because that is the JSON shape
    the model is instructed to emit; Python code uses snake_case attributes.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Accepted uploads — enforced before anything is stored
# ---------------------------------------------------------------------------

ALLOWED_EXTENSIONS: frozenset[str] = frozenset({".pdf", ".docx", ".txt", ".md"})

# 25 MB default ceiling (overridable through OrchestratorConfig)
MAX_FILE_SIZE_BYTES: int = 25 * 1024 * 1024

DEFAULT_PAGE_SIZE: int = 20
MAX_PAGE_SIZE:     int = 100


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AnalysisStatus(str, Enum):
    """
    Maps to analysis_records.status.
    Transitions: see services/state_machine.py
    """
    PENDING    = "PENDING"      # queued, not yet picked up by a worker
    PROCESSING = "PROCESSING"   # worker driving parse → embed → index → analyze
    COMPLETED  = "COMPLETED"    # result attached; terminal
    FAILED     = "FAILED"       # stage error; may be retried
    CANCELLED  = "CANCELLED"    # terminal


class AnalysisType(str, Enum):
    BRD_ANALYSIS           = "BRD_ANALYSIS"
    REQUIREMENT_EXTRACTION = "REQUIREMENT_EXTRACTION"
    RISK_ASSESSMENT        = "RISK_ASSESSMENT"
    DEPENDENCY_MAPPING     = "DEPENDENCY_MAPPING"
    COST_ESTIMATION        = "COST_ESTIMATION"
    TIMELINE_ANALYSIS      = "TIMELINE_ANALYSIS"


class ConfidenceLevel(str, Enum):
    LOW       = "LOW"
    MEDIUM    = "MEDIUM"
    HIGH      = "HIGH"
    VERY_HIGH = "VERY_HIGH"


class AnalysisDepth(str, Enum):
    BASIC         = "basic"
    DETAILED      = "detailed"
    COMPREHENSIVE = "comprehensive"


class DocumentType(str, Enum):
    BRD           = "brd"
    REQUIREMENTS  = "requirements"
    PROJECT_PLAN  = "project_plan"
    SPECIFICATION = "specification"
    OTHER         = "other"


class PipelineStage(str, Enum):
    PARSE   = "parse"
    EMBED   = "embed"
    INDEX   = "index"
    ANALYZE = "analyze"


# ---------------------------------------------------------------------------
# Structured errors
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Input field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for every synchronous failure.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# StructuredAnalysis — the language model's validated output
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Scope(_CamelModel):
    included:    list[str]
    excluded:    list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)


class Stakeholder(_CamelModel):
    name:             str
    role:             str
    responsibilities: list[str] = Field(default_factory=list)
    influence:        str = "medium"   # high | medium | low


class Milestone(_CamelModel):
    name:           str
    description:    str = ""
    estimated_date: Optional[str] = None
    dependencies:   list[str] = Field(default_factory=list)


class Timeline(_CamelModel):
    estimated_duration: str
    milestones:         list[Milestone] = Field(default_factory=list)


class HumanResource(_CamelModel):
    role:         str
    skill_level:  str = ""
    quantity:     int = 1
    availability: str = ""


class Budget(_CamelModel):
    estimated: float = 0.0
    currency:  str   = "USD"
    breakdown: dict[str, float] = Field(default_factory=dict)


class Resources(_CamelModel):
    human_resources:     list[HumanResource] = Field(default_factory=list)
    technical_resources: list[str]           = Field(default_factory=list)
    budget:              Budget              = Field(default_factory=Budget)


class Risk(_CamelModel):
    description: str
    probability: str = "medium"
    impact:      str = "medium"
    mitigation:  list[str] = Field(default_factory=list)
    owner:       str = ""


class Dependency(_CamelModel):
    description: str
    type:        str = "internal"   # internal | external | technical | business
    criticality: str = "medium"
    timeline:    str = ""


class SuccessCriterion(_CamelModel):
    criterion:          str
    metric:             str = ""
    target:             str = ""
    measurement_method: str = ""


class Kpi(_CamelModel):
    name:        str
    description: str = ""
    target:      float | str = 0
    unit:        str = ""
    frequency:   str = ""


class StructuredAnalysis(_CamelModel):
    """
    The nine required sections. A payload missing any of them fails
    validation and the analyze stage fails with it.
    """
    project_objectives: list[str]
    scope:              Scope
    stakeholders:       list[Stakeholder]
    timeline:           Timeline
    resources:          Resources
    risks:              list[Risk]
    dependencies:       list[Dependency]
    success_criteria:   list[SuccessCriterion]
    kpis:               list[Kpi]

    # Optional model-reported certainty in [0, 1]
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def discard_unusable_confidence(cls, v: Any) -> Optional[float]:
        """Non-numeric or out-of-range values become None (heuristic applies)."""
        if v is None or isinstance(v, bool):
            return None
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        if math.isnan(value) or not 0.0 <= value <= 1.0:
            return None
        return value


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class AnalysisOptions(BaseModel):
    """Caller-supplied processing options, stored verbatim on the record."""
    analysis_depth: AnalysisDepth = AnalysisDepth.DETAILED
    extract_fields: list[str]     = Field(default_factory=list)
    cost_limit:     Optional[float] = Field(None, ge=0.0, description="USD ceiling for this job")


class SubmissionRequest(BaseModel):
    """Everything the submission path needs; bytes never leave the worker tier."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    content:         bytes
    filename:        str
    document_name:   str | None = None
    document_type:   DocumentType = DocumentType.OTHER
    analysis_type:   AnalysisType = AnalysisType.BRD_ANALYSIS
    options:         AnalysisOptions = Field(default_factory=AnalysisOptions)
    organization_id: UUID
    user_id:         UUID


class SubmissionResponse(BaseModel):
    """Returned immediately after a job is accepted."""
    analysis_id: UUID
    status:      AnalysisStatus = AnalysisStatus.PENDING
    progress:    int = 0
    created_at:  datetime


# ---------------------------------------------------------------------------
# Status / list / stats
# ---------------------------------------------------------------------------

class AnalysisStatusResponse(BaseModel):
    """
    Polled by clients. `progress` is a snapshot taken at stage boundaries,
    not a fine-grained measurement.
    """
    analysis_id:          UUID
    status:               AnalysisStatus
    progress:             int = Field(0, ge=0, le=100)
    current_step:         str
    estimated_completion: datetime | None = None
    result:               dict[str, Any] | None = None
    error:                str | None = None
    retry_count:          int = 0
    next_retry_at:        datetime | None = None


class DateRange(BaseModel):
    start: datetime
    end:   datetime


class AnalysisFilters(BaseModel):
    status:           Optional[AnalysisStatus]  = None
    analysis_type:    Optional[AnalysisType]    = None
    confidence_level: Optional[ConfidenceLevel] = None
    date_range:       Optional[DateRange]       = None
    document_type:    Optional[DocumentType]    = None
    min_confidence:   Optional[float] = Field(None, ge=0.0, le=1.0)
    max_cost:         Optional[float] = Field(None, ge=0.0)
    has_errors:       Optional[bool]  = None


class AnalysisSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:               UUID
    document_name:    str
    document_type:    str
    analysis_type:    str
    status:           AnalysisStatus
    confidence_score: float | None = None
    confidence_level: ConfidenceLevel | None = None
    total_cost:       Decimal = Decimal("0")
    retry_count:      int = 0
    created_at:       datetime
    updated_at:       datetime


class AnalysisListPage(BaseModel):
    items:     list[AnalysisSummary]
    total:     int
    page:      int
    page_size: int

    @property
    def pages(self) -> int:
        if self.page_size == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


class AnalysisStats(BaseModel):
    total:                  int = 0
    by_status:              dict[str, int] = Field(default_factory=dict)
    by_type:                dict[str, int] = Field(default_factory=dict)
    by_confidence:          dict[str, int] = Field(default_factory=dict)
    avg_processing_time_ms: float = 0.0
    total_cost:             Decimal = Decimal("0")
    success_rate:           float = 0.0    # percent of all records
    error_rate:             float = 0.0    # percent of all records
