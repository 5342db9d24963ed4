"""
Analyzer — Document Text → StructuredAnalysis

One prompt per request:

    document type + depth instruction + optional field focus
    + document text (truncated to the prompt budget, "..." appended)
    + JSON template

The response is validated once, here, and returned as a tagged result:

    AnalysisOk(analysis, usage, model, finish_reason, latency_ms)
    SchemaError(reason, raw_excerpt)          — model answered, shape wrong
    ProviderUnavailable(finish_reason, content) — provider unconfigured

Provider exceptions and timeouts are raised as AnalyzerError so the
orchestrator treats them like any other stage failure.

Confidence:
  A top-level numeric "confidence" in [0, 1] emitted by the model is used
  as-is. Anything else (a string, a bool, a value outside [0, 1]) is
  dropped during validation and does not fail the analysis. Without a
  usable value a field heuristic stands in: 0.5 base, +0.2 when scope lists
  included items, +0.1 each for risks, milestones and a positive budget
  estimate, capped at 1.0.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Union

from pydantic import ValidationError as PydanticValidationError

from docpipeline.core.errors import AnalyzerError
from docpipeline.llm.provider import LLMProvider, TokenUsage
from docpipeline.schemas.analysis import (
    AnalysisDepth,
    AnalysisOptions,
    ConfidenceLevel,
    DocumentType,
    StructuredAnalysis,
)

logger = logging.getLogger(__name__)

_JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")

RAW_EXCERPT_CHARS = 500

DEPTH_INSTRUCTIONS: dict[AnalysisDepth, str] = {
    AnalysisDepth.BASIC:
        "Provide a high-level summary focusing on key objectives and timeline.",
    AnalysisDepth.DETAILED:
        "Provide comprehensive analysis including stakeholders, resources, and risks.",
    AnalysisDepth.COMPREHENSIVE:
        "Provide exhaustive analysis with detailed breakdowns, dependencies, and success metrics.",
}

SYSTEM_PROMPT = (
    "You are a project analyst. You read business documents and answer only "
    "with a single JSON object that follows the requested format."
)

JSON_TEMPLATE = """{
  "projectObjectives": ["objective1", "objective2"],
  "scope": {
    "included": ["item1", "item2"],
    "excluded": ["item1", "item2"],
    "assumptions": ["assumption1", "assumption2"],
    "constraints": ["constraint1", "constraint2"]
  },
  "stakeholders": [
    {
      "name": "Stakeholder Name",
      "role": "Role Description",
      "responsibilities": ["responsibility1", "responsibility2"],
      "influence": "high|medium|low"
    }
  ],
  "timeline": {
    "estimatedDuration": "6 months",
    "milestones": [
      {
        "name": "Milestone Name",
        "description": "Description",
        "estimatedDate": "2024-06-01",
        "dependencies": ["dependency1", "dependency2"]
      }
    ]
  },
  "resources": {
    "humanResources": [
      {
        "role": "Role Title",
        "skillLevel": "Senior|Mid|Junior",
        "quantity": 2,
        "availability": "Full-time|Part-time"
      }
    ],
    "technicalResources": ["resource1", "resource2"],
    "budget": {
      "estimated": 500000,
      "currency": "USD",
      "breakdown": {"development": 300000, "testing": 100000, "deployment": 100000}
    }
  },
  "risks": [
    {
      "description": "Risk description",
      "probability": "high|medium|low",
      "impact": "high|medium|low",
      "mitigation": ["strategy1", "strategy2"],
      "owner": "Owner Name"
    }
  ],
  "dependencies": [
    {
      "description": "Dependency description",
      "type": "internal|external|technical|business",
      "criticality": "high|medium|low",
      "timeline": "When needed"
    }
  ],
  "successCriteria": [
    {
      "criterion": "Success criterion",
      "metric": "Measurement metric",
      "target": "Target value",
      "measurementMethod": "How to measure"
    }
  ],
  "kpis": [
    {
      "name": "KPI Name",
      "description": "KPI Description",
      "target": 95,
      "unit": "percentage",
      "frequency": "monthly"
    }
  ],
  "confidence": "number from 0 to 1: certainty that this extraction is complete"
}"""


# ---------------------------------------------------------------------------
# Tagged results
# ---------------------------------------------------------------------------

@dataclass
class AnalysisOk:
    analysis:      StructuredAnalysis
    usage:         TokenUsage = field(default_factory=TokenUsage)
    model:         str = ""
    finish_reason: str = "stop"
    latency_ms:    float = 0.0


@dataclass
class SchemaError:
    reason:      str
    raw_excerpt: str = ""
    usage:       TokenUsage = field(default_factory=TokenUsage)
    model:       str = ""


@dataclass
class ProviderUnavailable:
    finish_reason: str
    content:       str
    model:         str = ""


AnalyzerResult = Union[AnalysisOk, SchemaError, ProviderUnavailable]


# ---------------------------------------------------------------------------
# Prompt + parsing
# ---------------------------------------------------------------------------

def truncate_for_prompt(text: str, budget: int) -> str:
    if len(text) <= budget:
        return text
    return text[:budget] + "..."


def build_analysis_prompt(
    document_text: str,
    options:       AnalysisOptions,
    document_type: DocumentType = DocumentType.OTHER,
    char_budget:   int = 8000,
) -> str:
    lines = [
        f"Analyze the following {document_type.value.upper()} document and extract structured information.",
        "",
        DEPTH_INSTRUCTIONS[options.analysis_depth],
        "",
        "Focus on extracting:",
        "- Project objectives and scope",
        "- Key stakeholders and their roles",
        "- Timeline estimates and milestones",
        "- Resource requirements (human and technical)",
        "- Risk factors and mitigation strategies",
        "- Dependencies and constraints",
        "- Success criteria and KPIs",
    ]
    if options.extract_fields:
        lines += ["", "Pay particular attention to: " + ", ".join(options.extract_fields)]

    lines += [
        "",
        "Document Content:",
        truncate_for_prompt(document_text, char_budget),
        "",
        "Return the analysis in the following JSON format. Set \"confidence\" to your "
        "certainty (0 to 1) that the extraction is complete and correct:",
        JSON_TEMPLATE,
    ]
    return "\n".join(lines)


def parse_analysis(raw: str) -> StructuredAnalysis | SchemaError:
    """First {...} block → json.loads → pydantic validation."""
    excerpt = (raw or "")[:RAW_EXCERPT_CHARS]

    match = _JSON_BLOCK_RE.search(raw or "")
    if not match:
        return SchemaError("Invalid LLM response format - no JSON found", excerpt)

    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        return SchemaError(f"Response is not valid JSON: {exc}", excerpt)

    if not isinstance(payload, dict):
        return SchemaError("Response JSON is not an object", excerpt)

    try:
        return StructuredAnalysis.model_validate(payload)
    except PydanticValidationError as exc:
        missing = [".".join(str(p) for p in e["loc"]) for e in exc.errors()]
        return SchemaError(f"Response failed schema validation: {', '.join(missing)}", excerpt)


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

def heuristic_confidence(analysis: StructuredAnalysis) -> float:
    score = 0.5
    if analysis.scope.included:
        score += 0.2
    if analysis.risks:
        score += 0.1
    if analysis.timeline.milestones:
        score += 0.1
    if analysis.resources.budget.estimated > 0:
        score += 0.1
    return round(min(score, 1.0), 4)


def resolve_confidence(analysis: StructuredAnalysis) -> float:
    if analysis.confidence is not None:
        return float(analysis.confidence)
    return heuristic_confidence(analysis)


def confidence_level(score: float) -> ConfidenceLevel:
    if score >= 0.8:
        return ConfidenceLevel.VERY_HIGH
    if score >= 0.6:
        return ConfidenceLevel.HIGH
    if score >= 0.4:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class Analyzer:
    """
    Usage:
        analyzer = Analyzer(LLMProvider(ProviderSettings.from_settings(settings)))
        result   = await analyzer.analyze(text, options, DocumentType.BRD)
        match result:
            case AnalysisOk(): ...
    """

    def __init__(self, provider: LLMProvider) -> None:
        self._provider = provider

    @property
    def model(self) -> str:
        return self._provider.settings.model

    async def analyze(
        self,
        document_text: str,
        options:       AnalysisOptions,
        document_type: DocumentType = DocumentType.OTHER,
    ) -> AnalyzerResult:
        prompt = build_analysis_prompt(
            document_text,
            options,
            document_type,
            self._provider.settings.prompt_char_budget,
        )

        try:
            response = await self._provider.send(prompt, system_prompt=SYSTEM_PROMPT)
        except TimeoutError as exc:
            raise AnalyzerError(
                f"LLM call timed out after {self._provider.settings.call_timeout:.0f}s",
                error_code="ANALYZER_TIMEOUT",
            ) from exc
        except Exception as exc:
            logger.error("LLM analysis failed: %s", exc, exc_info=True)
            raise AnalyzerError(
                f"AI analysis failed: {type(exc).__name__}: {exc}",
                error_code="ANALYZER_PROVIDER_ERROR",
            ) from exc

        if response.is_degraded:
            logger.warning(
                "Analyzer degraded | finish_reason=%s model=%s",
                response.finish_reason, response.model,
            )
            return ProviderUnavailable(
                finish_reason=response.finish_reason,
                content=response.content,
                model=response.model,
            )

        parsed = parse_analysis(response.content)
        if isinstance(parsed, SchemaError):
            logger.error("Failed to parse LLM response: %s", parsed.reason)
            parsed.usage = response.usage
            parsed.model = response.model
            return parsed

        logger.info(
            "Analyzer ok | model=%s objectives=%d risks=%d latency_ms=%.0f",
            response.model, len(parsed.project_objectives), len(parsed.risks),
            response.latency_ms,
        )
        return AnalysisOk(
            analysis=parsed,
            usage=response.usage,
            model=response.model,
            finish_reason=response.finish_reason,
            latency_ms=response.latency_ms,
        )
