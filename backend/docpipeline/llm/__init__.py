"""
LLM Package

A single-provider chat wrapper (OpenAI or Azure OpenAI via LangChain) and
the document Analyzer built on it.

Public API::

    from docpipeline.llm import Analyzer, LLMProvider, ProviderSettings

    provider = LLMProvider(ProviderSettings.from_settings(settings))
    result   = await Analyzer(provider).analyze(text, options, document_type)
"""

from docpipeline.llm.analyzer import (
    AnalysisOk,
    Analyzer,
    AnalyzerResult,
    ProviderUnavailable,
    SchemaError,
    confidence_level,
    resolve_confidence,
)
from docpipeline.llm.provider import (
    LLMProvider,
    LLMResponse,
    ProviderSettings,
    TokenUsage,
    compliance_status,
    validate_provider_settings,
)

__all__ = [
    "AnalysisOk",
    "Analyzer",
    "AnalyzerResult",
    "ProviderUnavailable",
    "SchemaError",
    "confidence_level",
    "resolve_confidence",
    "LLMProvider",
    "LLMResponse",
    "ProviderSettings",
    "TokenUsage",
    "compliance_status",
    "validate_provider_settings",
]
