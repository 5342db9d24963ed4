"""
LLM Provider — Immutable Settings, Validation, Degraded Responses

The provider wraps one LangChain chat model (ChatOpenAI or AzureChatOpenAI)
behind a single `send()` call that never raises for configuration problems:

  ┌───────────────────────────────────────────────────────────┐
  │  LLMProvider.send(prompt)                                 │
  │       │                                                   │
  │       ├─ settings invalid?  → LLMResponse(                │
  │       │                        finish_reason=             │
  │       │                        "configuration_error")     │
  │       ├─ api key missing?   → LLMResponse(                │
  │       │                        finish_reason=             │
  │       │                        "api_key_missing")         │
  │       ├─ non-compliant?     → log warning, continue       │
  │       ▼                                                   │
  │  chat_model.ainvoke()  (bounded by call_timeout)          │
  └───────────────────────────────────────────────────────────┘

Provider exceptions and timeouts DO propagate; the analyzer turns them
into a stage error so the orchestrator's retry path handles them.

Compliance (data retention opt-out + data collection disabled) is
observability only. A non-compliant configuration is still served.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "azure_openai")

FINISH_CONFIGURATION_ERROR = "configuration_error"
FINISH_API_KEY_MISSING     = "api_key_missing"

UNAVAILABLE_CONFIG_MESSAGE = "AI service temporarily unavailable. Please check configuration."
UNAVAILABLE_KEY_MESSAGE    = "AI service temporarily unavailable. API key not configured."


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderSettings:
    provider:                  str   = "openai"
    model:                     str   = "gpt-4o-mini"
    api_key:                   str   = ""
    api_version:               str   = "2024-08-01-preview"
    endpoint:                  str   = ""
    temperature:               float = 0.0
    max_tokens:                int   = 4096
    data_retention_opt_out:    bool  = True
    enable_data_collection:    bool  = False
    enforce_no_data_retention: bool  = True
    call_timeout:              float = 120.0
    prompt_char_budget:        int   = 8000

    @classmethod
    def from_settings(cls, settings) -> "ProviderSettings":
        return cls(
            provider=settings.llm_provider,
            model=settings.llm_model,
            api_key=settings.llm_api_key or settings.openai_api_key,
            api_version=settings.azure_openai_api_version,
            endpoint=settings.azure_openai_endpoint,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            data_retention_opt_out=settings.llm_data_retention_opt_out,
            enable_data_collection=settings.llm_enable_data_collection,
            enforce_no_data_retention=settings.llm_enforce_no_data_retention,
            call_timeout=settings.llm_call_timeout,
            prompt_char_budget=settings.llm_prompt_char_budget,
        )


def validate_provider_settings(settings: ProviderSettings) -> list[str]:
    """
    Return configuration issues; an empty list means the settings are usable.
    A missing API key is reported separately by LLMProvider (api_key_missing).
    """
    issues: list[str] = []

    if settings.provider not in SUPPORTED_PROVIDERS:
        issues.append(
            f"Unknown LLM provider '{settings.provider}' "
            f"(expected one of {', '.join(SUPPORTED_PROVIDERS)})"
        )

    if not settings.model:
        issues.append("Model not specified")

    if settings.enforce_no_data_retention:
        if not settings.data_retention_opt_out:
            issues.append(
                "Data retention opt-out not enabled (LLM_DATA_RETENTION_OPT_OUT should be true)"
            )
        if settings.enable_data_collection:
            issues.append(
                "Data collection is enabled (LLM_ENABLE_DATA_COLLECTION should be false)"
            )

    if settings.provider == "azure_openai" and not settings.endpoint:
        issues.append("Azure OpenAI endpoint not configured (AZURE_OPENAI_ENDPOINT)")

    return issues


def is_data_retention_compliant(settings: ProviderSettings) -> bool:
    return settings.data_retention_opt_out and not settings.enable_data_collection


def compliance_status(settings: ProviderSettings) -> dict:
    """{is_compliant, issues, recommendations} for health and audit views."""
    issues: list[str] = []
    recommendations: list[str] = []

    if not settings.data_retention_opt_out:
        issues.append("Data retention opt-out is disabled")
        recommendations.append("Set LLM_DATA_RETENTION_OPT_OUT=true")
    if settings.enable_data_collection:
        issues.append("Provider data collection is enabled")
        recommendations.append("Set LLM_ENABLE_DATA_COLLECTION=false")
    if not settings.enforce_no_data_retention:
        recommendations.append("Set LLM_ENFORCE_NO_DATA_RETENTION=true to validate retention at startup")

    return {
        "is_compliant":    is_data_retention_compliant(settings),
        "issues":          issues,
        "recommendations": recommendations,
    }


# ---------------------------------------------------------------------------
# Chat model construction
# ---------------------------------------------------------------------------

def build_chat_model(settings: ProviderSettings) -> BaseChatModel:
    """Instantiate the LangChain chat model for the configured provider."""
    if settings.provider == "azure_openai":
        from langchain_openai import AzureChatOpenAI
        return AzureChatOpenAI(
            azure_deployment=settings.model,
            azure_endpoint=settings.endpoint,
            api_version=settings.api_version,
            api_key=settings.api_key,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            max_retries=0,
        )

    from langchain_openai import ChatOpenAI
    return ChatOpenAI(
        model=settings.model,
        api_key=settings.api_key,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        max_retries=0,
    )


def _estimate_tokens(text: str) -> int:
    """Rough token count: 4 chars ≈ 1 token. Used when the API reports no usage."""
    return max(1, len(text) // 4) if text else 0


# ---------------------------------------------------------------------------
# Response dataclass
# ---------------------------------------------------------------------------

@dataclass
class TokenUsage:
    input_tokens:  int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LLMResponse:
    content:       str
    model:         str
    finish_reason: str
    usage:         TokenUsage = field(default_factory=TokenUsage)
    latency_ms:    float = 0.0

    @property
    def is_degraded(self) -> bool:
        return self.finish_reason in (FINISH_CONFIGURATION_ERROR, FINISH_API_KEY_MISSING)


# ---------------------------------------------------------------------------
# LLMProvider
# ---------------------------------------------------------------------------

class LLMProvider:
    """
    Single-provider chat wrapper. Settings are validated once at
    construction; an invalid configuration turns every call into a
    degraded response instead of an exception.
    """

    def __init__(
        self,
        settings:   ProviderSettings,
        chat_model: BaseChatModel | None = None,
    ) -> None:
        self._settings = settings
        self._issues   = validate_provider_settings(settings)
        self._model    = chat_model

        if self._issues:
            logger.warning("LLM provider configuration issues found:")
            for issue in self._issues:
                logger.warning("  - %s", issue)
            logger.warning("Analysis will continue with limited AI functionality")
        else:
            logger.info(
                "LLM provider validated | provider=%s model=%s compliant=%s",
                settings.provider, settings.model, is_data_retention_compliant(settings),
            )

    @property
    def settings(self) -> ProviderSettings:
        return self._settings

    @property
    def is_config_valid(self) -> bool:
        return not self._issues

    @property
    def config_issues(self) -> list[str]:
        return list(self._issues)

    def compliance_status(self) -> dict:
        return compliance_status(self._settings)

    def _chat_model(self) -> BaseChatModel:
        if self._model is None:
            self._model = build_chat_model(self._settings)
        return self._model

    async def send(self, prompt: str, system_prompt: str | None = None) -> LLMResponse:
        """
        Send one prompt. Returns a degraded LLMResponse for configuration
        problems; raises the provider's exception (or asyncio.TimeoutError)
        for call failures.
        """
        model_name = self._settings.model or "unavailable"

        if not self.is_config_valid:
            logger.warning("LLM service not properly configured, returning placeholder response")
            return LLMResponse(
                content=UNAVAILABLE_CONFIG_MESSAGE,
                model=model_name,
                finish_reason=FINISH_CONFIGURATION_ERROR,
            )

        if not self._settings.api_key:
            logger.error("LLM API key not configured")
            return LLMResponse(
                content=UNAVAILABLE_KEY_MESSAGE,
                model=model_name,
                finish_reason=FINISH_API_KEY_MISSING,
            )

        if not is_data_retention_compliant(self._settings):
            logger.warning("Making LLM request with non-compliant data retention settings")

        messages: list[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))

        t0 = time.perf_counter()
        result = await asyncio.wait_for(
            self._chat_model().ainvoke(messages),
            timeout=self._settings.call_timeout,
        )
        latency = (time.perf_counter() - t0) * 1000

        content = result.content if isinstance(result.content, str) else str(result.content)
        usage_meta = getattr(result, "usage_metadata", None) or {}
        usage = TokenUsage(
            input_tokens=int(usage_meta.get("input_tokens") or _estimate_tokens(prompt + (system_prompt or ""))),
            output_tokens=int(usage_meta.get("output_tokens") or _estimate_tokens(content)),
        )
        response_meta = getattr(result, "response_metadata", None) or {}

        logger.info(
            "LLMProvider | provider=%s model=%s tokens_in=%d tokens_out=%d latency_ms=%.1f",
            self._settings.provider, model_name,
            usage.input_tokens, usage.output_tokens, latency,
        )
        return LLMResponse(
            content=content,
            model=model_name,
            finish_reason=response_meta.get("finish_reason") or "stop",
            usage=usage,
            latency_ms=latency,
        )
