"""
Embedder  —  Sequential Batch Embeddings with Retry & Accounting
════════════════════════════════════════════════════════════════

Design goals:
  • Batch efficiency: one provider call per `batch_size` chunks (default 100)
  • Rate-limit friendly: batches run one after another with
    `inter_batch_delay` seconds between calls
  • Retry logic: exponential back-off on rate limits and transient errors,
    per batch, inside the stage
  • All or nothing: any batch that still fails, or any count/dimension
    mismatch, fails the whole stage. A partial vector set is never returned.
  • Token accounting: provider-reported usage is summed for cost tracking

Batching strategy:
  OpenAI API: max 8191 tokens per input, max 2048 inputs per call.
  100 texts per batch stays well within both limits. Oversize chunk texts
  are truncated (sentence → word → hard cut) before they are sent.

Retry policy (per batch):
  RateLimitError / APITimeoutError / APIConnectionError / 5xx
      → wait retry_base_delay × 2^(attempt-1), capped at retry_max_delay
  AuthenticationError / BadRequestError / PermissionDeniedError
      → fail immediately (not transient, job-level retry won't help either)
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Sequence

from docpipeline.core.errors import EmbeddingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE = 100      # texts per provider call
MAX_RETRIES          = 3        # per-batch retry limit
RETRY_BASE_DELAY     = 2.0      # seconds — doubles each retry
RETRY_MAX_DELAY      = 60.0     # cap

# ~4 chars per token for English text; 8000 tokens keeps us under the 8191 limit
CHARS_PER_TOKEN_EST = 4
DEFAULT_MAX_CHARS   = 8000 * CHARS_PER_TOKEN_EST

# a sentence/word boundary is only used if it keeps at least this share of the budget
MIN_BOUNDARY_RATIO = 0.5

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ServiceUnavailableError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
    "TimeoutError",
)

_FATAL_EXCEPTION_TYPES = (
    "AuthenticationError",
    "PermissionDeniedError",
    "BadRequestError",
    "InvalidRequestError",
    "NotFoundError",
)


def _is_retryable(exc: BaseException) -> bool:
    """True if the exception class name suggests a transient provider error."""
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


def _is_fatal(exc: BaseException) -> bool:
    name = type(exc).__name__
    return any(name.endswith(r) for r in _FATAL_EXCEPTION_TYPES)


@dataclass(frozen=True)
class EmbedderConfig:
    model:             str   = "text-embedding-3-small"
    dimensions:        int   = 1536
    api_key:           str   = ""
    batch_size:        int   = EMBEDDING_BATCH_SIZE
    inter_batch_delay: float = 0.1
    call_timeout:      float = 30.0
    max_chars:         int   = DEFAULT_MAX_CHARS
    max_retries:       int   = MAX_RETRIES
    retry_base_delay:  float = RETRY_BASE_DELAY
    retry_max_delay:   float = RETRY_MAX_DELAY

    @classmethod
    def from_settings(cls, settings) -> "EmbedderConfig":
        return cls(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.openai_api_key,
            batch_size=settings.embedding_batch_size,
            inter_batch_delay=settings.embedding_inter_batch_delay,
            call_timeout=settings.embedding_call_timeout,
            max_chars=settings.embedding_max_chars,
        )


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmbeddingVector:
    chunk_id: str
    values:   list[float]

    @property
    def dimension(self) -> int:
        return len(self.values)


@dataclass
class EmbeddingResult:
    """
    Full output of the embedding stage for one document.

    vectors      : one EmbeddingVector per input chunk, in chunk order
    total_tokens : provider-reported (or estimated) token usage
    model        : embedding model id, used for pricing
    elapsed_ms   : stage wall time
    batch_count  : number of provider calls that succeeded
    """
    vectors:      list[EmbeddingVector] = field(default_factory=list)
    total_tokens: int   = 0
    model:        str   = ""
    elapsed_ms:   float = 0.0
    batch_count:  int   = 0

    def __len__(self) -> int:
        return len(self.vectors)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class EmbeddingProvider(ABC):
    """A provider turns a batch of texts into one vector per text."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """False when the provider cannot be called at all (e.g. no API key)."""

    @property
    @abstractmethod
    def model(self) -> str: ...

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> tuple[list[list[float]], int]:
        """Return (vectors, tokens_used) for `texts`, in input order."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    openai.AsyncOpenAI embeddings. The client is created on first use so a
    provider without a key can still be constructed and report itself as
    unconfigured.
    """

    def __init__(self, config: EmbedderConfig) -> None:
        self._cfg    = config
        self._client = None

    @property
    def is_configured(self) -> bool:
        return bool(self._cfg.api_key)

    @property
    def model(self) -> str:
        return self._cfg.model

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._cfg.api_key, max_retries=0)
        return self._client

    async def embed_batch(self, texts: list[str]) -> tuple[list[list[float]], int]:
        kwargs: dict = {"model": self._cfg.model, "input": texts}
        # dimensions param only works for text-embedding-3-* models
        if self._cfg.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._cfg.dimensions

        response = await self._get_client().embeddings.create(**kwargs)

        tokens_used = response.usage.total_tokens if response.usage else sum(
            len(t) // CHARS_PER_TOKEN_EST for t in texts
        )
        ordered = sorted(response.data, key=lambda d: d.index)
        return [d.embedding for d in ordered], tokens_used


# ---------------------------------------------------------------------------
# Text validation / truncation
# ---------------------------------------------------------------------------

def validate_text_for_embedding(
    text: str,
    max_chars: int = DEFAULT_MAX_CHARS,
) -> tuple[bool, str | None]:
    """
    Pre-call check. Returns (ok, reason); reason is None when ok.
    """
    if text is None or not text.strip():
        return False, "Text is empty"
    if len(text) > max_chars:
        return False, f"Text length {len(text)} exceeds limit of {max_chars} characters"
    return True, None


@lru_cache(maxsize=1)
def _sentencizer():
    """Rule-based sentence splitter (no model download needed)."""
    import spacy

    nlp = spacy.blank("en")
    nlp.add_pipe("sentencizer")
    return nlp


def truncate_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """
    Shorten `text` to at most `max_chars` characters.

    Prefers the end of the last complete sentence, then the last word
    boundary, then a hard cut. A boundary is only used when it keeps at
    least MIN_BOUNDARY_RATIO of the budget.
    """
    if len(text) <= max_chars:
        return text

    window  = text[:max_chars]
    minimum = int(max_chars * MIN_BOUNDARY_RATIO)

    sentence_end = 0
    for sent in _sentencizer()(window).sents:
        stripped = sent.text.rstrip()
        if stripped and stripped[-1] in ".!?":
            sentence_end = sent.start_char + len(stripped)
    if sentence_end >= minimum:
        return window[:sentence_end]

    word_end = window.rstrip().rfind(" ")
    if word_end >= minimum:
        return window[:word_end].rstrip()

    return window


# ---------------------------------------------------------------------------
# Core embedder
# ---------------------------------------------------------------------------

class Embedder:
    """
    Stage component. One instance per worker process.

    Usage:
        embedder = Embedder(EmbedderConfig.from_settings(settings))
        result   = await embedder.embed(chunks)
        # len(result) == len(chunks), or EmbeddingError was raised
    """

    def __init__(
        self,
        config:   EmbedderConfig,
        provider: EmbeddingProvider | None = None,
    ) -> None:
        self._cfg      = config
        self._provider = provider or OpenAIEmbeddingProvider(config)

    @property
    def model(self) -> str:
        return self._provider.model

    @property
    def is_configured(self) -> bool:
        return self._provider.is_configured

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def embed(self, chunks: Sequence) -> EmbeddingResult:
        """
        Embed all chunks, in order.

        Raises:
            EmbeddingError: provider not configured, a batch failed after
                            retries, or the provider returned the wrong
                            number or size of vectors.
        """
        if not chunks:
            return EmbeddingResult(model=self.model)

        if not self._provider.is_configured:
            raise EmbeddingError(
                "Embedding provider is not configured (missing API key)",
                error_code="EMBEDDING_PROVIDER_NOT_CONFIGURED",
            )

        t0    = time.monotonic()
        texts = [self._prepare_text(chunk) for chunk in chunks]
        size  = max(1, self._cfg.batch_size)
        batches = [
            (chunks[i : i + size], texts[i : i + size])
            for i in range(0, len(chunks), size)
        ]

        logger.info(
            "Embedder | chunks=%d batches=%d model=%s",
            len(chunks), len(batches), self.model,
        )

        vectors: list[EmbeddingVector] = []
        total_tokens = 0

        for batch_idx, (batch_chunks, batch_texts) in enumerate(batches):
            if batch_idx > 0 and self._cfg.inter_batch_delay > 0:
                await asyncio.sleep(self._cfg.inter_batch_delay)

            values, tokens = await self._embed_batch_with_retry(batch_texts, batch_idx)
            self._check_batch(values, len(batch_texts), batch_idx)

            vectors.extend(
                EmbeddingVector(chunk_id=chunk.chunk_id, values=list(v))
                for chunk, v in zip(batch_chunks, values)
            )
            total_tokens += tokens

        if len(vectors) != len(chunks):
            raise EmbeddingError(
                f"Embedding count mismatch: {len(vectors)} vectors for {len(chunks)} chunks",
                error_code="EMBEDDING_COUNT_MISMATCH",
            )

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Embedder done | vectors=%d tokens=%d elapsed_ms=%.0f",
            len(vectors), total_tokens, elapsed_ms,
        )
        return EmbeddingResult(
            vectors=vectors,
            total_tokens=total_tokens,
            model=self.model,
            elapsed_ms=elapsed_ms,
            batch_count=len(batches),
        )

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single search string with the document model."""
        ok, reason = validate_text_for_embedding(text, self._cfg.max_chars)
        if not ok:
            raise EmbeddingError(f"Invalid query text: {reason}", retryable=False)
        if not self._provider.is_configured:
            raise EmbeddingError(
                "Embedding provider is not configured (missing API key)",
                error_code="EMBEDDING_PROVIDER_NOT_CONFIGURED",
            )
        values, _ = await self._embed_batch_with_retry([text], 0)
        self._check_batch(values, 1, 0)
        return list(values[0])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prepare_text(self, chunk) -> str:
        text = chunk.content
        ok, reason = validate_text_for_embedding(text, self._cfg.max_chars)
        if ok:
            return text
        if text and text.strip():
            logger.warning(
                "Embedder | truncating chunk=%s chars=%d limit=%d",
                chunk.chunk_id, len(text), self._cfg.max_chars,
            )
            return truncate_text(text, self._cfg.max_chars)
        raise EmbeddingError(
            f"Chunk {chunk.chunk_id} cannot be embedded: {reason}",
            retryable=False,
            error_code="EMBEDDING_INVALID_TEXT",
        )

    def _check_batch(self, values: list, expected: int, batch_idx: int) -> None:
        if len(values) != expected:
            raise EmbeddingError(
                f"Batch {batch_idx} returned {len(values)} vectors for {expected} inputs",
                error_code="EMBEDDING_COUNT_MISMATCH",
            )
        for v in values:
            if len(v) != self._cfg.dimensions:
                raise EmbeddingError(
                    f"Batch {batch_idx} returned a {len(v)}-dim vector; "
                    f"expected {self._cfg.dimensions}",
                    retryable=False,
                    error_code="EMBEDDING_DIMENSION_MISMATCH",
                )

    async def _embed_batch_with_retry(
        self,
        texts:     list[str],
        batch_idx: int,
    ) -> tuple[list[list[float]], int]:
        last_error: BaseException | None = None

        for attempt in range(self._cfg.max_retries + 1):
            if attempt > 0:
                delay = min(
                    self._cfg.retry_base_delay * (2 ** (attempt - 1)),
                    self._cfg.retry_max_delay,
                )
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            try:
                return await asyncio.wait_for(
                    self._provider.embed_batch(texts),
                    timeout=self._cfg.call_timeout,
                )
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning(
                    "Embedding timeout | batch=%d attempt=%d timeout=%.0fs",
                    batch_idx, attempt, self._cfg.call_timeout,
                )
            except Exception as exc:
                last_error = exc
                if _is_fatal(exc) or not _is_retryable(exc):
                    logger.error(
                        "Non-retryable embedding error batch=%d: %s", batch_idx, exc
                    )
                    raise EmbeddingError(
                        f"Embedding batch {batch_idx} failed: {type(exc).__name__}: {exc}",
                        retryable=not _is_fatal(exc),
                    ) from exc
                logger.warning(
                    "Retryable embedding error batch=%d attempt=%d: %s %s",
                    batch_idx, attempt, type(exc).__name__, exc,
                )

        raise EmbeddingError(
            f"Embedding batch {batch_idx} failed after {self._cfg.max_retries} retries: {last_error}",
            error_code="EMBEDDING_RETRIES_EXHAUSTED",
        ) from last_error
