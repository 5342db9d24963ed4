"""
Document Processing Package
════════════════════════════

The first two pipeline stages:

  Text Extraction → Line Classification (chunks) → Embedding

Modules
───────
  extractor.py  Extension-keyed text extraction (plain text, DOCX, PDF)
  chunking.py   Heuristic line classifier producing typed, ordered chunks
  embeddings.py Sequential batch embedder with retry and token accounting

Design principles
─────────────────
  • Every component is stateless and receives its configuration at construction.
  • All heavy computation runs in the Celery worker, never in the submission path.
  • Observability is built-in: every step emits structured log lines.
"""

from docpipeline.processing.chunking import Chunk, ChunkKind, DocumentChunker, ListType
from docpipeline.processing.embeddings import (
    Embedder,
    EmbedderConfig,
    EmbeddingProvider,
    EmbeddingResult,
    EmbeddingVector,
    OpenAIEmbeddingProvider,
    truncate_text,
    validate_text_for_embedding,
)
from docpipeline.processing.extractor import ExtractionResult, extract_text

__all__ = [
    "Chunk",
    "ChunkKind",
    "DocumentChunker",
    "ListType",
    "Embedder",
    "EmbedderConfig",
    "EmbeddingProvider",
    "EmbeddingResult",
    "EmbeddingVector",
    "OpenAIEmbeddingProvider",
    "truncate_text",
    "validate_text_for_embedding",
    "ExtractionResult",
    "extract_text",
]
